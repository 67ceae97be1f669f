import asyncio
import base64

import pytest
from fastapi.testclient import TestClient

from tracker import main
from tracker.checkpoint import CheckpointStore
from tracker.config import TrackerSettings
from tracker.service import TrackerService


@pytest.fixture
def service(tmp_path, make_client, clock, monkeypatch):
    settings = TrackerSettings(checkpoint_path=tmp_path / "checkpoint.json")
    client = make_client()
    svc = TrackerService(settings, client, CheckpointStore(settings.checkpoint_path), now_ms=clock)

    async def load():
        await client.start()
        await svc.refresh_roster()

    asyncio.run(load())
    monkeypatch.setattr(main, "service", svc)
    return svc


@pytest.fixture
def api(service):
    # No lifespan: the module-level store client is never started.
    return TestClient(main.app)


def _run_to_review(api):
    api.post("/api/session/start", json={"participant_ids": ["alice"], "guests": ["Dave"]})
    for row in api.get("/api/session").json()["participants"]:
        assert api.post(f"/api/session/participants/{row['id']}/finish").status_code == 200
        assert api.post(f"/api/session/participants/{row['id']}/complete").status_code == 200
    assert api.post("/api/session/end").status_code == 200


def test_health(api):
    body = api.get("/api/health").json()
    assert body["status"] == "healthy"
    assert body["phase"] == "setup"
    assert body["runners_loaded"] == 4


def test_roster_excludes_guest_profile(api):
    ids = [r["id"] for r in api.get("/api/roster").json()["runners"]]
    assert ids == ["alice", "bob", "carol"]


def test_start_and_track(api, clock):
    resp = api.post("/api/session/start", json={"participant_ids": ["alice", "bob"]})
    assert resp.status_code == 200
    assert resp.json()["phase"] == "running"

    clock.advance(90_000)
    resp = api.post("/api/session/participants/alice/loops", json={"kind": "medium", "delta": 2})
    assert resp.json()["mediumLoops"] == 2

    resp = api.post("/api/session/participants/alice/finish")
    assert resp.json()["status"] == "finished"
    assert resp.json()["finishTime"] == 90_000

    resp = api.post("/api/session/participants/alice/adjust-time", json={"steps": 1})
    assert resp.json()["finishTime"] == 95_000

    snap = api.get("/api/session").json()
    assert snap["groups"]["finished"] == ["alice"]
    assert snap["can_end"] is False


def test_error_mapping(api):
    # 404 unknown runner, 409 wrong phase / status, 422 bad body
    assert api.post("/api/session/start", json={"participant_ids": ["nobody"]}).status_code == 404
    assert api.post("/api/session/pause").status_code == 409
    api.post("/api/session/start", json={"participant_ids": ["alice"]})
    assert api.post("/api/session/participants/alice/complete").status_code == 409
    assert api.post("/api/session/end").status_code == 409
    assert api.post("/api/session/participants/ghost/finish").status_code == 404
    assert api.post("/api/session/participants", json={}).status_code == 422
    assert api.post("/api/session/participants/alice/loops", json={"kind": "huge"}).status_code == 422


def test_late_addition_and_removal(api):
    api.post("/api/session/start", json={"participant_ids": ["alice"]})
    guest = api.post("/api/session/participants", json={"guest_nickname": "Eve"}).json()
    assert guest["repoId"] == "guest"
    resp = api.delete(f"/api/session/participants/{guest['id']}")
    assert resp.status_code == 200
    assert len(api.get("/api/session").json()["participants"]) == 1


def test_publish_flow(api, fake_store, service):
    _run_to_review(api)
    dave = next(p for p in service.session.participants if p.is_guest)
    resp = api.post(f"/api/session/participants/{dave.id}/promotion", json={"convert": True, "name": "Dave Brown"})
    assert resp.json()["convertToRunner"] is True

    photo = base64.b64encode(b"jpeg bytes").decode("ascii")
    resp = api.post(
        "/api/session/publish",
        json={"date": "2026-10-18", "title": "Sunday", "photo_base64": photo},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "published"
    assert body["new_profiles"] == ["dave-brown"]
    assert fake_store.head == body["commit_sha"]
    assert "content/staging/runs/2026-10-18.json" in fake_store.files()
    assert api.get("/api/session").json()["phase"] == "setup"

    runs = api.get("/api/staged-runs").json()["runs"]
    assert runs == [{"date": "2026-10-18", "title": "Sunday", "participants": 2}]
    resp = api.post("/api/staged-runs/2026-10-18/load")
    assert resp.json()["phase"] == "review"


def test_publish_validation_and_failure(api, fake_store):
    _run_to_review(api)
    resp = api.post("/api/session/publish", json={})
    assert resp.status_code == 422
    resp = api.post("/api/session/publish", json={"photo_base64": "not base64!!"})
    assert resp.status_code == 422

    fake_store.fail_next("update_ref", 422)
    photo = base64.b64encode(b"jpeg").decode("ascii")
    resp = api.post("/api/session/publish", json={"photo_base64": photo})
    assert resp.status_code == 502
    assert resp.json() == {"error": "Publish failed, please retry"}
    assert api.get("/api/session").json()["phase"] == "review"


def test_back_and_cancel(api):
    _run_to_review(api)
    assert api.post("/api/session/back").json()["phase"] == "running"
    assert api.post("/api/session/cancel").json()["phase"] == "setup"


def test_websocket_sends_snapshot_on_connect(api):
    with api.websocket_connect("/ws") as ws:
        message = ws.receive_json()
    assert message["type"] == "session"
    assert message["payload"]["phase"] == "setup"
