"""Shared fixtures: a controllable clock and an in-process content store."""

from __future__ import annotations

import json

import httpx
import pytest

from tracker.mock_store import FakeContentStore, create_app
from tracker.models import LiveParticipant, ParticipantStatus
from tracker.store_client import ContentStoreClient


class FakeClock:
    """Callable time source returning Unix milliseconds."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


RUNNERS = {
    "guest": {"id": "guest", "name": "Guest", "anonymous": True},
    "alice": {"id": "alice", "name": "Alice Smith"},
    "bob": {"id": "bob", "name": "Bob Jones"},
    "carol": {"id": "carol", "name": "Carol White", "anonymous": True},
}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_store() -> FakeContentStore:
    store = FakeContentStore()
    store.write_files(
        {
            f"content/runners/{rid}.json": json.dumps(data).encode("utf-8")
            for rid, data in RUNNERS.items()
        },
        "seed roster",
    )
    return store


@pytest.fixture
def make_client(fake_store):
    """Factory for a store client talking to ``fake_store`` in-process."""

    def _make() -> ContentStoreClient:
        return ContentStoreClient(
            base_url="http://store.test",
            owner="club",
            repo="site",
            retry_delay_s=0,
            transport=httpx.ASGITransport(app=create_app(fake_store)),
        )

    return _make


def make_participant(pid: str = "alice", **overrides) -> LiveParticipant:
    fields = {
        "id": pid,
        "repo_id": pid,
        "name": pid.title(),
        "start_time": 0,
        "status": ParticipantStatus.RUNNING,
    }
    fields.update(overrides)
    return LiveParticipant(**fields)
