import asyncio
import json
from datetime import datetime, timezone

import pytest

from tracker import lifecycle
from tracker.models import ParticipantStatus, RepublishContext
from tracker.publish import (
    PublishError,
    PublishProtocol,
    PublishValidationError,
    derive_profile_id,
    iso_timestamp,
)
from tracker.store_client import StoreError

from conftest import make_participant

RACE_DAY = datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)
PHOTO = b"\xff\xd8\xff\xe0 fake jpeg"


def _done(pid, finish_ms, **kw):
    return make_participant(pid, status=ParticipantStatus.COMPLETED, finish_time=finish_ms, **kw)


def _promoted_guest(nickname="Dave", name=None):
    guest = lifecycle.enter(lifecycle.guest_entrant(nickname), 0)
    guest = lifecycle.set_promotion(guest, True, name)
    return guest.model_copy(
        update={"status": ParticipantStatus.COMPLETED, "finish_time": 1_800_000, "small_loops": 2}
    )


@pytest.mark.parametrize(
    "name, slug",
    [
        ("Dave Brown", "dave-brown"),
        ("  Dave (Sarah's friend) ", "dave-sarah-s-friend"),
        ("Zoë", "zo"),
        ("!!!", ""),
    ],
)
def test_derive_profile_id(name, slug):
    assert derive_profile_id(name) == slug


def test_iso_timestamp():
    assert iso_timestamp(RACE_DAY) == "2026-10-18T09:30:00.000Z"


class TestPlan:
    def test_requires_all_completed(self, make_client):
        protocol = PublishProtocol(make_client())
        with pytest.raises(PublishValidationError):
            protocol.plan([_done("alice", 1), make_participant("bob")], RACE_DAY, PHOTO)

    def test_requires_photo_for_new_record(self, make_client):
        protocol = PublishProtocol(make_client())
        with pytest.raises(PublishValidationError):
            protocol.plan([_done("alice", 1)], RACE_DAY, None)

    def test_rejects_empty_profile_id(self, make_client):
        protocol = PublishProtocol(make_client())
        with pytest.raises(PublishValidationError):
            protocol.plan([_promoted_guest("Dave", "!!!")], RACE_DAY, PHOTO)

    def test_rejects_existing_profile_id(self, make_client):
        protocol = PublishProtocol(make_client())
        with pytest.raises(PublishValidationError):
            protocol.plan([_promoted_guest("Alice")], RACE_DAY, PHOTO, known_ids={"alice"})

    def test_rejects_duplicate_promotions(self, make_client):
        protocol = PublishProtocol(make_client())
        with pytest.raises(PublishValidationError):
            protocol.plan([_promoted_guest("Dave"), _promoted_guest("dave")], RACE_DAY, PHOTO)

    def test_record_shape(self, make_client):
        protocol = PublishProtocol(make_client())
        guest = lifecycle.enter(lifecycle.guest_entrant("Eve"), 0).model_copy(
            update={"status": ParticipantStatus.COMPLETED, "finish_time": 2_000_000}
        )
        plan = protocol.plan(
            [_done("alice", 1_450_000, medium_loops=3), guest, _promoted_guest()],
            RACE_DAY,
            PHOTO,
            title="Sunday Run",
        )
        assert plan.paths == [
            "assets/images/races/2026-10-18.jpg",
            "content/runners/dave.json",
            "content/staging/runs/2026-10-18.json",
        ]
        assert plan.message == "feat(runs): add run data for 2026-10-18\n\nNew runners: dave"
        record = json.loads(plan.record.to_json_str())
        assert record["date"] == "2026-10-18T09:30:00.000Z"
        assert record["mainPhoto"] == "/images/races/2026-10-18.jpg"
        assert record["title"] == "Sunday Run"
        assert "body" not in record
        alice, eve, dave = record["participants"]
        assert alice == {
            "runner": "alice", "smallLoops": 0, "mediumLoops": 3, "longLoops": 0, "time": "24:10",
        }
        assert eve["runner"] == "guest" and eve["guestName"] == "Eve"
        assert dave["runner"] == "dave" and "guestName" not in dave


class TestCommit:
    def test_single_atomic_commit(self, make_client, fake_store):
        before = fake_store.head

        async def scenario():
            async with make_client() as client:
                return await PublishProtocol(client).publish(
                    [_done("alice", 1_450_000), _done("bob", 1_500_000), _promoted_guest()],
                    race_date=RACE_DAY,
                    photo=PHOTO,
                    known_ids={"alice", "bob", "carol", "guest"},
                )

        result = asyncio.run(scenario())
        assert fake_store.head == result.commit_sha
        assert result.parent_sha == before
        assert fake_store.commits[result.commit_sha].parents == [before]
        assert fake_store.changed_paths(result.commit_sha) == {
            "assets/images/races/2026-10-18.jpg",
            "content/runners/dave.json",
            "content/staging/runs/2026-10-18.json",
        }
        assert fake_store.read("assets/images/races/2026-10-18.jpg") == PHOTO
        profile = fake_store.read_json("content/runners/dave.json")
        assert profile == {"id": "dave", "name": "Dave", "anonymous": False, "joinedDate": "2026-10-18"}
        assert result.new_profiles == ["dave"]
        # Roster files from before the publish are still there.
        assert "content/runners/alice.json" in fake_store.files()

    def test_republish_overwrites_record_only(self, make_client, fake_store):
        fake_store.write_files({"assets/images/races/2026-10-11.jpg": PHOTO})
        context = RepublishContext(
            date="2026-10-11",
            date_time="2026-10-11T09:00:00.000Z",
            main_photo="/images/races/2026-10-11.jpg",
            title="Old title",
        )

        async def scenario():
            async with make_client() as client:
                protocol = PublishProtocol(client)
                first = await protocol.publish([_done("alice", 1_000_000)], republish=context)
                second = await protocol.publish(
                    [_done("alice", 1_005_000)], republish=context, body="Corrected"
                )
                return first, second

        first, second = asyncio.run(scenario())
        assert fake_store.changed_paths(second.commit_sha) == {"content/staging/runs/2026-10-11.json"}
        assert fake_store.commits[second.commit_sha].message == "feat(runs): update run data for 2026-10-11"
        record = fake_store.read_json("content/staging/runs/2026-10-11.json")
        assert record["date"] == "2026-10-11T09:00:00.000Z"
        assert record["mainPhoto"] == "/images/races/2026-10-11.jpg"
        assert record["title"] == "Old title"
        assert record["body"] == "Corrected"
        assert record["participants"][0]["time"] == "16:45"
        assert second.parent_sha == first.commit_sha

    def test_ref_conflict_leaves_branch_unchanged(self, make_client, fake_store):
        before = fake_store.head
        fake_store.fail_next("update_ref", 422)

        async def scenario():
            async with make_client() as client:
                await PublishProtocol(client).publish(
                    [_done("alice", 1)], race_date=RACE_DAY, photo=PHOTO
                )

        with pytest.raises(PublishError) as info:
            asyncio.run(scenario())
        assert str(info.value) == "Publish failed, please retry"
        assert fake_store.head == before
        assert "content/staging/runs/2026-10-18.json" not in fake_store.files()

    def test_blob_failure_leaves_branch_unchanged(self, make_client, fake_store):
        before = fake_store.head
        fake_store.fail_next("create_blob", 500, times=4)

        async def scenario():
            async with make_client() as client:
                await PublishProtocol(client).publish(
                    [_done("alice", 1)], race_date=RACE_DAY, photo=PHOTO
                )

        with pytest.raises(PublishError):
            asyncio.run(scenario())
        assert fake_store.head == before
        assert fake_store.count("update_ref") == 0

    def test_retry_after_failure_succeeds(self, make_client, fake_store):
        fake_store.fail_next("create_commit", 500, times=2)

        async def scenario():
            async with make_client() as client:
                protocol = PublishProtocol(client)
                participants = [_done("alice", 1)]
                with pytest.raises(PublishError):
                    await protocol.publish(participants, race_date=RACE_DAY, photo=PHOTO)
                return await protocol.publish(participants, race_date=RACE_DAY, photo=PHOTO)

        result = asyncio.run(scenario())
        assert fake_store.head == result.commit_sha
        assert len(fake_store.changed_paths(result.commit_sha)) == 2


class _StallingStore:
    """Rejects the photo blob while the record blob upload hangs."""

    def __init__(self):
        self.cancelled = False

    async def get_branch_head(self):
        return "head"

    async def get_commit_tree(self, sha):
        return "tree"

    async def create_blob(self, content, encoding="base64"):
        if encoding == "base64":
            raise StoreError("blob rejected", 500)
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


def test_blob_failure_cancels_other_uploads():
    store = _StallingStore()

    async def scenario():
        with pytest.raises(PublishError):
            await PublishProtocol(store).publish(
                [_done("alice", 1)], race_date=RACE_DAY, photo=PHOTO
            )
        # checked before the loop shuts down and cancels leftovers itself
        assert store.cancelled
        assert len(asyncio.all_tasks()) == 1

    asyncio.run(scenario())
