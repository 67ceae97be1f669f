import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from tracker.models import ParticipantStatus
from tracker.publish import PublishError, PublishProtocol
from tracker.roster import RosterProvider
from tracker.store_client import (
    ContentStoreClient,
    StoreConflictError,
    StoreError,
    StoreNotFoundError,
    TreeEntry,
)

from conftest import make_participant


def test_list_and_read(make_client):
    async def scenario():
        async with make_client() as client:
            entries = await client.list_directory("content/runners")
            text = await client.read_text("content/runners/alice.json")
            return entries, text

    entries, text = asyncio.run(scenario())
    assert sorted(e.name for e in entries) == ["alice.json", "bob.json", "carol.json", "guest.json"]
    assert '"Alice Smith"' in text


def test_missing_file(make_client):
    async def scenario():
        async with make_client() as client:
            assert await client.get_file_sha("content/runners/nobody.json") is None
            with pytest.raises(StoreNotFoundError):
                await client.read_file("content/runners/nobody.json")

    asyncio.run(scenario())


def test_single_file_writes_need_version_token(make_client, fake_store):
    async def scenario():
        async with make_client() as client:
            await client.create_or_update_file("notes/a.txt", b"one", "add a")
            with pytest.raises(StoreConflictError):
                await client.create_or_update_file("notes/a.txt", b"two", "update a")
            sha = await client.get_file_sha("notes/a.txt")
            await client.create_or_update_file("notes/a.txt", b"two", "update a", sha=sha)

    asyncio.run(scenario())
    assert fake_store.read("notes/a.txt") == b"two"


def test_transient_status_retried_once(make_client, fake_store):
    fake_store.fail_next("get_content", 502)

    async def scenario():
        async with make_client() as client:
            await client.read_text("content/runners/bob.json")
            return client.retries

    assert asyncio.run(scenario()) == 1
    assert fake_store.count("get_content") == 2


def test_second_transient_failure_raises(make_client, fake_store):
    fake_store.fail_next("get_content", 503, times=2)

    async def scenario():
        async with make_client() as client:
            with pytest.raises(StoreError) as info:
                await client.read_text("content/runners/bob.json")
            return info.value

    err = asyncio.run(scenario())
    assert err.status_code == 503
    assert fake_store.count("get_content") == 2


def test_client_errors_not_retried(make_client, fake_store):
    fake_store.fail_next("get_content", 401)

    async def scenario():
        async with make_client() as client:
            with pytest.raises(StoreError):
                await client.read_text("content/runners/bob.json")

    asyncio.run(scenario())
    assert fake_store.count("get_content") == 1


def test_transport_error_retried_once():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"ref": "refs/heads/main", "object": {"sha": "abc"}})

    async def scenario():
        client = ContentStoreClient(
            "http://store.test", "club", "site", retry_delay_s=0,
            transport=httpx.MockTransport(handler),
        )
        async with client:
            return await client.get_branch_head()

    assert asyncio.run(scenario()) == "abc"
    assert calls == ["/repos/club/site/git/ref/heads/main"] * 2


def test_request_before_start_fails():
    client = ContentStoreClient("http://store.test", "club", "site")
    with pytest.raises(StoreError):
        asyncio.run(client.get_branch_head())


def test_git_data_round_trip(make_client, fake_store):
    async def scenario():
        async with make_client() as client:
            head = await client.get_branch_head()
            base = await client.get_commit_tree(head)
            blob = await client.create_blob(b"hello", "utf-8")
            tree = await client.create_tree(base, [TreeEntry(path="hello.txt", sha=blob)])
            commit = await client.create_commit("add hello", tree, head)
            await client.update_branch_ref(commit)
            return head, commit

    head, commit = asyncio.run(scenario())
    assert fake_store.head == commit
    assert fake_store.commits[commit].parents == [head]
    assert fake_store.changed_paths(commit) == {"hello.txt"}
    assert "content/runners/alice.json" in fake_store.files()


def test_non_fast_forward_rejected(make_client, fake_store):
    async def scenario():
        async with make_client() as client:
            head = await client.get_branch_head()
            base = await client.get_commit_tree(head)
            blob = await client.create_blob(b"x")
            tree = await client.create_tree(base, [TreeEntry(path="x.bin", sha=blob)])
            commit = await client.create_commit("x", tree, head)
            fake_store.write_files({"other.txt": b"moved"}, "someone else")
            with pytest.raises(StoreConflictError):
                await client.update_branch_ref(commit)

    asyncio.run(scenario())
    assert "x.bin" not in fake_store.files()


def _mock_client(handler):
    return ContentStoreClient(
        "http://store.test", "club", "site", retry_delay_s=0,
        transport=httpx.MockTransport(handler),
    )


def _login_page(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200, text="<html>proxy login</html>", headers={"content-type": "text/html"}
    )


def test_non_json_body_raises_store_error():
    client = _mock_client(_login_page)

    async def scenario():
        async with client:
            await client.list_directory("content/runners")

    with pytest.raises(StoreError) as info:
        asyncio.run(scenario())
    assert "non-JSON" in str(info.value)
    assert client.errors == 1


def test_non_json_body_fails_publish_and_empties_roster():
    async def scenario():
        async with _mock_client(_login_page) as client:
            with pytest.raises(PublishError):
                await PublishProtocol(client).publish(
                    [make_participant("alice", status=ParticipantStatus.COMPLETED, finish_time=1)],
                    race_date=datetime(2026, 10, 18, tzinfo=timezone.utc),
                    photo=b"jpeg",
                )
            return await RosterProvider(client).list_participants()

    assert asyncio.run(scenario()) == []


@pytest.mark.parametrize("body", [{}, {"object": None}, [], {"object": {"type": "commit"}}])
def test_unexpected_json_shape_raises_store_error(body):
    client = _mock_client(lambda request: httpx.Response(200, json=body))

    async def scenario():
        async with client:
            await client.get_branch_head()

    with pytest.raises(StoreError):
        asyncio.run(scenario())


def test_malformed_listing_and_file_raise_store_error():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/runners"):
            return httpx.Response(200, json=[{"type": "file"}])
        return httpx.Response(200, json={"sha": "abc", "content": 12})

    async def scenario():
        async with _mock_client(handler) as client:
            with pytest.raises(StoreError):
                await client.list_directory("content/runners")
            with pytest.raises(StoreError):
                await client.read_file("content/runners/alice.json")

    asyncio.run(scenario())
