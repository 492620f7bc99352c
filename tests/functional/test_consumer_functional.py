"""Functional tests for the resumable stream consumer.

Runs the consumer against the real app through httpx.ASGITransport, and
against httpx.MockTransport where the server side has to misbehave (short
streams, HTTP errors, dropped connections, a stream that hangs until the
consumer is aborted).
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Dict, List

import anyio
import httpx
import pytest

from hoa_survey.logic.stream_consumer import (
    ConsumerState,
    FileCacheStore,
    MemoryCacheStore,
    StreamConsumer,
    WorkingSet,
)
from hoa_survey.logic.streaming import NDJSON_MEDIA_TYPE

RECORDS = [{"id": key, "name": f"Owner {key.upper()}", "lot": str(n)} for n, key in enumerate("abcd", start=1)]


def ndjson_headers(total: int, remaining: int) -> Dict[str, str]:
    return {"content-type": NDJSON_MEDIA_TYPE, "X-Total-Count": str(total), "X-Total-Remaining": str(remaining)}


def ndjson_body(records: List[Dict[str, Any]]) -> bytes:
    return b"".join(json.dumps(r).encode("utf-8") + b"\n" for r in records)


def after(records: List[Dict[str, Any]], after_id: str | None) -> List[Dict[str, Any]]:
    return [r for r in records if after_id is None or r["id"] > after_id]


# -----------------------------
# Working set and cache
# -----------------------------


def test_working_set_ingest_is_idempotent():
    ws = WorkingSet("id")
    assert ws.ingest_many(RECORDS) == 4
    assert ws.ingest_many(RECORDS) == 0
    assert ws.ingest({"name": "no id"}) is False
    assert [r["id"] for r in ws.items] == ["a", "b", "c", "d"]
    assert ws.last_id == "d"


def test_working_set_filter_is_a_view():
    ws = WorkingSet("responseId", [
        {"responseId": "1", "name": "Ada Lovelace", "lotNumber": "12", "address": "1 Elm St"},
        {"responseId": "2", "name": "Grace Hopper", "lotNumber": "7", "address": "3 Oak Ave"},
    ])
    assert [r["responseId"] for r in ws.filter(name="ada")] == ["1"]
    assert [r["responseId"] for r in ws.filter(lot="7", address="OAK")] == ["2"]
    assert ws.filter(name="nobody") == []
    assert len(ws) == 2
    assert ws.filter() == ws.items


def test_cached_snapshot_expires_after_ttl():
    cache = MemoryCacheStore()
    cache.save("members", WorkingSet("id", RECORDS).snapshot(4, ts=1000.0))

    fresh = StreamConsumer(None, "/x", id_field="id", cache_key="members", cache=cache, clock=lambda: 1000.0 + 60)
    assert fresh.load_cache() == 4
    assert fresh.total == 4
    assert fresh.state == ConsumerState.IDLE

    stale = StreamConsumer(None, "/x", id_field="id", cache_key="members", cache=cache, clock=lambda: 1000.0 + 3601)
    assert stale.load_cache() == 0
    assert len(stale.working_set) == 0
    assert cache.load("members") is None


def test_file_cache_store_round_trip(tmp_path):
    store = FileCacheStore(tmp_path / "streams")
    key = "member-list:abc/def"
    assert store.load(key) is None
    store.save(key, {"items": [{"id": "a", "name": "Zoë"}], "seen": ["a"], "total": 1, "ts": 5.0})
    files = list((tmp_path / "streams").iterdir())
    assert [f.name for f in files] == ["member-list_abc_def.json"]
    assert store.load(key)["items"] == [{"id": "a", "name": "Zoë"}]
    store.delete(key)
    assert store.load(key) is None


# -----------------------------
# Against the real app
# -----------------------------


def test_consumer_streams_member_list_and_remounts_from_cache(app, seed_member_list):
    list_id, ids = seed_member_list(30)
    cache = MemoryCacheStore()
    url = f"/api/v1/member-lists/{list_id}/members"

    async def main():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            first = StreamConsumer(client, url, id_field="id", cache_key=f"members:{list_id}", cache=cache, batch_size=7)
            assert await first.mount() == ConsumerState.COMPLETED
            assert [r["id"] for r in first.working_set.items] == ids
            assert first.total == 30
            assert first.fallback_used is False

            # A reload restores from cache and only asks for what comes after
            second = StreamConsumer(client, url, id_field="id", cache_key=f"members:{list_id}", cache=cache)
            assert await second.mount() == ConsumerState.COMPLETED
            assert [r["id"] for r in second.working_set.items] == ids
            assert second.remaining == 0

    anyio.run(main)


def test_consumer_reads_nonrespondents_by_response_id(app, client, seed_member_list):
    list_id, _ = seed_member_list(5)
    survey_id = client.post(
        "/api/v1/surveys", json={"title": "Parking", "memberListId": list_id, "questions": []}
    ).json()["id"]

    async def main():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
            consumer = StreamConsumer(
                http,
                f"/api/v1/surveys/{survey_id}/nonrespondents",
                id_field="responseId",
                cache_key=f"nonrespondents:{survey_id}",
                batch_size=2,
            )
            assert await consumer.mount() == ConsumerState.COMPLETED
            return consumer

    consumer = anyio.run(main)
    assert len(consumer.working_set) == 5
    assert len(consumer.working_set.filter(name="member 00")) == 5


# -----------------------------
# Misbehaving servers
# -----------------------------


def test_short_stream_triggers_one_array_fallback():
    calls: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.url.params.get("stream") == "1":
            return httpx.Response(200, headers=ndjson_headers(4, 4), content=ndjson_body(RECORDS[:2]))
        return httpx.Response(200, json=RECORDS)

    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test") as client:
            consumer = StreamConsumer(client, "/items", id_field="id", cache_key="items")
            return consumer, await consumer.mount()

    consumer, state = anyio.run(main)
    assert state == ConsumerState.COMPLETED
    assert consumer.fallback_used is True
    assert [r["id"] for r in consumer.working_set.items] == ["a", "b", "c", "d"]
    assert len(calls) == 2
    assert "stream" not in calls[1].url.params


def test_http_error_sets_error_state():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"title": "Internal Server Error"})

    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test") as client:
            consumer = StreamConsumer(client, "/items", id_field="id", cache_key="items")
            return consumer, await consumer.mount()

    consumer, state = anyio.run(main)
    assert state == ConsumerState.ERROR
    assert "500" in consumer.error
    assert len(consumer.working_set) == 0


def test_dropped_connection_keeps_partial_items_and_resumes_once():
    cache = MemoryCacheStore()
    requests: List[httpx.Request] = []

    async def broken_body() -> AsyncIterator[bytes]:
        for record in RECORDS[:2]:
            yield json.dumps(record).encode("utf-8") + b"\n"
        raise httpx.ReadError("connection reset by peer")

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        after_id = request.url.params.get("afterId")
        if after_id is None:
            return httpx.Response(200, headers=ndjson_headers(4, 4), content=broken_body())
        rest = after(RECORDS, after_id)
        return httpx.Response(200, headers=ndjson_headers(4, len(rest)), content=ndjson_body(rest))

    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test") as client:
            consumer = StreamConsumer(client, "/items", id_field="id", cache_key="items", cache=cache)
            assert await consumer.mount() == ConsumerState.ERROR
            assert [r["id"] for r in cache.load("items")["items"]] == ["a", "b"]

            assert await consumer.on_visible() == ConsumerState.COMPLETED
            return consumer

    consumer = anyio.run(main)
    assert requests[-1].url.params["afterId"] == "b"
    assert [r["id"] for r in consumer.working_set.items] == ["a", "b", "c", "d"]
    assert consumer.fallback_used is False


@pytest.mark.parametrize("hook", ["on_hidden", "on_navigate"])
def test_interrupted_stream_aborts_and_visible_resumes_from_last_id(hook):
    requests: List[httpx.Request] = []
    gate: Dict[str, anyio.Event] = {}

    async def hanging_body() -> AsyncIterator[bytes]:
        for record in RECORDS[:2]:
            yield json.dumps(record).encode("utf-8") + b"\n"
        await gate["never"].wait()
        yield b""

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        after_id = request.url.params.get("afterId")
        if after_id is None:
            return httpx.Response(200, headers=ndjson_headers(4, 4), content=hanging_body())
        rest = after(RECORDS, after_id)
        return httpx.Response(200, headers=ndjson_headers(4, len(rest)), content=ndjson_body(rest))

    async def main():
        gate["never"] = anyio.Event()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test") as client:
            consumer = StreamConsumer(client, "/items", id_field="id", cache_key="items", batch_size=2)
            async with anyio.create_task_group() as tg:
                tg.start_soon(consumer.mount)
                with anyio.fail_after(5):
                    while len(consumer.working_set) < 2:
                        await anyio.sleep(0.01)
                getattr(consumer, hook)()
            assert consumer.state == ConsumerState.ABORTED
            assert len(consumer.working_set) == 2

            assert await consumer.on_visible() == ConsumerState.COMPLETED
            # Only one automatic resume per visit
            assert await consumer.on_visible() == ConsumerState.COMPLETED
            return consumer

    consumer = anyio.run(main)
    assert len(requests) == 2
    assert requests[0].url.params["batchSize"] == "2"
    assert requests[1].url.params["afterId"] == "b"
    assert [r["id"] for r in consumer.working_set.items] == ["a", "b", "c", "d"]


@pytest.mark.parametrize("state", [ConsumerState.COMPLETED, ConsumerState.IDLE])
def test_visible_without_interruption_does_nothing(state):
    consumer = StreamConsumer(None, "/items", id_field="id", cache_key="items")
    consumer.state = state
    assert anyio.run(consumer.on_visible) == state


def test_superseding_run_waits_for_the_previous_reader_to_close():
    open_readers = {"count": 0}
    seen_open: List[int] = []
    gate: Dict[str, anyio.Event] = {}

    async def hanging_body() -> AsyncIterator[bytes]:
        open_readers["count"] += 1
        try:
            for record in RECORDS[:2]:
                yield json.dumps(record).encode("utf-8") + b"\n"
            await gate["never"].wait()
            yield b""
        finally:
            open_readers["count"] -= 1

    def handler(request: httpx.Request) -> httpx.Response:
        seen_open.append(open_readers["count"])
        after_id = request.url.params.get("afterId")
        if after_id is None:
            return httpx.Response(200, headers=ndjson_headers(4, 4), content=hanging_body())
        rest = after(RECORDS, after_id)
        return httpx.Response(200, headers=ndjson_headers(4, len(rest)), content=ndjson_body(rest))

    async def main():
        gate["never"] = anyio.Event()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test") as client:
            consumer = StreamConsumer(client, "/items", id_field="id", cache_key="items")
            async with anyio.create_task_group() as tg:
                tg.start_soon(consumer.mount)
                with anyio.fail_after(5):
                    while len(consumer.working_set) < 2:
                        await anyio.sleep(0.01)
                    state = await consumer.run()
            return consumer, state

    consumer, state = anyio.run(main)
    assert state == ConsumerState.COMPLETED
    assert seen_open == [0, 0]
    assert [r["id"] for r in consumer.working_set.items] == ["a", "b", "c", "d"]


def test_lines_from_an_aborted_run_are_discarded():
    holder: Dict[str, StreamConsumer] = {}

    async def body() -> AsyncIterator[bytes]:
        for record in RECORDS[:2]:
            yield json.dumps(record).encode("utf-8") + b"\n"
        holder["consumer"].abort("navigate")
        yield json.dumps(RECORDS[2]).encode("utf-8") + b"\n"

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers=ndjson_headers(4, 4), content=body())

    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test") as client:
            consumer = holder["consumer"] = StreamConsumer(client, "/items", id_field="id", cache_key="items")
            return consumer, await consumer.mount()

    consumer, state = anyio.run(main)
    assert state == ConsumerState.ABORTED
    assert [r["id"] for r in consumer.working_set.items] == ["a", "b"]
    assert "c" not in consumer.working_set.seen


# -----------------------------
# Cache defaults from config
# -----------------------------


@pytest.fixture
def cache_env(monkeypatch, tmp_path):
    from hoa_survey.config import get_config

    monkeypatch.setenv("STREAM_CACHE_TTL_SECONDS", "120")
    monkeypatch.setenv("STREAM_CACHE_DIR", str(tmp_path / "configured"))
    get_config.cache_clear()
    yield tmp_path / "configured"
    get_config.cache_clear()


def test_cache_defaults_come_from_config(cache_env):
    consumer = StreamConsumer(None, "/x", id_field="id", cache_key="members", cache=MemoryCacheStore())
    assert consumer.ttl_seconds == 120
    assert FileCacheStore().directory == cache_env

    explicit = StreamConsumer(None, "/x", id_field="id", cache_key="members", cache=MemoryCacheStore(), ttl_seconds=5)
    assert explicit.ttl_seconds == 5
