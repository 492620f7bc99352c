"""Resumable client for NDJSON collection streams.

Builds an append-only, de-duplicated working set from a streaming endpoint
and survives interruptions:

- page reloads, through a TTL'd snapshot cache keyed by collection;
- tab backgrounding and navigation, by aborting the in-flight read and
  resuming later from the last id seen (exclusive ``afterId``);
- short streams, by issuing one whole-array fallback fetch when fewer
  records arrived than the server's reported total.

Each call to `run()` starts a new run with a fresh id. Reads belonging to an
older run are discarded without touching state, so a slow superseded read can
never clobber a newer one.
"""

from __future__ import annotations

import json
import logging
import re
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

import anyio
import httpx

from hoa_survey.config import get_config
from hoa_survey.logic.streaming import TOTAL_HEADER, REMAINING_HEADER

logger = logging.getLogger(__name__)


class ConsumerState:
    IDLE = "idle"
    CACHE_LOADING = "cache_loading"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERROR = "error"


class ConsumerError(Exception):
    """A non-abort failure reading the stream (HTTP error or bad payload)."""


class WorkingSet:
    """Append-only records keyed by `id_field`; the seen-set decides membership."""

    def __init__(
        self,
        id_field: str,
        items: Optional[Iterable[Mapping[str, Any]]] = None,
        seen: Optional[Iterable[str]] = None,
    ) -> None:
        self.id_field = id_field
        self.items: List[Dict[str, Any]] = []
        self.seen: set[str] = set(str(s) for s in (seen or ()))
        for item in items or ():
            key = item.get(id_field)
            if key is None:
                continue
            # Cached items are always part of the seen-set
            self.seen.add(str(key))
            self.items.append(dict(item))

    def __len__(self) -> int:
        return len(self.items)

    def ingest(self, record: Mapping[str, Any]) -> bool:
        """Append the record unless its id is missing or already seen."""
        key = record.get(self.id_field)
        if key is None or key == "":
            return False
        key = str(key)
        if key in self.seen:
            return False
        self.seen.add(key)
        self.items.append(dict(record))
        return True

    def ingest_many(self, records: Iterable[Mapping[str, Any]]) -> int:
        return sum(1 for r in records if self.ingest(r))

    @property
    def last_id(self) -> Optional[str]:
        if not self.items:
            return None
        return str(self.items[-1][self.id_field])

    def filter(self, *, lot: str = "", name: str = "", address: str = "") -> List[Dict[str, Any]]:
        """Case-insensitive substring view; never reorders or mutates the set."""
        def _match(value: Any, needle: str) -> bool:
            return not needle or needle.lower() in str(value or "").lower()

        return [
            it
            for it in self.items
            if _match(it.get("lot", it.get("lotNumber")), lot)
            and _match(it.get("name"), name)
            and _match(it.get("address"), address)
        ]

    def snapshot(self, total: Optional[int], ts: float) -> Dict[str, Any]:
        return {"items": list(self.items), "seen": sorted(self.seen), "total": total, "ts": ts}


class CacheStore(Protocol):
    def load(self, key: str) -> Optional[Dict[str, Any]]: ...

    def save(self, key: str, payload: Mapping[str, Any]) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryCacheStore:
    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def save(self, key: str, payload: Mapping[str, Any]) -> None:
        self._data[key] = json.dumps(payload)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class FileCacheStore:
    """One JSON file per cache key under `directory` (default from config)."""

    def __init__(self, directory: str | Path | None = None) -> None:
        self.directory = Path(directory if directory is not None else get_config().cache.directory)

    def _path(self, key: str) -> Path:
        return self.directory / (re.sub(r"[^A-Za-z0-9_.-]", "_", key) + ".json")

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(key)
        try:
            if path.exists():
                return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("stream_cache_unreadable path=%s", path, exc_info=True)
        return None

    def save(self, key: str, payload: Mapping[str, Any]) -> None:
        path = self._path(key)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
            tmp.replace(path)
        except OSError:
            # Cache is an optimisation; the working set in memory stays intact
            logger.error("stream_cache_save_failed path=%s", path, exc_info=True)

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError:
            logger.error("stream_cache_delete_failed key=%s", key, exc_info=True)


class StreamConsumer:
    """Drive one collection stream into a `WorkingSet`.

    `client` is an httpx.AsyncClient; `url` is the collection endpoint, which
    must answer NDJSON for ``?stream=1`` and a JSON array otherwise.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        *,
        id_field: str,
        cache_key: str,
        cache: Optional[CacheStore] = None,
        ttl_seconds: Optional[float] = None,
        batch_size: Optional[int] = None,
        params: Optional[Mapping[str, Any]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.url = url
        self.id_field = id_field
        self.cache_key = cache_key
        self.cache = cache
        self.ttl_seconds = get_config().cache.ttl_seconds if ttl_seconds is None else ttl_seconds
        self.batch_size = batch_size
        self.params = dict(params or {})
        self.clock = clock

        self.working_set = WorkingSet(id_field)
        self.state = ConsumerState.IDLE
        self.total: Optional[int] = None
        self.remaining: Optional[int] = None
        self.error: Optional[str] = None
        self.fallback_used = False
        self._run_id = 0
        self._scope: Optional[anyio.CancelScope] = None
        self._auto_resumed = False
        self._reader_done: Optional[anyio.Event] = None

    # -- cache -------------------------------------------------------------

    def load_cache(self) -> int:
        """Restore the working set from cache; expired or absent cache starts empty."""
        self.state = ConsumerState.CACHE_LOADING
        restored = 0
        payload = self.cache.load(self.cache_key) if self.cache else None
        if payload:
            ts = float(payload.get("ts") or 0)
            if self.clock() - ts > self.ttl_seconds:
                logger.info("stream_cache_expired key=%s age=%.0f", self.cache_key, self.clock() - ts)
                self.cache.delete(self.cache_key)
            else:
                self.working_set = WorkingSet(self.id_field, payload.get("items") or [], payload.get("seen") or [])
                total = payload.get("total")
                self.total = int(total) if total is not None else None
                restored = len(self.working_set)
                logger.info("stream_cache_restored key=%s items=%s", self.cache_key, restored)
        self.state = ConsumerState.IDLE
        return restored

    def save_cache(self) -> None:
        if self.cache is not None:
            self.cache.save(self.cache_key, self.working_set.snapshot(self.total, self.clock()))

    # -- lifecycle ---------------------------------------------------------

    @property
    def completed(self) -> bool:
        return self.state == ConsumerState.COMPLETED

    async def mount(self) -> str:
        """Start a page visit: restore the cache, then stream what is missing."""
        self._auto_resumed = False
        self.load_cache()
        return await self.run()

    def abort(self, reason: str = "abort") -> None:
        """Cancel the in-flight read; the current run's late reads are discarded."""
        self._run_id += 1
        if self._scope is not None:
            self._scope.cancel()
            self._scope = None
        if self.state == ConsumerState.STREAMING:
            self.state = ConsumerState.ABORTED
            logger.info(
                "stream_consumer_aborted key=%s reason=%s items=%s",
                self.cache_key,
                reason,
                len(self.working_set),
            )

    def on_hidden(self) -> None:
        self.abort("hidden")

    def on_navigate(self) -> None:
        self.abort("navigate")

    async def on_visible(self) -> str:
        """Resume an unfinished stream once per page visit."""
        if self.state in (ConsumerState.ABORTED, ConsumerState.ERROR) and not self._auto_resumed:
            self._auto_resumed = True
            logger.info("stream_consumer_auto_resume key=%s after=%s", self.cache_key, self.working_set.last_id)
            return await self.run()
        return self.state

    # -- streaming ---------------------------------------------------------

    def _stream_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {**self.params, "stream": "1"}
        last = self.working_set.last_id
        if last:
            params["afterId"] = last
        if self.batch_size:
            params["batchSize"] = str(self.batch_size)
        return params

    def _read_totals(self, headers: httpx.Headers) -> None:
        try:
            if headers.get(TOTAL_HEADER) is not None:
                self.total = int(headers[TOTAL_HEADER])
            if headers.get(REMAINING_HEADER) is not None:
                self.remaining = int(headers[REMAINING_HEADER])
        except ValueError:
            logger.warning("stream_total_header_invalid key=%s", self.cache_key)

    def _ingest_line(self, line: str) -> bool:
        line = line.strip()
        if not line:
            return False
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("stream_line_unparseable key=%s line=%r", self.cache_key, line[:200])
            return False
        if not isinstance(record, dict) or not self.working_set.ingest(record):
            return False
        self.save_cache()
        return True

    def _ingest_array(self, body: Any) -> int:
        if isinstance(body, dict) and isinstance(body.get("items"), list):
            records = body["items"]
        elif isinstance(body, list):
            records = body
        else:
            raise ConsumerError("unexpected response shape")
        added = self.working_set.ingest_many(r for r in records if isinstance(r, dict))
        if added:
            self.save_cache()
        return added

    async def _fetch_array(self, my_run: int, params: Mapping[str, Any]) -> None:
        resp = await self.client.get(self.url, params=dict(params))
        if resp.status_code >= 400:
            raise ConsumerError(f"fallback fetch failed with HTTP {resp.status_code}")
        if my_run != self._run_id:
            return
        self._ingest_array(resp.json())

    async def run(self) -> str:
        """Stream from the last seen id until exhausted, aborted or failed.

        A run that supersedes a live one cancels it and waits until its
        reader has closed before issuing its own request.
        """
        prior = self._reader_done
        if self.state == ConsumerState.STREAMING:
            self.abort("superseded")
        if prior is not None and not prior.is_set():
            await prior.wait()
        self._run_id += 1
        my_run = self._run_id
        done = self._reader_done = anyio.Event()
        self.state = ConsumerState.STREAMING
        self.error = None
        params = self._stream_params()
        logger.info("stream_consumer_run key=%s run=%s after=%s", self.cache_key, my_run, params.get("afterId"))
        try:
            return await self._read(my_run, params)
        finally:
            done.set()

    async def _read(self, my_run: int, params: Mapping[str, Any]) -> str:
        with anyio.CancelScope() as scope:
            self._scope = scope
            try:
                async with self.client.stream("GET", self.url, params=params) as resp:
                    if resp.status_code >= 400:
                        raise ConsumerError(f"stream request failed with HTTP {resp.status_code}")
                    content_type = resp.headers.get("content-type", "")
                    if "ndjson" in content_type:
                        self._read_totals(resp.headers)
                        async for line in resp.aiter_lines():
                            if my_run != self._run_id:
                                return self.state
                            self._ingest_line(line)
                    else:
                        body = json.loads(await resp.aread())
                        if my_run != self._run_id:
                            return self.state
                        self._ingest_array(body)
                        self.total = len(self.working_set)

                if my_run != self._run_id:
                    return self.state
                if self.total is not None and len(self.working_set) < self.total:
                    logger.info(
                        "stream_short_fetching_remainder key=%s received=%s total=%s",
                        self.cache_key,
                        len(self.working_set),
                        self.total,
                    )
                    self.fallback_used = True
                    await self._fetch_array(my_run, self.params)
            except (httpx.HTTPError, ConsumerError, ValueError) as exc:
                if my_run != self._run_id:
                    return self.state
                self.state = ConsumerState.ERROR
                self.error = str(exc) or exc.__class__.__name__
                logger.error(
                    "stream_consumer_failed key=%s run=%s items=%s error=%s",
                    self.cache_key,
                    my_run,
                    len(self.working_set),
                    self.error,
                )
                return self.state
            finally:
                if self._scope is scope:
                    self._scope = None

        if scope.cancelled_caught or my_run != self._run_id:
            return self.state
        self.state = ConsumerState.COMPLETED
        self.save_cache()
        logger.info("stream_consumer_completed key=%s items=%s total=%s", self.cache_key, len(self.working_set), self.total)
        return self.state


__all__ = [
    "ConsumerState",
    "ConsumerError",
    "WorkingSet",
    "CacheStore",
    "MemoryCacheStore",
    "FileCacheStore",
    "StreamConsumer",
]
