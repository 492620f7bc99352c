"""Cursor-paginated, decrypting NDJSON streaming.

A stream walks a source in ascending key order, `batch_size` rows at a time,
using exclusive ``after`` cursors: each batch asks for keys strictly greater
than the last key emitted. Rows are projected (and their PII decrypted) one by
one and written as one JSON object per line. Totals are computed before the
first row is written and reported as response headers.

Each request owns its cursor; nothing is shared between streams. A client
that disconnects simply stops the generator, which is logged at INFO rather
than treated as a failure.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterator, List, Mapping, Optional, Protocol, Tuple

import anyio
from fastapi.responses import JSONResponse, StreamingResponse

from hoa_survey.config import get_config

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson; charset=utf-8"
TOTAL_HEADER = "X-Total-Count"
REMAINING_HEADER = "X-Total-Remaining"
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


class StreamSource(Protocol):
    """Ordered, cursor-sliceable collection of rows.

    `fetch` returns at most `limit` rows whose key is strictly greater than
    `after_id` (all rows when None), ordered by key ascending. `count` counts
    the same filtered set. `project` turns a row into the emitted record and
    must not raise for undecryptable fields.
    """

    name: str
    id_field: str

    def count(self, after_id: Optional[str] = None) -> int: ...

    def fetch(self, after_id: Optional[str], limit: int) -> List[Mapping[str, Any]]: ...

    def row_key(self, row: Mapping[str, Any]) -> str: ...

    def project(self, row: Mapping[str, Any]) -> Dict[str, Any]: ...


@dataclass(frozen=True)
class StreamPlan:
    overall_total: int
    remaining_total: int

    def headers(self) -> Dict[str, str]:
        return {
            TOTAL_HEADER: str(self.overall_total),
            REMAINING_HEADER: str(self.remaining_total),
            "Access-Control-Expose-Headers": f"{TOTAL_HEADER}, {REMAINING_HEADER}",
        }


def clamp_batch_size(raw: Any, default: Optional[int] = None, maximum: Optional[int] = None) -> int:
    """Parse a batch size and clamp it into ``[1, maximum]``.

    Only the leading integer counts (`"50.5"` is 50); missing or unparseable
    values fall back to the configured default (100).
    """
    cfg = get_config().streaming
    default = cfg.default_batch_size if default is None else default
    maximum = cfg.max_batch_size if maximum is None else maximum
    if raw is None or raw == "":
        return default
    match = _LEADING_INT.match(str(raw))
    if match is None:
        return default
    return max(1, min(maximum, int(match.group(1))))


def plan_stream(source: StreamSource, after_id: Optional[str] = None) -> StreamPlan:
    """Count the overall matching rows and the rows remaining after the cursor."""
    overall = source.count(None)
    remaining = source.count(after_id) if after_id else overall
    return StreamPlan(overall_total=overall, remaining_total=remaining)


def next_batch(
    source: StreamSource,
    after_id: Optional[str],
    batch_size: int,
) -> Tuple[List[Dict[str, Any]], Optional[str], bool]:
    """Fetch and project one batch.

    Returns the projected records, the cursor to continue from and whether
    the source is exhausted (empty or short batch).
    """
    rows = source.fetch(after_id, batch_size)
    records: List[Dict[str, Any]] = []
    cursor = after_id
    for row in rows:
        records.append(source.project(row))
        cursor = source.row_key(row)
    logger.debug("stream_batch_fetched source=%s after=%s count=%s", source.name, after_id, len(rows))
    return records, cursor, len(rows) < batch_size


def iter_records(
    source: StreamSource,
    after_id: Optional[str] = None,
    batch_size: int = 100,
) -> Iterator[Dict[str, Any]]:
    """Yield projected records with key > `after_id` in ascending key order."""
    cursor = after_id
    exhausted = False
    while not exhausted:
        records, cursor, exhausted = next_batch(source, cursor, batch_size)
        yield from records


def encode_line(record: Mapping[str, Any]) -> bytes:
    return (json.dumps(record, separators=(",", ":"), ensure_ascii=False, default=str) + "\n").encode("utf-8")


async def aiter_ndjson(
    source: StreamSource,
    after_id: Optional[str] = None,
    batch_size: int = 100,
) -> AsyncIterator[bytes]:
    """Stream records as NDJSON lines.

    Batch fetches run in a worker thread so the event loop keeps serving
    other requests while a batch is loading. A fetch failure is logged and
    re-raised, which aborts the response mid-body; the client must treat that
    as resumable, not complete.
    """
    cursor = after_id
    emitted = 0
    try:
        exhausted = False
        while not exhausted:
            records, cursor, exhausted = await anyio.to_thread.run_sync(next_batch, source, cursor, batch_size)
            for record in records:
                yield encode_line(record)
                emitted += 1
    except (GeneratorExit, anyio.get_cancelled_exc_class()):
        logger.info("stream_client_disconnected source=%s emitted=%s last=%s", source.name, emitted, cursor)
        raise
    except Exception:
        logger.error("stream_batch_failed source=%s emitted=%s last=%s", source.name, emitted, cursor, exc_info=True)
        raise
    logger.info("stream_completed source=%s emitted=%s last=%s", source.name, emitted, cursor)


def ndjson_response(
    source: StreamSource,
    after_id: Optional[str] = None,
    batch_size: int = 100,
) -> StreamingResponse:
    """Build the streaming response; totals are counted before the body starts."""
    plan = plan_stream(source, after_id)
    logger.info(
        "stream_started source=%s after=%s batch_size=%s total=%s remaining=%s",
        source.name,
        after_id,
        batch_size,
        plan.overall_total,
        plan.remaining_total,
    )
    return StreamingResponse(
        aiter_ndjson(source, after_id, batch_size),
        media_type=NDJSON_MEDIA_TYPE,
        headers=plan.headers(),
    )


def array_response(records: List[Dict[str, Any]]) -> JSONResponse:
    """Whole-array mode for clients that did not ask for a stream."""
    resp = JSONResponse(records)
    resp.headers[TOTAL_HEADER] = str(len(records))
    return resp


__all__ = [
    "NDJSON_MEDIA_TYPE",
    "TOTAL_HEADER",
    "REMAINING_HEADER",
    "StreamSource",
    "StreamPlan",
    "clamp_batch_size",
    "plan_stream",
    "next_batch",
    "iter_records",
    "encode_line",
    "aiter_ndjson",
    "ndjson_response",
    "array_response",
]
