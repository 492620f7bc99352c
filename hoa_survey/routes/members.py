"""Member list endpoints.

Implements:
- POST /member-lists
- POST /member-lists/{list_id}/members
- GET /member-lists/{list_id}/members
  - `?stream=1` streams decrypted members as NDJSON ordered by id, resuming
    after `afterId`; otherwise returns a JSON array
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Query

from hoa_survey.http.problem import problem_exception
from hoa_survey.logic.repository_members import (
    MemberListSource,
    create_member,
    create_member_list,
    member_list_exists,
)
from hoa_survey.logic.streaming import array_response, clamp_batch_size, iter_records, ndjson_response
from hoa_survey.models.payloads import MemberCreate, MemberListCreate

router = APIRouter()
logger = logging.getLogger(__name__)


def is_stream_requested(stream: Optional[str]) -> bool:
    return (stream or "").strip().lower() in {"1", "true"}


@router.post("/member-lists", status_code=201, summary="Create a member list")
def post_member_list(payload: MemberListCreate) -> dict:
    return create_member_list(payload.name)


@router.post("/member-lists/{list_id}/members", status_code=201, summary="Add a member to a list")
def post_member(list_id: str, payload: MemberCreate) -> dict:
    if not member_list_exists(list_id):
        raise problem_exception(404, "Member list not found", "MEMBER_LIST_NOT_FOUND")
    return create_member(list_id, payload.model_dump())


@router.get("/member-lists/{list_id}/members", summary="List or stream the members of a list")
def get_members(
    list_id: str,
    stream: Optional[str] = Query(None),
    after_id: Optional[str] = Query(None, alias="afterId"),
    batch_size: Optional[str] = Query(None, alias="batchSize"),
):
    if not member_list_exists(list_id):
        raise problem_exception(404, "Member list not found", "MEMBER_LIST_NOT_FOUND")
    source = MemberListSource(list_id)
    size = clamp_batch_size(batch_size)
    if is_stream_requested(stream):
        return ndjson_response(source, after_id or None, size)
    return array_response(list(iter_records(source, after_id or None, size)))


__all__ = ["router", "is_stream_requested"]
