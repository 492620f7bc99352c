"""Survey endpoints.

Implements:
- POST /surveys
- GET /surveys/{survey_id}/nonrespondents
  - `?stream=1` streams NDJSON ordered by response id, resuming after
    `afterId`; `reminders` / `minReminders` restrict to members reminded
    exactly / at least that many times
- POST /surveys/{survey_id}/visibility
- POST /surveys/{survey_id}/remind/{response_id}
- POST /surveys/{survey_id}/remind: bulk, with the same reminder-count filters
- GET /surveys/{survey_id}/results: per-question tallies of enabled answers
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Query

from hoa_survey.http.problem import problem_exception
from hoa_survey.logic.repository_members import member_list_exists
from hoa_survey.logic.repository_responses import (
    NonRespondentSource,
    get_pending_response,
    lot_sort_key,
    record_reminder,
    record_reminders,
    reminder_allow_list,
)
from hoa_survey.logic.repository_surveys import (
    create_survey,
    get_survey,
    is_closed,
    list_questions,
    list_submitted_answers,
    survey_exists,
)
from hoa_survey.logic.results import tally_results
from hoa_survey.logic.streaming import array_response, clamp_batch_size, iter_records, ndjson_response
from hoa_survey.logic.validation import SurveyValidationError, validate_survey_questions
from hoa_survey.logic.visibility_delta import compute_visibility_delta, reconcile
from hoa_survey.models.answers import is_answered
from hoa_survey.models.payloads import AnswersBody, SurveyCreate, VisibilityResult
from hoa_survey.routes.members import is_stream_requested

router = APIRouter()
logger = logging.getLogger(__name__)


def _require_survey(survey_id: str) -> None:
    if not survey_exists(survey_id):
        raise problem_exception(404, "Survey not found", "SURVEY_NOT_FOUND")


@router.post("/surveys", status_code=201, summary="Create a survey and its pending responses")
def post_survey(payload: SurveyCreate) -> dict:
    if not member_list_exists(payload.member_list_id):
        raise problem_exception(404, "Member list not found", "MEMBER_LIST_NOT_FOUND")
    try:
        validate_survey_questions(payload.questions)
    except SurveyValidationError as e:
        raise problem_exception(422, "Invalid survey questions", "SURVEY_QUESTIONS_INVALID", errors=e.errors)
    return create_survey(
        title=payload.title,
        member_list_id=payload.member_list_id,
        questions=payload.questions,
        closes_at=payload.closes_at,
    )


@router.get("/surveys/{survey_id}/nonrespondents", summary="List or stream members who have not responded")
def get_nonrespondents(
    survey_id: str,
    stream: Optional[str] = Query(None),
    after_id: Optional[str] = Query(None, alias="afterId"),
    batch_size: Optional[str] = Query(None, alias="batchSize"),
    reminders: Optional[int] = Query(None, ge=0),
    min_reminders: Optional[int] = Query(None, alias="minReminders", ge=0),
):
    _require_survey(survey_id)
    allow = None
    if reminders is not None or min_reminders is not None:
        allow = reminder_allow_list(survey_id, exact=reminders, minimum=min_reminders)
    source = NonRespondentSource(survey_id, allow)
    size = clamp_batch_size(batch_size)
    if is_stream_requested(stream):
        return ndjson_response(source, after_id or None, size)
    records = list(iter_records(source, after_id or None, size))
    records.sort(key=lot_sort_key)
    return array_response(records)


@router.post(
    "/surveys/{survey_id}/visibility",
    response_model=VisibilityResult,
    summary="Evaluate question visibility and drop answers to hidden questions",
)
def post_visibility(survey_id: str, payload: AnswersBody) -> VisibilityResult:
    _require_survey(survey_id)
    questions = list_questions(survey_id)
    result = reconcile(questions, payload.answers)
    before = reconcile(questions, payload.previous_answers or {})
    now_visible, now_hidden, _ = compute_visibility_delta(
        before.enabled,
        result.enabled,
        lambda qid: is_answered(payload.answers.get(qid)),
    )
    return VisibilityResult(
        enabled=result.enabled,
        answers=result.answers,
        suppressed_answers=result.suppressed,
        now_visible=now_visible,
        now_hidden=now_hidden,
    )


@router.post("/surveys/{survey_id}/remind/{response_id}", status_code=201, summary="Record a reminder")
def post_reminder(survey_id: str, response_id: str) -> dict:
    _require_survey(survey_id)
    response = get_pending_response(survey_id, response_id)
    if response is None:
        raise problem_exception(404, "Response not found", "RESPONSE_NOT_FOUND")
    if response["submitted_at"]:
        raise problem_exception(409, "Response already submitted", "RESPONSE_ALREADY_SUBMITTED")
    # Email delivery is handled outside this service; only the reminder is recorded
    return record_reminder(survey_id, str(response["member_id"]))


@router.post("/surveys/{survey_id}/remind", summary="Record reminders for every pending member")
def post_bulk_reminders(
    survey_id: str,
    reminders: Optional[int] = Query(None, ge=0),
    min_reminders: Optional[int] = Query(None, alias="minReminders", ge=0),
) -> dict:
    survey = get_survey(survey_id)
    if survey is None:
        raise problem_exception(404, "Survey not found", "SURVEY_NOT_FOUND")
    if is_closed(survey["closes_at"]):
        raise problem_exception(400, "Survey is closed", "SURVEY_CLOSED")
    allow = None
    if reminders is not None or min_reminders is not None:
        allow = reminder_allow_list(survey_id, exact=reminders, minimum=min_reminders)
    member_ids = []
    skipped = 0
    for record in iter_records(NonRespondentSource(survey_id, allow), None, clamp_batch_size(None)):
        if not record["email"]:
            logger.warning("reminder_skipped_no_email survey_id=%s member_id=%s", survey_id, record["id"])
            skipped += 1
            continue
        member_ids.append(record["id"])
    sent_at = record_reminders(survey_id, member_ids)
    return {"sent": len(member_ids), "skipped": skipped, "memberIds": member_ids, "sentAt": sent_at}


@router.get("/surveys/{survey_id}/results", summary="Tally submitted answers per question")
def get_results(survey_id: str) -> dict:
    survey = get_survey(survey_id)
    if survey is None:
        raise problem_exception(404, "Survey not found", "SURVEY_NOT_FOUND")
    submissions = list_submitted_answers(survey_id)
    return {
        "survey": {
            "id": survey["id"],
            "title": survey["title"],
            "closesAt": survey["closes_at"],
            "isClosed": is_closed(survey["closes_at"]),
            "totalResponses": len(submissions),
        },
        "stats": tally_results(list_questions(survey_id), submissions),
    }


__all__ = ["router"]
