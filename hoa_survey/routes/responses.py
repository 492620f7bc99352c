"""Tokenized response endpoints used by members filling in a survey.

Implements:
- GET /responses/{token}: questions, stored answers and the enabled map
- PUT /responses/{token}: reconcile, validate and store the submission
"""

from __future__ import annotations

import logging

from fastapi import APIRouter

from hoa_survey.http.problem import problem_exception
from hoa_survey.logic.repository_surveys import get_response_by_token, is_closed, list_questions, save_submission
from hoa_survey.logic.validation import SurveyValidationError, validate_submission
from hoa_survey.logic.visibility_delta import reconcile
from hoa_survey.models.payloads import AnswersBody, SubmissionResult

router = APIRouter()
logger = logging.getLogger(__name__)


def _load(token: str) -> dict:
    response = get_response_by_token(token)
    if response is None:
        raise problem_exception(404, "Response not found", "RESPONSE_NOT_FOUND")
    return response


@router.get("/responses/{token}", summary="Fetch a survey for a member")
def get_response(token: str) -> dict:
    response = _load(token)
    questions = list_questions(response["survey_id"])
    result = reconcile(questions, response["answers"])
    return {
        "responseId": response["id"],
        "surveyId": response["survey_id"],
        "submittedAt": response["submitted_at"],
        "isClosed": is_closed(response["closes_at"]),
        "questions": [q.model_dump(by_alias=True) for q in questions],
        "answers": result.answers,
        "enabled": result.enabled,
    }


@router.put("/responses/{token}", response_model=SubmissionResult, summary="Submit answers")
def put_response(token: str, payload: AnswersBody) -> SubmissionResult:
    response = _load(token)
    if is_closed(response["closes_at"]):
        raise problem_exception(403, "Survey is closed", "SURVEY_CLOSED")
    questions = list_questions(response["survey_id"])
    # Answers to hidden questions are dropped before anything is validated or stored
    result = reconcile(questions, payload.answers)
    try:
        validate_submission(questions, result.enabled, result.answers)
    except SurveyValidationError as e:
        raise problem_exception(422, "Invalid answers", "ANSWERS_INVALID", errors=e.errors)
    submitted_at = save_submission(response["id"], result.answers)
    return SubmissionResult(
        response_id=response["id"],
        submitted_at=submitted_at,
        answers=result.answers,
        suppressed_answers=result.suppressed,
    )


__all__ = ["router"]
