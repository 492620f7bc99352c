"""Survey authoring and submission validation.

Authoring checks keep condition references pointing at earlier questions.
Submission checks run on an already reconciled answer set, so hidden
questions never count as missing.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Sequence

from hoa_survey.logic.visibility_rules import EnabledMap, parse_condition
from hoa_survey.models.answers import MultiChoice, Rating, Scalar, coerce_answer
from hoa_survey.models.question import Question, QuestionKind


class SurveyValidationError(ValueError):
    def __init__(self, errors: List[Dict[str, Any]]):
        super().__init__("; ".join(str(e.get("message")) for e in errors))
        self.errors = errors


def validate_survey_questions(questions: Sequence[Question]) -> None:
    """Raise SurveyValidationError when question definitions are inconsistent."""
    errors: List[Dict[str, Any]] = []
    orders = [q.order for q in questions]
    if len(set(orders)) != len(orders):
        errors.append({"message": "question orders must be unique"})
    ids = [q.id for q in questions]
    if len(set(ids)) != len(ids):
        errors.append({"message": "question ids must be unique"})
    known_orders = set(orders)
    for q in questions:
        if q.kind in (QuestionKind.MULTI_SINGLE, QuestionKind.MULTI_MULTI) and not q.options:
            errors.append({"question_id": q.id, "message": "multiple choice questions need options"})
        if q.show_when is None or q.show_when == "":
            continue
        condition = parse_condition(q.show_when)
        if condition is None:
            errors.append({"question_id": q.id, "message": "showWhen is not a valid condition"})
        elif condition.trigger_order not in known_orders:
            errors.append({"question_id": q.id, "message": f"showWhen references unknown order {condition.trigger_order}"})
        elif condition.trigger_order >= q.order:
            errors.append({"question_id": q.id, "message": "showWhen must reference an earlier question"})
    if errors:
        raise SurveyValidationError(errors)


def validate_submission(
    questions: Sequence[Question],
    enabled: EnabledMap,
    answers: Mapping[str, Any],
) -> None:
    """Check required enabled questions are answered and answer shapes fit."""
    errors: List[Dict[str, Any]] = []
    for q in questions:
        if not enabled.get(q.id, False):
            continue
        value = coerce_answer(answers.get(q.id))
        if value is None:
            if q.required:
                errors.append({"question_id": q.id, "message": "answer required"})
            continue
        if q.kind == QuestionKind.MULTI_MULTI:
            if not isinstance(value, MultiChoice):
                errors.append({"question_id": q.id, "message": "expected a list of choices"})
            elif q.max_selections and len(value.items) > q.max_selections:
                errors.append({"question_id": q.id, "message": f"at most {q.max_selections} selections allowed"})
        elif q.kind == QuestionKind.RATING_5:
            rating = value.value if isinstance(value, Rating) else _as_int(value)
            if rating is None or not 1 <= rating <= 5:
                errors.append({"question_id": q.id, "message": "rating must be between 1 and 5"})
    if errors:
        raise SurveyValidationError(errors)


def _as_int(value: Any) -> int | None:
    if isinstance(value, Scalar):
        try:
            return int(value.text.strip())
        except ValueError:
            return None
    return None


__all__ = ["SurveyValidationError", "validate_survey_questions", "validate_submission"]
