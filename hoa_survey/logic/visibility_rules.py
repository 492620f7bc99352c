"""Visibility rule evaluation for conditional survey questions.

A question with a `showWhen` condition is enabled only while the answer to
its trigger question (referenced by `order`, not id) satisfies the
condition. Evaluation is pure and fails closed: any condition that cannot be
parsed or resolved disables the question instead of raising.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Mapping, Optional, Sequence

from pydantic import ValidationError

from hoa_survey.models.answers import AnswerSet, AnswerValue, MultiChoice, answer_text, coerce_answer
from hoa_survey.models.question import Condition, Question

logger = logging.getLogger(__name__)

EnabledMap = Dict[str, bool]


def parse_condition(raw: Any) -> Optional[Condition]:
    """Parse a `showWhen` value given as a Condition, mapping or JSON string.

    Returns None when the value is absent or malformed.
    """
    if raw is None or raw == "":
        return None
    if isinstance(raw, Condition):
        return raw
    try:
        data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        if not isinstance(data, Mapping):
            return None
        return Condition.model_validate(dict(data))
    except (ValueError, TypeError, ValidationError):
        # json.JSONDecodeError is a ValueError
        logger.debug("condition_parse_failed raw=%r", raw)
        return None


def is_condition_satisfied(condition: Condition, answer: Any) -> bool:
    """Return True when the trigger answer satisfies the condition.

    - Unanswered (None, "", empty list) never satisfies, whatever the operator.
    - Multi-select: `equals` requires exact membership, `contains` matches when
      any selected item contains the value as a substring.
    - Anything else compares its string form.
    """
    value: Optional[AnswerValue] = coerce_answer(answer)
    if value is None:
        return False
    expected = condition.value
    if isinstance(value, MultiChoice):
        if condition.operator == "equals":
            return expected in value.items
        return any(expected in item for item in value.items)
    text = answer_text(value)
    if condition.operator == "equals":
        return text == expected
    return expected in text


def is_question_enabled(
    question: Question,
    by_order: Mapping[int, Question],
    answers: AnswerSet,
) -> bool:
    if question.show_when is None or question.show_when == "":
        return True
    condition = parse_condition(question.show_when)
    if condition is None:
        return False
    trigger = by_order.get(condition.trigger_order)
    if trigger is None:
        return False
    # Only earlier questions may gate later ones; self and forward references
    # would otherwise allow cycles.
    if trigger.order >= question.order:
        return False
    return is_condition_satisfied(condition, answers.get(trigger.id))


def evaluate(questions: Sequence[Question], answers: AnswerSet) -> EnabledMap:
    """Compute the enabled flag for every question given the current answers."""
    by_order: Dict[int, Question] = {}
    for q in questions:
        # First definition wins if orders collide
        by_order.setdefault(q.order, q)
    return {q.id: is_question_enabled(q, by_order, answers) for q in questions}


__all__ = [
    "EnabledMap",
    "parse_condition",
    "is_condition_satisfied",
    "is_question_enabled",
    "evaluate",
]
