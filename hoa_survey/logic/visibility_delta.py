"""Answer reconciliation and visibility deltas.

Clearing the answer of a hidden question can hide questions that depend on
it, so reconciliation repeats evaluate-and-strip until nothing more is
removed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence, Tuple

from hoa_survey.logic.visibility_rules import EnabledMap, evaluate
from hoa_survey.models.answers import AnswerSet
from hoa_survey.models.question import Question

logger = logging.getLogger(__name__)


@dataclass
class Reconciliation:
    enabled: EnabledMap
    answers: Dict[str, Any]
    suppressed: List[str] = field(default_factory=list)
    passes: int = 0


def reconcile(questions: Sequence[Question], answers: AnswerSet) -> Reconciliation:
    """Evaluate visibility and drop answers held by disabled questions.

    Runs to a fixed point: every pass either removes at least one answer or
    ends the loop, so at most ``len(questions)`` removing passes happen before
    a final confirming pass. The input mapping is not mutated.
    """
    cleaned: Dict[str, Any] = dict(answers)
    suppressed: List[str] = []
    enabled = evaluate(questions, cleaned)
    passes = 1
    while passes <= len(questions) + 1:
        hidden_with_answer = [
            q.id for q in questions if not enabled.get(q.id, False) and q.id in cleaned
        ]
        if not hidden_with_answer:
            break
        for qid in hidden_with_answer:
            del cleaned[qid]
            suppressed.append(qid)
        enabled = evaluate(questions, cleaned)
        passes += 1
    if suppressed:
        logger.info("answers_suppressed count=%s passes=%s ids=%s", len(suppressed), passes, suppressed)
    return Reconciliation(enabled=enabled, answers=cleaned, suppressed=suppressed, passes=passes)


def compute_visibility_delta(
    pre_enabled: Mapping[str, bool],
    post_enabled: Mapping[str, bool],
    has_answer: Callable[[str], bool],
) -> Tuple[List[str], List[str], List[str]]:
    """Compute visibility delta and suppressed answers.

    - now_visible: questions newly enabled (enabled in post but not in pre)
    - now_hidden: questions newly disabled (enabled in pre but not in post)
    - suppressed_answers: subset of now_hidden that still hold an answer

    Exceptions raised by `has_answer` propagate to the caller.
    """
    pre_set = _enabled_ids(pre_enabled.items())
    post_set = _enabled_ids(post_enabled.items())
    now_visible = sorted(post_set - pre_set)
    now_hidden = sorted(pre_set - post_set)
    suppressed_answers = [qid for qid in now_hidden if has_answer(qid)]
    return now_visible, now_hidden, suppressed_answers


def _enabled_ids(items: Iterable[Tuple[str, bool]]) -> set[str]:
    return {str(qid) for qid, flag in items if flag}


__all__ = ["Reconciliation", "reconcile", "compute_visibility_delta"]
