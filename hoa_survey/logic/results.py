"""Per-question tallies over submitted responses.

Each submission is reconciled against the survey's questions first, so an
answer counts only when its question was enabled for that member.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Sequence

from hoa_survey.logic.visibility_delta import reconcile
from hoa_survey.models.answers import MultiChoice, Rating, Scalar, answer_text, coerce_answer
from hoa_survey.models.question import Question, QuestionKind

logger = logging.getLogger(__name__)


def _percent(part: int, whole: int) -> int:
    # Half rounds up
    return int(part * 100 / whole + 0.5) if whole else 0


def _rating(value: Any) -> int | None:
    if isinstance(value, Rating):
        return value.value
    if isinstance(value, Scalar):
        try:
            return int(value.text.strip())
        except ValueError:
            return None
    return None


def tally_question(question: Question, values: Sequence[Any], submitted: int) -> Dict[str, Any]:
    """Statistics for one question from its coerced, non-empty answers."""
    stats: Dict[str, Any] = {
        "questionId": question.id,
        "text": question.text,
        "type": question.kind,
        "totalResponses": len(values),
        "responseRate": _percent(len(values), submitted),
    }
    if question.kind in (QuestionKind.YES_NO, QuestionKind.MULTI_SINGLE):
        counts: Dict[str, int] = {}
        for value in values:
            key = answer_text(value)
            counts[key] = counts.get(key, 0) + 1
        stats["counts"] = counts
    elif question.kind == QuestionKind.MULTI_MULTI:
        counts = {}
        for value in values:
            items = value.items if isinstance(value, MultiChoice) else (answer_text(value),)
            for item in items:
                counts[item] = counts.get(item, 0) + 1
        stats["counts"] = counts
    elif question.kind == QuestionKind.RATING_5:
        ratings = [r for r in (_rating(v) for v in values) if r is not None]
        counts = {}
        for r in ratings:
            counts[str(r)] = counts.get(str(r), 0) + 1
        stats["counts"] = counts
        stats["average"] = int(sum(ratings) * 10 / len(ratings) + 0.5) / 10 if ratings else 0
    else:
        stats["responses"] = [answer_text(v) for v in values]
    return stats


def tally_results(questions: Sequence[Question], submissions: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Tally every question across all submitted answer sets, in survey order."""
    ordered = sorted(questions, key=lambda q: q.order)
    collected: Dict[str, List[Any]] = {q.id: [] for q in ordered}
    suppressed = 0
    for answers in submissions:
        result = reconcile(ordered, answers)
        suppressed += len(result.suppressed)
        for qid, raw in result.answers.items():
            value = coerce_answer(raw)
            if qid in collected and value is not None:
                collected[qid].append(value)
    if suppressed:
        logger.info("results_hidden_answers_ignored count=%s", suppressed)
    return [tally_question(q, collected[q.id], len(submissions)) for q in ordered]


__all__ = ["tally_question", "tally_results"]
