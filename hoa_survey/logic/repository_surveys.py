"""Survey, question and response data access.

Questions are stored with their `showWhen` rule encoded as a JSON string;
reads hand it back as that raw string and the evaluator parses it.
"""

from __future__ import annotations

import json
import logging
import secrets
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import text as sql_text

from hoa_survey.db.base import get_engine
from hoa_survey.logic.repository_members import new_id, utc_now
from hoa_survey.logic.visibility_rules import parse_condition
from hoa_survey.models.question import Question

logger = logging.getLogger(__name__)


def _encode_show_when(raw: Any) -> Optional[str]:
    if raw is None or raw == "":
        return None
    condition = parse_condition(raw)
    if condition is not None:
        return condition.to_json()
    # Keep unparseable rules verbatim; they evaluate as disabled
    return raw if isinstance(raw, str) else json.dumps(raw)


def create_survey(
    *,
    title: str,
    member_list_id: str,
    questions: Sequence[Question],
    closes_at: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a survey, its questions and one pending response per list member."""
    survey_id = new_id()
    now = utc_now()
    with get_engine().begin() as conn:
        conn.execute(
            sql_text(
                """
                INSERT INTO survey (id, member_list_id, title, closes_at, created_at)
                VALUES (:id, :lid, :title, :closes, :ts)
                """
            ),
            {"id": survey_id, "lid": member_list_id, "title": title, "closes": closes_at, "ts": now},
        )
        for q in questions:
            conn.execute(
                sql_text(
                    """
                    INSERT INTO survey_question
                        (id, survey_id, question_order, kind, text, options, max_selections, required, show_when)
                    VALUES (:id, :sid, :ord, :kind, :text, :opts, :maxsel, :req, :sw)
                    """
                ),
                {
                    "id": q.id,
                    "sid": survey_id,
                    "ord": q.order,
                    "kind": q.kind,
                    "text": q.text,
                    "opts": json.dumps(q.options) if q.options is not None else None,
                    "maxsel": q.max_selections,
                    "req": bool(q.required),
                    "sw": _encode_show_when(q.show_when),
                },
            )
        members = conn.execute(
            sql_text("SELECT member_id FROM member_list_member WHERE list_id = :lid ORDER BY member_id"),
            {"lid": member_list_id},
        ).fetchall()
        for (member_id,) in members:
            conn.execute(
                sql_text("INSERT INTO response (id, survey_id, member_id, token) VALUES (:id, :sid, :mid, :tok)"),
                {"id": new_id(), "sid": survey_id, "mid": member_id, "tok": secrets.token_hex(32)},
            )
    logger.info(
        "survey_created survey_id=%s questions=%s responses=%s",
        survey_id,
        len(questions),
        len(members),
    )
    return {
        "id": survey_id,
        "title": title,
        "memberListId": member_list_id,
        "closesAt": closes_at,
        "createdAt": now,
        "recipients": len(members),
    }


def survey_exists(survey_id: str) -> bool:
    with get_engine().connect() as conn:
        row = conn.execute(sql_text("SELECT 1 FROM survey WHERE id = :id"), {"id": survey_id}).fetchone()
    return row is not None


def get_survey(survey_id: str) -> Optional[Dict[str, Any]]:
    with get_engine().connect() as conn:
        row = conn.execute(
            sql_text("SELECT id, member_list_id, title, closes_at, created_at FROM survey WHERE id = :id"),
            {"id": survey_id},
        ).mappings().fetchone()
    return dict(row) if row else None


def is_closed(closes_at: Optional[str]) -> bool:
    """Timestamps share the `YYYY-MM-DDTHH:MM:SSZ` form, so string order is time order."""
    return bool(closes_at) and closes_at <= utc_now()


def list_submitted_answers(survey_id: str) -> List[Dict[str, Any]]:
    """Stored answer sets of the submitted responses, oldest submission first."""
    with get_engine().connect() as conn:
        rows = conn.execute(
            sql_text(
                """
                SELECT id, answers FROM response
                WHERE survey_id = :sid AND submitted_at IS NOT NULL
                ORDER BY submitted_at ASC, id ASC
                """
            ),
            {"sid": survey_id},
        ).fetchall()
    out: List[Dict[str, Any]] = []
    for response_id, raw in rows:
        try:
            out.append(json.loads(raw) if raw else {})
        except ValueError:
            logger.error("response_answers_unparseable response_id=%s", response_id)
            out.append({})
    return out


def list_questions(survey_id: str) -> List[Question]:
    with get_engine().connect() as conn:
        rows = conn.execute(
            sql_text(
                """
                SELECT id, question_order, kind, text, options, max_selections, required, show_when
                FROM survey_question
                WHERE survey_id = :sid
                ORDER BY question_order ASC
                """
            ),
            {"sid": survey_id},
        ).mappings().all()
    questions: List[Question] = []
    for r in rows:
        options = None
        if r["options"]:
            try:
                options = json.loads(r["options"])
            except ValueError:
                logger.warning("question_options_unparseable question_id=%s", r["id"])
        questions.append(
            Question(
                id=str(r["id"]),
                order=int(r["question_order"]),
                kind=str(r["kind"]),
                text=r["text"] or "",
                options=options,
                max_selections=r["max_selections"],
                required=bool(r["required"]),
                show_when=r["show_when"],
            )
        )
    return questions


def get_response_by_token(token: str) -> Optional[Dict[str, Any]]:
    with get_engine().connect() as conn:
        row = conn.execute(
            sql_text(
                """
                SELECT r.id, r.survey_id, r.member_id, r.token, r.answers, r.submitted_at, s.closes_at
                FROM response r
                JOIN survey s ON s.id = r.survey_id
                WHERE r.token = :tok
                """
            ),
            {"tok": token},
        ).mappings().fetchone()
    if row is None:
        return None
    out = dict(row)
    try:
        out["answers"] = json.loads(row["answers"]) if row["answers"] else {}
    except ValueError:
        logger.error("response_answers_unparseable response_id=%s", row["id"])
        out["answers"] = {}
    return out


def save_submission(response_id: str, answers: Mapping[str, Any]) -> str:
    submitted_at = utc_now()
    with get_engine().begin() as conn:
        conn.execute(
            sql_text("UPDATE response SET answers = :ans, submitted_at = :ts WHERE id = :id"),
            {"ans": json.dumps(dict(answers)), "ts": submitted_at, "id": response_id},
        )
    logger.info("response_submitted response_id=%s answers=%s", response_id, len(answers))
    return submitted_at


__all__ = [
    "create_survey",
    "survey_exists",
    "get_survey",
    "is_closed",
    "list_submitted_answers",
    "list_questions",
    "get_response_by_token",
    "save_submission",
]
