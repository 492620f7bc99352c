"""Non-respondent and reminder data access.

A non-respondent is a response row for the survey that has not been
submitted, joined with its member. Streams over non-respondents use the
response id as cursor.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence

from sqlalchemy import bindparam, text as sql_text

from hoa_survey.db.base import get_engine
from hoa_survey.logic.encryption import decrypt_fields
from hoa_survey.logic.repository_members import new_id, utc_now

logger = logging.getLogger(__name__)

_REMINDER_COUNT = (
    "(SELECT COUNT(*) FROM reminder rem WHERE rem.survey_id = r.survey_id AND rem.member_id = r.member_id)"
)


def reminder_allow_list(
    survey_id: str,
    *,
    exact: Optional[int] = None,
    minimum: Optional[int] = None,
) -> FrozenSet[str]:
    """Member ids of non-respondents whose reminder count matches.

    `exact` selects members reminded exactly that many times; `minimum` those
    reminded at least that many times. Both may be combined.
    """
    with get_engine().connect() as conn:
        rows = conn.execute(
            sql_text(
                f"""
                SELECT r.member_id, {_REMINDER_COUNT} AS reminder_count
                FROM response r
                WHERE r.survey_id = :sid AND r.submitted_at IS NULL
                """
            ),
            {"sid": survey_id},
        ).fetchall()
    allowed = frozenset(
        str(member_id)
        for member_id, count in rows
        if (exact is None or int(count) == exact) and (minimum is None or int(count) >= minimum)
    )
    logger.info(
        "reminder_allow_list survey_id=%s exact=%s minimum=%s pending=%s allowed=%s",
        survey_id,
        exact,
        minimum,
        len(rows),
        len(allowed),
    )
    return allowed


class NonRespondentSource:
    """Unsubmitted responses of one survey, ordered by response id.

    When `allow_member_ids` is given only those members are included; an
    empty allow-list yields an empty source without querying.
    """

    id_field = "responseId"

    def __init__(self, survey_id: str, allow_member_ids: Optional[FrozenSet[str]] = None) -> None:
        self.survey_id = survey_id
        self.allow_member_ids = allow_member_ids
        self.name = f"nonrespondents:{survey_id}"

    @property
    def is_empty(self) -> bool:
        return self.allow_member_ids is not None and not self.allow_member_ids

    def _where(self, after_id: Optional[str]) -> tuple[str, Dict[str, Any]]:
        clause = "r.survey_id = :sid AND r.submitted_at IS NULL"
        params: Dict[str, Any] = {"sid": self.survey_id}
        if self.allow_member_ids is not None:
            clause += " AND r.member_id IN :allowed"
            params["allowed"] = sorted(self.allow_member_ids)
        if after_id:
            clause += " AND r.id > :after"
            params["after"] = after_id
        return clause, params

    def _statement(self, sql: str):
        stmt = sql_text(sql)
        if self.allow_member_ids is not None:
            stmt = stmt.bindparams(bindparam("allowed", expanding=True))
        return stmt

    def count(self, after_id: Optional[str] = None) -> int:
        if self.is_empty:
            return 0
        clause, params = self._where(after_id)
        with get_engine().connect() as conn:
            stmt = self._statement(f"SELECT COUNT(*) FROM response r WHERE {clause}")
            total = conn.execute(stmt, params).scalar()
        return int(total or 0)

    def fetch(self, after_id: Optional[str], limit: int) -> List[Mapping[str, Any]]:
        if self.is_empty:
            return []
        clause, params = self._where(after_id)
        params["lim"] = int(limit)
        sql = f"""
            SELECT r.id AS response_id, r.token, m.id, m.lot, m.name, m.email, m.address,
                   {_REMINDER_COUNT} AS reminder_count
            FROM response r
            JOIN member m ON m.id = r.member_id
            WHERE {clause}
            ORDER BY r.id ASC
            LIMIT :lim
        """
        with get_engine().connect() as conn:
            return [dict(r) for r in conn.execute(self._statement(sql), params).mappings().all()]

    def row_key(self, row: Mapping[str, Any]) -> str:
        return str(row["response_id"])

    def project(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        member = decrypt_fields(row)
        return {
            "responseId": row["response_id"],
            "id": member["id"],
            "name": member.get("name") or "",
            "email": member.get("email") or "",
            "lotNumber": member.get("lot") or "",
            "address": member.get("address") or "",
            "token": row["token"],
            "reminderCount": int(row.get("reminder_count") or 0),
        }


_LEADING_DIGITS = re.compile(r"\s*(\d+)")


def lot_sort_key(record: Mapping[str, Any]) -> int:
    """Numeric lot ordering for the whole-array listing.

    Uses the leading digits (`"12A"` sorts as 12); lots without them sort first.
    """
    match = _LEADING_DIGITS.match(str(record.get("lotNumber") or ""))
    return int(match.group(1)) if match else 0


def get_pending_response(survey_id: str, response_id: str) -> Optional[Dict[str, Any]]:
    with get_engine().connect() as conn:
        row = conn.execute(
            sql_text(
                """
                SELECT id, member_id, submitted_at FROM response
                WHERE id = :rid AND survey_id = :sid
                """
            ),
            {"rid": response_id, "sid": survey_id},
        ).mappings().fetchone()
    return dict(row) if row else None


def record_reminder(survey_id: str, member_id: str) -> Dict[str, Any]:
    reminder = {"id": new_id(), "surveyId": survey_id, "memberId": member_id, "sentAt": utc_now()}
    with get_engine().begin() as conn:
        conn.execute(
            sql_text("INSERT INTO reminder (id, survey_id, member_id, sent_at) VALUES (:id, :sid, :mid, :ts)"),
            {"id": reminder["id"], "sid": survey_id, "mid": member_id, "ts": reminder["sentAt"]},
        )
    logger.info("reminder_recorded survey_id=%s member_id=%s", survey_id, member_id)
    return reminder


def record_reminders(survey_id: str, member_ids: Sequence[str]) -> str:
    """Record one reminder per member in a single transaction; returns the shared timestamp."""
    sent_at = utc_now()
    if not member_ids:
        return sent_at
    with get_engine().begin() as conn:
        conn.execute(
            sql_text("INSERT INTO reminder (id, survey_id, member_id, sent_at) VALUES (:id, :sid, :mid, :ts)"),
            [{"id": new_id(), "sid": survey_id, "mid": mid, "ts": sent_at} for mid in member_ids],
        )
    logger.info("reminders_recorded survey_id=%s count=%s", survey_id, len(member_ids))
    return sent_at


__all__ = [
    "reminder_allow_list",
    "NonRespondentSource",
    "lot_sort_key",
    "get_pending_response",
    "record_reminder",
    "record_reminders",
]
