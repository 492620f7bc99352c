"""Member list data access.

Encapsulates SQL for member lists and their members, keeping route handlers
free of inline SQL. Member PII is encrypted on write and decrypted (best
effort) on read.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import text as sql_text

from hoa_survey.db.base import get_engine
from hoa_survey.logic.encryption import decrypt_fields, encrypt_member_fields

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def new_id() -> str:
    return uuid.uuid4().hex


def create_member_list(name: str) -> Dict[str, Any]:
    list_id = new_id()
    created_at = utc_now()
    with get_engine().begin() as conn:
        conn.execute(
            sql_text("INSERT INTO member_list (id, name, created_at) VALUES (:id, :name, :ts)"),
            {"id": list_id, "name": name.strip(), "ts": created_at},
        )
    logger.info("member_list_created list_id=%s", list_id)
    return {"id": list_id, "name": name.strip(), "createdAt": created_at}


def member_list_exists(list_id: str) -> bool:
    with get_engine().connect() as conn:
        row = conn.execute(
            sql_text("SELECT 1 FROM member_list WHERE id = :id"),
            {"id": list_id},
        ).fetchone()
    return row is not None


def create_member(list_id: str, fields: Mapping[str, Any], member_id: Optional[str] = None) -> Dict[str, Any]:
    """Insert a member with encrypted PII and link it to the list.

    Surveys on the list that are still open get a pending response for the
    new member so it shows up among non-respondents.
    """
    member_id = member_id or new_id()
    plain = {
        "lot": str(fields.get("lot") or "").strip(),
        "name": str(fields.get("name") or "").strip(),
        "email": str(fields.get("email") or "").strip(),
        "address": str(fields.get("address") or "").strip(),
    }
    stored = encrypt_member_fields(plain)
    now = utc_now()
    with get_engine().begin() as conn:
        conn.execute(
            sql_text(
                """
                INSERT INTO member (id, lot, name, email, address, created_at)
                VALUES (:id, :lot, :name, :email, :address, :ts)
                """
            ),
            {"id": member_id, "ts": now, **stored},
        )
        conn.execute(
            sql_text("INSERT INTO member_list_member (list_id, member_id) VALUES (:lid, :mid)"),
            {"lid": list_id, "mid": member_id},
        )
        open_surveys = conn.execute(
            sql_text(
                "SELECT id FROM survey WHERE member_list_id = :lid AND (closes_at IS NULL OR closes_at > :now)"
            ),
            {"lid": list_id, "now": now},
        ).fetchall()
        for (survey_id,) in open_surveys:
            conn.execute(
                sql_text(
                    "INSERT INTO response (id, survey_id, member_id, token) VALUES (:id, :sid, :mid, :tok)"
                ),
                {"id": new_id(), "sid": survey_id, "mid": member_id, "tok": secrets.token_hex(32)},
            )
    logger.info(
        "member_created list_id=%s member_id=%s pending_responses=%s",
        list_id,
        member_id,
        len(open_surveys),
    )
    return {"id": member_id, **plain}


class MemberListSource:
    """Members of one list, ordered by member id."""

    id_field = "id"

    def __init__(self, list_id: str) -> None:
        self.list_id = list_id
        self.name = f"member_list:{list_id}"

    def count(self, after_id: Optional[str] = None) -> int:
        sql = "SELECT COUNT(*) FROM member_list_member lm WHERE lm.list_id = :lid"
        params: Dict[str, Any] = {"lid": self.list_id}
        if after_id:
            sql += " AND lm.member_id > :after"
            params["after"] = after_id
        with get_engine().connect() as conn:
            return int(conn.execute(sql_text(sql), params).scalar() or 0)

    def fetch(self, after_id: Optional[str], limit: int) -> List[Mapping[str, Any]]:
        sql = """
            SELECT m.id, m.lot, m.name, m.email, m.address
            FROM member m
            JOIN member_list_member lm ON lm.member_id = m.id
            WHERE lm.list_id = :lid
        """
        params: Dict[str, Any] = {"lid": self.list_id, "lim": int(limit)}
        if after_id:
            sql += " AND m.id > :after"
            params["after"] = after_id
        sql += " ORDER BY m.id ASC LIMIT :lim"
        with get_engine().connect() as conn:
            return [dict(r) for r in conn.execute(sql_text(sql), params).mappings().all()]

    def row_key(self, row: Mapping[str, Any]) -> str:
        return str(row["id"])

    def project(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        member = decrypt_fields(row)
        return {
            "id": member["id"],
            "lot": member.get("lot") or "",
            "name": member.get("name") or "",
            "email": member.get("email") or "",
            "address": member.get("address") or "",
        }


__all__ = [
    "utc_now",
    "new_id",
    "create_member_list",
    "member_list_exists",
    "create_member",
    "MemberListSource",
]
