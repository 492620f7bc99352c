"""Functional test bootstrap.

Points the app at a file-backed SQLite database shared across the process and
applies the bundled SQL migrations once at session start, before any test
builds the FastAPI app via TestClient.
"""

from __future__ import annotations

import os
import pathlib
from typing import Callable, List, Tuple

import pytest

# Configure the environment before any import of hoa_survey reads it
_ROOT = pathlib.Path(__file__).resolve().parents[2]
_DB_FILE = _ROOT / "tmp" / "functional_tests.db"
_DB_FILE.parent.mkdir(parents=True, exist_ok=True)
if _DB_FILE.exists():
    _DB_FILE.unlink()

os.environ["TEST_DATABASE_URL"] = f"sqlite:///{_DB_FILE}"
os.environ["DATABASE_URL"] = os.environ["TEST_DATABASE_URL"]
os.environ["ENCRYPTION_KEY"] = "functional-test-secret-0123456789abcdef"
os.environ["AUTO_APPLY_MIGRATIONS"] = "0"


@pytest.fixture(scope="session", autouse=True)
def functional_sqlite_bootstrap() -> None:
    """Session-level bootstrap: apply migrations once for the shared DB."""
    from hoa_survey.db.base import dispose_engine, get_engine
    from hoa_survey.db.migrations_runner import apply_migrations

    apply_migrations(get_engine(os.environ["TEST_DATABASE_URL"]))
    yield
    dispose_engine()


@pytest.fixture
def app():
    from hoa_survey.main import create_app

    return create_app()


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    with TestClient(app) as c:
        yield c


@pytest.fixture
def seed_member_list() -> Callable[..., Tuple[str, List[str]]]:
    """Create a list with `count` encrypted members; returns (list_id, sorted member ids)."""
    from hoa_survey.logic.repository_members import create_member, create_member_list

    def _seed(count: int, name: str = "Seeded list") -> Tuple[str, List[str]]:
        member_list = create_member_list(name)
        ids = []
        for i in range(count):
            member = create_member(
                member_list["id"],
                {
                    "lot": str(count - i),
                    "name": f"Member {i:03d}",
                    "email": f"member{i:03d}@example.org",
                    "address": f"{i} Lake Road",
                },
            )
            ids.append(member["id"])
        return member_list["id"], sorted(ids)

    return _seed


@pytest.fixture
def insert_plaintext_member() -> Callable[[str, dict], None]:
    """Insert a member row as stored before field encryption existed."""
    from sqlalchemy import text as sql_text

    from hoa_survey.db.base import get_engine
    from hoa_survey.logic.repository_members import utc_now

    def _insert(list_id: str, row: dict) -> None:
        with get_engine().begin() as conn:
            conn.execute(
                sql_text(
                    """
                    INSERT INTO member (id, lot, name, email, address, created_at)
                    VALUES (:id, :lot, :name, :email, :address, :ts)
                    """
                ),
                {
                    "id": row["id"],
                    "lot": row.get("lot", ""),
                    "name": row.get("name", ""),
                    "email": row.get("email", ""),
                    "address": row.get("address", ""),
                    "ts": utc_now(),
                },
            )
            conn.execute(
                sql_text("INSERT INTO member_list_member (list_id, member_id) VALUES (:lid, :mid)"),
                {"lid": list_id, "mid": row["id"]},
            )

    return _insert
