"""Database bootstrap utilities for the survey service.

This module exposes convenience imports for engine/session construction and
the migrations runner that applies SQL files from the bundled migrations/
directory. The DB layer does not leak ORM models into route handlers;
repositories in `hoa_survey/logic/` issue SQL text queries.
"""

from hoa_survey.db.base import get_engine, dispose_engine
from hoa_survey.db.migrations_runner import apply_migrations

__all__ = [
    "get_engine",
    "dispose_engine",
    "apply_migrations",
]
