from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text as sql_text
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from hoa_survey.config import get_config
from hoa_survey.db.base import get_engine
from hoa_survey.db.migrations_runner import apply_migrations
from hoa_survey.http.problem import (
    handle_http_exception,
    handle_request_validation_error,
    handle_unexpected_error,
)
from hoa_survey.http.request_id import RequestIdMiddleware
from hoa_survey.logging_setup import configure_logging
from hoa_survey.routes import api_router

logger = logging.getLogger(__name__)


def _auto_migrate_enabled() -> bool:
    return os.getenv("AUTO_APPLY_MIGRATIONS", "").strip().lower() in {"1", "true", "yes", "on"}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    if _auto_migrate_enabled():
        try:
            applied = apply_migrations(get_engine())
            logger.info("startup_migrations_applied files=%s", applied)
        except SQLAlchemyError:
            logger.error("Failed to apply migrations at startup", exc_info=True)
            raise
    else:
        logger.info("AUTO_APPLY_MIGRATIONS disabled; skipping migrations at startup")
    yield


def health_check() -> dict:
    try:
        with get_engine().connect() as conn:
            conn.execute(sql_text("SELECT 1"))
        return {"status": "ok", "db": True}
    except SQLAlchemyError as e:
        logger.error("Health DB check failed", exc_info=True)
        return {"status": "degraded", "db": False, "reason": str(e)}


def create_app() -> FastAPI:
    """Build the FastAPI application.

    Wires logging, problem+json exception handlers, the request-id middleware
    and the API routers under `/api/v1`.
    """
    cfg = get_config()
    configure_logging(cfg.log_level)

    app = FastAPI(title="HOA Survey Service", version="1.0.0", lifespan=lifespan)
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)
    app.add_middleware(RequestIdMiddleware)

    app.include_router(api_router, prefix="/api/v1")

    @app.get("/health")
    def health() -> dict:
        return health_check()

    return app


# Intentionally do not instantiate the app at import time to prevent side effects.
