"""Problem+JSON utilities and global exception handlers.

Defines the RFC7807 media type, a small factory for problem bodies raised by
route handlers, and handler callables that render
application/problem+json responses.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

PROBLEM_MEDIA_TYPE = "application/problem+json"

logger = logging.getLogger(__name__)

_TITLES = {
    400: "Bad Request",
    403: "Forbidden",
    404: "Not Found",
    409: "Conflict",
    422: "Unprocessable Entity",
    500: "Internal Server Error",
}


def problem(status: int, detail: str, code: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    """Return a problem+json body for the given status."""
    body: Dict[str, Any] = {"title": _TITLES.get(status, "Error"), "status": status, "detail": detail}
    if code:
        body["code"] = code
    body.update(extra)
    return body


def problem_exception(status: int, detail: str, code: Optional[str] = None, **extra: Any) -> HTTPException:
    """HTTPException carrying a problem body, for `raise` in route handlers."""
    return HTTPException(status_code=status, detail=problem(status, detail, code, **extra))


async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    status_code = int(getattr(exc, "status_code", 500) or 500)
    if isinstance(exc.detail, dict):
        body = dict(exc.detail)
    else:
        body = problem(status_code, str(exc.detail or ""))
    headers = {str(k): str(v) for k, v in (exc.headers or {}).items()}
    if status_code >= 500:
        logger.error("http_error status=%s path=%s detail=%s", status_code, request.url.path, body.get("detail"))
    return JSONResponse(body, status_code=status_code, media_type=PROBLEM_MEDIA_TYPE, headers=headers or None)


async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    body = problem(422, "Request validation failed", "REQUEST_INVALID", errors=_jsonable_errors(exc))
    return JSONResponse(body, status_code=422, media_type=PROBLEM_MEDIA_TYPE)


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unexpected_error path=%s", request.url.path, exc_info=exc)
    return JSONResponse(problem(500, "Unexpected server error"), status_code=500, media_type=PROBLEM_MEDIA_TYPE)


def _jsonable_errors(exc: RequestValidationError) -> list:
    out = []
    for err in exc.errors():
        # `ctx` may hold exception instances that are not JSON serialisable
        out.append({k: (str(v) if k == "ctx" else v) for k, v in err.items() if k != "input"})
    return out


__all__ = [
    "PROBLEM_MEDIA_TYPE",
    "problem",
    "problem_exception",
    "handle_http_exception",
    "handle_request_validation_error",
    "handle_unexpected_error",
]
