"""
api/errors.py -- Render every failure into the shared ErrorResponse envelope.

Used by the exception handlers in api/main.py and by AuditedRoute, which has
to turn an exception into a response itself so the audit entry can record
the real status code.

Security note: unexpected exceptions are logged with traceback here and the
client only gets a generic message.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse
from auth.errors import TooManyAttempts
from core.errors import PortalError

logger = logging.getLogger("coopportal.api.errors")


def _envelope(status_code: int, code: str, message: str, detail: str | None = None, context: dict | None = None):
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=code, message=message, detail=detail, context=context or {})
        ).model_dump(),
    )


def portal_error_response(exc: PortalError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s: %s", exc.code, exc.message)
    response = _envelope(exc.status_code, exc.code, exc.message, context=exc.context())
    if isinstance(exc, TooManyAttempts):
        response.headers["Retry-After"] = str(exc.retry_after)
    if exc.status_code == 401:
        response.headers["Cache-Control"] = "no-store"
    return response


def http_error_response(exc: HTTPException) -> JSONResponse:
    """Route handlers may raise HTTPException with a dict detail; pass it through as the error field."""
    if isinstance(exc.detail, dict):
        response = JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.detail})
    else:
        response = _envelope(exc.status_code, f"HTTP_{exc.status_code}", str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


def validation_error_response(exc: RequestValidationError) -> JSONResponse:
    return _envelope(422, "VALIDATION_ERROR", "Request validation failed.", detail=str(exc.errors()))


def unexpected_error_response(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path, exc_info=exc)
    return _envelope(500, "INTERNAL_ERROR", "An unexpected error occurred.")
