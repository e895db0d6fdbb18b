"""Exception handlers mapping errors to JSON responses.

Every error body has the same shape::

    {"error": {"code": ..., "message": ..., "request_id": ..., "details": ...}}

``details`` appears only when the error carries some. A guard that cannot
reach a verdict answers 503 with ``Retry-After``; a misconfigured deployment
answers 500. Unexpected exceptions get a fixed body so nothing about the
failure reaches the client.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from floodguard.core.errors import AppError, ConfigError, GuardError, StorageError
from floodguard.core.logging import get_request_id

logger = logging.getLogger(__name__)

# First match wins; any other AppError is a client error.
_STATUS_BY_ERROR: tuple[tuple[type[AppError], int], ...] = (
    (GuardError, 503),
    (StorageError, 503),
    (ConfigError, 500),
)

_UNAVAILABLE_RETRY_AFTER_S = 1


def status_for(exc: AppError) -> int:
    """Return the HTTP status an AppError is answered with."""

    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 400


def _error_body(code: str, message: str, details: Any = None) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "request_id": get_request_id(),
    }
    if details:
        error["details"] = details
    return {"error": error}


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Answer an AppError with its code, message and details.

    5xx answers are logged at ERROR with the chained cause, 4xx at WARNING.
    """

    status_code = status_for(exc)
    logger.log(
        logging.ERROR if status_code >= 500 else logging.WARNING,
        "http.app_error",
        extra={
            "error_code": exc.code,
            "status_code": status_code,
            "path": request.url.path,
        },
        exc_info=exc if status_code >= 500 else None,
    )

    headers = None
    if status_code == 503:
        headers = {"Retry-After": str(_UNAVAILABLE_RETRY_AFTER_S)}
    return JSONResponse(
        status_code=status_code,
        content=_error_body(exc.code, exc.message, exc.details),
        headers=headers,
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Answer any other exception with a generic 500."""

    logger.error(
        "http.unhandled_error",
        extra={
            "error_type": type(exc).__name__,
            "path": request.url.path,
            "http_method": request.method,
        },
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content=_error_body(
            "internal_server_error",
            "An unexpected error occurred. Please try again later.",
        ),
    )


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
