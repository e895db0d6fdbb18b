"""HTTP middleware for request correlation and access logging.

Every request/response pair carries a request id (taken from the incoming
header or generated) so guard decisions logged during the request can be
joined with the access log line written here.

Usage:
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request, Response

from floodguard.core.config import settings
from floodguard.core.logging import clear_request_id, set_request_id

logger = logging.getLogger("floodguard.access")


async def request_id_middleware(request: Request, call_next) -> Response:
    """Bind a request id for the lifetime of the request.

    The id is stored in contextvars (see ``get_request_id()``), echoed in the
    response under the configured header, and attached to one access log
    record per request. Blocked requests (403) are logged at WARNING.

    Args:
        request: The incoming HTTP request object.
        call_next: The next middleware/route handler in the stack.

    Returns:
        Response: The downstream response with the request id and
            ``X-Request-Duration-ms`` headers added.
    """

    header_name = settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.log(
            logging.WARNING if response.status_code == 403 else logging.INFO,
            "http.request",
            extra={
                "http_method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )
    finally:
        clear_request_id()

    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response
