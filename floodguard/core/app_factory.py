"""Application factory for the demo FastAPI app.

Centralizes app construction (lifespan, middleware, handlers, routers) so
tests and ASGI servers build the same app.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from floodguard.api.routes import health_router, ping_router
from floodguard.core.config import settings
from floodguard.core.exception_handlers import setup_exception_handlers
from floodguard.core.flood_guard import get_rate_guard, reset_rate_guard
from floodguard.core.logging import configure_logging
from floodguard.core.middleware import request_id_middleware

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the guard's storage at startup and close it at shutdown.

    Building the guard eagerly makes invalid options fail the startup with a
    ConfigError instead of the first request.
    """
    if settings.guard.enabled:
        guard = get_rate_guard()
        logger.info(
            "flood_guard.started",
            extra={
                "backend": guard.storage.name,
                "page_count": guard.page_count,
                "page_interval_s": guard.page_interval,
                "blocking_period_s": guard.blocking_period,
                "tracked_methods": sorted(guard.tracked_methods),
            },
        )
    try:
        yield
    finally:
        reset_rate_guard()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance.

    Returns:
        Configured FastAPI app with middleware, handlers and routers.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="Flood Guard",
        description=(
            "Inline request-flood guard. Identical requests from one client "
            "beyond the configured threshold are answered with 403 until the "
            "blocking period elapses."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    app.middleware("http")(request_id_middleware)
    setup_exception_handlers(app)

    app.include_router(ping_router, prefix="/v1")
    app.include_router(health_router)

    return app
