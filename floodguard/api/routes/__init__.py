from __future__ import annotations

from floodguard.api.routes.health import router as health_router
from floodguard.api.routes.ping import router as ping_router

__all__ = ["health_router", "ping_router"]
