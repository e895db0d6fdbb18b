from __future__ import annotations

from fastapi import APIRouter

from floodguard.core.config import settings

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check() -> dict:
    """Health check endpoint.

    Never guarded, so load balancers keep probing a host whose clients are
    being blocked.

    Returns:
        dict: Status plus whether the guard is on and which backend it uses.
    """

    return {
        "status": "ok",
        "guard_enabled": settings.guard.enabled,
        "storage_backend": settings.storage.backend,
    }
