from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from floodguard.core.flood_guard import enforce_flood_guard

router = APIRouter(tags=["Ping"], dependencies=[Depends(enforce_flood_guard)])


@router.api_route("/ping", methods=["GET", "POST", "PUT", "DELETE"])
def ping(request: Request) -> dict:
    """Guarded echo endpoint used to exercise the flood guard."""

    return {"status": "ok", "method": request.method, "path": request.url.path}
