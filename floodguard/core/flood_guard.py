"""Flood guard dependency for FastAPI routes.

This module is the host integration layer: it turns a FastAPI request into a
RequestIdentity, asks the RateGuard for a verdict and acts on it.

Design goals:
- Minimal coupling: routes depend on a dependency function only.
- The engine never sees the request object; it gets a RequestIdentity.
- Storage failures are surfaced (503) unless GUARD_FAIL_OPEN is set.

Client identity:
- Key: value of the configured session cookie, else the client address.
- Address: Client-IP header, then the first X-Forwarded-For hop, then the
  socket peer (headers only when GUARD_TRUST_FORWARDED_HEADERS is true).
"""

from __future__ import annotations

import logging
import threading
import time

from fastapi import HTTPException, Request, status

from floodguard.adapters.storage.factory import create_storage_backend
from floodguard.core.config import settings
from floodguard.core.errors import GuardError
from floodguard.core.logging import hash_identifier
from floodguard.services.rate_guard import RateGuard, RequestIdentity, Verdict

logger = logging.getLogger(__name__)


_guard: RateGuard | None = None
_guard_config: str | None = None
_guard_lock = threading.Lock()


def get_rate_guard() -> RateGuard:
    """Return a process-wide RateGuard instance.

    The instance is cached in-module so the in-memory backend keeps its state
    across requests. If configuration changes (primarily in tests), the guard
    and its storage are rebuilt.

    Returns:
        RateGuard: Configured guard.

    Raises:
        ConfigError: If the guard or storage options are invalid.
    """

    global _guard, _guard_config

    config = settings.guard.model_dump_json() + settings.storage.model_dump_json()

    with _guard_lock:
        if _guard is None or _guard_config != config:
            if _guard is not None:
                _guard.storage.close()
                _guard = None
            storage = create_storage_backend(settings.storage)
            try:
                _guard = RateGuard.from_settings(storage, settings.guard)
            except Exception:
                storage.close()
                raise
            _guard_config = config

        return _guard


def reset_rate_guard() -> None:
    """Drop the cached guard and close its storage."""

    global _guard, _guard_config

    with _guard_lock:
        if _guard is not None:
            _guard.storage.close()
        _guard = None
        _guard_config = None


def client_ip(request: Request) -> str:
    """Resolve the client address for the current request."""

    if settings.guard.trust_forwarded_headers:
        forwarded = request.headers.get("Client-IP")
        if forwarded:
            return forwarded.strip()

        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            first_hop = forwarded_for.split(",")[0].strip()
            if first_hop:
                return first_hop

    return request.client.host if request.client else "unknown"


def client_key(request: Request, ip_address: str) -> str:
    """Build the guard key for the current request.

    Args:
        request: FastAPI request.
        ip_address: Already-resolved client address.

    Returns:
        str: Namespaced client key.
    """

    cookie_name = settings.guard.session_cookie
    if cookie_name:
        session_id = request.cookies.get(cookie_name)
        if session_id:
            return f"session:{session_id}"

    return f"ip:{ip_address}"


def build_request_identity(request: Request, now: float | None = None) -> RequestIdentity:
    """Extract the RequestIdentity the engine evaluates.

    The URI is the path only; Starlette already keeps the query string
    out of ``url.path``.
    """

    ip_address = client_ip(request)
    return RequestIdentity(
        key=client_key(request, ip_address),
        ip_address=ip_address,
        uri=request.url.path,
        method=request.method.upper(),
        now=time.time() if now is None else now,
    )


def enforce_flood_guard(request: Request) -> None:
    """FastAPI dependency enforcing the flood guard.

    Declared as a plain function so FastAPI runs it in the threadpool; storage
    calls may block.

    Raises:
        HTTPException: 403 Forbidden when the client is blocked.
        GuardError: When storage fails and fail-open is disabled.
    """

    if not settings.guard.enabled:
        return

    guard = get_rate_guard()
    identity = build_request_identity(request)

    try:
        verdict = guard.evaluate(identity)
    except GuardError as exc:
        if not settings.guard.fail_open:
            raise
        logger.error(
            "flood_guard.fail_open",
            extra={
                "error_code": exc.code,
                "uri": identity.uri,
                "ip_hash": hash_identifier(identity.ip_address),
            },
        )
        return

    if verdict is Verdict.ALLOW:
        return

    retry_after = int(guard.blocking_period)
    logger.warning(
        "flood_guard.blocked",
        extra={
            "host": request.headers.get("host", ""),
            "uri": identity.uri,
            "method": identity.method,
            "ip_hash": hash_identifier(identity.ip_address),
            "key_hash": hash_identifier(identity.key),
            "blocking_period_s": retry_after,
        },
    )

    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=f"please wait {retry_after} seconds and refresh the page",
        headers={"Retry-After": str(retry_after)},
    )
