"""Request-flood decision engine.

For every tracked request the guard keeps one window per client key. A
window is anchored at its first request: matching requests (same address,
same URI) arriving within ``page_interval`` seconds of that first request
increment its counter, and the request after the ``page_count``-th one
blocks the client for ``blocking_period`` seconds. Because the anchor never
slides, a client gets at most ``page_count`` requests per interval no matter
how it spaces them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from numbers import Real
from typing import Iterable

from floodguard.adapters.storage.base import AbstractStorageBackend, ClientRecord
from floodguard.core.config import GuardSettings
from floodguard.core.errors import ConfigError, GuardError, StorageError
from floodguard.core.logging import hash_identifier

logger = logging.getLogger(__name__)

DEFAULT_PAGE_COUNT = 5
DEFAULT_PAGE_INTERVAL = 10
DEFAULT_BLOCKING_PERIOD = 60
DEFAULT_TRACKED_METHODS = ("GET", "POST", "DELETE")


class Verdict(str, Enum):
    """Decision returned to the host for one request."""

    ALLOW = "allow"
    BLOCK = "block"


@dataclass(frozen=True)
class RequestIdentity:
    """What the guard needs to know about an inbound request.

    Attributes:
        key: Client key (session id, API key, or address).
        ip_address: Client network address.
        uri: Request path with any query string stripped.
        method: HTTP method.
        now: UNIX seconds at which the request arrived.
    """

    key: str
    ip_address: str
    uri: str
    method: str
    now: float


def _require_positive(option: str, value: object, kind: type = Real) -> None:
    if isinstance(value, bool) or not isinstance(value, kind) or not value > 0:
        noun = "integer" if kind is int else "number"
        raise ConfigError(
            code="invalid_guard_option",
            message=f"{option} must be a positive {noun}",
            details={"option": option, "value": value},
        )


class RateGuard:
    """Decide whether a request is allowed or blocked.

    The guard holds only its configuration; all state lives in the storage
    backend, so one instance can serve concurrent requests.
    """

    def __init__(
        self,
        storage: AbstractStorageBackend,
        *,
        page_count: int = DEFAULT_PAGE_COUNT,
        page_interval: float = DEFAULT_PAGE_INTERVAL,
        blocking_period: float = DEFAULT_BLOCKING_PERIOD,
        tracked_methods: Iterable[str] = DEFAULT_TRACKED_METHODS,
    ) -> None:
        """Validate the policy and bind it to a storage backend.

        Args:
            storage: Backend holding one ClientRecord per client key.
            page_count: Matching requests allowed per window.
            page_interval: Window length in seconds.
            blocking_period: Seconds a blocked client stays blocked.
            tracked_methods: HTTP methods that open or extend a window.

        Raises:
            ConfigError: If ``page_count`` is not a positive integer, a
                period is not a positive number, or no method is tracked.
        """
        _require_positive("page_count", page_count, int)
        _require_positive("page_interval", page_interval)
        _require_positive("blocking_period", blocking_period)

        if isinstance(tracked_methods, str):
            tracked_methods = [tracked_methods]
        methods = frozenset(m.strip().upper() for m in tracked_methods if m and m.strip())
        if not methods:
            raise ConfigError(
                code="invalid_guard_option",
                message="tracked_methods must name at least one HTTP method",
                details={"option": "tracked_methods"},
            )

        self._storage = storage
        self._page_count = page_count
        self._page_interval = page_interval
        self._blocking_period = blocking_period
        self._tracked_methods = methods

    @classmethod
    def from_settings(cls, storage: AbstractStorageBackend, guard_settings: GuardSettings) -> "RateGuard":
        """Build a guard from the ``GUARD_*`` settings."""
        return cls(
            storage,
            page_count=guard_settings.page_count,
            page_interval=guard_settings.page_interval_seconds,
            blocking_period=guard_settings.blocking_period_seconds,
            tracked_methods=guard_settings.methods,
        )

    @property
    def storage(self) -> AbstractStorageBackend:
        return self._storage

    @property
    def page_count(self) -> int:
        return self._page_count

    @property
    def page_interval(self) -> float:
        return self._page_interval

    @property
    def blocking_period(self) -> float:
        return self._blocking_period

    @property
    def tracked_methods(self) -> frozenset[str]:
        return self._tracked_methods

    def evaluate(self, identity: RequestIdentity) -> Verdict:
        """Record the request and decide whether it may proceed.

        Args:
            identity: The inbound request.

        Returns:
            Verdict.ALLOW or Verdict.BLOCK.

        Raises:
            GuardError: If the storage backend fails or times out. The host
                chooses whether that means allow or block.
        """
        try:
            with self._storage.locked(identity.key):
                return self._decide(identity)
        except StorageError as exc:
            logger.error(
                "rate_guard.storage_failed",
                extra={
                    "key_hash": hash_identifier(identity.key),
                    "backend": self._storage.name,
                    "error_code": exc.code,
                },
            )
            raise GuardError(
                code="guard_storage_failure",
                message="Flood guard could not reach a verdict",
                details={"backend": self._storage.name, "context": {"storage_error": exc.code}},
            ) from exc

    def _decide(self, identity: RequestIdentity) -> Verdict:
        record = self._storage.get(identity.key)

        if record is None:
            return self._open_window(identity)

        if record.blocked_at is not None and identity.now - record.blocked_at < self._blocking_period:
            return Verdict.BLOCK

        # Untracked methods never count, but a blocked client stays blocked.
        if not self._is_tracked(identity.method):
            return Verdict.ALLOW

        if not self._in_window(record, identity):
            return self._open_window(identity)

        if record.request_count >= self._page_count:
            self._storage.update(identity.key, blocked_at=identity.now)
            logger.warning(
                "rate_guard.blocked",
                extra={
                    "key_hash": hash_identifier(identity.key),
                    "uri": identity.uri,
                    "method": identity.method,
                    "request_count": record.request_count,
                    "blocking_period_s": self._blocking_period,
                },
            )
            return Verdict.BLOCK

        # The window stays anchored at its first request.
        self._storage.update(identity.key, request_count=record.request_count + 1)
        logger.debug(
            "rate_guard.counted",
            extra={
                "key_hash": hash_identifier(identity.key),
                "request_count": record.request_count + 1,
                "page_count": self._page_count,
            },
        )
        return Verdict.ALLOW

    def _in_window(self, record: ClientRecord, identity: RequestIdentity) -> bool:
        return (
            record.ip_address == identity.ip_address
            and record.request_uri == identity.uri
            and identity.now - record.timestamp < self._page_interval
        )

    def _is_tracked(self, method: str) -> bool:
        return method.upper() in self._tracked_methods

    def _open_window(self, identity: RequestIdentity) -> Verdict:
        method = identity.method.upper()
        if method not in self._tracked_methods:
            return Verdict.ALLOW

        self._storage.store(
            identity.key,
            ClientRecord(
                key=identity.key,
                ip_address=identity.ip_address,
                request_uri=identity.uri,
                request_method=method,
                timestamp=identity.now,
            ),
        )
        logger.debug(
            "rate_guard.window_opened",
            extra={"key_hash": hash_identifier(identity.key), "uri": identity.uri},
        )
        return Verdict.ALLOW
