"""Storage backend interfaces.

The decision engine depends on this abstraction (not a concrete backend) so
the same policy runs against an in-process store or a relational table.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, fields, replace
from typing import Any, Iterator

from floodguard.core.errors import StorageError
from floodguard.core.logging import hash_identifier

DEFAULT_RETENTION_SECONDS = 24 * 3600
DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class ClientRecord:
    """Most recent tracked request window for one client key.

    Attributes:
        key: Identity under which the record is stored.
        ip_address: Client address at the last tracked request.
        request_uri: Path of the tracked request, without query string.
        request_method: Upper-case HTTP method of the tracked request.
        timestamp: UNIX seconds of the first request in the current window.
        request_count: Matching requests seen inside the current window.
        blocked_at: UNIX seconds when the client was blocked, if it was.
    """

    key: str
    ip_address: str
    request_uri: str
    request_method: str
    timestamp: float
    request_count: int = 1
    blocked_at: float | None = None

    @property
    def is_blocked(self) -> bool:
        return self.blocked_at is not None


RECORD_FIELDS = frozenset(f.name for f in fields(ClientRecord))
UPDATABLE_FIELDS = RECORD_FIELDS - {"key"}


def merge_record(record: ClientRecord, updates: dict[str, Any]) -> ClientRecord:
    """Return ``record`` with ``updates`` applied.

    Raises:
        ValueError: If an update names a field a record does not have.
    """
    unknown = set(updates) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"unknown record field(s): {', '.join(sorted(unknown))}")
    return replace(record, **updates)


class KeyLocks:
    """Registry of per-key locks.

    Locks are created on first use and dropped once no thread holds or waits
    for them, so the registry only ever holds keys with in-flight requests.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str, timeout: float) -> Iterator[None]:
        """Hold the lock for ``key`` for the duration of the block.

        Args:
            key: Client key to serialize on.
            timeout: Max seconds to wait for the lock.

        Raises:
            StorageError: If the lock cannot be acquired within ``timeout``.
        """
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1

        try:
            if not lock.acquire(timeout=timeout):
                raise StorageError(
                    code="storage_timeout",
                    message="Timed out waiting for the client record lock",
                    details={"key_hash": hash_identifier(key), "timeout_s": timeout},
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]


class AbstractStorageBackend(ABC):
    """Interface for client record storage.

    Implementations must be safe to call from multiple threads. The engine
    wraps each read-modify-write in :meth:`locked` so updates for the same
    key are never lost; writes for different keys never contend. The default
    lock is per process; backends whose records are shared between processes
    extend it with a lock held in the store itself.
    """

    name: str = "abstract"

    def __init__(
        self,
        *,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
        lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
    ) -> None:
        if retention_seconds <= 0:
            raise ValueError("retention_seconds must be > 0")
        if lock_timeout_seconds <= 0:
            raise ValueError("lock_timeout_seconds must be > 0")

        self._retention_seconds = retention_seconds
        self._lock_timeout_seconds = lock_timeout_seconds
        self._key_locks = KeyLocks()

    @property
    def retention_seconds(self) -> int:
        return self._retention_seconds

    def locked(self, key: str):
        """Return a context manager serializing work on ``key``.

        Raises:
            StorageError: With code ``storage_timeout`` if the key stays busy
                longer than the configured lock timeout.
        """
        return self._key_locks.hold(key, self._lock_timeout_seconds)

    @abstractmethod
    def get(self, key: str) -> ClientRecord | None:
        """Return the record stored for ``key``, or None when there is none.

        Raises:
            StorageError: On I/O or decoding failure (never for a missing key).
        """
        raise NotImplementedError

    @abstractmethod
    def store(self, key: str, record: ClientRecord) -> None:
        """Create or fully replace the record for ``key``.

        The stored record's ``key`` is always ``key``.

        Raises:
            StorageError: On I/O failure.
        """
        raise NotImplementedError

    @abstractmethod
    def update(self, key: str, /, **changes: Any) -> ClientRecord:
        """Merge ``changes`` into the existing record for ``key``.

        ``key`` is positional-only, so ``key=...`` among the changes reaches
        the merge and is rejected there.

        Returns:
            The merged record as stored.

        Raises:
            StorageNotFoundError: If no record exists for ``key``.
            StorageError: On I/O or decoding failure.
            ValueError: If ``changes`` names an unknown field.
        """
        raise NotImplementedError

    @abstractmethod
    def reap(self, now: float | None = None) -> int:
        """Delete records last written more than ``retention_seconds`` ago.

        Returns:
            Number of records removed.
        """
        raise NotImplementedError

    def close(self) -> None:
        """Release backend resources. Default is a no-op."""
