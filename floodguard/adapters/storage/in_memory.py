"""In-process client record storage.

Notes:
- Per-process only: running multiple workers gives each worker its own
  history, so a client spread across workers gets a multiple of the limit.
- Thread-safe: uses a lock around shared state.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Any, Callable

from floodguard.adapters.storage.base import (
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    DEFAULT_RETENTION_SECONDS,
    AbstractStorageBackend,
    ClientRecord,
    merge_record,
)
from floodguard.core.errors import StorageNotFoundError
from floodguard.core.logging import hash_identifier

logger = logging.getLogger(__name__)


class InMemoryStorage(AbstractStorageBackend):
    """Session-scoped storage keeping one record per key in a dict.

    Records are immutable, so readers never observe a half-applied update.
    The last-write time of each key is tracked separately for reaping.
    """

    name = "memory"

    def __init__(
        self,
        *,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
        lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the in-memory storage.

        Args:
            retention_seconds: Age after which :meth:`reap` drops a record.
            lock_timeout_seconds: Max wait for the per-key critical section.
            clock: Time source function returning UNIX time in seconds.
        """
        super().__init__(
            retention_seconds=retention_seconds,
            lock_timeout_seconds=lock_timeout_seconds,
        )
        self._clock = clock
        self._lock = threading.RLock()
        self._records: dict[str, ClientRecord] = {}
        self._written_at: dict[str, float] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def get(self, key: str) -> ClientRecord | None:
        with self._lock:
            return self._records.get(key)

    def store(self, key: str, record: ClientRecord) -> None:
        if record.key != key:
            record = replace(record, key=key)
        with self._lock:
            self._records[key] = record
            self._written_at[key] = self._clock()

    def update(self, key: str, /, **changes: Any) -> ClientRecord:
        with self._lock:
            current = self._records.get(key)
            if current is None:
                raise StorageNotFoundError(
                    code="storage_not_found",
                    message="No client record to update",
                    details={"backend": self.name, "key_hash": hash_identifier(key)},
                )
            merged = merge_record(current, changes)
            self._records[key] = merged
            self._written_at[key] = self._clock()
            return merged

    def reap(self, now: float | None = None) -> int:
        cutoff = (self._clock() if now is None else now) - self._retention_seconds
        with self._lock:
            stale = [key for key, written in self._written_at.items() if written < cutoff]
            for key in stale:
                self._records.pop(key, None)
                self._written_at.pop(key, None)

        if stale:
            logger.debug(
                "memory_storage.reaped",
                extra={"removed": len(stale), "retention_s": self._retention_seconds},
            )
        return len(stale)

    def clear(self) -> None:
        """Remove every record."""
        with self._lock:
            self._records.clear()
            self._written_at.clear()
