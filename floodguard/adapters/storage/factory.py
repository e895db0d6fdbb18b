"""Factory for creating storage backend instances."""

from __future__ import annotations

import logging

from floodguard.adapters.storage.base import AbstractStorageBackend
from floodguard.adapters.storage.in_memory import InMemoryStorage
from floodguard.adapters.storage.sql_table import SqlTableStorage
from floodguard.core.config import StorageSettings, settings
from floodguard.core.errors import ConfigError

logger = logging.getLogger(__name__)

SUPPORTED_BACKENDS = ("memory", "sql")


def create_storage_backend(
    storage_settings: StorageSettings | None = None,
) -> AbstractStorageBackend:
    """Instantiate the storage backend named in configuration.

    The set of backends is closed: names map to constructors here and
    nowhere else.

    Args:
        storage_settings: Storage options; defaults to the global settings.

    Returns:
        AbstractStorageBackend: Configured backend. The caller owns it and
            must call ``close()`` on shutdown.

    Raises:
        ConfigError: If the backend is unknown or its options are incomplete.
    """
    cfg = storage_settings or settings.storage
    backend = cfg.backend.strip().lower()

    if backend == "memory":
        storage: AbstractStorageBackend = InMemoryStorage(
            retention_seconds=cfg.retention_seconds,
            lock_timeout_seconds=cfg.lock_timeout_seconds,
        )

    elif backend == "sql":
        if not cfg.database_url:
            raise ConfigError(
                code="storage_missing_database_url",
                message="The sql storage backend requires STORAGE_DATABASE_URL",
                details={"backend": backend, "option": "database_url"},
            )
        storage = SqlTableStorage.from_url(
            cfg.database_url,
            table_name=cfg.table_name,
            id_column=cfg.id_column,
            data_column=cfg.data_column,
            time_column=cfg.time_column,
            retention_seconds=cfg.retention_seconds,
            lock_timeout_seconds=cfg.lock_timeout_seconds,
            reap_on_init=cfg.reap_on_startup,
        )

    else:
        raise ConfigError(
            code="unknown_storage_backend",
            message=(
                f"Unknown storage backend: '{cfg.backend}'. "
                f"Supported backends: {', '.join(SUPPORTED_BACKENDS)}"
            ),
            details={"backend": cfg.backend, "option": "backend"},
        )

    logger.info("storage.created", extra={"backend": storage.name})
    return storage
