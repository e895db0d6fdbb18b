"""Tests for storage backend selection."""

import pytest

from floodguard.adapters.storage.factory import create_storage_backend
from floodguard.adapters.storage.in_memory import InMemoryStorage
from floodguard.adapters.storage.sql_table import SqlTableStorage
from floodguard.core.config import StorageSettings
from floodguard.core.errors import ConfigError


def test_memory_backend() -> None:
    storage = create_storage_backend(StorageSettings(backend="memory", retention_seconds=60))

    assert isinstance(storage, InMemoryStorage)
    assert storage.retention_seconds == 60


def test_backend_name_is_case_insensitive() -> None:
    assert isinstance(create_storage_backend(StorageSettings(backend=" Memory ")), InMemoryStorage)


def test_sql_backend(tmp_path) -> None:
    cfg = StorageSettings(
        backend="sql",
        database_url=f"sqlite:///{tmp_path / 'guard.db'}",
        table_name="evasive",
    )

    storage = create_storage_backend(cfg)
    try:
        assert isinstance(storage, SqlTableStorage)
        assert storage.table.name == "evasive"
    finally:
        storage.close()


def test_sql_backend_requires_database_url() -> None:
    with pytest.raises(ConfigError) as exc_info:
        create_storage_backend(StorageSettings(backend="sql", database_url=None))

    assert exc_info.value.code == "storage_missing_database_url"


@pytest.mark.parametrize("name", ["redis", "Session", "floodguard.adapters.storage.in_memory.InMemoryStorage"])
def test_unknown_backend_raises_config_error(name: str) -> None:
    with pytest.raises(ConfigError) as exc_info:
        create_storage_backend(StorageSettings(backend=name))

    assert exc_info.value.code == "unknown_storage_backend"
    assert "memory, sql" in exc_info.value.message
