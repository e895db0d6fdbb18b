"""Tests for the relational storage adapter (SQLite file databases)."""

from __future__ import annotations

import json
import logging
import threading
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine, func, inspect, select

from floodguard.adapters.storage.base import ClientRecord
from floodguard.adapters.storage.sql_table import SqlTableStorage
from floodguard.core.errors import StorageError, StorageNotFoundError
from floodguard.services.rate_guard import RateGuard, RequestIdentity, Verdict


def _record(key: str = "k", **overrides) -> ClientRecord:
    values = {
        "key": key,
        "ip_address": "203.0.113.7",
        "request_uri": "/login",
        "request_method": "POST",
        "timestamp": 1000.5,
    }
    values.update(overrides)
    return ClientRecord(**values)


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'guard.db'}"


@pytest.fixture
def engine(database_url):
    engine = create_engine(database_url)
    yield engine
    engine.dispose()


@pytest.fixture
def storage(engine) -> SqlTableStorage:
    return SqlTableStorage(engine)


def _row_count(storage: SqlTableStorage) -> int:
    with storage._engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(storage.table)).scalar_one()


class TestReadWrite:
    def test_creates_table_with_default_layout(self, storage, engine) -> None:
        columns = {col["name"] for col in inspect(engine).get_columns("flood_guard")}

        assert columns == {"id", "data", "timestamp"}

    def test_get_missing_key_returns_none(self, storage) -> None:
        assert storage.get("missing") is None

    def test_store_then_get(self, storage) -> None:
        storage.store("k", _record(blocked_at=1003.25, request_count=5))

        assert storage.get("k") == _record(blocked_at=1003.25, request_count=5)

    def test_store_is_an_upsert(self, storage) -> None:
        storage.store("k", _record())
        storage.store("k", _record(request_uri="/other"))
        storage.store("k", _record(request_uri="/other"))

        assert _row_count(storage) == 1
        assert storage.get("k").request_uri == "/other"

    def test_update_merges_fields(self, storage) -> None:
        storage.store("k", _record())

        merged = storage.update("k", request_count=3)

        assert merged == _record(request_count=3)
        assert storage.get("k") == merged

    def test_update_cannot_rename_key(self, storage) -> None:
        storage.store("k", _record())

        with pytest.raises(ValueError):
            storage.update("k", key="other")

        assert storage.get("k") == _record()
        assert storage.get("other") is None

    def test_update_missing_key_raises_not_found(self, storage) -> None:
        with pytest.raises(StorageNotFoundError):
            storage.update("missing", blocked_at=1.0)

        assert _row_count(storage) == 0

    def test_payload_is_versioned_json(self, storage) -> None:
        storage.store("k", _record())

        with storage._engine.connect() as conn:
            data = conn.execute(select(storage.table.c.data)).scalar_one()

        payload = json.loads(data)
        assert payload["version"] == 1
        assert payload["request_uri"] == "/login"
        assert "key" not in payload

    def test_undecodable_row_raises_storage_error(self, storage) -> None:
        with storage._engine.begin() as conn:
            conn.execute(storage.table.insert().values(id="k", data="not-json", timestamp=1))

        with pytest.raises(StorageError) as exc_info:
            storage.get("k")

        assert exc_info.value.code == "storage_decode_error"


class TestConfigurableLayout:
    def test_custom_table_and_columns_are_used_everywhere(self, engine) -> None:
        clock = Mock(return_value=5000.0)
        storage = SqlTableStorage(
            engine,
            table_name="evasive",
            id_column="session_id",
            data_column="payload",
            time_column="written_at",
            retention_seconds=100,
            clock=clock,
        )

        storage.store("k", _record())
        storage.update("k", request_count=2)

        columns = {col["name"] for col in inspect(engine).get_columns("evasive")}
        assert columns == {"session_id", "payload", "written_at"}
        assert storage.get("k").request_count == 2
        assert storage.reap(now=5200.0) == 1
        assert storage.get("k") is None


class TestUpsertFallback:
    def test_update_then_insert_path(self, engine) -> None:
        storage = SqlTableStorage(engine, native_upsert=False)

        storage.store("k", _record())
        storage.store("k", _record(request_count=2))
        storage.update("k", blocked_at=1001.0)

        assert _row_count(storage) == 1
        assert storage.get("k") == _record(request_count=2, blocked_at=1001.0)

    def test_duplicate_key_on_insert_is_retried_as_update(self, engine) -> None:
        SqlTableStorage(engine).store("k", _record())

        class _RacingStorage(SqlTableStorage):
            update_calls = 0

            def _update_row(self, conn, key, changes):
                self.update_calls += 1
                matched = super()._update_row(conn, key, changes)
                # Pretend the first UPDATE ran before the other writer's INSERT.
                return 0 if self.update_calls == 1 else matched

        racing = _RacingStorage(engine, native_upsert=False)
        racing.store("k", _record(request_uri="/winner"))

        assert racing.update_calls == 2
        assert _row_count(racing) == 1
        assert racing.get("k").request_uri == "/winner"


class TestReaping:
    def test_reaps_stale_rows_on_init(self, engine) -> None:
        clock = Mock(return_value=1000.0)
        first = SqlTableStorage(engine, clock=clock)
        first.store("old", _record("old"))
        clock.return_value = 80000.0
        first.store("fresh", _record("fresh"))

        clock.return_value = 1000.0 + 24 * 3600 + 1
        second = SqlTableStorage(engine, clock=clock)

        assert second.get("old") is None
        assert second.get("fresh") is not None

    def test_reap_on_init_can_be_disabled(self, engine) -> None:
        clock = Mock(return_value=1000.0)
        SqlTableStorage(engine, clock=clock).store("old", _record("old"))

        clock.return_value = 1000.0 + 24 * 3600 + 1
        storage = SqlTableStorage(engine, clock=clock, reap_on_init=False)

        assert storage.get("old") is not None
        assert storage.reap() == 1

    def test_reap_failure_on_init_is_logged_not_raised(self, engine, caplog) -> None:
        with caplog.at_level(logging.WARNING):
            storage = SqlTableStorage(engine, table_name="no_such_table", create_table=False)

        assert any(r.getMessage() == "sql_storage.reap_failed" for r in caplog.records)

        with pytest.raises(StorageError) as exc_info:
            storage.get("k")
        assert exc_info.value.code == "storage_io_error"


class TestLifecycle:
    def test_from_url_owns_and_disposes_engine(self, database_url) -> None:
        storage = SqlTableStorage.from_url(database_url, lock_timeout_seconds=1.0)
        storage.store("k", _record())

        storage.close()

        reopened = SqlTableStorage.from_url(database_url)
        assert reopened.get("k") == _record()
        reopened.close()

    def test_close_leaves_borrowed_engine_usable(self, engine) -> None:
        storage = SqlTableStorage(engine)
        storage.close()

        storage.store("k", _record())
        assert storage.get("k") is not None


class TestSharedTableLocking:
    """Several storage instances (one per worker) on one database file."""

    @pytest.fixture
    def instances(self, database_url):
        created: list[SqlTableStorage] = []

        def _make(count: int = 2, **kwargs) -> list[SqlTableStorage]:
            for _ in range(count):
                created.append(SqlTableStorage.from_url(database_url, **kwargs))
            return created[-count:]

        yield _make
        for storage in created:
            storage.close()

    def test_lock_is_held_in_the_database(self, instances) -> None:
        (holder,) = instances(1)
        (waiter,) = instances(1, lock_timeout_seconds=0.2)

        with holder.locked("k"):
            with pytest.raises(StorageError) as exc_info:
                with waiter.locked("k"):
                    pass

        assert exc_info.value.code == "storage_timeout"
        with waiter.locked("k"):
            pass

    def test_writes_inside_lock_commit_on_exit(self, instances) -> None:
        first, second = instances(2)

        with first.locked("k"):
            first.store("k", _record())
            first.update("k", request_count=2)
            assert first.get("k").request_count == 2

        assert second.get("k") == _record(request_count=2)

    def test_failure_inside_lock_rolls_back(self, instances) -> None:
        first, second = instances(2)

        with pytest.raises(RuntimeError):
            with first.locked("k"):
                first.store("k", _record())
                raise RuntimeError("handler crashed")

        assert second.get("k") is None

    def test_instances_sharing_a_table_never_exceed_page_count(self, instances) -> None:
        storages = instances(4, lock_timeout_seconds=10.0)
        guards = [
            RateGuard(storage, page_count=5, page_interval=60, blocking_period=60)
            for storage in storages
        ]
        identity = RequestIdentity(
            key="burst", ip_address="203.0.113.7", uri="/login", method="POST", now=1000.0
        )
        assert guards[0].evaluate(identity) is Verdict.ALLOW

        workers = 16
        barrier = threading.Barrier(workers)
        verdicts: list[Verdict] = []
        errors: list[BaseException] = []
        lock = threading.Lock()

        def _hit(guard: RateGuard) -> None:
            barrier.wait()
            try:
                verdict = guard.evaluate(identity)
            except Exception as exc:  # collected and asserted below
                with lock:
                    errors.append(exc)
                return
            with lock:
                verdicts.append(verdict)

        threads = [
            threading.Thread(target=_hit, args=(guards[i % len(guards)],))
            for i in range(workers)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert errors == []
        assert verdicts.count(Verdict.ALLOW) == 4
        assert verdicts.count(Verdict.BLOCK) == 12
        record = storages[0].get("burst")
        assert record.request_count == 5
        assert record.blocked_at == 1000.0


def test_concurrent_requests_for_new_key_create_one_row(database_url) -> None:
    storage = SqlTableStorage.from_url(database_url)
    guard = RateGuard(storage, page_count=5, page_interval=60, blocking_period=60)
    identity = RequestIdentity(
        key="burst", ip_address="203.0.113.7", uri="/login", method="POST", now=1000.0
    )
    workers = 8
    barrier = threading.Barrier(workers)
    verdicts: list[Verdict] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def _hit() -> None:
        barrier.wait()
        try:
            verdict = guard.evaluate(identity)
        except Exception as exc:  # collected and asserted below
            with lock:
                errors.append(exc)
            return
        with lock:
            verdicts.append(verdict)

    threads = [threading.Thread(target=_hit) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    try:
        assert errors == []
        assert verdicts.count(Verdict.ALLOW) == 5
        assert verdicts.count(Verdict.BLOCK) == 3
        assert _row_count(storage) == 1
        record = storage.get("burst")
        assert record.request_count == 5
        assert record.blocked_at == 1000.0
    finally:
        storage.close()
