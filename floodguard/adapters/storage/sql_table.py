"""Relational client record storage built on SQLAlchemy Core.

One row per client key::

    id         unique client key
    data       versioned JSON payload (see codec.py)
    timestamp  last-write UNIX seconds, used for reaping

Every write is an upsert. Dialects with a native statement use it
(``ON CONFLICT DO UPDATE`` on SQLite/PostgreSQL, ``ON DUPLICATE KEY UPDATE``
on MySQL/MariaDB). Other dialects run UPDATE, then INSERT when no row was
touched; if that INSERT loses a race to a concurrent writer, the
duplicate-key error is absorbed and the write is applied as an UPDATE.

Several storage instances (one per worker process, say) may share a table.
``locked(key)`` therefore holds a database lock covering the key for the
whole read-modify-write, and record operations called inside it run on that
locking transaction:

    SQLite      a no-op UPDATE takes the database RESERVED lock
    PostgreSQL  ``pg_advisory_xact_lock`` on a hash of the key
    others      ``SELECT ... FOR UPDATE`` on the key's row
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Callable, Iterator

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    event,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from floodguard.adapters.storage.base import (
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    DEFAULT_RETENTION_SECONDS,
    AbstractStorageBackend,
    ClientRecord,
    merge_record,
)
from floodguard.adapters.storage.codec import decode_record, encode_record
from floodguard.core.errors import StorageError, StorageNotFoundError
from floodguard.core.logging import hash_identifier

logger = logging.getLogger(__name__)

_ON_CONFLICT_DIALECTS = {
    "sqlite": sqlite,
    "postgresql": postgresql,
}
_ON_DUPLICATE_KEY_DIALECTS = {"mysql", "mariadb"}

# Driver messages for a lock wait that ran out (SQLite, MySQL, PostgreSQL).
_LOCK_TIMEOUT_MARKERS = ("database is locked", "lock wait timeout", "lock timeout")


class SqlTableStorage(AbstractStorageBackend):
    """Client record storage in a single relational table.

    Table and column names are configurable and used on every path (read,
    write, reap). The table is created on construction unless
    ``create_table`` is False, and stale rows are reaped once on
    construction unless ``reap_on_init`` is False. Reaping is best-effort:
    a failure is logged and construction still succeeds.
    """

    name = "sql"

    def __init__(
        self,
        engine: Engine,
        *,
        table_name: str = "flood_guard",
        id_column: str = "id",
        data_column: str = "data",
        time_column: str = "timestamp",
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
        lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        create_table: bool = True,
        reap_on_init: bool = True,
        native_upsert: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the table storage.

        Args:
            engine: SQLAlchemy engine; the caller keeps ownership unless the
                storage was built with :meth:`from_url`.
            table_name: Table holding one row per client key.
            id_column: Unique client key column.
            data_column: Encoded record column.
            time_column: Last-write UNIX seconds column.
            retention_seconds: Age after which rows are reaped.
            lock_timeout_seconds: Max wait for the per-key critical section.
            create_table: Create the table if it does not exist.
            reap_on_init: Reap stale rows once during construction.
            native_upsert: Use the dialect's upsert statement when it has
                one. When False, every dialect takes the UPDATE/INSERT path.
            clock: Time source function returning UNIX time in seconds.
        """
        super().__init__(
            retention_seconds=retention_seconds,
            lock_timeout_seconds=lock_timeout_seconds,
        )
        self._engine = engine
        self._owns_engine = False
        self._native_upsert = native_upsert
        self._clock = clock
        self._bound = threading.local()

        self._metadata = MetaData()
        self._table = Table(
            table_name,
            self._metadata,
            Column(id_column, String(255), primary_key=True),
            Column(data_column, Text, nullable=False),
            Column(time_column, Integer, nullable=False, index=True),
        )
        self._id_col = self._table.c[id_column]
        self._data_col = self._table.c[data_column]
        self._time_col = self._table.c[time_column]

        if create_table:
            with self._translate_errors("create_table"), self._engine.begin() as conn:
                self._metadata.create_all(conn, checkfirst=True)

        if reap_on_init:
            try:
                self.reap()
            except StorageError as exc:
                logger.warning(
                    "sql_storage.reap_failed",
                    extra={"table": table_name, "error_code": exc.code, "error_msg": exc.message},
                )

    @classmethod
    def from_url(cls, database_url: str, **kwargs: Any) -> "SqlTableStorage":
        """Build a storage with its own engine, disposed on :meth:`close`.

        SQLite connections get a busy timeout matching the lock timeout so
        concurrent writers wait instead of failing immediately.
        """
        url = make_url(database_url)
        engine = create_engine(url, pool_pre_ping=True)

        if url.get_backend_name() == "sqlite":
            busy_ms = int(kwargs.get("lock_timeout_seconds", DEFAULT_LOCK_TIMEOUT_SECONDS) * 1000)

            @event.listens_for(engine, "connect")
            def _set_sqlite_pragma(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
                cursor = dbapi_connection.cursor()
                cursor.execute(f"PRAGMA busy_timeout={busy_ms}")
                cursor.close()

        try:
            storage = cls(engine, **kwargs)
        except Exception:
            engine.dispose()
            raise
        storage._owns_engine = True
        return storage

    @property
    def table(self) -> Table:
        return self._table

    @contextmanager
    def locked(self, key: str) -> Iterator[None]:
        """Serialize work on ``key`` across threads and storage instances.

        The in-process key lock is taken first, then a transaction holding a
        database lock that covers ``key``. ``get``, ``store`` and ``update``
        called from the same thread inside the block run on that transaction,
        which commits when the block exits and rolls back if it raises.

        Raises:
            StorageError: ``storage_timeout`` if the key stays busy past the
                lock timeout, ``storage_io_error`` on other database failures.
        """
        with super().locked(key):
            with self._translate_errors("lock", key), self._engine.connect() as conn:
                with conn.begin():
                    self._lock_key(conn, key)
                    self._bound.conn = conn
                    try:
                        yield
                    finally:
                        self._bound.conn = None

    def _lock_key(self, conn: Connection, key: str) -> None:
        dialect = conn.dialect.name

        if dialect == "sqlite":
            # Any write statement takes the RESERVED lock, held until commit.
            conn.execute(
                update(self._table)
                .where(self._id_col == key)
                .values({self._id_col: self._id_col})
            )
        elif dialect == "postgresql":
            # Covers keys that have no row yet, unlike FOR UPDATE.
            conn.execute(select(func.pg_advisory_xact_lock(func.hashtext(key))))
        else:
            conn.execute(select(self._id_col).where(self._id_col == key).with_for_update())

    @contextmanager
    def _transaction(self, operation: str, key: str | None = None) -> Iterator[Connection]:
        """Yield the connection locked for this thread, or a fresh transaction."""
        bound = getattr(self._bound, "conn", None)
        with self._translate_errors(operation, key):
            if bound is not None:
                yield bound
            else:
                with self._engine.begin() as conn:
                    yield conn

    @contextmanager
    def _translate_errors(self, operation: str, key: str | None = None) -> Iterator[None]:
        """Re-raise SQLAlchemy failures as StorageError."""
        try:
            yield
        except PoolTimeoutError as exc:
            raise StorageError(
                code="storage_timeout",
                message=f"Timed out waiting for a database connection during {operation}",
                details=self._error_details(operation, key),
            ) from exc
        except OperationalError as exc:
            if _is_lock_timeout(exc):
                raise StorageError(
                    code="storage_timeout",
                    message=f"Timed out waiting for a database lock during {operation}",
                    details=self._error_details(operation, key),
                ) from exc
            raise StorageError(
                code="storage_io_error",
                message=f"Database error during {operation}: {type(exc).__name__}",
                details=self._error_details(operation, key),
            ) from exc
        except SQLAlchemyError as exc:
            raise StorageError(
                code="storage_io_error",
                message=f"Database error during {operation}: {type(exc).__name__}",
                details=self._error_details(operation, key),
            ) from exc

    def _error_details(self, operation: str, key: str | None) -> dict[str, Any]:
        details: dict[str, Any] = {"backend": self.name, "operation": operation}
        if key is not None:
            details["key_hash"] = hash_identifier(key)
        return details

    def _select_data(self, conn: Connection, key: str) -> str | None:
        row = conn.execute(select(self._data_col).where(self._id_col == key)).first()
        return None if row is None else row[0]

    def get(self, key: str) -> ClientRecord | None:
        with self._transaction("get", key) as conn:
            data = self._select_data(conn, key)
        if data is None:
            return None
        return decode_record(key, data)

    def store(self, key: str, record: ClientRecord) -> None:
        if record.key != key:
            record = replace(record, key=key)
        encoded = encode_record(record)
        with self._transaction("store", key) as conn:
            self._write(conn, key, encoded)

    def update(self, key: str, /, **changes: Any) -> ClientRecord:
        with self._transaction("update", key) as conn:
            data = self._select_data(conn, key)
            if data is None:
                raise StorageNotFoundError(
                    code="storage_not_found",
                    message="No client record to update",
                    details=self._error_details("update", key),
                )
            merged = merge_record(decode_record(key, data), changes)
            self._write(conn, key, encode_record(merged))
        return merged

    def reap(self, now: float | None = None) -> int:
        cutoff = int((self._clock() if now is None else now) - self._retention_seconds)
        with self._translate_errors("reap"), self._engine.begin() as conn:
            result = conn.execute(delete(self._table).where(self._time_col < cutoff))
        removed = result.rowcount or 0

        if removed:
            logger.info(
                "sql_storage.reaped",
                extra={
                    "table": self._table.name,
                    "removed": removed,
                    "retention_s": self._retention_seconds,
                },
            )
        return removed

    def close(self) -> None:
        if self._owns_engine:
            self._engine.dispose()

    def _write(self, conn: Connection, key: str, encoded: str) -> None:
        """Upsert the row for ``key`` in the caller's transaction."""
        changes = {self._data_col.name: encoded, self._time_col.name: int(self._clock())}
        values = {self._id_col.name: key, **changes}
        dialect = conn.dialect.name

        if self._native_upsert and dialect in _ON_CONFLICT_DIALECTS:
            stmt = _ON_CONFLICT_DIALECTS[dialect].insert(self._table).values(values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[self._id_col],
                set_={name: stmt.excluded[name] for name in changes},
            )
            conn.execute(stmt)
            return

        if self._native_upsert and dialect in _ON_DUPLICATE_KEY_DIALECTS:
            stmt = mysql.insert(self._table).values(values)
            stmt = stmt.on_duplicate_key_update({name: stmt.inserted[name] for name in changes})
            conn.execute(stmt)
            return

        if self._update_row(conn, key, changes):
            return

        try:
            with conn.begin_nested():
                conn.execute(insert(self._table).values(values))
        except IntegrityError:
            # Another writer inserted this key between our UPDATE and INSERT.
            logger.debug(
                "sql_storage.insert_conflict",
                extra={"table": self._table.name, "key_hash": hash_identifier(key)},
            )
            self._update_row(conn, key, changes)

    def _update_row(self, conn: Connection, key: str, changes: dict[str, Any]) -> int:
        """UPDATE the row for ``key``; return the number of rows matched."""
        result = conn.execute(
            update(self._table).where(self._id_col == key).values(changes)
        )
        return result.rowcount


def _is_lock_timeout(exc: OperationalError) -> bool:
    message = str(exc.orig).lower()
    return any(marker in message for marker in _LOCK_TIMEOUT_MARKERS)
