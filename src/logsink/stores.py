"""Log stores (storage backends).

Stores are synchronous. The engine decides whether a write runs in a worker
thread (`supports_threads`) or inline on the event loop, so every store
guards its connection with a lock and never assumes which thread calls it.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Literal, Protocol

import duckdb

from .models import PersistedRow

Backend = Literal["sqlite", "duckdb"]

TABLE = "logs"


def schema_statements(integer: str = "INTEGER") -> tuple[str, ...]:
    """DDL for the logs table and its indexes.

    DuckDB's INTEGER is 32-bit, so it is given BIGINT for epoch milliseconds.
    """
    return (
        f"""
        CREATE TABLE IF NOT EXISTS {TABLE} (
          "timestamp" {integer},
          level {integer},
          hostname TEXT,
          pid {integer},
          service_name TEXT,
          name TEXT,
          message TEXT,
          meta TEXT
        )
        """,
        f'CREATE INDEX IF NOT EXISTS idx_logs_timestamp ON {TABLE}("timestamp")',
        f"CREATE INDEX IF NOT EXISTS idx_logs_level ON {TABLE}(level)",
        f"CREATE INDEX IF NOT EXISTS idx_logs_name ON {TABLE}(name)",
        f"CREATE INDEX IF NOT EXISTS idx_logs_hostname ON {TABLE}(hostname)",
        f"CREATE INDEX IF NOT EXISTS idx_logs_service_name ON {TABLE}(service_name, name)",
        f'CREATE INDEX IF NOT EXISTS idx_logs_service_name_level_time ON {TABLE}(service_name, name, level, "timestamp")',
    )


INSERT_SQL = (
    f'INSERT INTO {TABLE} ("timestamp", level, hostname, pid, service_name, name, message, meta) '
    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
)

# Owned SQLite connections only; a caller's connection keeps its own settings.
SQLITE_PRAGMAS = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
    "PRAGMA journal_size_limit = 5242880",
    "PRAGMA cache_size = -10000",
    "PRAGMA busy_timeout = 5000",
)


class InsertStatement(Protocol):
    def run(self, row: PersistedRow) -> None:
        """Insert a single row."""


class LogStore(Protocol):
    """A synchronous, transactional destination for persisted rows."""

    # True when writes may be issued from a worker thread.
    supports_threads: bool

    def provision_schema(self) -> None:
        """Create the logs table and its indexes if they do not exist yet."""

    def prepare_insert(self) -> InsertStatement:
        """Return a reusable single-row insert handle."""

    def execute_batch(self, rows: Sequence[PersistedRow]) -> None:
        """Insert all rows in one transaction (all or nothing)."""

    def close(self) -> None:
        """Close any underlying resources."""


class _ConnectionInsert:
    """Single-row insert bound to a DB-API style connection."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn

    def run(self, row: PersistedRow) -> None:
        self._conn.execute(INSERT_SQL, list(row))


class SQLiteLogStore:
    """SQLite store backed by the standard library driver."""

    def __init__(self, connection: sqlite3.Connection, *, threadsafe: bool = False) -> None:
        """Wrap an existing connection.

        Args:
            connection: An open `sqlite3` connection. It is used as-is: no
                pragmas are applied.
            threadsafe: Set when the connection was opened with
                `check_same_thread=False`, allowing writes from worker threads.
        """
        self._conn = connection
        self._lock = threading.Lock()
        self.supports_threads = threadsafe

    @classmethod
    def open(cls, path: str | Path) -> SQLiteLogStore:
        """Open a new connection at `path` and tune it for append-heavy writes."""
        conn = sqlite3.connect(str(path), check_same_thread=False, isolation_level=None)
        for pragma in SQLITE_PRAGMAS:
            conn.execute(pragma)
        return cls(conn, threadsafe=True)

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def provision_schema(self) -> None:
        with self._lock:
            caller_txn = self._conn.in_transaction
            for statement in schema_statements():
                self._conn.execute(statement)
            if not caller_txn:
                self._conn.commit()

    def prepare_insert(self) -> InsertStatement:
        return _ConnectionInsert(self._conn)

    def execute_batch(self, rows: Sequence[PersistedRow]) -> None:
        """Insert `rows` atomically.

        On a connection that already has a transaction open, the batch runs in
        a savepoint: a failure undoes only the batch, and the caller's
        transaction is left open for the caller to commit.
        """
        with self._lock:
            if self._conn.in_transaction:
                self._run_in_savepoint(rows)
                return
            insert = self.prepare_insert()
            self._conn.execute("BEGIN")
            try:
                for row in rows:
                    insert.run(row)
            except BaseException:
                self._conn.rollback()
                raise
            self._conn.commit()

    def _run_in_savepoint(self, rows: Sequence[PersistedRow]) -> None:
        insert = self.prepare_insert()
        self._conn.execute("SAVEPOINT logsink_batch")
        try:
            for row in rows:
                insert.run(row)
        except BaseException:
            self._conn.execute("ROLLBACK TO SAVEPOINT logsink_batch")
            self._conn.execute("RELEASE SAVEPOINT logsink_batch")
            raise
        self._conn.execute("RELEASE SAVEPOINT logsink_batch")

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class DuckDBLogStore:
    """DuckDB store, for deployments that already keep analytics in DuckDB."""

    def __init__(self, connection: duckdb.DuckDBPyConnection) -> None:
        self._conn = connection
        self._lock = threading.Lock()
        self.supports_threads = True

    @classmethod
    def open(cls, path: str | Path) -> DuckDBLogStore:
        """Create (or open) a DuckDB database at the given path."""
        return cls(duckdb.connect(str(path)))

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        return self._conn

    def provision_schema(self) -> None:
        with self._lock:
            for statement in schema_statements("BIGINT"):
                self._conn.execute(statement)

    def prepare_insert(self) -> InsertStatement:
        return _ConnectionInsert(self._conn)

    def execute_batch(self, rows: Sequence[PersistedRow]) -> None:
        with self._lock:
            insert = self.prepare_insert()
            self._conn.begin()
            try:
                for row in rows:
                    insert.run(row)
            except BaseException:
                self._conn.rollback()
                raise
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class _ListInsert:
    def __init__(self, target: list[PersistedRow]) -> None:
        self._target = target

    def run(self, row: PersistedRow) -> None:
        self._target.append(row)


class InMemoryLogStore:
    """In-memory store for tests and local debugging."""

    def __init__(self) -> None:
        """Create an empty in-memory store."""
        self._lock = threading.Lock()
        self._rows: list[PersistedRow] = []
        self.supports_threads = True
        self.closed = False

    def provision_schema(self) -> None:  # noqa: D401 - keep interface consistent
        """No-op."""

    def prepare_insert(self) -> InsertStatement:
        return _ListInsert(self._rows)

    def execute_batch(self, rows: Sequence[PersistedRow]) -> None:
        """Append all rows at once (thread-safe)."""
        with self._lock:
            self._rows.extend(rows)

    def close(self) -> None:
        self.closed = True

    def snapshot(self) -> Sequence[PersistedRow]:
        """Return a point-in-time copy of all stored rows."""
        with self._lock:
            return list(self._rows)


def open_store(database: str | Path | Any, *, backend: Backend = "sqlite") -> tuple[LogStore, bool]:
    """Resolve a database source into a store.

    Returns `(store, owned)`. A path opens a new connection the caller owns;
    anything else is treated as an existing connection that must be left open.
    """
    if isinstance(database, (str, Path)):
        if backend == "duckdb":
            return DuckDBLogStore.open(database), True
        return SQLiteLogStore.open(database), True

    if isinstance(database, sqlite3.Connection):
        return SQLiteLogStore(database), False
    if isinstance(database, duckdb.DuckDBPyConnection):
        return DuckDBLogStore(database), False
    raise TypeError(f"Unsupported database source: {type(database).__name__}")
