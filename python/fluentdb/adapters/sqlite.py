"""SQLite connection pool over the stdlib ``sqlite3`` module."""

from __future__ import annotations

import itertools
import queue
import sqlite3
import threading
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import date, datetime
from datetime import time as dt_time
from decimal import Decimal
from enum import Enum
from typing import Any

from fluentdb.connection import UpdateCount
from fluentdb.exceptions import DatabaseConnectionError
from fluentdb.logging import get_logger

logger = get_logger(__name__)

# VM instructions between deadline checks
_PROGRESS_STEPS = 1000

_memory_ids = itertools.count(1)


def to_sqlite(value: Any) -> Any:
    """Convert a Python value to one sqlite3 binds natively."""
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date, dt_time)):
        return value.isoformat()
    return value


@contextmanager
def _deadline(conn: sqlite3.Connection, timeout: float | None) -> Iterator[None]:
    """Interrupt the running statement once ``timeout`` seconds have passed."""
    if timeout is None:
        yield
        return
    expires = time.monotonic() + timeout

    def check() -> int:
        return 1 if time.monotonic() >= expires else 0

    conn.set_progress_handler(check, _PROGRESS_STEPS)
    try:
        yield
    except sqlite3.OperationalError as e:
        if time.monotonic() >= expires and "interrupt" in str(e).lower():
            raise TimeoutError(f"Statement exceeded its {timeout}s deadline") from e
        raise
    finally:
        conn.set_progress_handler(None, 0)


class SQLiteCursor:
    """Open result set; fetches run under the statement's deadline."""

    def __init__(self, cursor: sqlite3.Cursor, conn: sqlite3.Connection, timeout: float | None) -> None:
        self._cursor = cursor
        self._conn = conn
        self._timeout = timeout
        self.columns = [d[0] for d in cursor.description or ()]

    def fetchmany(self, size: int) -> list[tuple[Any, ...]]:
        with _deadline(self._conn, self._timeout):
            return self._cursor.fetchmany(size)

    def close(self) -> None:
        self._cursor.close()


class SQLiteStatement:
    """A statement prepared on one connection."""

    def __init__(self, conn: sqlite3.Connection, sql: str) -> None:
        self._conn = conn
        self.sql = sql

    def execute_query(self, params: Sequence[Any], timeout: float | None = None) -> SQLiteCursor:
        started = time.monotonic()
        with _deadline(self._conn, timeout):
            cursor = self._conn.execute(self.sql, [to_sqlite(p) for p in params])
        remaining = None if timeout is None else max(timeout - (time.monotonic() - started), 0.0)
        return SQLiteCursor(cursor, self._conn, remaining)

    def execute_update(self, params: Sequence[Any], timeout: float | None = None) -> UpdateCount:
        with _deadline(self._conn, timeout):
            cursor = self._conn.execute(self.sql, [to_sqlite(p) for p in params])
        try:
            generated = cursor.lastrowid if self.sql.lstrip()[:6].upper() == "INSERT" else None
            return UpdateCount(rowcount=max(cursor.rowcount, 0), generated_key=generated)
        finally:
            cursor.close()

    def close(self) -> None:
        # sqlite3 caches compiled statements per connection
        pass


class SQLiteConnection:
    """A pooled connection in autocommit mode with explicit transactions."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.raw = conn

    def prepare(self, sql: str) -> SQLiteStatement:
        return SQLiteStatement(self.raw, sql)

    def begin(self) -> None:
        self.raw.execute("BEGIN")

    def commit(self) -> None:
        if self.raw.in_transaction:
            self.raw.execute("COMMIT")

    def rollback(self) -> None:
        if self.raw.in_transaction:
            self.raw.execute("ROLLBACK")

    @property
    def in_transaction(self) -> bool:
        return self.raw.in_transaction

    def close(self) -> None:
        self.raw.close()


class SQLitePool:
    """Bounded pool of SQLite connections.

    Connections are opened lazily up to ``max_connections``. When all are
    borrowed, :meth:`acquire` blocks for at most ``timeout`` seconds and then
    raises :class:`TimeoutError`.

    ``":memory:"`` opens a shared-cache in-memory database private to this
    pool, so every pooled connection sees the same tables.

    Example:
        >>> pool = SQLitePool("app.db", max_connections=4)
        >>> handle = pool.acquire(timeout=1.0)
        >>> pool.release(handle)
    """

    dialect = "sqlite"

    def __init__(self, path: str = ":memory:", *, max_connections: int = 5, busy_timeout: float = 5.0) -> None:
        if max_connections < 1:
            raise ValueError(f"max_connections must be at least 1, got {max_connections}")
        self.max_connections = max_connections
        self._busy_timeout = busy_timeout
        self._idle: queue.LifoQueue[SQLiteConnection] = queue.LifoQueue()
        self._lock = threading.Lock()
        self._opened = 0
        self._closed = False
        self._anchor: sqlite3.Connection | None = None

        if path == ":memory:":
            self.database = f"file:fluentdb_mem_{next(_memory_ids)}?mode=memory&cache=shared"
            self._uri = True
            # the shared in-memory database lives while one connection is open
            self._anchor = self._connect()
        else:
            self.database = path
            self._uri = path.startswith("file:")

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                self.database,
                timeout=self._busy_timeout,
                check_same_thread=False,
                isolation_level=None,
                uri=self._uri,
            )
        except sqlite3.Error as e:
            raise DatabaseConnectionError(f"Failed to connect to SQLite database {self.database}: {e}") from e
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def acquire(self, timeout: float | None = None) -> SQLiteConnection:
        """Borrow a connection.

        Raises:
            TimeoutError: Every connection stayed borrowed for ``timeout`` seconds
            DatabaseConnectionError: The pool is closed or a connection failed to open
        """
        if self._closed:
            raise DatabaseConnectionError("Connection pool is closed")
        try:
            return self._idle.get_nowait()
        except queue.Empty:
            pass

        with self._lock:
            can_open = self._opened < self.max_connections
            if can_open:
                self._opened += 1
        if can_open:
            try:
                return SQLiteConnection(self._connect())
            except DatabaseConnectionError:
                with self._lock:
                    self._opened -= 1
                raise

        try:
            return self._idle.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError(
                f"No SQLite connection available within {timeout}s "
                f"({self.max_connections} in use)"
            ) from None

    def release(self, handle: SQLiteConnection) -> None:
        """Return a borrowed connection; an open transaction is rolled back."""
        if handle.in_transaction:
            logger.warning("pool.release_in_transaction", database=self.database)
            handle.rollback()
        if self._closed:
            handle.close()
            return
        self._idle.put(handle)

    def close(self) -> None:
        """Close idle connections; borrowed ones are closed on release."""
        self._closed = True
        while True:
            try:
                self._idle.get_nowait().close()
            except queue.Empty:
                break
        if self._anchor is not None:
            self._anchor.close()
            self._anchor = None

    def __enter__(self) -> SQLitePool:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<SQLitePool {self.database} max={self.max_connections}>"
