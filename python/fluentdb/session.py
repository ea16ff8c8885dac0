"""Sessions: one borrowed connection, one transaction.

A :class:`Session` walks a fixed state machine::

    NOT_STARTED -> ACTIVE -> COMMITTED | ROLLED_BACK -> CLOSED

Statements run only while ACTIVE. Closing is idempotent, rolls back an
ACTIVE transaction the session owns, and returns the connection to the pool
exactly once. Any failure while executing a statement rolls the transaction
back and closes the owning session before the error propagates.

A session joined to another (:meth:`Session.join`) shares its connection and
transaction; it never commits or releases anything itself.
"""

from __future__ import annotations

import itertools
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from enum import Enum
from typing import Any

from fluentdb.config import FluentConfig
from fluentdb.connection import ConnectionHandle, ConnectionPool, UpdateCount
from fluentdb.descriptor import EntityDescriptor
from fluentdb.dialect import Dialect, get_dialect
from fluentdb.exceptions import (
    AcquireTimeoutError,
    DatabaseConnectionError,
    SessionStateError,
    StatementExecutionError,
    StatementTimeoutError,
)
from fluentdb.logging import get_logger
from fluentdb.mapper import ResultMapper
from fluentdb.results import Results

logger = get_logger(__name__)

_session_ids = itertools.count(1)


class SessionState(str, Enum):
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    CLOSED = "closed"


class Session:
    """A unit of work over one pooled connection.

    Use it as a context manager: the transaction begins on entry, commits on
    normal exit, rolls back on an exception and the session always closes.

    Example:
        >>> with Session(pool) as session:
        ...     session.execute("UPDATE accounts SET balance = ? WHERE id = ?", [10, 1])
        ...     rows = session.query("SELECT id, balance FROM accounts")
    """

    def __init__(
        self,
        pool: ConnectionPool,
        *,
        config: FluentConfig | None = None,
        mapper: ResultMapper | None = None,
        _parent: Session | None = None,
    ) -> None:
        self._pool = pool
        self.config = config or FluentConfig(dialect=getattr(pool, "dialect", "sqlite"))
        self.dialect: Dialect = get_dialect(self.config.dialect)
        self.mapper = mapper or ResultMapper(self.config.string_trim)
        self.id = next(_session_ids)
        self._parent = _parent
        self._handle: ConnectionHandle | None = None
        self._state = SessionState.NOT_STARTED
        self._closed = False
        self._released = False
        self._savepoint_depth = 0
        self._savepoint_ids = itertools.count(1)

    # ========== State ==========

    @property
    def owner(self) -> Session:
        """The session that owns the connection and the transaction."""
        return self._parent.owner if self._parent is not None else self

    @property
    def is_owner(self) -> bool:
        return self._parent is None

    @property
    def state(self) -> SessionState:
        if self._parent is not None:
            return SessionState.CLOSED if self._closed else self._parent.state
        return self._state

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    def _require_active(self, action: str) -> None:
        state = self.state
        if state is not SessionState.ACTIVE:
            raise SessionStateError(f"Cannot {action} a session in state {state.value}", state=state)

    def __repr__(self) -> str:
        role = "owner" if self.is_owner else f"joined:{self.owner.id}"
        return f"<Session {self.id} {role} {self.state.value}>"

    # ========== Lifecycle ==========

    def begin(self) -> Session:
        """Borrow a connection and start the transaction.

        Raises:
            SessionStateError: The session was already begun
            AcquireTimeoutError: The pool had no free connection in time
        """
        if not self.is_owner or self._state is not SessionState.NOT_STARTED:
            raise SessionStateError(f"Cannot begin a session in state {self.state.value}", state=self.state)

        timeout = self.config.acquire_timeout
        try:
            handle = self._pool.acquire(timeout)
        except TimeoutError as e:
            self._state = SessionState.CLOSED
            self._released = True
            raise AcquireTimeoutError(f"No connection available within {timeout}s") from e
        except Exception:
            self._state = SessionState.CLOSED
            self._released = True
            raise

        self._handle = handle
        try:
            handle.begin()
        except Exception as e:
            self._release()
            self._state = SessionState.CLOSED
            raise DatabaseConnectionError(f"Failed to begin transaction: {e}") from e

        self._state = SessionState.ACTIVE
        logger.debug("session.begin", session=self.id)
        return self

    def join(self) -> Session:
        """Open a session that participates in this session's transaction."""
        self._require_active("join")
        return Session(self._pool, config=self.config, mapper=self.mapper, _parent=self.owner)

    def commit(self) -> None:
        """Commit the transaction. A joined session leaves that to its owner."""
        self._require_active("commit")
        if not self.is_owner:
            return
        handle = self._handle
        assert handle is not None
        try:
            handle.commit()
        except Exception as e:
            self._abort()
            raise StatementExecutionError(f"Commit failed: {e}") from e
        self._state = SessionState.COMMITTED
        logger.debug("session.commit", session=self.id)

    def rollback(self) -> None:
        """Roll back the transaction (a joined session rolls back its owner)."""
        if not self.is_owner:
            self.owner.rollback()
            return
        self._require_active("roll back")
        handle = self._handle
        assert handle is not None
        try:
            handle.rollback()
        except Exception as e:
            raise StatementExecutionError(f"Rollback failed: {e}") from e
        finally:
            self._state = SessionState.ROLLED_BACK
            logger.debug("session.rollback", session=self.id)

    def close(self) -> None:
        """Release the session. Safe to call more than once."""
        if not self.is_owner:
            self._closed = True
            return
        if self._state is SessionState.CLOSED:
            return
        try:
            if self._state is SessionState.ACTIVE:
                self.rollback()
        finally:
            self._release()
            self._state = SessionState.CLOSED
            logger.debug("session.close", session=self.id)

    def _release(self) -> None:
        if self._released:
            return
        self._released = True
        handle, self._handle = self._handle, None
        if handle is not None:
            self._pool.release(handle)

    def _abort(self) -> None:
        """Roll back and close the owning session after a failed statement."""
        owner = self.owner
        if owner._state is SessionState.ACTIVE:
            try:
                owner.rollback()
            finally:
                owner.close()
        else:
            owner.close()

    def __enter__(self) -> Session:
        if self.is_owner and self._state is SessionState.NOT_STARTED:
            self.begin()
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        try:
            if self.is_active:
                if exc_type is None:
                    self.commit()
                else:
                    self.rollback()
        finally:
            self.close()

    # ========== Statements ==========

    def execute(self, sql: str, params: Sequence[Any] = (), timeout: float | None = None) -> UpdateCount:
        """Run a statement that returns no rows.

        Raises:
            SessionStateError: The session is not ACTIVE
            StatementTimeoutError: The statement deadline expired
            StatementExecutionError: The driver reported a failure
        """
        self._require_active("execute on")
        logger.debug("sql.execute", session=self.id, sql=sql, params=len(params))
        handle = self.owner._handle
        assert handle is not None
        with self._failing(sql):
            statement = handle.prepare(sql)
            try:
                return statement.execute_update(params, self._timeout(timeout))
            finally:
                statement.close()

    def execute_many(
        self, sql: str, param_sets: Sequence[Sequence[Any]], timeout: float | None = None
    ) -> list[UpdateCount]:
        """Prepare ``sql`` once and run it for every parameter set."""
        self._require_active("execute on")
        logger.debug("sql.execute", session=self.id, sql=sql, params=len(param_sets[0]) if param_sets else 0,
                     batch=len(param_sets))
        handle = self.owner._handle
        assert handle is not None
        with self._failing(sql):
            statement = handle.prepare(sql)
            try:
                return [statement.execute_update(params, self._timeout(timeout)) for params in param_sets]
            finally:
                statement.close()

    def query(
        self,
        sql: str,
        params: Sequence[Any] = (),
        descriptor: EntityDescriptor | None = None,
        timeout: float | None = None,
    ) -> Results[Any]:
        """Run a statement that returns rows and buffer them.

        Rows are fetched ``config.fetch_size`` at a time. With a descriptor
        the result maps rows to records, otherwise it yields dictionaries.
        """
        self._require_active("query on")
        logger.debug("sql.execute", session=self.id, sql=sql, params=len(params))
        handle = self.owner._handle
        assert handle is not None
        fetch_size = self.config.fetch_size
        with self._failing(sql):
            statement = handle.prepare(sql)
            try:
                cursor = statement.execute_query(params, self._timeout(timeout))
                try:
                    columns = list(cursor.columns)
                    rows: list[Sequence[Any]] = []
                    while True:
                        chunk = cursor.fetchmany(fetch_size)
                        if not chunk:
                            break
                        rows.extend(chunk)
                finally:
                    cursor.close()
            finally:
                statement.close()
        return Results(columns, rows, descriptor, self.mapper)

    def _timeout(self, timeout: float | None) -> float | None:
        return timeout if timeout is not None else self.config.statement_timeout

    @contextmanager
    def _failing(self, sql: str) -> Iterator[None]:
        """Translate driver failures, rolling back unless a savepoint absorbs them."""
        try:
            yield
        except TimeoutError as e:
            if not self.owner._savepoint_depth:
                self._abort()
            raise StatementTimeoutError(f"Statement timed out: {e}", sql=sql) from e
        except Exception as e:
            if not self.owner._savepoint_depth:
                self._abort()
            raise StatementExecutionError(f"Statement failed: {e}", sql=sql) from e

    # ========== Savepoints ==========

    @contextmanager
    def savepoint(self) -> Iterator[Session]:
        """Run a block under a savepoint.

        A failure inside the block rolls back to the savepoint and propagates;
        the surrounding transaction stays ACTIVE.
        """
        self._require_active("create a savepoint on")
        owner = self.owner
        name = f"fluentdb_sp{next(owner._savepoint_ids)}"
        self.execute(self.dialect.savepoint(name))
        owner._savepoint_depth += 1
        try:
            yield self
        except Exception:
            owner._savepoint_depth -= 1
            self.execute(self.dialect.rollback_to_savepoint(name))
            raise
        else:
            owner._savepoint_depth -= 1
            release = self.dialect.release_savepoint(name)
            if release:
                self.execute(release)
