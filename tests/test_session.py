"""Tests for session lifecycle, statement execution and the SQLite pool."""

import pytest

from fluentdb import (
    AcquireTimeoutError,
    DatabaseConnectionError,
    FluentConfig,
    Session,
    SessionState,
    SessionStateError,
    SQLitePool,
    StatementExecutionError,
    StatementTimeoutError,
)
from fluentdb.connection import ConnectionHandle, ConnectionPool, UpdateCount

# ========== Fakes ==========


class FakeCursor:
    def __init__(self, columns, rows):
        self.columns = columns
        self._rows = list(rows)
        self.fetch_sizes = []
        self.closed = False

    def fetchmany(self, size):
        self.fetch_sizes.append(size)
        chunk, self._rows = self._rows[:size], self._rows[size:]
        return chunk

    def close(self):
        self.closed = True


class FakeStatement:
    def __init__(self, handle, sql):
        self.handle = handle
        self.sql = sql

    def execute_query(self, params, timeout=None):
        self.handle.log.append(("query", self.sql, tuple(params), timeout))
        self.handle.maybe_fail(self.sql)
        self.handle.cursor = FakeCursor(["id", "name"], self.handle.rows)
        return self.handle.cursor

    def execute_update(self, params, timeout=None):
        self.handle.log.append(("update", self.sql, tuple(params), timeout))
        self.handle.maybe_fail(self.sql)
        return UpdateCount(rowcount=1)

    def close(self):
        self.handle.closed_statements.append(self.sql)


class FakeHandle:
    def __init__(self):
        self.log = []
        self.rows = []
        self.cursor = None
        self.fail_on = None
        self.fail_with = RuntimeError("boom")
        self.fail_begin = False
        self.fail_commit = False
        self.fail_rollback = False
        self.closed_statements = []

    def maybe_fail(self, sql):
        if self.fail_on is not None and self.fail_on in sql:
            raise self.fail_with

    def prepare(self, sql):
        return FakeStatement(self, sql)

    def begin(self):
        if self.fail_begin:
            raise RuntimeError("cannot begin")
        self.log.append("BEGIN")

    def commit(self):
        if self.fail_commit:
            raise RuntimeError("cannot commit")
        self.log.append("COMMIT")

    def rollback(self):
        if self.fail_rollback:
            raise OSError("connection reset")
        self.log.append("ROLLBACK")


class FakePool:
    dialect = "sqlite"

    def __init__(self, handle=None, exhausted=False):
        self.handle = handle or FakeHandle()
        self.exhausted = exhausted
        self.acquired = 0
        self.released = 0

    def acquire(self, timeout=None):
        if self.exhausted:
            raise TimeoutError("no connection")
        self.acquired += 1
        return self.handle

    def release(self, handle):
        self.released += 1

    def close(self):
        pass


@pytest.fixture
def pool():
    return FakePool()


def test_fakes_satisfy_protocols(pool):
    assert isinstance(pool, ConnectionPool)
    assert isinstance(pool.handle, ConnectionHandle)


# ========== Lifecycle ==========


class TestLifecycle:
    def test_initial_state(self, pool):
        session = Session(pool)
        assert session.state is SessionState.NOT_STARTED
        assert pool.acquired == 0

    def test_begin_and_commit(self, pool):
        """Test the NOT_STARTED -> ACTIVE -> COMMITTED -> CLOSED path."""
        session = Session(pool).begin()
        assert session.state is SessionState.ACTIVE
        session.commit()
        assert session.state is SessionState.COMMITTED
        session.close()
        assert session.state is SessionState.CLOSED
        assert pool.handle.log == ["BEGIN", "COMMIT"]
        assert pool.released == 1

    def test_begin_twice(self, pool):
        session = Session(pool).begin()
        with pytest.raises(SessionStateError):
            session.begin()

    def test_close_rolls_back_active(self, pool):
        session = Session(pool).begin()
        session.close()
        assert pool.handle.log == ["BEGIN", "ROLLBACK"]
        assert session.state is SessionState.CLOSED

    def test_close_is_idempotent(self, pool):
        """Test the connection is returned exactly once."""
        session = Session(pool).begin()
        session.close()
        session.close()
        assert pool.released == 1

    def test_close_without_begin(self, pool):
        session = Session(pool)
        session.close()
        assert session.state is SessionState.CLOSED
        assert pool.released == 0

    def test_execute_requires_active(self, pool):
        session = Session(pool)
        with pytest.raises(SessionStateError) as exc_info:
            session.execute("DELETE FROM t WHERE id = ?", [1])
        assert exc_info.value.state is SessionState.NOT_STARTED

    def test_execute_after_commit(self, pool):
        session = Session(pool).begin()
        session.commit()
        with pytest.raises(SessionStateError):
            session.query("SELECT 1")

    def test_acquire_timeout(self):
        pool = FakePool(exhausted=True)
        session = Session(pool, config=FluentConfig(acquire_timeout=0.01))
        with pytest.raises(AcquireTimeoutError):
            session.begin()
        assert session.state is SessionState.CLOSED
        session.close()
        assert pool.released == 0

    def test_begin_failure_releases(self, pool):
        pool.handle.fail_begin = True
        session = Session(pool)
        with pytest.raises(DatabaseConnectionError):
            session.begin()
        assert pool.released == 1
        assert session.state is SessionState.CLOSED

    def test_commit_failure_rolls_back(self, pool):
        pool.handle.fail_commit = True
        session = Session(pool).begin()
        with pytest.raises(StatementExecutionError):
            session.commit()
        assert pool.handle.log[-1] == "ROLLBACK"
        assert session.state is SessionState.CLOSED
        assert pool.released == 1

    def test_rollback_failure_is_translated(self, pool):
        pool.handle.fail_rollback = True
        session = Session(pool).begin()
        with pytest.raises(StatementExecutionError) as exc_info:
            session.rollback()
        assert isinstance(exc_info.value.__cause__, OSError)
        assert session.state is SessionState.ROLLED_BACK
        session.close()
        assert pool.released == 1

    def test_close_reports_rollback_failure(self, pool):
        """Test the connection is released even when the rollback fails."""
        pool.handle.fail_rollback = True
        session = Session(pool).begin()
        with pytest.raises(StatementExecutionError):
            session.close()
        assert session.state is SessionState.CLOSED
        assert pool.released == 1


class TestContextManager:
    def test_commits_on_success(self, pool):
        with Session(pool) as session:
            session.execute("UPDATE t SET a = ?", [1])
        assert pool.handle.log[-1] == "COMMIT"
        assert session.state is SessionState.CLOSED

    def test_rolls_back_on_error(self, pool):
        with pytest.raises(KeyError):
            with Session(pool) as session:
                session.execute("UPDATE t SET a = ?", [1])
                raise KeyError("caller failure")
        assert pool.handle.log[-1] == "ROLLBACK"
        assert "COMMIT" not in pool.handle.log
        assert pool.released == 1


# ========== Statements ==========


class TestStatements:
    def test_execute_passes_params_and_timeout(self, pool):
        config = FluentConfig(statement_timeout=2.5)
        with Session(pool, config=config) as session:
            count = session.execute("UPDATE t SET a = ? WHERE id = ?", [1, 2])
            session.execute("UPDATE t SET a = ?", [3], timeout=0.5)
        assert count.rowcount == 1
        assert pool.handle.log[1] == ("update", "UPDATE t SET a = ? WHERE id = ?", (1, 2), 2.5)
        assert pool.handle.log[2][3] == 0.5

    def test_query_fetches_in_chunks(self, pool):
        """Test rows are buffered fetch_size at a time."""
        pool.handle.rows = [(i, f"n{i}") for i in range(5)]
        with Session(pool, config=FluentConfig(fetch_size=2)) as session:
            results = session.query("SELECT id, name FROM t")
        assert len(results) == 5
        assert pool.handle.cursor.fetch_sizes == [2, 2, 2, 2]
        assert pool.handle.cursor.closed
        assert results.dicts()[4] == {"id": 4, "name": "n4"}

    def test_results_usable_after_close(self, pool):
        pool.handle.rows = [(1, "a")]
        with Session(pool) as session:
            results = session.query("SELECT id, name FROM t")
        assert session.state is SessionState.CLOSED
        assert results.first() == {"id": 1, "name": "a"}

    def test_execute_many(self, pool):
        with Session(pool) as session:
            counts = session.execute_many("INSERT INTO t (a) VALUES (?)", [[1], [2], [3]])
        assert [c.rowcount for c in counts] == [1, 1, 1]
        assert [entry[2] for entry in pool.handle.log[1:4]] == [(1,), (2,), (3,)]

    def test_failure_rolls_back_and_closes(self, pool):
        """Test a failed statement aborts the session before propagating."""
        pool.handle.fail_on = "broken"
        session = Session(pool).begin()
        with pytest.raises(StatementExecutionError) as exc_info:
            session.execute("UPDATE broken SET a = 1")
        assert exc_info.value.sql == "UPDATE broken SET a = 1"
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert pool.handle.log[-1] == "ROLLBACK"
        assert session.state is SessionState.CLOSED
        assert pool.released == 1

    def test_timeout_is_distinct(self, pool):
        pool.handle.fail_on = "slow"
        pool.handle.fail_with = TimeoutError("deadline")
        session = Session(pool).begin()
        with pytest.raises(StatementTimeoutError):
            session.query("SELECT slow()")
        assert session.state is SessionState.CLOSED

    def test_statements_are_closed(self, pool):
        """Test every prepared statement is closed, failed ones included."""
        pool.handle.fail_on = "broken"
        with Session(pool) as session:
            session.execute("UPDATE t SET a = ?", [1])
            session.execute_many("INSERT INTO t (a) VALUES (?)", [[1], [2]])
            session.query("SELECT id, name FROM t")
        assert pool.handle.closed_statements == [
            "UPDATE t SET a = ?",
            "INSERT INTO t (a) VALUES (?)",
            "SELECT id, name FROM t",
        ]
        session = Session(pool).begin()
        with pytest.raises(StatementExecutionError):
            session.query("SELECT broken")
        assert pool.handle.closed_statements[-1] == "SELECT broken"


class TestJoinedSessions:
    def test_join_shares_transaction(self, pool):
        owner = Session(pool).begin()
        child = owner.join()
        assert child.owner is owner
        assert not child.is_owner
        assert child.is_active
        child.execute("UPDATE t SET a = ?", [1])
        child.commit()
        child.close()
        assert "COMMIT" not in pool.handle.log
        assert owner.is_active
        assert child.state is SessionState.CLOSED
        owner.commit()
        owner.close()
        assert pool.acquired == 1
        assert pool.released == 1

    def test_child_failure_rolls_back_owner(self, pool):
        pool.handle.fail_on = "broken"
        owner = Session(pool).begin()
        child = owner.join()
        with pytest.raises(StatementExecutionError):
            child.execute("UPDATE broken SET a = 1")
        assert owner.state is SessionState.CLOSED
        assert pool.released == 1

    def test_child_rollback(self, pool):
        owner = Session(pool).begin()
        owner.join().rollback()
        assert owner.state is SessionState.ROLLED_BACK

    def test_join_requires_active(self, pool):
        with pytest.raises(SessionStateError):
            Session(pool).join()


class TestSavepoints:
    def test_release_on_success(self, pool):
        with Session(pool) as session:
            with session.savepoint():
                session.execute("UPDATE t SET a = ?", [1])
        sqls = [entry[1] for entry in pool.handle.log if isinstance(entry, tuple)]
        assert sqls == ["SAVEPOINT fluentdb_sp1", "UPDATE t SET a = ?", "RELEASE SAVEPOINT fluentdb_sp1"]

    def test_failure_absorbed_by_savepoint(self, pool):
        """Test a failed statement inside a savepoint keeps the transaction."""
        pool.handle.fail_on = "broken"
        with Session(pool) as session:
            with pytest.raises(StatementExecutionError):
                with session.savepoint():
                    session.execute("UPDATE broken SET a = 1")
            assert session.is_active
            session.execute("UPDATE t SET a = ?", [2])
        sqls = [entry[1] for entry in pool.handle.log if isinstance(entry, tuple)]
        assert "ROLLBACK TO SAVEPOINT fluentdb_sp1" in sqls
        assert pool.handle.log[-1] == "COMMIT"


# ========== SQLite ==========


class TestSQLite:
    def test_commit_visible_to_other_sessions(self, sqlite_pool, run_ddl):
        run_ddl("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT)")
        with Session(sqlite_pool) as session:
            result = session.execute("INSERT INTO items (name) VALUES (?)", ["a"])
        assert result.rowcount == 1
        assert result.generated_key == 1
        with Session(sqlite_pool) as session:
            assert session.query("SELECT name FROM items").dicts() == [{"name": "a"}]

    def test_rollback_invisible_to_other_sessions(self, sqlite_pool, run_ddl):
        run_ddl("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT)")
        session = Session(sqlite_pool).begin()
        session.execute("INSERT INTO items (name) VALUES (?)", ["a"])
        session.rollback()
        session.close()
        with Session(sqlite_pool) as other:
            assert other.query("SELECT COUNT(*) FROM items").scalar() == 0

    def test_constraint_violation(self, sqlite_pool, run_ddl):
        run_ddl("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT UNIQUE)")
        session = Session(sqlite_pool).begin()
        session.execute("INSERT INTO items (name) VALUES (?)", ["a"])
        with pytest.raises(StatementExecutionError):
            session.execute("INSERT INTO items (name) VALUES (?)", ["a"])
        assert session.state is SessionState.CLOSED
        with Session(sqlite_pool) as other:
            assert other.query("SELECT COUNT(*) FROM items").scalar() == 0

    def test_statement_timeout(self, sqlite_pool):
        """Test a runaway query is interrupted at its deadline."""
        endless = (
            "WITH RECURSIVE r(n) AS (SELECT 1 UNION ALL SELECT n + 1 FROM r) "
            "SELECT COUNT(*) FROM r"
        )
        session = Session(sqlite_pool).begin()
        with pytest.raises(StatementTimeoutError):
            session.query(endless, timeout=0.05)
        assert session.state is SessionState.CLOSED

    def test_pool_exhaustion(self, sqlite_pool):
        config = FluentConfig(acquire_timeout=0.05)
        held = [Session(sqlite_pool, config=config).begin() for _ in range(sqlite_pool.max_connections)]
        with pytest.raises(AcquireTimeoutError):
            Session(sqlite_pool, config=config).begin()
        held[0].close()
        with Session(sqlite_pool, config=config) as session:
            assert session.query("SELECT 1").scalar() == 1
        for session in held[1:]:
            session.close()

    def test_memory_pool_shares_database(self):
        with SQLitePool(max_connections=2) as pool:
            with Session(pool) as session:
                session.execute("CREATE TABLE t (x INTEGER)")
                session.execute("INSERT INTO t (x) VALUES (?)", [7])
            first = pool.acquire()
            with Session(pool) as session:
                assert session.query("SELECT x FROM t").scalar() == 7
            pool.release(first)

    def test_closed_pool(self):
        pool = SQLitePool()
        pool.close()
        with pytest.raises(DatabaseConnectionError):
            Session(pool).begin()
