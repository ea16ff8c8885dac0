"""Pytest configuration and fixtures."""

import pytest

from fluentdb import FluentConfig, FluentDB, Session, SQLitePool


@pytest.fixture
def db_path(tmp_path):
    """Path of a fresh SQLite database file."""
    return str(tmp_path / "test.db")


@pytest.fixture
def sqlite_pool(db_path):
    """A file-backed SQLite connection pool."""
    pool = SQLitePool(db_path, max_connections=3)
    yield pool
    pool.close()


@pytest.fixture
def run_ddl(sqlite_pool):
    """Execute schema statements in their own committed session."""

    def run(*statements):
        with Session(sqlite_pool) as session:
            for sql in statements:
                session.execute(sql)

    return run


@pytest.fixture
def db(sqlite_pool):
    """A façade with default configuration."""
    return FluentDB(sqlite_pool)


@pytest.fixture
def collecting_db(sqlite_pool):
    """A façade whose batches record failures instead of aborting."""
    return FluentDB(sqlite_pool, FluentConfig(batch_failure="collect"))
