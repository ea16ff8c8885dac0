"""fluentdb - a small synchronous data-access engine with a fluent API."""

from __future__ import annotations

from fluentdb.adapters.sqlite import SQLitePool
from fluentdb.config import EntityLock, FluentConfig, LockType, OptimisticLockConfig
from fluentdb.criteria import (
    Q,
    and_,
    between,
    contains,
    endswith,
    eq,
    ge,
    gt,
    in_,
    is_not_null,
    is_null,
    le,
    like,
    lt,
    ne,
    not_,
    not_between,
    not_in,
    or_,
    startswith,
)
from fluentdb.descriptor import ColumnBinding, DescriptorCache, EntityDescriptor
from fluentdb.exceptions import (
    AcquireTimeoutError,
    ConditionError,
    ConfigError,
    DatabaseConnectionError,
    FluentDBError,
    MappingError,
    NotFoundError,
    OptimisticLockError,
    SessionStateError,
    SqlTemplateError,
    StatementExecutionError,
    StatementTimeoutError,
    TooManyResultsError,
    UnsafeOperationError,
)
from fluentdb.fields import SemanticType, mapped_column
from fluentdb.manager import FluentDB, Query
from fluentdb.mixins import SoftDeleteMixin
from fluentdb.query import Operation, QuerySpec, StatementBuilder
from fluentdb.results import BatchResult, Results
from fluentdb.session import Session, SessionState
from fluentdb.sqlfile import SqlFileLoader, SqlTemplate

__version__ = "0.1.0"

__all__ = [
    # Core
    "create_engine",
    "FluentDB",
    "Query",
    "Session",
    "SessionState",
    "SQLitePool",
    # Entity definition
    "mapped_column",
    "SemanticType",
    "SoftDeleteMixin",
    "ColumnBinding",
    "EntityDescriptor",
    "DescriptorCache",
    # Conditions
    "Q",
    "and_",
    "or_",
    "not_",
    "eq",
    "ne",
    "gt",
    "ge",
    "lt",
    "le",
    "like",
    "contains",
    "startswith",
    "endswith",
    "in_",
    "not_in",
    "between",
    "not_between",
    "is_null",
    "is_not_null",
    # Statements and results
    "Operation",
    "QuerySpec",
    "StatementBuilder",
    "Results",
    "BatchResult",
    "SqlTemplate",
    "SqlFileLoader",
    # Configuration
    "FluentConfig",
    "OptimisticLockConfig",
    "EntityLock",
    "LockType",
    # Errors
    "FluentDBError",
    "MappingError",
    "ConditionError",
    "ConfigError",
    "SqlTemplateError",
    "UnsafeOperationError",
    "SessionStateError",
    "OptimisticLockError",
    "NotFoundError",
    "TooManyResultsError",
    "DatabaseConnectionError",
    "AcquireTimeoutError",
    "StatementExecutionError",
    "StatementTimeoutError",
]


def create_engine(
    url: str,
    config: FluentConfig | None = None,
    *,
    cache: DescriptorCache | None = None,
    max_connections: int = 5,
) -> FluentDB:
    """Create a :class:`FluentDB` over a bundled connection pool.

    Args:
        url: Database URL.
            - SQLite file: sqlite:///path/to/db.sqlite
            - SQLite in memory: sqlite::memory:
        config: Engine configuration (dialect must match the URL)
        cache: Shared descriptor cache
        max_connections: Maximum number of pooled connections

    Example:
        >>> db = create_engine("sqlite:///app.db")
        >>> db = create_engine("sqlite::memory:", FluentConfig(batch_failure="collect"))
    """
    if url in ("sqlite::memory:", "sqlite://", "sqlite:///:memory:"):
        path = ":memory:"
    elif url.startswith("sqlite:///"):
        path = url[len("sqlite:///"):]
    else:
        raise ValueError(f"Unsupported database URL {url!r}; only sqlite URLs have a bundled pool")

    config = config or FluentConfig(dialect="sqlite")
    if config.dialect != "sqlite":
        raise ConfigError("dialect", config.dialect, f"URL {url!r} needs the sqlite dialect")
    return FluentDB(SQLitePool(path, max_connections=max_connections), config, cache)
