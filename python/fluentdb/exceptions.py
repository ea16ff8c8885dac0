"""Exception hierarchy for fluentdb.

Every error raised by the library derives from :class:`FluentDBError` and from
the closest builtin exception, so callers can catch either.
"""

from __future__ import annotations

from typing import Any


class FluentDBError(Exception):
    """Base class for all fluentdb errors."""


class MappingError(FluentDBError, TypeError):
    """A record type could not be described, or a row could not be converted.

    Never retryable: the mapping is static for the life of the process.
    """

    def __init__(self, message: str, *, entity: type | None = None, column: str | None = None) -> None:
        super().__init__(message)
        self.entity = entity
        self.column = column


class ConditionError(FluentDBError, ValueError):
    """A predicate was built with the wrong number or kind of values."""


class SqlTemplateError(FluentDBError, ValueError):
    """An SQL file has malformed comments or an unusable IF condition."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(f"{path}: {message}" if path else message)
        self.path = path


class ConfigError(FluentDBError, ValueError):
    """A configuration option has an invalid value."""

    def __init__(self, key: str, value: Any, message: str | None = None) -> None:
        super().__init__(message or f"Invalid value for {key!r}: {value!r}")
        self.key = key
        self.value = value


class UnsafeOperationError(FluentDBError):
    """Refusal to build an UPDATE or DELETE without a WHERE clause.

    Call ``affect_all()`` on the query to opt in to a whole-table mutation.
    """


class SessionStateError(FluentDBError, RuntimeError):
    """A session operation was invoked in a state that does not allow it."""

    def __init__(self, message: str, *, state: Any = None) -> None:
        super().__init__(message)
        self.state = state


class OptimisticLockError(FluentDBError):
    """An UPDATE or DELETE guarded by a lock column matched no row.

    The row was changed (or removed) by another transaction after it was read.
    """

    def __init__(self, message: str, *, entity: Any = None, column: str | None = None) -> None:
        super().__init__(message)
        self.entity = entity
        self.column = column


class NotFoundError(FluentDBError, LookupError):
    """A single-result query matched no row."""


class TooManyResultsError(FluentDBError, LookupError):
    """A single-result query matched more than one row."""

    def __init__(self, message: str, *, count: int | None = None) -> None:
        super().__init__(message)
        self.count = count


class DatabaseConnectionError(FluentDBError, ConnectionError):
    """Failure reported by the connection capability."""


class AcquireTimeoutError(DatabaseConnectionError):
    """No pooled connection became available before the acquire timeout."""


class StatementExecutionError(DatabaseConnectionError):
    """A statement failed while executing on a borrowed connection."""

    def __init__(self, message: str, *, sql: str | None = None) -> None:
        super().__init__(message)
        self.sql = sql


class StatementTimeoutError(StatementExecutionError):
    """A statement was aborted because its deadline expired."""


__all__ = [
    "FluentDBError",
    "MappingError",
    "ConditionError",
    "SqlTemplateError",
    "ConfigError",
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
