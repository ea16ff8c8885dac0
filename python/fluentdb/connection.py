"""Connection capability consumed by sessions.

fluentdb does not speak any wire protocol. It drives a pool of driver
connections through these protocols; :mod:`fluentdb.adapters.sqlite` is the
bundled implementation. Implementations signal an expired deadline (acquire
or statement) with the builtin :class:`TimeoutError`; any other failure is
propagated as the driver raised it.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class UpdateCount:
    """Result of a statement that does not return rows."""

    rowcount: int
    generated_key: Any = None


@runtime_checkable
class RowCursor(Protocol):
    """Open result set of a query."""

    @property
    def columns(self) -> list[str]:
        """Column labels in result order."""
        ...

    def fetchmany(self, size: int) -> Sequence[Sequence[Any]]:
        """Fetch up to ``size`` rows; an empty sequence means exhausted."""
        ...

    def close(self) -> None: ...


@runtime_checkable
class Statement(Protocol):
    """A prepared statement bound to one connection."""

    def execute_query(self, params: Sequence[Any], timeout: float | None = None) -> RowCursor: ...

    def execute_update(self, params: Sequence[Any], timeout: float | None = None) -> UpdateCount: ...

    def close(self) -> None: ...


@runtime_checkable
class ConnectionHandle(Protocol):
    """A borrowed connection."""

    def prepare(self, sql: str) -> Statement: ...

    def begin(self) -> None: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


@runtime_checkable
class ConnectionPool(Protocol):
    """Hands out connections."""

    dialect: str

    def acquire(self, timeout: float | None = None) -> ConnectionHandle:
        """Borrow a connection, waiting at most ``timeout`` seconds.

        Raises:
            TimeoutError: No connection became available in time
        """
        ...

    def release(self, handle: ConnectionHandle) -> None: ...

    def close(self) -> None: ...
