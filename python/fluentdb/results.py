"""Result containers returned by sessions and the façade."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from fluentdb.descriptor import EntityDescriptor
from fluentdb.exceptions import NotFoundError, TooManyResultsError
from fluentdb.mapper import ResultMapper

T = TypeVar("T")


class Results(Generic[T]):
    """Buffered rows of a SELECT, mapped to records on first access.

    Rows are fully fetched before the statement's connection is handed back,
    so a ``Results`` stays usable after its session closes. Without a
    descriptor the rows are returned as dictionaries.

    Example:
        >>> results = session.query(stmt, descriptor)
        >>> len(results)
        3
        >>> results.first().name
        'Alice'
    """

    def __init__(
        self,
        columns: Sequence[str],
        rows: Sequence[Sequence[Any]],
        descriptor: EntityDescriptor | None = None,
        mapper: ResultMapper | None = None,
    ) -> None:
        self.columns = list(columns)
        self._rows = list(rows)
        self._descriptor = descriptor
        self._mapper = mapper or ResultMapper()
        self._mapped: list[Any] | None = None

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[T]:
        return iter(self.all())

    def __getitem__(self, index: int) -> T:
        return self.all()[index]

    def __bool__(self) -> bool:
        return bool(self._rows)

    def __repr__(self) -> str:
        kind = self._descriptor.entity.__name__ if self._descriptor else "dict"
        return f"<Results {kind} rows={len(self._rows)}>"

    def dicts(self) -> list[dict[str, Any]]:
        """Get all rows as dictionaries keyed by column name."""
        return [dict(zip(self.columns, row, strict=False)) for row in self._rows]

    def all(self) -> list[T]:
        """Get all rows as records (or dictionaries without a descriptor)."""
        if self._mapped is None:
            rows = self.dicts()
            if self._descriptor is None:
                self._mapped = rows
            else:
                self._mapped = self._mapper.map_all(rows, self._descriptor)
        return list(self._mapped)

    def first(self) -> T | None:
        """Get the first row, or None when there are no rows."""
        if not self._rows:
            return None
        return self.all()[0]

    def one(self) -> T:
        """Get exactly one row.

        Raises:
            NotFoundError: No rows
            TooManyResultsError: More than one row
        """
        if not self._rows:
            raise NotFoundError(f"Expected exactly 1 row, got 0{self._subject()}")
        if len(self._rows) > 1:
            raise TooManyResultsError(
                f"Expected exactly 1 row, got {len(self._rows)}{self._subject()}",
                count=len(self._rows),
            )
        return self.all()[0]

    def one_or_none(self) -> T | None:
        if not self._rows:
            return None
        return self.one()

    def scalar(self) -> Any:
        """First column of the first row, or None."""
        if not self._rows:
            return None
        return self._rows[0][0]

    def _subject(self) -> str:
        return f" for {self._descriptor.entity.__name__}" if self._descriptor else ""


@dataclass(frozen=True)
class BatchFailure:
    index: int
    entity: Any
    error: BaseException


@dataclass
class BatchResult(Generic[T]):
    """Outcome of a batch operation.

    ``items`` are the entities that were written, ``row_counts`` the affected
    row count per written entity, ``failures`` the entities that were rolled
    back (only populated under the ``collect`` failure policy).
    """

    items: list[T] = field(default_factory=list)
    row_counts: list[int] = field(default_factory=list)
    failures: list[BatchFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def total_rows(self) -> int:
        return sum(self.row_counts)

    def __iter__(self) -> Iterator[T]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)
