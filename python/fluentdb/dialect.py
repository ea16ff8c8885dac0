"""SQL dialects: placeholder style, pagination syntax and savepoints."""

from __future__ import annotations

from typing import Any

# LIMIT value meaning "no limit" when only OFFSET is given
_MYSQL_MAX_LIMIT = 18446744073709551615


def check_count(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")
    return value


class Dialect:
    """Base dialect. Subclasses override what differs."""

    name = "generic"
    supports_returning = False

    def placeholder(self, index: int) -> str:
        """Placeholder for the 1-based parameter ``index``."""
        return "?"

    def quote(self, identifier: str) -> str:
        # identifiers come from descriptors only; no quoting needed for them
        return identifier

    def paginate(
        self, limit: int | None, offset: int | None, next_index: int
    ) -> tuple[str, list[Any]]:
        """Render the pagination clause.

        Args:
            limit: Max rows, or None
            offset: Rows to skip, or None
            next_index: 1-based index of the next placeholder

        Returns:
            ``(clause, params)``; the clause starts with a space or is empty
        """
        if limit is not None:
            check_count("limit", limit)
        if offset is not None:
            check_count("offset", offset)
        if limit is None and offset is None:
            return "", []
        params: list[Any] = []
        clause = ""
        if limit is not None:
            clause += f" LIMIT {self.placeholder(next_index)}"
            params.append(limit)
        elif offset is not None:
            clause += f" LIMIT {self.placeholder(next_index)}"
            params.append(self.unbounded_limit())
        if offset is not None:
            clause += f" OFFSET {self.placeholder(next_index + len(params))}"
            params.append(offset)
        return clause, params

    def unbounded_limit(self) -> int:
        return -1

    def returning(self, columns: list[str]) -> str:
        if not self.supports_returning or not columns:
            return ""
        return " RETURNING " + ", ".join(columns)

    def savepoint(self, name: str) -> str:
        return f"SAVEPOINT {name}"

    def release_savepoint(self, name: str) -> str:
        return f"RELEASE SAVEPOINT {name}"

    def rollback_to_savepoint(self, name: str) -> str:
        return f"ROLLBACK TO SAVEPOINT {name}"

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class SQLiteDialect(Dialect):
    """SQLite: ``?`` placeholders, ``LIMIT -1`` for offset-only pagination."""

    name = "sqlite"


class PostgreSQLDialect(Dialect):
    """PostgreSQL: ``$n`` placeholders and ``RETURNING``."""

    name = "postgresql"
    supports_returning = True

    def placeholder(self, index: int) -> str:
        return f"${index}"

    def paginate(
        self, limit: int | None, offset: int | None, next_index: int
    ) -> tuple[str, list[Any]]:
        # PostgreSQL accepts OFFSET without LIMIT
        if limit is not None:
            check_count("limit", limit)
        if offset is not None:
            check_count("offset", offset)
        clause = ""
        params: list[Any] = []
        if limit is not None:
            clause += f" LIMIT {self.placeholder(next_index)}"
            params.append(limit)
        if offset is not None:
            clause += f" OFFSET {self.placeholder(next_index + len(params))}"
            params.append(offset)
        return clause, params


class MySQLDialect(Dialect):
    """MySQL: ``%s`` placeholders, maximal LIMIT for offset-only pagination."""

    name = "mysql"

    def placeholder(self, index: int) -> str:
        return "%s"

    def unbounded_limit(self) -> int:
        return _MYSQL_MAX_LIMIT


class OracleDialect(Dialect):
    """Oracle: ``:n`` placeholders and ``OFFSET .. ROWS FETCH NEXT .. ROWS ONLY``."""

    name = "oracle"

    def placeholder(self, index: int) -> str:
        return f":{index}"

    def paginate(
        self, limit: int | None, offset: int | None, next_index: int
    ) -> tuple[str, list[Any]]:
        if limit is not None:
            check_count("limit", limit)
        if offset is not None:
            check_count("offset", offset)
        if limit is None and offset is None:
            return "", []
        params: list[Any] = [offset or 0]
        clause = f" OFFSET {self.placeholder(next_index)} ROWS"
        if limit is not None:
            clause += f" FETCH NEXT {self.placeholder(next_index + 1)} ROWS ONLY"
            params.append(limit)
        return clause, params

    def release_savepoint(self, name: str) -> str:
        # Oracle releases savepoints implicitly at commit
        return ""


DIALECTS: dict[str, type[Dialect]] = {
    "sqlite": SQLiteDialect,
    "postgresql": PostgreSQLDialect,
    "postgres": PostgreSQLDialect,
    "mysql": MySQLDialect,
    "oracle": OracleDialect,
}


def get_dialect(name: str | Dialect) -> Dialect:
    """Get a dialect instance by name, or pass an instance through."""
    if isinstance(name, Dialect):
        return name
    try:
        return DIALECTS[name.lower()]()
    except KeyError:
        raise ValueError(f"Unknown dialect {name!r}; expected one of {sorted(DIALECTS)}") from None
