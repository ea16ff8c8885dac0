"""Statement building: query specifications compiled to SQL and parameters.

Every value reaches the database as a bound parameter; identifiers are only
ever taken from an :class:`~fluentdb.descriptor.EntityDescriptor`. For every
compiled statement ``len(params)`` equals the number of placeholders, in
left-to-right order.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from fluentdb.criteria import Condition, Junction, Negation, Predicate
from fluentdb.descriptor import EntityDescriptor
from fluentdb.dialect import Dialect, get_dialect
from fluentdb.exceptions import UnsafeOperationError


class Operation(str, Enum):
    SELECT = "select"
    COUNT = "count"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class Visibility(str, Enum):
    """Which rows of a soft-delete entity a statement sees."""

    LIVE = "live"
    ALL = "all"
    DELETED = "deleted"


@dataclass(frozen=True)
class QuerySpec:
    """Everything needed to build one statement for one entity type.

    ``order_by`` holds ``(ref, descending)`` pairs; ``assignments`` holds
    ``(ref, value)`` pairs used by INSERT (column values) and UPDATE (SET).
    """

    descriptor: EntityDescriptor
    condition: Condition | None = None
    order_by: tuple[tuple[str, bool], ...] = ()
    limit: int | None = None
    offset: int | None = None
    assignments: tuple[tuple[str, Any], ...] = ()
    affect_all: bool = False
    visibility: Visibility = Visibility.LIVE

    def evolve(self, **changes: Any) -> QuerySpec:
        return replace(self, **changes)

    @property
    def has_condition(self) -> bool:
        return self.condition is not None and not self.condition.is_empty()


@dataclass(frozen=True)
class CompiledStatement:
    """SQL text plus positional parameters."""

    sql: str
    params: tuple[Any, ...] = ()
    returning: tuple[str, ...] = field(default=())

    def __iter__(self):
        # allows ``sql, params = builder.build(...)``
        yield self.sql
        yield self.params


_COMPARISONS = {
    "eq": "=",
    "ne": "!=",
    "gt": ">",
    "ge": ">=",
    "lt": "<",
    "le": "<=",
    "like": "LIKE",
}

# escape character for contains/startswith/endswith patterns
LIKE_ESCAPE = "!"
_LIKE_PATTERNS = {"contains": "%{}%", "startswith": "{}%", "endswith": "%{}"}


def escape_like(value: Any) -> str:
    """Escape LIKE wildcards so ``value`` matches literally."""
    text = str(value)
    for char in (LIKE_ESCAPE, "%", "_"):
        text = text.replace(char, LIKE_ESCAPE + char)
    return text


class StatementBuilder:
    """Compiles :class:`QuerySpec` objects for one dialect.

    Example:
        >>> builder = StatementBuilder("sqlite")
        >>> spec = QuerySpec(cache.resolve(Customer), condition=eq("name", "A"))
        >>> builder.build(Operation.SELECT, spec).sql
        'SELECT id, name, version FROM customers WHERE name = ?'
    """

    def __init__(self, dialect: str | Dialect = "sqlite") -> None:
        self.dialect = get_dialect(dialect)

    def build(self, operation: Operation, spec: QuerySpec) -> CompiledStatement:
        """Build the statement for ``operation``.

        Raises:
            UnsafeOperationError: UPDATE/DELETE without a condition and
                without ``affect_all``
            MappingError: A column reference is unknown to the descriptor
            ValueError: Invalid LIMIT/OFFSET, or UPDATE without assignments
        """
        operation = Operation(operation)
        if operation is Operation.SELECT:
            return self._select(spec)
        if operation is Operation.COUNT:
            return self._count(spec)
        if operation is Operation.INSERT:
            return self._insert(spec)
        if operation is Operation.UPDATE:
            return self._update(spec)
        return self._delete(spec)

    # ========== Statements ==========

    def _select(self, spec: QuerySpec) -> CompiledStatement:
        desc = spec.descriptor
        params: list[Any] = []
        sql = f"SELECT {', '.join(desc.column_names)} FROM {desc.table}"
        sql += self._where(spec, params)
        if spec.order_by:
            parts = []
            for ref, descending in spec.order_by:
                column = desc.binding(ref).column
                parts.append(f"{column} DESC" if descending else f"{column} ASC")
            sql += " ORDER BY " + ", ".join(parts)
        clause, page_params = self.dialect.paginate(spec.limit, spec.offset, len(params) + 1)
        sql += clause
        params.extend(page_params)
        return CompiledStatement(sql, tuple(params))

    def _count(self, spec: QuerySpec) -> CompiledStatement:
        params: list[Any] = []
        sql = f"SELECT COUNT(*) AS count FROM {spec.descriptor.table}"
        sql += self._where(spec, params)
        return CompiledStatement(sql, tuple(params))

    def _insert(self, spec: QuerySpec) -> CompiledStatement:
        desc = spec.descriptor
        columns = [desc.binding(ref).column for ref, _ in spec.assignments]
        params = [value for _, value in spec.assignments]
        returning: tuple[str, ...] = ()
        key = desc.generated_key
        if key is not None and self.dialect.supports_returning:
            returning = (key.column,)

        if columns:
            placeholders = ", ".join(self.dialect.placeholder(i + 1) for i in range(len(columns)))
            sql = f"INSERT INTO {desc.table} ({', '.join(columns)}) VALUES ({placeholders})"
        else:
            sql = f"INSERT INTO {desc.table} DEFAULT VALUES"
        sql += self.dialect.returning(list(returning))
        return CompiledStatement(sql, tuple(params), returning)

    def _update(self, spec: QuerySpec) -> CompiledStatement:
        desc = spec.descriptor
        self._guard(Operation.UPDATE, spec)
        if not spec.assignments:
            raise ValueError(f"UPDATE of {desc.table} needs at least one assignment")
        params: list[Any] = []
        sets = []
        for ref, value in spec.assignments:
            params.append(value)
            sets.append(f"{desc.binding(ref).column} = {self.dialect.placeholder(len(params))}")
        sql = f"UPDATE {desc.table} SET {', '.join(sets)}"
        sql += self._where(spec, params)
        return CompiledStatement(sql, tuple(params))

    def _delete(self, spec: QuerySpec) -> CompiledStatement:
        self._guard(Operation.DELETE, spec)
        params: list[Any] = []
        sql = f"DELETE FROM {spec.descriptor.table}"
        sql += self._where(spec, params)
        return CompiledStatement(sql, tuple(params))

    @staticmethod
    def _guard(operation: Operation, spec: QuerySpec) -> None:
        if not spec.has_condition and not spec.affect_all:
            raise UnsafeOperationError(
                f"Refusing to {operation.value.upper()} every row of {spec.descriptor.table}; "
                "add a condition or call affect_all()"
            )

    # ========== WHERE ==========

    def _where(self, spec: QuerySpec, params: list[Any]) -> str:
        parts = []
        soft = spec.descriptor.soft_delete_column
        if soft is not None:
            if spec.visibility is Visibility.LIVE:
                parts.append(f"{soft} IS NULL")
            elif spec.visibility is Visibility.DELETED:
                parts.append(f"{soft} IS NOT NULL")
        if spec.has_condition:
            parts.append(self.render(spec.condition, spec.descriptor, params))  # type: ignore[arg-type]
        if not parts:
            return ""
        return " WHERE " + " AND ".join(parts)

    def render(self, condition: Condition, desc: EntityDescriptor, params: list[Any]) -> str:
        """Render a condition tree, appending its values to ``params``."""
        if isinstance(condition, Predicate):
            return self._predicate(condition, desc, params)
        if isinstance(condition, Negation):
            return f"NOT ({self.render(condition.child, desc, params)})"
        if isinstance(condition, Junction):
            children = [c for c in condition.children if not c.is_empty()]
            if len(children) == 1:
                return self.render(children[0], desc, params)
            rendered = [self.render(c, desc, params) for c in children]
            return "(" + f" {condition.kind} ".join(rendered) + ")"
        raise TypeError(f"Unsupported condition node {type(condition).__name__}")

    def _predicate(self, pred: Predicate, desc: EntityDescriptor, params: list[Any]) -> str:
        column = desc.binding(pred.column).column

        def bind(value: Any) -> str:
            params.append(value)
            return self.dialect.placeholder(len(params))

        op = pred.op
        if op in _COMPARISONS:
            return f"{column} {_COMPARISONS[op]} {bind(pred.values[0])}"
        if op in _LIKE_PATTERNS:
            pattern = _LIKE_PATTERNS[op].format(escape_like(pred.values[0]))
            return f"{column} LIKE {bind(pattern)} ESCAPE '{LIKE_ESCAPE}'"
        if op == "in":
            if not pred.values:
                return "1 = 0"
            return f"{column} IN ({', '.join(bind(v) for v in pred.values)})"
        if op == "notin":
            if not pred.values:
                return "1 = 1"
            return f"{column} NOT IN ({', '.join(bind(v) for v in pred.values)})"
        if op == "between":
            low, high = pred.values
            return f"{column} BETWEEN {bind(low)} AND {bind(high)}"
        if op == "notbetween":
            low, high = pred.values
            return f"{column} NOT BETWEEN {bind(low)} AND {bind(high)}"
        if op == "isnull":
            return f"{column} IS NULL"
        return f"{column} IS NOT NULL"


# ========== Raw SQL ==========

_NAMED_PARAM = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def compile_named(sql: str, params: Mapping[str, Any], dialect: str | Dialect = "sqlite") -> CompiledStatement:
    """Rewrite ``:name`` markers into the dialect's positional placeholders.

    Quoted text and ``::`` casts are left alone. A name used twice is bound
    twice.

    Raises:
        KeyError: A marker has no value in ``params``
    """
    dialect = get_dialect(dialect)
    out: list[str] = []
    values: list[Any] = []
    i, n = 0, len(sql)
    while i < n:
        ch = sql[i]
        if ch in ("'", '"'):
            end = sql.find(ch, i + 1)
            # doubled quotes are escapes inside the literal
            while end != -1 and end + 1 < n and sql[end + 1] == ch:
                end = sql.find(ch, end + 2)
            end = n if end == -1 else end + 1
            out.append(sql[i:end])
            i = end
            continue
        if ch == ":" and i + 1 < n and sql[i + 1] == ":":
            out.append("::")
            i += 2
            continue
        if ch == ":":
            match = _NAMED_PARAM.match(sql, i + 1)
            if match:
                name = match.group(0)
                if name not in params:
                    raise KeyError(f"No value for SQL parameter :{name}")
                values.append(params[name])
                out.append(dialect.placeholder(len(values)))
                i = match.end()
                continue
        out.append(ch)
        i += 1
    return CompiledStatement("".join(out), tuple(values))


def compile_raw(
    sql: str, params: Sequence[Any] | Mapping[str, Any] | None, dialect: str | Dialect = "sqlite"
) -> CompiledStatement:
    """Normalise raw SQL parameters: mappings are compiled, sequences pass through."""
    if params is None:
        return CompiledStatement(sql, ())
    if isinstance(params, Mapping):
        return compile_named(sql, params, dialect)
    if isinstance(params, (str, bytes)):
        raise TypeError("SQL parameters must be a sequence or a mapping, not a string")
    return CompiledStatement(sql, tuple(params))
