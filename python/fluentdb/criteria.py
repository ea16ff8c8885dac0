"""Condition trees for WHERE clauses.

Conditions are small immutable expression trees: :class:`Predicate` leaves
joined by :class:`Junction` (AND/OR) nodes and wrapped by :class:`Negation`.
They reference columns by name and carry their bound values; turning them
into SQL is the statement builder's job.

Example:
    >>> from fluentdb.criteria import Q, eq, gt, in_
    >>> cond = eq("status", "active") & (gt("age", 18) | in_("tier", ["gold", "vip"]))
    >>> cond = Q(status="active") & (Q(age__gt=18) | Q(tier__in=["gold", "vip"]))
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from fluentdb.exceptions import ConditionError

# operator name -> number of values (None: one iterable of any length)
PREDICATE_ARITY: dict[str, int | None] = {
    "eq": 1,
    "ne": 1,
    "gt": 1,
    "ge": 1,
    "lt": 1,
    "le": 1,
    "like": 1,
    "contains": 1,
    "startswith": 1,
    "endswith": 1,
    "in": None,
    "notin": None,
    "between": 2,
    "notbetween": 2,
    "isnull": 0,
    "isnotnull": 0,
}

# Django-style lookup suffix -> operator name
_LOOKUPS = {
    "eq": "eq",
    "exact": "eq",
    "ne": "ne",
    "gt": "gt",
    "gte": "ge",
    "ge": "ge",
    "lt": "lt",
    "lte": "le",
    "le": "le",
    "like": "like",
    "contains": "contains",
    "startswith": "startswith",
    "endswith": "endswith",
    "in": "in",
    "notin": "notin",
    "range": "between",
    "between": "between",
    "isnull": "isnull",
    "isnotnull": "isnotnull",
}


class Condition:
    """Base class for condition tree nodes; supports ``&``, ``|`` and ``~``."""

    def __and__(self, other: Condition) -> Condition:
        return and_(self, other)

    def __or__(self, other: Condition) -> Condition:
        return or_(self, other)

    def __invert__(self) -> Condition:
        return not_(self)

    def is_empty(self) -> bool:
        return False


@dataclass(frozen=True, eq=True)
class Predicate(Condition):
    """A leaf comparison against one column."""

    column: str
    op: str
    values: tuple[Any, ...] = ()

    def __post_init__(self) -> None:
        if self.op not in PREDICATE_ARITY:
            raise ConditionError(f"Unknown predicate operator {self.op!r}")
        arity = PREDICATE_ARITY[self.op]
        if arity is not None and len(self.values) != arity:
            raise ConditionError(
                f"{self.op} on {self.column!r} takes {arity} value(s), got {len(self.values)}"
            )


@dataclass(frozen=True, eq=True)
class Junction(Condition):
    """AND/OR of child conditions."""

    kind: str
    children: tuple[Condition, ...]

    def __post_init__(self) -> None:
        if self.kind not in ("AND", "OR"):
            raise ConditionError(f"Junction kind must be AND or OR, got {self.kind!r}")

    def is_empty(self) -> bool:
        return all(child.is_empty() for child in self.children)


@dataclass(frozen=True, eq=True)
class Negation(Condition):
    """NOT of a child condition."""

    child: Condition

    def is_empty(self) -> bool:
        return self.child.is_empty()


def _flatten(kind: str, conditions: Iterable[Condition | None]) -> tuple[Condition, ...]:
    children: list[Condition] = []
    for cond in conditions:
        if cond is None:
            continue
        if not isinstance(cond, Condition):
            raise ConditionError(f"Expected a Condition, got {type(cond).__name__}")
        if cond.is_empty():
            continue
        # a AND (b AND c) is a AND b AND c
        if isinstance(cond, Junction) and cond.kind == kind:
            children.extend(cond.children)
        else:
            children.append(cond)
    return tuple(children)


def and_(*conditions: Condition | None) -> Condition:
    """Combine conditions with AND (None and empty conditions are skipped)."""
    return Junction("AND", _flatten("AND", conditions))


def or_(*conditions: Condition | None) -> Condition:
    """Combine conditions with OR (None and empty conditions are skipped)."""
    return Junction("OR", _flatten("OR", conditions))


def not_(condition: Condition) -> Condition:
    return Negation(condition)


# ========== Predicate constructors ==========

def eq(column: str, value: Any) -> Predicate:
    """``column = value``; ``eq(col, None)`` is ``col IS NULL``."""
    if value is None:
        return Predicate(column, "isnull")
    return Predicate(column, "eq", (value,))


def ne(column: str, value: Any) -> Predicate:
    """``column != value``; ``ne(col, None)`` is ``col IS NOT NULL``."""
    if value is None:
        return Predicate(column, "isnotnull")
    return Predicate(column, "ne", (value,))


def gt(column: str, value: Any) -> Predicate:
    return Predicate(column, "gt", (value,))


def ge(column: str, value: Any) -> Predicate:
    return Predicate(column, "ge", (value,))


def lt(column: str, value: Any) -> Predicate:
    return Predicate(column, "lt", (value,))


def le(column: str, value: Any) -> Predicate:
    return Predicate(column, "le", (value,))


def like(column: str, pattern: str) -> Predicate:
    return Predicate(column, "like", (pattern,))


def contains(column: str, value: str) -> Predicate:
    """``column LIKE %value%``."""
    return Predicate(column, "contains", (value,))


def startswith(column: str, value: str) -> Predicate:
    return Predicate(column, "startswith", (value,))


def endswith(column: str, value: str) -> Predicate:
    return Predicate(column, "endswith", (value,))


def _as_values(column: str, values: Any) -> tuple[Any, ...]:
    if isinstance(values, (str, bytes)) or not isinstance(values, Iterable):
        raise ConditionError(f"IN on {column!r} needs an iterable of values, got {type(values).__name__}")
    return tuple(values)


def in_(column: str, values: Iterable[Any]) -> Predicate:
    """``column IN (...)``; an empty collection matches no rows."""
    return Predicate(column, "in", _as_values(column, values))


def not_in(column: str, values: Iterable[Any]) -> Predicate:
    """``column NOT IN (...)``; an empty collection matches every row."""
    return Predicate(column, "notin", _as_values(column, values))


def between(column: str, low: Any, high: Any) -> Predicate:
    return Predicate(column, "between", (low, high))


def not_between(column: str, low: Any, high: Any) -> Predicate:
    return Predicate(column, "notbetween", (low, high))


def is_null(column: str) -> Predicate:
    return Predicate(column, "isnull")


def is_not_null(column: str) -> Predicate:
    return Predicate(column, "isnotnull")


# ========== Q objects ==========

def parse_lookup(key: str) -> tuple[str, str]:
    """Split a Django-style key into column and operator name.

    ``age__gt`` -> ``("age", "gt")``; ``name`` -> ``("name", "eq")``.
    """
    if "__" in key:
        column, suffix = key.rsplit("__", 1)
        if suffix in _LOOKUPS:
            return column, _LOOKUPS[suffix]
    return key, "eq"


def lookup(key: str, value: Any) -> Predicate:
    """Build a predicate from one Django-style ``key=value`` pair."""
    column, op = parse_lookup(key)
    if op == "eq":
        return eq(column, value)
    if op == "ne":
        return ne(column, value)
    if op == "in":
        return in_(column, value)
    if op == "notin":
        return not_in(column, value)
    if op in ("between", "notbetween"):
        bounds = _as_values(column, value)
        if len(bounds) != 2:
            raise ConditionError(f"{op} on {column!r} needs exactly 2 values, got {len(bounds)}")
        return Predicate(column, op, bounds)
    if op == "isnull":
        return is_null(column) if value else is_not_null(column)
    if op == "isnotnull":
        return is_not_null(column) if value else is_null(column)
    return Predicate(column, op, (value,))


def Q(**filters: Any) -> Condition:  # noqa: N802
    """Django-style condition: keyword filters AND-ed together.

    Supported suffixes: ``__ne``, ``__gt``, ``__gte``, ``__lt``, ``__lte``,
    ``__like``, ``__contains``, ``__startswith``, ``__endswith``, ``__in``,
    ``__notin``, ``__range``/``__between``, ``__isnull``, ``__isnotnull``.

    Example:
        >>> Q(age__gt=18) | Q(vip=True)
        >>> (Q(age__gt=18) | Q(vip=True)) & ~Q(banned=True)
    """
    predicates = [lookup(key, value) for key, value in filters.items()]
    if len(predicates) == 1:
        return predicates[0]
    return and_(*predicates)
