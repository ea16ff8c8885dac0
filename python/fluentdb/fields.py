"""Column declarations for entity record types."""

from __future__ import annotations

import dataclasses
import types
import typing
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Union

COLUMN_INFO_KEY = "fluentdb"


class SemanticType(str, Enum):
    """The value family a column holds, driving coercion on read."""

    STRING = "string"
    INTEGER = "integer"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    TEMPORAL = "temporal"
    BINARY = "binary"


# bool must be checked before int
_SEMANTIC_TYPES: dict[type, SemanticType] = {
    bool: SemanticType.BOOLEAN,
    int: SemanticType.INTEGER,
    str: SemanticType.STRING,
    float: SemanticType.DECIMAL,
    Decimal: SemanticType.DECIMAL,
    datetime: SemanticType.TEMPORAL,
    date: SemanticType.TEMPORAL,
    time: SemanticType.TEMPORAL,
    bytes: SemanticType.BINARY,
}


@dataclass(frozen=True)
class ColumnInfo:
    """Column options declared on a field with :func:`mapped_column`."""

    name: str | None = None
    primary_key: bool = False
    generated: bool = False
    version: bool = False
    last_modified: bool = False
    soft_delete: bool = False
    nullable: bool | None = None
    transient: bool = False


def mapped_column(
    *,
    name: str | None = None,
    primary_key: bool = False,
    generated: bool = False,
    version: bool = False,
    last_modified: bool = False,
    soft_delete: bool = False,
    nullable: bool | None = None,
    transient: bool = False,
    default: Any = dataclasses.MISSING,
    default_factory: Any = dataclasses.MISSING,
) -> Any:
    """Declare a dataclass field with column options.

    Args:
        name: Explicit column name (otherwise derived by the naming strategy)
        primary_key: Whether this field is part of the primary key
        generated: Key value is produced by the database on insert
        version: Optimistic-lock version counter
        last_modified: Optimistic-lock modification timestamp
        soft_delete: Deletion timestamp used for soft deletes
        nullable: Override nullability inferred from the annotation
        transient: Exclude the field from persistence
        default: Default value
        default_factory: Callable producing the default value

    Returns:
        A ``dataclasses.field`` carrying the column options

    Example:
        >>> @dataclass
        ... class Customer:
        ...     name: str
        ...     id: int = mapped_column(primary_key=True, generated=True)
        ...     version: int = mapped_column(version=True, default=0)
    """
    # Generated keys and lock columns are filled in by the engine
    if default is dataclasses.MISSING and default_factory is dataclasses.MISSING:
        if generated or version or last_modified or soft_delete:
            default = None

    info = ColumnInfo(
        name=name,
        primary_key=primary_key,
        generated=generated,
        version=version,
        last_modified=last_modified,
        soft_delete=soft_delete,
        nullable=nullable,
        transient=transient,
    )
    return dataclasses.field(
        default=default,
        default_factory=default_factory,
        metadata={COLUMN_INFO_KEY: info},
    )


def column_info(field: dataclasses.Field) -> ColumnInfo:
    """Get the column options of a dataclass field (defaults when undeclared)."""
    return field.metadata.get(COLUMN_INFO_KEY) or ColumnInfo()


def unwrap_optional(hint: Any) -> tuple[Any, bool]:
    """Split ``X | None`` into ``(X, True)``; other hints return ``(hint, False)``."""
    origin = typing.get_origin(hint)
    if origin is Union or origin is types.UnionType:
        args = typing.get_args(hint)
        non_none = [a for a in args if a is not type(None)]
        if len(non_none) == 1 and len(non_none) < len(args):
            return non_none[0], True
    return hint, False


def semantic_type_for(python_type: Any) -> SemanticType | None:
    """Classify a Python type, or return None when it is not persistable."""
    if not isinstance(python_type, type):
        return None
    for candidate, semantic in _SEMANTIC_TYPES.items():
        if python_type is candidate:
            return semantic
    # subclasses (e.g. IntEnum, str enums) fall back to their base family
    for candidate, semantic in _SEMANTIC_TYPES.items():
        if issubclass(python_type, candidate):
            return semantic
    return None
