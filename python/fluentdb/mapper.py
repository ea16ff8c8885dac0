"""Row-to-record conversion.

The mapper turns one row (a mapping of column name to raw driver value) into
an instance of the descriptor's record type. Column lookup is
case-insensitive. Raw values are coerced with a fixed table keyed by the
field's Python type; anything outside that table is a :class:`MappingError`
naming the column.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, date, datetime, time
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from fluentdb.descriptor import ColumnBinding, EntityDescriptor
from fluentdb.exceptions import MappingError

TRUE_STRINGS = frozenset({"true", "1", "y", "yes", "t"})
FALSE_STRINGS = frozenset({"false", "0", "n", "no", "f"})

STRING_TRIM_POLICIES = ("none", "right", "both")


class _Unconvertible(Exception):
    """Raised by a coercion when the raw value does not fit the target type."""


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, (float, Decimal)):
        if value != value or value in (float("inf"), float("-inf")):
            raise _Unconvertible
        if value != int(value):
            raise _Unconvertible
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            raise _Unconvertible from None
    raise _Unconvertible


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        raise _Unconvertible
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            raise _Unconvertible from None
    raise _Unconvertible


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise _Unconvertible
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        # via str: Decimal(0.1) would carry the binary expansion
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            raise _Unconvertible from None
    raise _Unconvertible


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in TRUE_STRINGS:
            return True
        if lowered in FALSE_STRINGS:
            return False
    raise _Unconvertible


def _to_str(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError:
            raise _Unconvertible from None
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return str(value)
    raise _Unconvertible


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip())
        except ValueError:
            raise _Unconvertible from None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # epoch seconds
        return datetime.fromtimestamp(value, UTC)
    raise _Unconvertible


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) > 10:
                return datetime.fromisoformat(text).date()
            return date.fromisoformat(text)
        except ValueError:
            raise _Unconvertible from None
    raise _Unconvertible


def _to_time(value: Any) -> time:
    if isinstance(value, datetime):
        return value.time()
    if isinstance(value, time):
        return value
    if isinstance(value, str):
        try:
            return time.fromisoformat(value.strip())
        except ValueError:
            raise _Unconvertible from None
    raise _Unconvertible


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    raise _Unconvertible


# target base type -> coercion; order matters for subclass lookup
COERCIONS: dict[type, Callable[[Any], Any]] = {
    bool: _to_bool,
    int: _to_int,
    float: _to_float,
    Decimal: _to_decimal,
    str: _to_str,
    datetime: _to_datetime,
    date: _to_date,
    time: _to_time,
    bytes: _to_bytes,
}


def _coercion_for(python_type: type) -> Callable[[Any], Any] | None:
    coerce = COERCIONS.get(python_type)
    if coerce is not None:
        return coerce
    for base, candidate in COERCIONS.items():
        if issubclass(python_type, base):
            return candidate
    return None


class ResultMapper:
    """Converts rows to record instances.

    Args:
        string_trim: ``"none"``, ``"right"`` or ``"both"``; whitespace
            trimming applied to string columns on read
    """

    def __init__(self, string_trim: str = "none") -> None:
        if string_trim not in STRING_TRIM_POLICIES:
            raise ValueError(f"string_trim must be one of {STRING_TRIM_POLICIES}, got {string_trim!r}")
        self.string_trim = string_trim

    def map(self, row: Mapping[str, Any], descriptor: EntityDescriptor) -> Any:
        """Build one record from one row.

        Raises:
            MappingError: A value cannot be converted, a non-nullable field
                got NULL, or a required column is missing from the row
        """
        lowered = {str(key).lower(): value for key, value in row.items()}
        entity = descriptor.entity
        # bypasses __init__; every field is assigned below
        instance = object.__new__(entity)

        for binding in descriptor.columns:
            key = binding.column.lower()
            if key in lowered:
                value = self.convert(lowered[key], binding, descriptor)
            elif binding.optional:
                value = binding.zero_value()
            else:
                raise MappingError(
                    f"{entity.__name__}.{binding.field}: column {binding.column!r} missing from result row",
                    entity=entity,
                    column=binding.column,
                )
            object.__setattr__(instance, binding.field, value)

        for name, default, factory in descriptor.transient_fields:
            object.__setattr__(instance, name, factory() if factory is not None else default)

        return instance

    def map_all(self, rows: Iterable[Mapping[str, Any]], descriptor: EntityDescriptor) -> list[Any]:
        return [self.map(row, descriptor) for row in rows]

    def convert(self, value: Any, binding: ColumnBinding, descriptor: EntityDescriptor) -> Any:
        """Coerce one raw value to the binding's Python type."""
        entity = descriptor.entity
        if value is None:
            if not binding.nullable:
                raise MappingError(
                    f"{entity.__name__}.{binding.field}: NULL in non-nullable column {binding.column!r}",
                    entity=entity,
                    column=binding.column,
                )
            return None

        target = binding.python_type
        coerce = _coercion_for(target)
        if coerce is None:
            raise MappingError(
                f"{entity.__name__}.{binding.field}: no conversion to {target.__name__}",
                entity=entity,
                column=binding.column,
            )
        try:
            converted = coerce(value)
            if isinstance(converted, str):
                converted = self._trim(converted)
            if issubclass(target, Enum) or (target is not type(converted) and target not in COERCIONS):
                converted = target(converted)
        except (_Unconvertible, ValueError, TypeError):
            raise MappingError(
                f"{entity.__name__}.{binding.field}: cannot convert {type(value).__name__} "
                f"value {value!r} from column {binding.column!r} to {target.__name__}",
                entity=entity,
                column=binding.column,
            ) from None
        return converted

    def _trim(self, value: str) -> str:
        if self.string_trim == "right":
            return value.rstrip()
        if self.string_trim == "both":
            return value.strip()
        return value
