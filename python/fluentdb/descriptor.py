"""Entity descriptors: how a record type maps onto a table.

A descriptor is computed once per record type and cached in a
:class:`DescriptorCache`. Descriptors are frozen, so a cache can be shared
between threads without locking.
"""

from __future__ import annotations

import dataclasses
import re
import sys
import typing
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, ClassVar

from fluentdb.exceptions import MappingError
from fluentdb.fields import SemanticType, column_info, semantic_type_for, unwrap_optional
from fluentdb.logging import get_logger

logger = get_logger(__name__)

NamingStrategy = Callable[[str], str]

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def snake_case(name: str) -> str:
    """``CustomerOrder`` / ``createdAt`` -> ``customer_order`` / ``created_at``."""
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def upper_snake(name: str) -> str:
    """``createdAt`` -> ``CREATED_AT``."""
    return snake_case(name).upper()


def identity(name: str) -> str:
    return name


NAMING_STRATEGIES: dict[str, NamingStrategy] = {
    "snake_case": snake_case,
    "upper_snake": upper_snake,
    "identity": identity,
}


def get_naming_strategy(naming: str | NamingStrategy) -> NamingStrategy:
    """Look up a naming strategy by name, or pass a callable through."""
    if callable(naming):
        return naming
    try:
        return NAMING_STRATEGIES[naming]
    except KeyError:
        raise ValueError(
            f"Unknown naming strategy {naming!r}; expected one of {sorted(NAMING_STRATEGIES)}"
        ) from None


def pluralize(word: str) -> str:
    """Naive English plural used for derived table names."""
    lower = word.lower()
    if lower.endswith("y") and len(word) > 1 and lower[-2] not in "aeiou":
        return word[:-1] + ("IES" if word.isupper() else "ies")
    if lower.endswith(("s", "x", "z", "ch", "sh")):
        return word + ("ES" if word.isupper() else "es")
    return word + ("S" if word.isupper() else "s")


@dataclass(frozen=True)
class ColumnBinding:
    """Binds one record field to one column."""

    field: str
    column: str
    semantic_type: SemanticType
    python_type: type
    nullable: bool = False
    primary_key: bool = False
    generated: bool = False
    version: bool = False
    last_modified: bool = False
    soft_delete: bool = False
    has_default: bool = False
    default: Any = None
    default_factory: Callable[[], Any] | None = None

    @property
    def optional(self) -> bool:
        """Whether a row may omit this column."""
        return self.nullable or self.has_default

    def zero_value(self) -> Any:
        """Value assigned when the column is absent from a row."""
        if self.default_factory is not None:
            return self.default_factory()
        if self.has_default:
            return self.default
        return None


@dataclass(frozen=True)
class EntityDescriptor:
    """Static mapping of a record type to its table and columns."""

    entity: type
    table: str
    columns: tuple[ColumnBinding, ...]
    primary_key: tuple[str, ...] = ()
    version_column: str | None = None
    last_modified_column: str | None = None
    soft_delete_column: str | None = None
    transient_fields: tuple[tuple[str, Any, Any], ...] = ()
    _by_column: dict[str, ColumnBinding] = field(default_factory=dict, repr=False, compare=False)
    _by_field: dict[str, ColumnBinding] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self) -> None:
        by_column: dict[str, ColumnBinding] = {}
        by_field: dict[str, ColumnBinding] = {}
        for binding in self.columns:
            key = binding.column.lower()
            if key in by_column:
                raise MappingError(
                    f"{self.entity.__name__}: fields {by_column[key].field!r} and {binding.field!r} "
                    f"both map to column {binding.column!r}",
                    entity=self.entity,
                    column=binding.column,
                )
            by_column[key] = binding
            by_field[binding.field] = binding
        # frozen dataclass: populate the lookup tables in place
        self._by_column.update(by_column)
        self._by_field.update(by_field)

    @property
    def column_names(self) -> list[str]:
        return [b.column for b in self.columns]

    @property
    def key_bindings(self) -> list[ColumnBinding]:
        return [self._by_column[c.lower()] for c in self.primary_key]

    @property
    def generated_key(self) -> ColumnBinding | None:
        """The single database-generated key column, if any."""
        generated = [b for b in self.columns if b.generated]
        return generated[0] if len(generated) == 1 else None

    def binding(self, ref: str) -> ColumnBinding:
        """Find a binding by field name or (case-insensitive) column name.

        Raises:
            MappingError: If neither a field nor a column has that name
        """
        binding = self._by_field.get(ref) or self._by_column.get(ref.lower())
        if binding is None:
            raise MappingError(
                f"{self.entity.__name__} has no field or column named {ref!r}",
                entity=self.entity,
                column=ref,
            )
        return binding

    def require_primary_key(self) -> tuple[ColumnBinding, ...]:
        """Primary key bindings, or MappingError when the entity has none."""
        if not self.primary_key:
            raise MappingError(
                f"{self.entity.__name__} has no primary key; update/delete by entity needs one",
                entity=self.entity,
            )
        return tuple(self.key_bindings)

    def values(self, instance: Any) -> dict[str, Any]:
        """Read every persistent field of ``instance`` keyed by column name."""
        return {b.column: getattr(instance, b.field, None) for b in self.columns}

    def key_values(self, instance: Any) -> dict[str, Any]:
        return {b.column: getattr(instance, b.field, None) for b in self.key_bindings}


# ========== Resolution ==========


def _resolve_hints(cls: type) -> dict[str, Any]:
    try:
        return typing.get_type_hints(cls)
    except NameError:
        pass
    # classes defined in a local scope: retry with the value types in scope
    module = sys.modules.get(cls.__module__, None)
    globalns = dict(getattr(module, "__dict__", {})) if module else {}
    globalns.setdefault("ClassVar", ClassVar)
    globalns.setdefault("Any", Any)
    globalns.setdefault("Decimal", Decimal)
    globalns.setdefault("datetime", datetime)
    globalns.setdefault("date", date)
    globalns.setdefault("time", time)
    try:
        return typing.get_type_hints(cls, globalns=globalns)
    except NameError as e:
        raise MappingError(f"Cannot resolve annotations of {cls.__name__}: {e}", entity=cls) from e


def _binding_for_field(
    cls: type, f: dataclasses.Field, hint: Any, naming: NamingStrategy
) -> ColumnBinding | None:
    info = column_info(f)
    if info.transient:
        return None

    python_type, optional = unwrap_optional(hint)
    semantic = semantic_type_for(python_type)
    if semantic is None:
        raise MappingError(
            f"{cls.__name__}.{f.name}: unsupported field type {hint!r}",
            entity=cls,
            column=f.name,
        )
    if info.soft_delete and semantic is not SemanticType.TEMPORAL:
        raise MappingError(f"{cls.__name__}.{f.name}: soft-delete column must be temporal", entity=cls)
    if info.version and semantic not in (SemanticType.INTEGER, SemanticType.DECIMAL):
        raise MappingError(f"{cls.__name__}.{f.name}: version column must be numeric", entity=cls)
    if info.last_modified and semantic is not SemanticType.TEMPORAL:
        raise MappingError(f"{cls.__name__}.{f.name}: last-modified column must be temporal", entity=cls)

    nullable = info.nullable if info.nullable is not None else optional
    # soft-delete timestamps are NULL for live rows
    if info.soft_delete:
        nullable = True

    return ColumnBinding(
        field=f.name,
        column=info.name or naming(f.name),
        semantic_type=semantic,
        python_type=python_type,
        nullable=nullable,
        primary_key=info.primary_key,
        generated=info.generated,
        version=info.version,
        last_modified=info.last_modified,
        soft_delete=info.soft_delete,
        has_default=f.default is not dataclasses.MISSING or f.default_factory is not dataclasses.MISSING,
        default=None if f.default is dataclasses.MISSING else f.default,
        default_factory=None if f.default_factory is dataclasses.MISSING else f.default_factory,
    )


def build_descriptor(
    entity: type,
    columns: Sequence[ColumnBinding],
    *,
    table: str | None = None,
    primary_key: Sequence[str] | None = None,
    naming: NamingStrategy = snake_case,
    transient_fields: Iterable[tuple[str, Any, Any]] = (),
) -> EntityDescriptor:
    """Validate bindings and assemble a descriptor.

    Args:
        entity: The record type
        columns: Column bindings in declaration order
        table: Explicit table name (derived from the class name otherwise)
        primary_key: Explicit primary-key override, as field names
        naming: Naming strategy for derived names
        transient_fields: ``(name, default, default_factory)`` of non-persistent fields

    Raises:
        MappingError: On zero columns, duplicate columns, a bad primary-key
            override or more than one lock/soft-delete column
    """
    if not columns:
        raise MappingError(f"{entity.__name__} has no persistent fields", entity=entity)

    field_names = {b.field for b in columns}
    if primary_key is not None:
        missing = [name for name in primary_key if name not in field_names]
        if missing:
            raise MappingError(
                f"{entity.__name__}: primary key override references unknown field(s) {missing}",
                entity=entity,
            )
        pk_fields = set(primary_key)
        columns = [dataclasses.replace(b, primary_key=b.field in pk_fields) for b in columns]

    def single(flag: str) -> str | None:
        flagged = [b.column for b in columns if getattr(b, flag)]
        if len(flagged) > 1:
            raise MappingError(f"{entity.__name__} declares more than one {flag} column: {flagged}", entity=entity)
        return flagged[0] if flagged else None

    version_column = single("version")
    last_modified_column = single("last_modified")
    soft_delete_column = single("soft_delete")

    if primary_key is not None:
        by_field = {b.field: b for b in columns}
        pk_columns = tuple(by_field[name].column for name in primary_key)
    else:
        pk_columns = tuple(b.column for b in columns if b.primary_key)

    return EntityDescriptor(
        entity=entity,
        table=table or pluralize(naming(entity.__name__)),
        columns=tuple(columns),
        primary_key=pk_columns,
        version_column=version_column,
        last_modified_column=last_modified_column,
        soft_delete_column=soft_delete_column,
        transient_fields=tuple(transient_fields),
    )


def describe_entity(entity: type, naming: NamingStrategy = snake_case) -> EntityDescriptor:
    """Derive a descriptor for ``entity``.

    Uses the entity's own ``describe()`` classmethod when it has one,
    otherwise reflects over its dataclass fields.
    """
    describe = getattr(entity, "describe", None)
    if callable(describe):
        described = describe()
        if isinstance(described, EntityDescriptor):
            return described
        return build_descriptor(
            entity,
            list(described),
            table=getattr(entity, "__tablename__", None),
            naming=naming,
        )

    if not dataclasses.is_dataclass(entity):
        raise MappingError(
            f"{entity.__name__} is neither a dataclass nor defines describe()",
            entity=entity,
        )

    hints = _resolve_hints(entity)
    bindings: list[ColumnBinding] = []
    transient: list[tuple[str, Any, Any]] = []
    for f in dataclasses.fields(entity):
        binding = _binding_for_field(entity, f, hints.get(f.name, f.type), naming)
        if binding is None:
            transient.append((
                f.name,
                None if f.default is dataclasses.MISSING else f.default,
                None if f.default_factory is dataclasses.MISSING else f.default_factory,
            ))
            continue
        bindings.append(binding)

    pk_override = getattr(entity, "__primary_key__", None)
    if isinstance(pk_override, str):
        pk_override = (pk_override,)

    return build_descriptor(
        entity,
        bindings,
        table=getattr(entity, "__tablename__", None),
        primary_key=pk_override,
        naming=naming,
        transient_fields=transient,
    )


_SCHEMA_TYPES: dict[str, type] = {
    "string": str,
    "integer": int,
    "decimal": Decimal,
    "float": float,
    "boolean": bool,
    "datetime": datetime,
    "date": date,
    "time": time,
    "binary": bytes,
}


def descriptor_from_schema(
    entity: type, schema: Mapping[str, Any], naming: NamingStrategy = snake_case
) -> EntityDescriptor:
    """Build a descriptor from a schema artifact produced by code generation.

    Example schema::

        {
            "table": "customers",
            "columns": [
                {"field": "id", "column": "id", "type": "integer",
                 "primary_key": True, "generated": True},
                {"field": "name", "type": "string"},
                {"field": "version", "type": "integer", "version": True},
            ],
        }
    """
    try:
        raw_columns = schema["columns"]
    except KeyError:
        raise MappingError(f"Schema for {entity.__name__} has no 'columns'", entity=entity) from None

    bindings = []
    for raw in raw_columns:
        type_name = raw.get("type", "string")
        python_type = _SCHEMA_TYPES.get(type_name)
        if python_type is None:
            raise MappingError(
                f"Schema for {entity.__name__}: unknown column type {type_name!r}",
                entity=entity,
                column=raw.get("column") or raw.get("field"),
            )
        field_name = raw["field"]
        bindings.append(ColumnBinding(
            field=field_name,
            column=raw.get("column") or naming(field_name),
            semantic_type=semantic_type_for(python_type),  # type: ignore[arg-type]
            python_type=python_type,
            nullable=bool(raw.get("nullable", False) or raw.get("soft_delete", False)),
            primary_key=bool(raw.get("primary_key", False)),
            generated=bool(raw.get("generated", False)),
            version=bool(raw.get("version", False)),
            last_modified=bool(raw.get("last_modified", False)),
            soft_delete=bool(raw.get("soft_delete", False)),
            has_default="default" in raw,
            default=raw.get("default"),
        ))

    return build_descriptor(
        entity,
        bindings,
        table=schema.get("table"),
        primary_key=schema.get("primary_key"),
        naming=naming,
    )


class DescriptorCache:
    """Resolves and caches entity descriptors.

    Create one per application and share it between :class:`~fluentdb.FluentDB`
    instances. Entries are immutable once stored, so concurrent readers need no
    locking; two threads racing on the first resolution of a type both do the
    work and the first stored descriptor wins.

    Example:
        >>> cache = DescriptorCache()
        >>> cache.resolve(Customer).table
        'customers'
    """

    def __init__(self, naming: str | NamingStrategy = "snake_case") -> None:
        self._naming = get_naming_strategy(naming)
        self._descriptors: dict[type, EntityDescriptor] = {}

    @property
    def naming(self) -> NamingStrategy:
        return self._naming

    def resolve(self, entity: type) -> EntityDescriptor:
        """Get the descriptor for ``entity``, building it on first use."""
        try:
            return self._descriptors[entity]
        except KeyError:
            pass
        descriptor = describe_entity(entity, self._naming)
        logger.debug("descriptor.resolved", entity=entity.__name__, table=descriptor.table,
                     columns=len(descriptor.columns))
        return self._descriptors.setdefault(entity, descriptor)

    def register(self, entity: type, descriptor: EntityDescriptor) -> EntityDescriptor:
        """Pre-populate the cache with a ready descriptor."""
        if descriptor.entity is not entity:
            raise MappingError(
                f"Descriptor for {descriptor.entity.__name__} cannot be registered for {entity.__name__}",
                entity=entity,
            )
        return self._descriptors.setdefault(entity, descriptor)

    def load_schema(self, entity: type, schema: Mapping[str, Any]) -> EntityDescriptor:
        """Pre-populate the cache from a generated schema mapping."""
        return self.register(entity, descriptor_from_schema(entity, schema, self._naming))

    def __contains__(self, entity: object) -> bool:
        return entity in self._descriptors

    def __len__(self) -> int:
        return len(self._descriptors)
