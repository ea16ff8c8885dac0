"""Engine configuration and INI loading."""

from __future__ import annotations

import configparser
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from fluentdb.descriptor import NAMING_STRATEGIES, ColumnBinding, EntityDescriptor
from fluentdb.dialect import DIALECTS
from fluentdb.exceptions import ConfigError
from fluentdb.mapper import STRING_TRIM_POLICIES

SECTION = "fluentdb"
LOCK_SECTION = "fluentdb.optimistic_lock"

BATCH_FAILURE_POLICIES = ("fail_fast", "collect")

_TRUE = {"1", "true", "yes", "on", "y"}
_FALSE = {"0", "false", "no", "off", "n"}


class LockType(str, Enum):
    """Optimistic-lock strategy."""

    VERSION = "version"
    LAST_MODIFIED = "last_modified"
    NONE = "none"


@dataclass(frozen=True)
class EntityLock:
    """Per-entity lock override; ``column`` names a field or column."""

    type: LockType = LockType.VERSION
    column: str | None = None


@dataclass(frozen=True)
class ActiveLock:
    """The lock column in effect for one entity type."""

    binding: ColumnBinding
    type: LockType


@dataclass
class OptimisticLockConfig:
    """Optimistic-lock settings.

    Entities that declare a ``version`` (or ``last_modified``) column are
    locked on update and delete. ``default_type`` picks which of the two wins
    when an entity declares both; ``LockType.NONE`` turns locking off except
    for entities listed in ``entities``.

    ``entities`` is keyed by ``module.QualName`` or by plain class name.
    """

    enabled: bool = True
    default_type: LockType = LockType.VERSION
    entities: dict[str, EntityLock] = field(default_factory=dict)

    def override_for(self, entity: type) -> EntityLock | None:
        return self.entities.get(f"{entity.__module__}.{entity.__qualname__}") or self.entities.get(
            entity.__name__
        )

    def lock_for(self, descriptor: EntityDescriptor) -> ActiveLock | None:
        """Resolve the lock column for ``descriptor``, or None when unlocked."""
        if not self.enabled:
            return None

        override = self.override_for(descriptor.entity)
        if override is not None:
            if override.type is LockType.NONE:
                return None
            ref = override.column or self._declared(descriptor, override.type)
            if ref is None:
                raise ConfigError(
                    f"optimistic_lock.entity.{descriptor.entity.__name__}",
                    override.type.value,
                    f"{descriptor.entity.__name__} has no {override.type.value} column to lock on",
                )
            return ActiveLock(descriptor.binding(ref), override.type)

        if self.default_type is LockType.NONE:
            return None
        preferred = [self.default_type] + [t for t in (LockType.VERSION, LockType.LAST_MODIFIED)
                                           if t is not self.default_type]
        for lock_type in preferred:
            column = self._declared(descriptor, lock_type)
            if column is not None:
                return ActiveLock(descriptor.binding(column), lock_type)
        return None

    @staticmethod
    def _declared(descriptor: EntityDescriptor, lock_type: LockType) -> str | None:
        if lock_type is LockType.VERSION:
            return descriptor.version_column
        if lock_type is LockType.LAST_MODIFIED:
            return descriptor.last_modified_column
        return None


@dataclass
class FluentConfig:
    """Engine configuration.

    Example fluentdb.ini::

        [fluentdb]
        dialect = sqlite
        naming = snake_case
        fetch_size = 500
        statement_timeout = 5
        batch_failure = collect

        [fluentdb.optimistic_lock]
        enabled = true
        default_type = version
        entity.app.models.Customer.type = last_modified
        entity.app.models.Customer.column = updated_at
    """

    dialect: str = "sqlite"
    """SQL flavour: sqlite, postgresql, mysql or oracle."""

    naming: str | Callable[[str], str] = "snake_case"
    """Naming strategy for derived table and column names."""

    fetch_size: int = 500
    """Rows fetched per cursor round trip while buffering results."""

    page_size: int = 50
    """Default page size for ``Query.page()``."""

    statement_timeout: float | None = None
    """Per-statement deadline in seconds (None: no deadline)."""

    acquire_timeout: float | None = 30.0
    """Seconds to wait for a pooled connection (None: wait forever)."""

    string_trim: str = "none"
    """Whitespace trimming of string columns on read: none, right or both."""

    batch_failure: str = "fail_fast"
    """Batch failure policy: fail_fast or collect."""

    sql_dir: Path | str | None = None
    """Directory that relative SQL file paths resolve against (None: working directory)."""

    optimistic_lock: OptimisticLockConfig = field(default_factory=OptimisticLockConfig)

    extra: dict[str, Any] = field(default_factory=dict)
    """Unrecognised options, kept for applications."""

    def __post_init__(self) -> None:
        if self.dialect.lower() not in DIALECTS:
            raise ConfigError("dialect", self.dialect, f"Unknown dialect {self.dialect!r}")
        if not callable(self.naming) and self.naming not in NAMING_STRATEGIES:
            raise ConfigError("naming", self.naming, f"Unknown naming strategy {self.naming!r}")
        _require_positive_int("fetch_size", self.fetch_size)
        _require_positive_int("page_size", self.page_size)
        if self.statement_timeout is not None and not self.statement_timeout > 0:
            raise ConfigError("statement_timeout", self.statement_timeout)
        if self.acquire_timeout is not None and self.acquire_timeout < 0:
            raise ConfigError("acquire_timeout", self.acquire_timeout)
        if self.string_trim not in STRING_TRIM_POLICIES:
            raise ConfigError("string_trim", self.string_trim)
        if self.batch_failure not in BATCH_FAILURE_POLICIES:
            raise ConfigError("batch_failure", self.batch_failure)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FluentConfig:
        """Build a config from a flat mapping of option values.

        ``optimistic_lock`` may be an :class:`OptimisticLockConfig` or a
        mapping with ``enabled``, ``default_type`` and ``entities`` keys.
        """
        known = {f for f in cls.__dataclass_fields__ if f != "extra"}
        kwargs: dict[str, Any] = {}
        extra = dict(data.get("extra", {}))
        for key, value in data.items():
            if key == "extra":
                continue
            if key in known:
                kwargs[key] = value
            else:
                extra[key] = value

        lock = kwargs.get("optimistic_lock")
        if isinstance(lock, Mapping):
            kwargs["optimistic_lock"] = _lock_from_mapping(lock)

        for key in ("fetch_size", "page_size"):
            if key in kwargs:
                kwargs[key] = _as_int(key, kwargs[key])
        for key in ("statement_timeout", "acquire_timeout"):
            if key in kwargs:
                kwargs[key] = _as_seconds(key, kwargs[key])

        return cls(**kwargs, extra=extra)

    @classmethod
    def from_ini(cls, path: Path | str) -> FluentConfig:
        """Load configuration from an INI file.

        Raises:
            FileNotFoundError: If the file doesn't exist
            ConfigError: If the [fluentdb] section is missing or a value is invalid
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        parser = configparser.ConfigParser(interpolation=None)
        # entity keys carry class names
        parser.optionxform = str  # type: ignore[assignment,method-assign]
        parser.read(path)

        if SECTION not in parser:
            raise ConfigError(SECTION, None, f"No [{SECTION}] section in {path}")

        data: dict[str, Any] = dict(parser[SECTION].items())
        if LOCK_SECTION in parser:
            data["optimistic_lock"] = _lock_from_ini(parser[LOCK_SECTION])
        return cls.from_dict(data)


def _require_positive_int(key: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(key, value, f"{key} must be a positive integer, got {value!r}")


def _as_int(key: str, value: Any) -> Any:
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            raise ConfigError(key, value) from None
    return value


def _as_seconds(key: str, value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("", "none"):
            return None
        try:
            return float(text)
        except ValueError:
            raise ConfigError(key, value) from None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(key, value)
    return float(value)


def _as_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(key, value)


def _as_lock_type(key: str, value: Any) -> LockType:
    if isinstance(value, LockType):
        return value
    try:
        return LockType(str(value).strip().lower())
    except ValueError:
        raise ConfigError(key, value, f"{key} must be one of {[t.value for t in LockType]}") from None


def _lock_from_mapping(data: Mapping[str, Any]) -> OptimisticLockConfig:
    entities: dict[str, EntityLock] = {}
    for name, raw in dict(data.get("entities", {})).items():
        if isinstance(raw, EntityLock):
            entities[name] = raw
        else:
            entities[name] = EntityLock(
                type=_as_lock_type(f"entities.{name}.type", raw.get("type", LockType.VERSION)),
                column=raw.get("column"),
            )
    return OptimisticLockConfig(
        enabled=_as_bool("optimistic_lock.enabled", data.get("enabled", True)),
        default_type=_as_lock_type("optimistic_lock.default_type", data.get("default_type", LockType.VERSION)),
        entities=entities,
    )


def _lock_from_ini(section: configparser.SectionProxy) -> OptimisticLockConfig:
    entities: dict[str, dict[str, str]] = {}
    for key, value in section.items():
        if not key.startswith("entity."):
            continue
        # entity.<module.Class>.<type|column>
        name, _, attribute = key[len("entity."):].rpartition(".")
        if not name or attribute not in ("type", "column"):
            raise ConfigError(f"{LOCK_SECTION}.{key}", value, f"Unrecognised lock option {key!r}")
        entities.setdefault(name, {})[attribute] = value
    return _lock_from_mapping({
        "enabled": section.get("enabled", "true"),
        "default_type": section.get("default_type", "version"),
        "entities": entities,
    })
