"""Tests for engine configuration and INI loading."""

from dataclasses import dataclass
from datetime import datetime

import pytest

from fluentdb import (
    ConfigError,
    DescriptorCache,
    EntityLock,
    FluentConfig,
    FluentDB,
    LockType,
    OptimisticLockConfig,
    mapped_column,
)


@dataclass
class Both:
    name: str
    rev: int | None = mapped_column(version=True)
    touched: datetime | None = mapped_column(last_modified=True)
    id: int = mapped_column(primary_key=True, default=0)


@dataclass
class Plain:
    name: str
    changed_at: datetime | None = None
    id: int = mapped_column(primary_key=True, default=0)


cache = DescriptorCache()


class TestDefaults:
    def test_defaults(self):
        config = FluentConfig()
        assert config.dialect == "sqlite"
        assert config.fetch_size == 500
        assert config.page_size == 50
        assert config.statement_timeout is None
        assert config.batch_failure == "fail_fast"
        assert config.optimistic_lock.enabled

    @pytest.mark.parametrize("kwargs", [
        {"dialect": "db2"},
        {"naming": "kebab"},
        {"fetch_size": 0},
        {"page_size": True},
        {"statement_timeout": 0},
        {"acquire_timeout": -1},
        {"string_trim": "left"},
        {"batch_failure": "retry"},
    ])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ConfigError) as exc_info:
            FluentConfig(**kwargs)
        assert exc_info.value.key == next(iter(kwargs))

    def test_config_error_is_value_error(self):
        with pytest.raises(ValueError):
            FluentConfig(fetch_size=-5)


class TestFromDict:
    def test_unknown_keys_go_to_extra(self):
        config = FluentConfig.from_dict({"dialect": "postgresql", "app_name": "billing"})
        assert config.dialect == "postgresql"
        assert config.extra == {"app_name": "billing"}

    def test_string_values_are_converted(self):
        config = FluentConfig.from_dict({
            "fetch_size": "100",
            "statement_timeout": "2.5",
            "acquire_timeout": "none",
        })
        assert config.fetch_size == 100
        assert config.statement_timeout == 2.5
        assert config.acquire_timeout is None

    def test_bad_number(self):
        with pytest.raises(ConfigError):
            FluentConfig.from_dict({"fetch_size": "lots"})

    def test_lock_mapping(self):
        config = FluentConfig.from_dict({
            "optimistic_lock": {
                "enabled": "yes",
                "default_type": "last_modified",
                "entities": {"Plain": {"type": "last_modified", "column": "changed_at"}},
            },
        })
        lock = config.optimistic_lock
        assert lock.default_type is LockType.LAST_MODIFIED
        assert lock.entities["Plain"] == EntityLock(LockType.LAST_MODIFIED, "changed_at")


class TestFromIni:
    def test_load(self, tmp_path):
        """Test loading both sections from a file."""
        path = tmp_path / "fluentdb.ini"
        path.write_text(
            "[fluentdb]\n"
            "dialect = mysql\n"
            "fetch_size = 200\n"
            "statement_timeout = 5\n"
            "batch_failure = collect\n"
            "pool_name = primary\n"
            "\n"
            "[fluentdb.optimistic_lock]\n"
            "enabled = true\n"
            "default_type = version\n"
            "entity.app.models.Plain.type = last_modified\n"
            "entity.app.models.Plain.column = changed_at\n"
            "entity.Both.type = none\n"
        )
        config = FluentConfig.from_ini(path)
        assert config.dialect == "mysql"
        assert config.fetch_size == 200
        assert config.statement_timeout == 5.0
        assert config.batch_failure == "collect"
        assert config.extra == {"pool_name": "primary"}
        entities = config.optimistic_lock.entities
        assert entities["app.models.Plain"] == EntityLock(LockType.LAST_MODIFIED, "changed_at")
        assert entities["Both"].type is LockType.NONE

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            FluentConfig.from_ini(tmp_path / "missing.ini")

    def test_missing_section(self, tmp_path):
        path = tmp_path / "other.ini"
        path.write_text("[alembic]\nscript_location = migrations\n")
        with pytest.raises(ConfigError):
            FluentConfig.from_ini(path)

    def test_bad_lock_option(self, tmp_path):
        path = tmp_path / "fluentdb.ini"
        path.write_text("[fluentdb]\n[fluentdb.optimistic_lock]\nentity.Plain.strategy = version\n")
        with pytest.raises(ConfigError):
            FluentConfig.from_ini(path)


class TestLockResolution:
    """Test which column locks an entity."""

    def test_version_preferred_by_default(self):
        lock = OptimisticLockConfig().lock_for(cache.resolve(Both))
        assert lock.type is LockType.VERSION
        assert lock.binding.column == "rev"

    def test_default_type_last_modified(self):
        config = OptimisticLockConfig(default_type=LockType.LAST_MODIFIED)
        lock = config.lock_for(cache.resolve(Both))
        assert lock.type is LockType.LAST_MODIFIED
        assert lock.binding.column == "touched"

    def test_no_lock_column(self):
        assert OptimisticLockConfig().lock_for(cache.resolve(Plain)) is None

    def test_default_type_none(self):
        config = OptimisticLockConfig(default_type=LockType.NONE)
        assert config.lock_for(cache.resolve(Both)) is None

    def test_disabled(self):
        assert OptimisticLockConfig(enabled=False).lock_for(cache.resolve(Both)) is None

    def test_override_by_class_name(self):
        config = OptimisticLockConfig(entities={"Both": EntityLock(LockType.NONE)})
        assert config.lock_for(cache.resolve(Both)) is None

    def test_override_by_qualified_name(self):
        """Test an override naming an undeclared lock column."""
        key = f"{Plain.__module__}.{Plain.__qualname__}"
        config = OptimisticLockConfig(entities={key: EntityLock(LockType.LAST_MODIFIED, "changed_at")})
        lock = config.lock_for(cache.resolve(Plain))
        assert lock.binding.field == "changed_at"
        assert lock.type is LockType.LAST_MODIFIED

    def test_override_without_column(self):
        config = OptimisticLockConfig(entities={"Plain": EntityLock(LockType.VERSION)})
        with pytest.raises(ConfigError):
            config.lock_for(cache.resolve(Plain))


class TestEngineSettings:
    def test_naming_strategy_applies(self, sqlite_pool):
        db = FluentDB(sqlite_pool, FluentConfig(naming="upper_snake"))
        assert db.from_(Plain).where(name="x").to_sql().sql == (
            "SELECT NAME, CHANGED_AT, ID FROM PLAINS WHERE NAME = ?"
        )

    def test_dialect_applies(self, sqlite_pool):
        db = FluentDB(sqlite_pool, FluentConfig(dialect="postgresql"))
        stmt = db.from_(Plain).where(name="x").limit(5).to_sql()
        assert stmt.sql == "SELECT name, changed_at, id FROM plains WHERE name = $1 LIMIT $2"
        assert stmt.params == ("x", 5)
