"""The fluent façade: entity operations, queries, batches and raw SQL.

Every operation runs in a session. Outside a :meth:`FluentDB.transaction`
block each call opens, commits and closes its own session; inside one, calls
join the block's transaction.

Example:
    >>> db = FluentDB(SQLitePool("app.db"))
    >>> alice = db.insert(Customer(name="Alice"))
    >>> db.from_(Customer).where(name__startswith="A").order_by("-id").limit(10).find()
    >>> with db.transaction():
    ...     db.update(alice)
    ...     db.batch_insert([Customer(name="Bob"), Customer(name="Carol")])
"""

from __future__ import annotations

import itertools
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any, Generic, TypeVar

from fluentdb.config import ActiveLock, FluentConfig, LockType
from fluentdb.connection import ConnectionPool, UpdateCount
from fluentdb.criteria import Condition, Q, and_, eq
from fluentdb.descriptor import ColumnBinding, DescriptorCache, EntityDescriptor
from fluentdb.dialect import check_count
from fluentdb.exceptions import (
    MappingError,
    NotFoundError,
    OptimisticLockError,
    SessionStateError,
    StatementExecutionError,
)
from fluentdb.logging import get_logger
from fluentdb.mapper import ResultMapper
from fluentdb.query import (
    CompiledStatement,
    Operation,
    QuerySpec,
    StatementBuilder,
    Visibility,
    compile_raw,
)
from fluentdb.results import BatchFailure, BatchResult
from fluentdb.session import Session
from fluentdb.sqlfile import SqlFileLoader

logger = get_logger(__name__)

T = TypeVar("T")

_db_ids = itertools.count(1)


class Query(Generic[T]):
    """Immutable fluent query over one entity type.

    Every builder method returns a new ``Query``; the receiver is unchanged,
    so partially built queries can be shared and extended.

    Filters accept condition objects (``eq("age", 18) | Q(vip=True)``) and
    Django-style keyword filters (``age__gt=18``, ``id__in=[1, 2]``).

    Soft delete:
        Entities with a soft-delete column exclude deleted rows. Use
        ``with_deleted()`` to include them or ``only_deleted()`` for deleted
        rows alone.
    """

    def __init__(self, db: FluentDB, spec: QuerySpec) -> None:
        self._db = db
        self._spec = spec

    @property
    def spec(self) -> QuerySpec:
        return self._spec

    @property
    def descriptor(self) -> EntityDescriptor:
        return self._spec.descriptor

    def _evolve(self, **changes: Any) -> Query[T]:
        return Query(self._db, self._spec.evolve(**changes))

    def __repr__(self) -> str:
        return f"<Query {self.descriptor.entity.__name__} limit={self._spec.limit} offset={self._spec.offset}>"

    # ========== Builders ==========

    def where(self, *conditions: Condition, **filters: Any) -> Query[T]:
        """Add conditions, AND-ed with the existing ones.

        Example:
            >>> query.where(name="Alice", age__gt=18)
            >>> query.where(Q(age__gt=18) | Q(vip=True))
        """
        extra = Q(**filters) if filters else None
        return self._evolve(condition=and_(self._spec.condition, *conditions, extra))

    filter = where

    def order_by(self, *columns: str, desc: bool = False) -> Query[T]:
        """Add ORDER BY columns; a ``-`` prefix sorts that column descending."""
        order = list(self._spec.order_by)
        for col in columns:
            if col.startswith("-"):
                order.append((col[1:], True))
            else:
                order.append((col, desc))
        return self._evolve(order_by=tuple(order))

    def limit(self, n: int) -> Query[T]:
        return self._evolve(limit=check_count("limit", n))

    def offset(self, n: int) -> Query[T]:
        return self._evolve(offset=check_count("offset", n))

    def page(self, number: int, size: int | None = None) -> Query[T]:
        """Select one page (1-based) of ``size`` rows (default ``config.page_size``)."""
        if isinstance(number, bool) or not isinstance(number, int) or number < 1:
            raise ValueError(f"page number must be a positive integer, got {number!r}")
        size = self._db.config.page_size if size is None else size
        if isinstance(size, bool) or not isinstance(size, int) or size < 1:
            raise ValueError(f"page size must be a positive integer, got {size!r}")
        return self._evolve(limit=size, offset=(number - 1) * size)

    def with_deleted(self) -> Query[T]:
        return self._evolve(visibility=Visibility.ALL)

    def only_deleted(self) -> Query[T]:
        return self._evolve(visibility=Visibility.DELETED)

    def affect_all(self) -> Query[T]:
        """Allow ``update()``/``delete()`` without a condition to touch every row."""
        return self._evolve(affect_all=True)

    def to_sql(self, operation: Operation = Operation.SELECT) -> CompiledStatement:
        """Compile without executing."""
        return self._db.builder.build(operation, self._spec)

    # ========== Terminals ==========

    def find(self) -> list[T]:
        """Execute and return every matching record."""
        stmt = self.to_sql()
        with self._db._scope() as session:
            results = session.query(stmt.sql, stmt.params, self.descriptor)
        return results.all()

    all = find

    def find_one(self) -> T:
        """Execute and return the single matching record.

        Raises:
            NotFoundError: No row matches
            TooManyResultsError: More than one row matches
        """
        stmt = self.to_sql()
        with self._db._scope() as session:
            results = session.query(stmt.sql, stmt.params, self.descriptor)
        return results.one()

    one = find_one

    def first(self) -> T | None:
        """First matching record, or None."""
        stmt = self.limit(1).to_sql()
        with self._db._scope() as session:
            results = session.query(stmt.sql, stmt.params, self.descriptor)
        return results.first()

    def count(self) -> int:
        stmt = self.to_sql(Operation.COUNT)
        with self._db._scope() as session:
            results = session.query(stmt.sql, stmt.params)
        return int(results.scalar() or 0)

    def exists(self) -> bool:
        return self.first() is not None

    def update(self, **values: Any) -> int:
        """Set columns on every matching row; returns the affected row count.

        Raises:
            UnsafeOperationError: No condition and no ``affect_all()``
        """
        stmt = self._evolve(assignments=tuple(values.items())).to_sql(Operation.UPDATE)
        with self._db._scope() as session:
            result = session.execute(stmt.sql, stmt.params)
        return result.rowcount

    def delete(self) -> int:
        """Delete every matching row; returns the affected row count.

        Raises:
            UnsafeOperationError: No condition and no ``affect_all()``
        """
        stmt = self.to_sql(Operation.DELETE)
        with self._db._scope() as session:
            result = session.execute(stmt.sql, stmt.params)
        return result.rowcount


@dataclass
class _Planned:
    """A compiled entity write plus what to do with its outcome."""

    entity: Any
    descriptor: EntityDescriptor
    operation: Operation
    statement: CompiledStatement
    lock: ActiveLock | None = None
    new_lock_value: Any = None


class FluentDB:
    """Entry point: entity operations and queries over a connection pool.

    Args:
        pool: Connection capability (e.g. :class:`~fluentdb.adapters.SQLitePool`)
        config: Engine configuration (defaults match the pool's dialect)
        cache: Shared descriptor cache (one per application)
    """

    def __init__(
        self,
        pool: ConnectionPool,
        config: FluentConfig | None = None,
        cache: DescriptorCache | None = None,
    ) -> None:
        self.pool = pool
        self.config = config or FluentConfig(dialect=getattr(pool, "dialect", "sqlite"))
        self.cache = cache or DescriptorCache(self.config.naming)
        self.builder = StatementBuilder(self.config.dialect)
        self.mapper = ResultMapper(self.config.string_trim)
        self.sql_files = SqlFileLoader(self.config.sql_dir)
        self._current: ContextVar[Session | None] = ContextVar(f"fluentdb_session_{next(_db_ids)}", default=None)

    def __enter__(self) -> FluentDB:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self.pool.close()

    # ========== Sessions ==========

    def session(self) -> Session:
        """A new, not yet begun, session of its own."""
        return Session(self.pool, config=self.config, mapper=self.mapper)

    @property
    def current_session(self) -> Session | None:
        session = self._current.get()
        return session if session is not None and session.is_active else None

    @contextmanager
    def transaction(self, independent: bool = False) -> Iterator[Session]:
        """Scope several calls in one transaction.

        Commits on normal exit, rolls back on an exception. Inside an
        enclosing block the transaction is joined unless ``independent`` is
        set, which opens a separate session on its own connection.

        Example:
            >>> with db.transaction():
            ...     db.insert(order)
            ...     db.update(customer)
            ...     with db.transaction(independent=True):
            ...         db.insert(audit_entry)   # commits on its own

        Raises:
            SessionStateError: The enclosing block's transaction already
                ended, e.g. after a failed statement
        """
        current = self._current.get()
        if current is not None and not independent:
            # a failed statement ends the enclosing transaction; later calls
            # in the block must not commit on their own
            if not current.is_active:
                raise SessionStateError(
                    f"Transaction block is no longer usable (session {current.state.value})",
                    state=current.state,
                )
            session = current.join()
        else:
            session = self.session()
        token = self._current.set(session)
        try:
            with session:
                yield session
        finally:
            self._current.reset(token)

    _scope = transaction

    # ========== Queries ==========

    def from_(self, entity: type[T]) -> Query[T]:
        """Start a query over ``entity``."""
        return Query(self, QuerySpec(self.cache.resolve(entity)))

    query = from_

    def find_by_pk(self, entity: type[T], *values: Any, include_deleted: bool = False) -> T:
        """Fetch one record by primary key.

        Raises:
            NotFoundError: No row has that key
        """
        desc = self.cache.resolve(entity)
        keys = desc.require_primary_key()
        if len(values) != len(keys):
            raise ValueError(f"{entity.__name__} has {len(keys)} primary key column(s), got {len(values)} value(s)")
        query = self.from_(entity).where(and_(*(eq(b.column, v) for b, v in zip(keys, values, strict=True))))
        if include_deleted:
            query = query.with_deleted()
        found = query.first()
        if found is None:
            raise NotFoundError(f"{entity.__name__} with key {values!r} not found")
        return found

    def find_all(self, entity: type[T]) -> list[T]:
        return self.from_(entity).find()

    # ========== Entity writes ==========

    def insert(self, entity: T) -> T:
        """Insert ``entity``; a generated key is assigned back to it."""
        plan = self._plan_insert(entity)
        with self._scope() as session:
            count = self._run(session, plan)
        self._apply(plan, count)
        return entity

    def update(self, entity: T) -> T:
        """Update every non-key column of ``entity`` by primary key.

        With an optimistic lock the row must still carry the entity's lock
        value; the new value is written and assigned back to the entity.

        Raises:
            OptimisticLockError: The row was changed or deleted concurrently
            NotFoundError: No row has the entity's key (unlocked entities)
        """
        plan = self._plan_update(entity)
        with self._scope() as session:
            count = self._run(session, plan)
        self._check(plan, count)
        self._apply(plan, count)
        return entity

    def delete(self, entity: Any) -> int:
        """Delete ``entity`` by primary key; returns the affected row count.

        Raises:
            OptimisticLockError: A lock applies and no row matched
        """
        plan = self._plan_delete(entity)
        with self._scope() as session:
            count = self._run(session, plan)
        self._check(plan, count)
        return count.rowcount

    def insert_or_update(self, entity: T) -> T:
        """Update ``entity`` when a row with its key exists, insert it otherwise."""
        with self._scope() as session:
            plan = self._plan_upsert(session, entity)
            count = self._run(session, plan)
        self._check(plan, count)
        self._apply(plan, count)
        return entity

    def soft_delete(self, entity: T) -> T:
        """Mark ``entity`` deleted by setting its soft-delete column to now."""
        binding = self._soft_delete_binding(entity)
        stamp = _now_for(binding)
        self._set_column(entity, binding, stamp)
        return entity

    def restore(self, entity: T) -> T:
        """Clear the soft-delete column of ``entity``."""
        binding = self._soft_delete_binding(entity)
        self._set_column(entity, binding, None)
        return entity

    # ========== Batches ==========

    def batch_insert(self, entities: Iterable[T]) -> BatchResult[T]:
        """Insert many entities in one transaction with one prepared statement."""
        return self._batch("insert", entities, lambda session, e: self._plan_insert(e))

    def batch_update(self, entities: Iterable[T]) -> BatchResult[T]:
        return self._batch("update", entities, lambda session, e: self._plan_update(e))

    def batch_delete(self, entities: Iterable[T]) -> BatchResult[T]:
        return self._batch("delete", entities, lambda session, e: self._plan_delete(e))

    def batch_insert_or_update(self, entities: Iterable[T]) -> BatchResult[T]:
        return self._batch("insert_or_update", entities, self._plan_upsert)

    def _batch(self, name: str, entities: Iterable[T], planner: Any) -> BatchResult[T]:
        items = list(entities)
        if not items:
            raise ValueError(f"batch_{name} needs at least one entity")

        result: BatchResult[T] = BatchResult()
        done: list[tuple[_Planned, UpdateCount]] = []
        collect = self.config.batch_failure == "collect"

        with self._scope() as session:
            if collect:
                for index, entity in enumerate(items):
                    try:
                        with session.savepoint():
                            plan = planner(session, entity)
                            count = self._run(session, plan)
                            self._check(plan, count)
                    except (StatementExecutionError, OptimisticLockError, NotFoundError) as e:
                        result.failures.append(BatchFailure(index, entity, e))
                        continue
                    done.append((plan, count))
            else:
                plans = [planner(session, entity) for entity in items]
                done = list(zip(plans, self._run_all(session, plans), strict=True))
                for plan, count in done:
                    self._check(plan, count)

        for plan, count in done:
            self._apply(plan, count)
            result.items.append(plan.entity)
            result.row_counts.append(count.rowcount)

        logger.info(
            "batch.complete",
            operation=name,
            entity=type(items[0]).__name__,
            written=len(result.items),
            failed=len(result.failures),
            rows=result.total_rows,
        )
        return result

    # ========== Raw SQL ==========

    def select(
        self,
        sql: str,
        params: Sequence[Any] | Mapping[str, Any] | None = None,
        type: type[T] | None = None,  # noqa: A002
    ) -> list[Any]:
        """Run a raw SELECT.

        ``params`` is a sequence for positional placeholders or a mapping for
        ``:name`` markers. With ``type`` rows are mapped to records, otherwise
        they are returned as dictionaries.

        Example:
            >>> db.select("SELECT * FROM customers WHERE name = :name", {"name": "A"}, Customer)
        """
        return self._select(compile_raw(sql, params, self.builder.dialect), type)

    def execute(self, sql: str, params: Sequence[Any] | Mapping[str, Any] | None = None) -> int:
        """Run a raw statement; returns the affected row count."""
        return self._execute(compile_raw(sql, params, self.builder.dialect))

    def select_by_sql_file(
        self,
        path: Path | str,
        params: Mapping[str, Any] | None = None,
        type: type[T] | None = None,  # noqa: A002
    ) -> list[Any]:
        """Run the SELECT in an SQL file.

        The file is a template with 2-way comments (see :mod:`fluentdb.sqlfile`);
        relative paths resolve against ``config.sql_dir``.

        Example:
            >>> db.select_by_sql_file("sql/customers_by_name.sql", {"name": "A%"}, Customer)

        Raises:
            FileNotFoundError: If the file doesn't exist
            SqlTemplateError: If the template is malformed
        """
        return self._select(self.sql_files.load(path).compile(params, self.builder.dialect), type)

    def execute_by_sql_file(self, path: Path | str, params: Mapping[str, Any] | None = None) -> int:
        """Run the INSERT, UPDATE or DELETE in an SQL file; returns the affected row count."""
        return self._execute(self.sql_files.load(path).compile(params, self.builder.dialect))

    def _select(self, stmt: CompiledStatement, type: type[T] | None) -> list[Any]:  # noqa: A002
        descriptor = self.cache.resolve(type) if type is not None else None
        with self._scope() as session:
            results = session.query(stmt.sql, stmt.params, descriptor)
        return results.all()

    def _execute(self, stmt: CompiledStatement) -> int:
        with self._scope() as session:
            result = session.execute(stmt.sql, stmt.params)
        return result.rowcount

    # ========== Planning ==========

    def _plan_insert(self, entity: Any, keep_generated: bool = False) -> _Planned:
        desc = self.cache.resolve(type(entity))
        lock = self.config.optimistic_lock.lock_for(desc)
        assignments = []
        new_lock = None
        for binding in desc.columns:
            # generated keys come from the database unless explicitly kept
            if binding.generated and not (keep_generated and getattr(entity, binding.field) is not None):
                continue
            value = getattr(entity, binding.field)
            if lock is not None and binding is lock.binding and value is None:
                value = new_lock = _initial_lock_value(lock)
            assignments.append((binding.column, value))
        spec = QuerySpec(desc, assignments=tuple(assignments))
        stmt = self.builder.build(Operation.INSERT, spec)
        return _Planned(entity, desc, Operation.INSERT, stmt, lock, new_lock)

    def _plan_update(self, entity: Any) -> _Planned:
        desc = self.cache.resolve(type(entity))
        condition = self._key_condition(desc, entity)
        lock = self.config.optimistic_lock.lock_for(desc)
        assignments = [
            (b.column, getattr(entity, b.field))
            for b in desc.columns
            if not b.primary_key and (lock is None or b is not lock.binding)
        ]
        new_lock = None
        if lock is not None:
            current = getattr(entity, lock.binding.field)
            new_lock = _next_lock_value(lock, current)
            assignments.append((lock.binding.column, new_lock))
            condition = and_(condition, eq(lock.binding.column, current))
        spec = QuerySpec(desc, condition=condition, assignments=tuple(assignments), visibility=Visibility.ALL)
        stmt = self.builder.build(Operation.UPDATE, spec)
        return _Planned(entity, desc, Operation.UPDATE, stmt, lock, new_lock)

    def _plan_delete(self, entity: Any) -> _Planned:
        desc = self.cache.resolve(type(entity))
        condition = self._key_condition(desc, entity)
        lock = self.config.optimistic_lock.lock_for(desc)
        if lock is not None:
            condition = and_(condition, eq(lock.binding.column, getattr(entity, lock.binding.field)))
        spec = QuerySpec(desc, condition=condition, visibility=Visibility.ALL)
        stmt = self.builder.build(Operation.DELETE, spec)
        return _Planned(entity, desc, Operation.DELETE, stmt, lock)

    def _plan_upsert(self, session: Session, entity: Any) -> _Planned:
        desc = self.cache.resolve(type(entity))
        keys = desc.require_primary_key()
        if any(getattr(entity, b.field) is None for b in keys):
            return self._plan_insert(entity)
        spec = QuerySpec(desc, condition=self._key_condition(desc, entity), visibility=Visibility.ALL)
        stmt = self.builder.build(Operation.COUNT, spec)
        if session.query(stmt.sql, stmt.params).scalar():
            return self._plan_update(entity)
        return self._plan_insert(entity, keep_generated=True)

    @staticmethod
    def _key_condition(desc: EntityDescriptor, entity: Any) -> Condition:
        keys = desc.require_primary_key()
        values = [getattr(entity, b.field) for b in keys]
        if any(v is None for v in values):
            raise ValueError(f"{desc.entity.__name__} has no primary key value set")
        return and_(*(eq(b.column, v) for b, v in zip(keys, values, strict=True)))

    # ========== Execution ==========

    def _run(self, session: Session, plan: _Planned) -> UpdateCount:
        stmt = plan.statement
        if stmt.returning:
            results = session.query(stmt.sql, stmt.params)
            return UpdateCount(rowcount=len(results), generated_key=results.scalar())
        return session.execute(stmt.sql, stmt.params)

    def _run_all(self, session: Session, plans: list[_Planned]) -> list[UpdateCount]:
        """Run plans in order, preparing each run of identical SQL once."""
        counts: list[UpdateCount] = []
        for sql, group in itertools.groupby(plans, key=lambda p: p.statement.sql):
            group = list(group)
            if group[0].statement.returning:
                counts.extend(self._run(session, plan) for plan in group)
            else:
                counts.extend(session.execute_many(sql, [p.statement.params for p in group]))
        return counts

    def _check(self, plan: _Planned, count: UpdateCount) -> None:
        if plan.operation is Operation.INSERT or count.rowcount > 0:
            return
        entity_name = plan.descriptor.entity.__name__
        if plan.lock is not None:
            logger.warning(
                "optimistic_lock.conflict",
                entity=entity_name,
                operation=plan.operation.value,
                column=plan.lock.binding.column,
            )
            raise OptimisticLockError(
                f"{entity_name} was changed or deleted by another transaction "
                f"({plan.lock.binding.column} no longer matches)",
                entity=plan.entity,
                column=plan.lock.binding.column,
            )
        if plan.operation is Operation.UPDATE:
            raise NotFoundError(f"{entity_name} with key {plan.descriptor.key_values(plan.entity)} not found")

    def _apply(self, plan: _Planned, count: UpdateCount) -> None:
        entity = plan.entity
        if plan.operation is Operation.INSERT:
            generated = plan.descriptor.generated_key
            if generated is not None and count.generated_key is not None:
                value = self.mapper.convert(count.generated_key, generated, plan.descriptor)
                object.__setattr__(entity, generated.field, value)
        if plan.lock is not None and plan.new_lock_value is not None:
            object.__setattr__(entity, plan.lock.binding.field, plan.new_lock_value)

    def _soft_delete_binding(self, entity: Any) -> ColumnBinding:
        desc = self.cache.resolve(type(entity))
        if desc.soft_delete_column is None:
            raise MappingError(
                f"{type(entity).__name__} doesn't support soft delete. Add SoftDeleteMixin to enable soft delete.",
                entity=type(entity),
            )
        return desc.binding(desc.soft_delete_column)

    def _set_column(self, entity: Any, binding: ColumnBinding, value: Any) -> None:
        desc = self.cache.resolve(type(entity))
        spec = QuerySpec(
            desc,
            condition=self._key_condition(desc, entity),
            assignments=((binding.column, value),),
            visibility=Visibility.ALL,
        )
        stmt = self.builder.build(Operation.UPDATE, spec)
        with self._scope() as session:
            count = session.execute(stmt.sql, stmt.params)
        if count.rowcount == 0:
            raise NotFoundError(f"{desc.entity.__name__} with key {desc.key_values(entity)} not found")
        object.__setattr__(entity, binding.field, value)


def _now_for(binding: ColumnBinding) -> Any:
    now = datetime.now(UTC)
    if issubclass(binding.python_type, datetime):
        return now
    if issubclass(binding.python_type, date):
        return now.date()
    return now.timetz()


def _initial_lock_value(lock: ActiveLock) -> Any:
    if lock.type is LockType.LAST_MODIFIED:
        return _now_for(lock.binding)
    return 1


def _next_lock_value(lock: ActiveLock, current: Any) -> Any:
    if lock.type is LockType.LAST_MODIFIED:
        return _now_for(lock.binding)
    if current is None:
        return 1
    return current + 1
