"""
Partition-Scoped Repositories
Provide the repository surface of a logical model over range partitions.

Two implementations share one interface:
- ScopedPartitionRepository: bound to one physical partition
- UnboundPartitionRepository: the union of all partitions, optionally narrowed
  to a key range; it routes each call and delegates to scoped repositories

Predicates are written against the logical model and adapted to the
partition table they run on. Loaded instances are of the logical model class
and are detached from the session; persist changes with ``update``.
"""
from __future__ import annotations

import builtins
from abc import abstractmethod
from collections.abc import Iterable, Iterator
from itertools import islice
from typing import Any

from sqlalchemy import Table, and_, delete, func, insert, inspect, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased
from sqlalchemy.sql.elements import ColumnClause
from sqlalchemy.sql.util import ClauseAdapter

from core.database.partition_backends import PartitionBackend, StorageFailure
from core.database.partition_keys import PartitionKeySpec
from core.database.partition_router import KeyRange, RangeRouter, RoutedQuery
from core.exceptions import PartitionKeyOutOfRangeError, RepositoryException
from core.logging import get_logger
from data_access.repositories.base_repository import (
    BaseSpecification,
    IRepository,
    ISpecification,
    KeyRangeSpecification,
    T,
    as_specification,
)

logger = get_logger(__name__)


def _is_column(element: Any) -> bool:
    # Only named columns are re-pointed at the partition table
    return isinstance(element, ColumnClause)


class IPartitionAccessor(IRepository[T]):
    """Repository over partitioned storage."""

    @property
    @abstractmethod
    def parent_table(self) -> str:
        """Name of the logical (parent) table."""
        pass

    @abstractmethod
    def where(self, specification: ISpecification | Any) -> IPartitionAccessor[T]:
        """Refine with an additional predicate, keeping the same targets."""
        pass

    def add_all(self, entities: Iterable[T]) -> builtins.list[T]:
        """Add multiple entities."""
        return [self.add(entity) for entity in entities]

    def all(self) -> builtins.list[T]:
        """All entities visible through this accessor."""
        return self.list()

    def first(self) -> T | None:
        """First entity in partition-key order, if any."""
        return next(iter(self.iter()), None)

    def __iter__(self) -> Iterator[T]:
        return self.iter()


class ScopedPartitionRepository(IPartitionAccessor[T]):
    """
    Repository bound to one partition's physical table.

    Construction builds SQL constructs only; no query is issued until an
    operation is called. ``where`` returns a handle on the same partition.
    """

    def __init__(
        self,
        session: Session,
        model_class: type[T],
        partition_name: str,
        backend: PartitionBackend,
        key_spec: PartitionKeySpec,
        specification: ISpecification | Any | None = None,
    ):
        self.session = session
        self.model_class = model_class
        self.partition_name = partition_name
        self.backend = backend
        self.key_spec = key_spec
        self.specification = as_specification(specification)

        self._mapper = inspect(model_class)
        self.table: Table = backend.partition_table(self._mapper.local_table, partition_name)
        self._alias = self.table.alias(partition_name)
        self.entity = aliased(model_class, self._alias, adapt_on_names=True)
        self._select_adapter = ClauseAdapter(self._alias, include_fn=_is_column, adapt_on_names=True)
        self._dml_adapter = ClauseAdapter(self.table, include_fn=_is_column, adapt_on_names=True)
        self._attrs = {prop.columns[0].name: prop.key for prop in self._mapper.column_attrs}

    @property
    def parent_table(self) -> str:
        return self.key_spec.table_name

    @property
    def table_name(self) -> str:
        return self.partition_name

    def __repr__(self) -> str:
        return f"<ScopedPartitionRepository {self.model_class.__name__} in {self.partition_name}>"

    def where(self, specification: ISpecification | Any) -> ScopedPartitionRepository[T]:
        """Same partition, combined predicate."""
        return ScopedPartitionRepository(
            self.session,
            self.model_class,
            self.partition_name,
            self.backend,
            self.key_spec,
            self.specification.and_(as_specification(specification)),
        )

    # Reads

    def iter(self, specification: ISpecification | None = None) -> Iterator[T]:
        """Stream entities in partition-key order."""
        stmt = select(self.entity).order_by(*self._order_columns())
        condition = self._condition(self._select_adapter, specification)
        if condition is not None:
            stmt = stmt.where(condition)

        for entity in self.session.scalars(stmt):
            self.session.expunge(entity)
            yield entity

    def list(self, specification: ISpecification | None = None,
             skip: int = 0, limit: int | None = None) -> builtins.list[T]:
        """List entities with filtering."""
        stmt = select(self.entity).order_by(*self._order_columns())
        condition = self._condition(self._select_adapter, specification)
        if condition is not None:
            stmt = stmt.where(condition)
        if skip:
            stmt = stmt.offset(skip)
        if limit is not None:
            stmt = stmt.limit(limit)

        entities = list(self.session.scalars(stmt).all())
        for entity in entities:
            self.session.expunge(entity)
        return entities

    def count(self, specification: ISpecification | None = None) -> int:
        """Count entities."""
        stmt = select(func.count()).select_from(self._alias)
        condition = self._condition(self._select_adapter, specification)
        if condition is not None:
            stmt = stmt.where(condition)
        return self.session.scalar(stmt) or 0

    def get(self, id: Any) -> T | None:
        """Get entity by identity (a scalar or a tuple for composite keys)."""
        stmt = select(self.entity).where(self._identity_condition(self._alias, id))
        condition = self._condition(self._select_adapter, None)
        if condition is not None:
            stmt = stmt.where(condition)

        entity = self.session.scalars(stmt).one_or_none()
        if entity is not None:
            self.session.expunge(entity)
        return entity

    def exists(self, id: Any) -> bool:
        """Check if entity exists."""
        stmt = select(func.count()).select_from(self._alias).where(
            self._identity_condition(self._alias, id)
        )
        condition = self._condition(self._select_adapter, None)
        if condition is not None:
            stmt = stmt.where(condition)
        return (self.session.scalar(stmt) or 0) > 0

    # Writes

    def add(self, entity: T) -> T:
        """
        Insert entity into this partition.

        Raises:
            PartitionKeyOutOfRangeError: the entity's key is outside the bound
        """
        row = self._row_for(entity)
        try:
            result = self.session.connection().execute(insert(self.table).values(**row))
        except IntegrityError as e:
            self._raise_if_out_of_range(e, entity)
            raise

        # Generated keys (autoincrement, column defaults) flow back to the entity
        inserted = result.inserted_primary_key or ()
        for column, value in zip(self.table.primary_key.columns, inserted):
            attr = self._attrs.get(column.name)
            if attr is not None and getattr(entity, attr, None) is None:
                setattr(entity, attr, value)
        return entity

    def update(self, entity: T) -> T:
        """
        Write entity's current values to its row in this partition.

        Raises:
            PartitionKeyOutOfRangeError: the new key is outside the bound
            RepositoryException: no row with the entity's identity
        """
        identity = self._identity_of(entity)
        values = {
            name: value
            for name, value in self._row_for(entity).items()
            if name not in self.key_spec.identity_columns
        }
        if not values:
            return entity

        stmt = update(self.table).where(self._identity_condition(self.table, identity)).values(**values)
        try:
            result = self.session.connection().execute(stmt)
        except IntegrityError as e:
            self._raise_if_out_of_range(e, entity)
            raise

        if result.rowcount == 0:
            raise RepositoryException(
                f"No row with identity {identity} in partition {self.partition_name}",
                details={"table": self.parent_table, "partition": self.partition_name},
            )
        return entity

    def delete(self, id: Any) -> bool:
        """Delete entity by identity."""
        stmt = delete(self.table).where(self._identity_condition(self.table, id))
        condition = self._condition(self._dml_adapter, None)
        if condition is not None:
            stmt = stmt.where(condition)
        result = self.session.connection().execute(stmt)
        return result.rowcount > 0

    def delete_where(self, specification: ISpecification | None = None) -> int:
        """Delete all entities matching the handle's (and the given) predicate."""
        stmt = delete(self.table)
        condition = self._condition(self._dml_adapter, specification)
        if condition is not None:
            stmt = stmt.where(condition)
        result = self.session.connection().execute(stmt)
        return result.rowcount

    # Helpers

    def _condition(self, adapter: ClauseAdapter, specification: ISpecification | None) -> Any:
        spec = self.specification
        if specification is not None:
            spec = spec.and_(as_specification(specification))
        if not spec.conditions:
            return None
        return adapter.traverse(spec.to_sql_condition())

    def _order_columns(self) -> builtins.list[Any]:
        columns = [self._alias.c[self.key_spec.column]]
        columns += [
            self._alias.c[name] for name in self.key_spec.identity_columns
            if name != self.key_spec.column
        ]
        return columns

    def _identity_condition(self, selectable: Any, id: Any) -> Any:
        names = self.key_spec.identity_columns
        values = id if isinstance(id, (tuple, list)) else (id,)
        if len(values) != len(names):
            raise ValueError(
                f"Identity of {self.parent_table} has {len(names)} components {names}, got {id!r}"
            )
        return and_(*[
            selectable.c[name] == (self.key_spec.coerce(value) if name == self.key_spec.column else value)
            for name, value in zip(names, values)
        ])

    def _identity_of(self, entity: T) -> tuple[Any, ...]:
        return tuple(
            getattr(entity, self._attrs.get(name, name)) for name in self.key_spec.identity_columns
        )

    def _row_for(self, entity: T) -> dict[str, Any]:
        row = {}
        autoincrement = self.table.autoincrement_column
        for column in self.table.columns:
            attr = self._attrs.get(column.name)
            if attr is None:
                continue
            value = getattr(entity, attr, None)
            if value is None and (
                column is autoincrement
                or column.default is not None
                or column.server_default is not None
            ):
                continue
            if column.name == self.key_spec.column and value is not None:
                value = self.key_spec.coerce(value)
            row[column.name] = value
        return row

    def _raise_if_out_of_range(self, error: IntegrityError, entity: T) -> None:
        if self.backend.classify(error) != StorageFailure.CONSTRAINT_VIOLATION:
            return
        key = getattr(entity, self.key_spec.attribute or self.key_spec.column, None)
        logger.warning(f"Rejected write of key {key} to partition {self.partition_name}")
        raise PartitionKeyOutOfRangeError(
            f"Key {key} is outside the bound of partition {self.partition_name}",
            table=self.parent_table,
            partition=self.partition_name,
        ) from error


class UnboundPartitionRepository(IPartitionAccessor[T]):
    """
    Repository over the union of a parent table's partitions.

    Reads resolve the partitions to visit at call time, query each one in
    bound order and concatenate the results. An unprovisioned range reads as
    empty. Writes go to the single partition covering the entity's key.
    """

    def __init__(
        self,
        session: Session,
        model_class: type[T],
        router: RangeRouter,
        backend: PartitionBackend,
        key_spec: PartitionKeySpec,
        key_range: KeyRange | None = None,
        specification: ISpecification | Any | None = None,
    ):
        self.session = session
        self.model_class = model_class
        self.router = router
        self.backend = backend
        self.key_spec = key_spec
        self.key_range = key_range
        self.specification = as_specification(specification)

    @property
    def parent_table(self) -> str:
        return self.key_spec.table_name

    def __repr__(self) -> str:
        scope = str(self.key_range) if self.key_range else "all partitions"
        return f"<UnboundPartitionRepository {self.model_class.__name__} over {scope}>"

    # Composition

    def where(self, specification: ISpecification | Any) -> UnboundPartitionRepository[T]:
        """Same key range, combined predicate."""
        return self._with(specification=self.specification.and_(as_specification(specification)))

    def in_partition(self, name: str) -> ScopedPartitionRepository[T]:
        """Handle bound to one partition, carrying this handle's predicate."""
        return ScopedPartitionRepository(
            self.session, self.model_class, name, self.backend, self.key_spec, self.specification
        )

    def partition_key_in(self, start: Any, end: Any) -> UnboundPartitionRepository[T]:
        """Narrow to keys in ``[start, end)``."""
        return self._with(key_range=KeyRange(self.key_spec.coerce(start), self.key_spec.coerce(end)))

    def partition_key_eq(self, key: Any) -> UnboundPartitionRepository[T]:
        """Narrow to one partition key value."""
        return self._with(key_range=KeyRange.point(self.key_spec.coerce(key)))

    def routed(self) -> RoutedQuery:
        """The partitions a read through this handle visits right now."""
        if self.key_range is None:
            return self.router.route_all(self.parent_table)
        return self.router.route(self.parent_table, self.key_range)

    # Reads

    def iter(self, specification: ISpecification | None = None) -> Iterator[T]:
        """Stream entities partition by partition, in partition-key order."""
        routed = self.routed()
        for scoped in self._scoped_for(routed, specification):
            yield from scoped.iter()

    def list(self, specification: ISpecification | None = None,
             skip: int = 0, limit: int | None = None) -> builtins.list[T]:
        """List entities; ``skip``/``limit`` apply across partitions."""
        routed = self.routed()
        scoped = self._scoped_for(routed, specification)
        if routed.is_single_partition:
            return scoped[0].list(skip=skip, limit=limit)

        stop = skip + limit if limit is not None else None
        return list(islice((e for s in scoped for e in s.iter()), skip, stop))

    def count(self, specification: ISpecification | None = None) -> int:
        """Count entities across the routed partitions."""
        return sum(scoped.count() for scoped in self._scoped_for(self.routed(), specification))

    def get(self, id: Any) -> T | None:
        """Get entity by identity, probing only the covering partition when possible."""
        for scoped in self._scoped_for(self._route_identity(id), None):
            entity = scoped.get(id)
            if entity is not None:
                return entity
        return None

    def exists(self, id: Any) -> bool:
        """Check if entity exists."""
        return self.get(id) is not None

    # Writes

    def add(self, entity: T) -> T:
        """
        Insert entity into the partition covering its key.

        Raises:
            NoPartitionError: no partition covers the key
        """
        return self._scoped_for_entity(entity).add(entity)

    def update(self, entity: T) -> T:
        """
        Update entity in the partition covering its current key.

        Moving a row to another partition is ``delete`` followed by ``add``.
        """
        return self._scoped_for_entity(entity).update(entity)

    def delete(self, id: Any) -> bool:
        """Delete entity by identity from whichever partition holds it."""
        deleted = False
        for scoped in self._scoped_for(self._route_identity(id), None):
            deleted = scoped.delete(id) or deleted
        return deleted

    # Helpers

    def _with(self, **changes: Any) -> UnboundPartitionRepository[T]:
        params = {
            "key_range": self.key_range,
            "specification": self.specification,
        }
        params.update(changes)
        return UnboundPartitionRepository(
            self.session, self.model_class, self.router, self.backend, self.key_spec, **params
        )

    def _range_specification(self) -> BaseSpecification:
        if self.key_range is None:
            return BaseSpecification()
        return KeyRangeSpecification(
            self.model_class,
            self.key_spec.attribute or self.key_spec.column,
            self.key_range.start,
            self.key_range.end,
        )

    def _scoped_for(
        self, routed: RoutedQuery, specification: ISpecification | None
    ) -> builtins.list[ScopedPartitionRepository[T]]:
        spec = self.specification.and_(self._range_specification())
        if specification is not None:
            spec = spec.and_(as_specification(specification))
        return [
            ScopedPartitionRepository(
                self.session, self.model_class, partition.name, self.backend, self.key_spec, spec
            )
            for partition in routed.partitions
        ]

    def _scoped_for_entity(self, entity: T) -> ScopedPartitionRepository[T]:
        key = self.key_spec.key_for(entity)
        partition = self.router.resolve_for_write(self.parent_table, key)
        return ScopedPartitionRepository(
            self.session, self.model_class, partition.name, self.backend, self.key_spec
        )

    def _route_identity(self, id: Any) -> RoutedQuery:
        """Route by the key component of a composite identity, else visit all."""
        names = self.key_spec.identity_columns
        if isinstance(id, (tuple, list)) and self.key_spec.column in names and len(id) == len(names):
            key = self.key_spec.coerce(id[names.index(self.key_spec.column)])
            return self.router.route(self.parent_table, KeyRange.point(key))
        return self.routed()
