"""
Partitioned Table
Binds one mapped model to its partition key, catalog, creator and router and
exposes the model-level partitioning API.

Usage:
    events = PartitionedTable(Event, "created_at", engine=engine)
    events.create_partitioned_table()
    events.create_partition(day, day + timedelta(days=1), name="events_a")

    with Session(engine) as session:
        events.partition_key_in(session, day, day + timedelta(hours=6)).list()
"""
from __future__ import annotations

import random
from typing import Any, Generic

from sqlalchemy import Engine, Table, inspect
from sqlalchemy.orm import Session

from core.config import settings
from core.database.partition_backends import PartitionBackend, create_partition_backend
from core.database.partition_catalog import PartitionCatalog, PartitionDescriptor
from core.database.partition_keys import PartitionKeySpec
from core.database.partition_router import RangeRouter, as_key_range
from core.database.partitioning import PartitionCreator
from core.logging import get_logger
from data_access.db import get_engine
from data_access.repositories.base_repository import ISpecification, T
from data_access.repositories.partitioned_repository import (
    ScopedPartitionRepository,
    UnboundPartitionRepository,
)

logger = get_logger(__name__)


class PartitionedTable(Generic[T]):
    """
    Range partitioned view of a mapped model.

    Catalog, backend and router are injectable so several tables (or
    several processes' worth of views in tests) can share or isolate them.
    """

    def __init__(
        self,
        model_class: type[T],
        partition_key: str,
        engine: Engine | None = None,
        backend: PartitionBackend | None = None,
        catalog: PartitionCatalog | None = None,
        router: RangeRouter | None = None,
        identity: tuple[str, ...] | list[str] | None = None,
        rng: random.Random | None = None,
    ):
        self.model_class = model_class
        self.key_spec = PartitionKeySpec.from_model(model_class, partition_key, identity)

        if backend is None:
            backend = create_partition_backend(engine or get_engine())
        self.backend = backend
        self.engine = backend.engine

        self.catalog = catalog or PartitionCatalog(
            backend, ttl_seconds=settings.partition_catalog_ttl_seconds
        )
        self.router = router or RangeRouter(self.catalog)
        self.creator = PartitionCreator(
            self.table, self.key_spec, self.backend, self.catalog, rng=rng
        )
        logger.debug(
            f"Bound {model_class.__name__} to {self.table_name} "
            f"RANGE ({self.key_spec.column}) on {self.backend.dialect_name}"
        )

    @property
    def table(self) -> Table:
        return inspect(self.model_class).local_table

    @property
    def table_name(self) -> str:
        return self.key_spec.table_name

    @property
    def primary_key(self) -> tuple[str, ...]:
        """Identity columns, e.g. ``("id", "created_at")``."""
        return self.key_spec.identity_columns

    def __repr__(self) -> str:
        return f"<PartitionedTable {self.table_name} RANGE ({self.key_spec.column})>"

    # Lifecycle

    def create_partitioned_table(self) -> None:
        """Create the parent table if it does not exist."""
        self.creator.create_partitioned_table()

    def create_partition(self, start: Any, end: Any, name: str | None = None) -> str:
        """Create a partition for ``[start, end)`` and return its name."""
        return self.creator.create_partition(start, end, name=name)

    def drop_partition(self, name: str) -> None:
        """Drop a partition and the rows it holds."""
        self.creator.drop_partition(name)

    # Metadata

    def partitions(self) -> list[str]:
        """Partition names in bound order."""
        return self.catalog.names(self.table_name)

    def partition_descriptors(self) -> tuple[PartitionDescriptor, ...]:
        return self.catalog.list(self.table_name)

    def refresh(self) -> None:
        """Drop the cached listing so the next read sees out-of-band changes."""
        self.catalog.invalidate(self.table_name)

    def resolve(self, key_or_range: Any) -> list[PartitionDescriptor]:
        """Partitions holding a key or intersecting a ``(start, end)`` range."""
        key_range = as_key_range(key_or_range, self.key_spec.coerce)
        return self.router.resolve(self.table_name, key_range)

    def resolve_single(self, name: str) -> PartitionDescriptor:
        return self.router.resolve_single(self.table_name, name)

    # Access

    def repository(
        self, session: Session, specification: ISpecification | Any | None = None
    ) -> UnboundPartitionRepository[T]:
        """Accessor over all partitions."""
        return UnboundPartitionRepository(
            session,
            self.model_class,
            self.router,
            self.backend,
            self.key_spec,
            specification=specification,
        )

    def in_partition(self, session: Session, name: str) -> ScopedPartitionRepository[T]:
        """
        Accessor bound to one partition.

        Raises:
            UnknownPartitionError: no partition with that name
        """
        self.router.resolve_single(self.table_name, name)
        return self.repository(session).in_partition(name)

    def partition_key_in(self, session: Session, start: Any, end: Any) -> UnboundPartitionRepository[T]:
        """Accessor over keys in ``[start, end)``."""
        return self.repository(session).partition_key_in(start, end)

    def partition_key_eq(self, session: Session, key: Any) -> UnboundPartitionRepository[T]:
        """Accessor over one key value."""
        return self.repository(session).partition_key_eq(key)
