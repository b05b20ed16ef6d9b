"""
Range Router
============

Maps a partition-key value or ``[start, end)`` range to the partitions that
intersect it, in ascending bound order. Stateless: every call re-reads the
catalog's current snapshot.
"""
from __future__ import annotations

from dataclasses import dataclass
from collections.abc import Callable
from typing import Any

from core.database.partition_catalog import PartitionCatalog, PartitionDescriptor
from core.database.partition_keys import PartitionKey
from core.exceptions import ConfigurationError, NoPartitionError, UnknownPartitionError
from core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class KeyRange:
    """
    A half-open key range ``[start, end)``, or a point when ``end`` is None.
    """
    start: Any
    end: Any = None

    def __post_init__(self):
        if isinstance(self.start, PartitionKey):
            object.__setattr__(self, "start", self.start.value)
        if isinstance(self.end, PartitionKey):
            object.__setattr__(self, "end", self.end.value)
        if self.start is None:
            raise ConfigurationError("Key range requires a start value")
        if self.end is not None and not self.start < self.end:
            raise ConfigurationError(
                f"Key range start {self.start!r} must be before end {self.end!r}"
            )

    @classmethod
    def point(cls, key: Any) -> KeyRange:
        return cls(start=key)

    @property
    def is_point(self) -> bool:
        return self.end is None

    def matches(self, partition: PartitionDescriptor) -> bool:
        """Whether ``partition`` holds keys of this range."""
        if self.is_point:
            return partition.bound.contains(self.start)
        return partition.bound.overlaps(self.start, self.end)

    def __str__(self) -> str:
        if self.is_point:
            return str(self.start)
        return f"[{self.start}, {self.end})"


@dataclass(frozen=True)
class RoutedQuery:
    """
    Transient pairing of a requested key range with the partitions to visit.
    ``key_range`` is None when every partition is visited.
    """
    parent_table: str
    key_range: KeyRange | None
    partitions: tuple[PartitionDescriptor, ...]

    @property
    def is_empty(self) -> bool:
        return not self.partitions

    @property
    def is_single_partition(self) -> bool:
        return len(self.partitions) == 1

    @property
    def partition_names(self) -> list[str]:
        return [p.name for p in self.partitions]


def as_key_range(key_or_range: Any, coerce: Callable[[Any], Any] | None = None) -> KeyRange:
    """
    Build a ``KeyRange`` from a key, ``(start, end)`` tuple or ``KeyRange``.

    ``coerce`` (usually ``PartitionKeySpec.coerce``) normalizes each end
    first, so ISO strings and aware timestamps compare with stored bounds.
    """
    if isinstance(key_or_range, KeyRange):
        start, end = key_or_range.start, key_or_range.end
    elif isinstance(key_or_range, tuple) and len(key_or_range) == 2:
        start, end = key_or_range
    else:
        start, end = key_or_range, None

    if coerce is not None:
        start = coerce(start) if start is not None else None
        end = coerce(end) if end is not None else None
    return KeyRange(start, end)


class RangeRouter:
    """Resolves keys and key ranges against the partition catalog."""

    def __init__(self, catalog: PartitionCatalog):
        self.catalog = catalog

    def resolve(self, parent_table: str, key_or_range: Any) -> list[PartitionDescriptor]:
        """
        Partitions intersecting a key or range, ordered by bound start.

        Args:
            parent_table: Parent table name
            key_or_range: A key value, ``PartitionKey``, ``KeyRange`` or
                ``(start, end)`` tuple

        Returns:
            Matching partitions; empty when the range is not provisioned
        """
        key_range = as_key_range(key_or_range)
        partitions = [p for p in self.catalog.list(parent_table) if key_range.matches(p)]
        logger.debug(
            f"Resolved {key_range} on {parent_table} to {[p.name for p in partitions]}"
        )
        return partitions

    def route(self, parent_table: str, key_or_range: Any) -> RoutedQuery:
        """Resolve and wrap the result for a read."""
        key_range = as_key_range(key_or_range)
        return RoutedQuery(
            parent_table=parent_table,
            key_range=key_range,
            partitions=tuple(self.resolve(parent_table, key_range)),
        )

    def route_all(self, parent_table: str) -> RoutedQuery:
        """Visit every known partition, in bound order."""
        return RoutedQuery(
            parent_table=parent_table,
            key_range=None,
            partitions=self.catalog.list(parent_table),
        )

    def resolve_for_write(self, parent_table: str, key: Any) -> PartitionDescriptor:
        """
        The single partition a record with ``key`` must be written to.

        Raises:
            NoPartitionError: no partition covers the key
        """
        key_range = KeyRange.point(key)
        partitions = self.resolve(parent_table, key_range)
        if not partitions:
            raise NoPartitionError(
                f"No partition of {parent_table} covers key {key_range.start}",
                table=parent_table,
                key=key_range.start,
            )
        return partitions[0]

    def resolve_single(self, parent_table: str, name: str) -> PartitionDescriptor:
        """
        Direct lookup of a partition by name.

        Raises:
            UnknownPartitionError: no such partition in the catalog
        """
        partition = self.catalog.find(parent_table, name)
        if partition is None:
            raise UnknownPartitionError(
                f"Partition {name} not found on {parent_table}",
                table=parent_table,
                partition=name,
            )
        return partition
