"""
Partition Catalog
=================

Cached index of the child partitions of each parent table.

The storage engine's metadata is the source of truth; the catalog holds a
snapshot per parent table that is replaced as a whole (never mutated in place)
so readers always see a complete listing. A failed metadata read degrades to
an empty listing instead of propagating into routing code.
"""
from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from core.exceptions import ConfigurationError
from core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PartitionBound:
    """
    Half-open key interval ``[start, end)``.

    ``None`` marks an unbounded side (MINVALUE/MAXVALUE); bounds read from the
    catalog may carry one, bounds passed to the creator never do.
    """
    start: Any
    end: Any

    def __post_init__(self):
        if self.start is not None and self.end is not None:
            try:
                ordered = self.start < self.end
            except TypeError as e:
                raise ConfigurationError(
                    f"Partition bounds {self.start!r} and {self.end!r} are not comparable"
                ) from e
            if not ordered:
                raise ConfigurationError(
                    f"Partition start {self.start!r} must be before end {self.end!r}"
                )

    def contains(self, key: Any) -> bool:
        """Whether ``start <= key < end``."""
        if self.start is not None and key < self.start:
            return False
        if self.end is not None and key >= self.end:
            return False
        return True

    def overlaps(self, start: Any, end: Any) -> bool:
        """Half-open intersection test; ``None`` means unbounded on that side."""
        if self.start is not None and end is not None and not self.start < end:
            return False
        if start is not None and self.end is not None and not start < self.end:
            return False
        return True


@dataclass(frozen=True)
class PartitionDescriptor:
    """A child partition as recorded in the storage engine's metadata."""
    name: str
    bound: PartitionBound
    parent_table: str

    @property
    def start(self) -> Any:
        return self.bound.start

    @property
    def end(self) -> Any:
        return self.bound.end


def sort_key(descriptor: PartitionDescriptor) -> tuple:
    # Unbounded start sorts first
    start = descriptor.bound.start
    if start is None:
        return (False, 0)
    return (True, start)


class PartitionMetadataSource(Protocol):
    """Metadata boundary consumed by the catalog."""

    def fetch_partitions(self, parent_table: str) -> Sequence[PartitionDescriptor]:
        """Read the current partitions of ``parent_table`` from the engine."""
        ...


@dataclass(frozen=True)
class _Snapshot:
    partitions: tuple[PartitionDescriptor, ...]
    fetched_at: float


class PartitionCatalog:
    """
    Explicitly owned partition cache, shared by creators and routers.

    Invariant: a listing may be older than the latest creation, but it only
    ever contains partitions the engine reported.
    """

    def __init__(
        self,
        source: PartitionMetadataSource,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._snapshots: dict[str, _Snapshot] = {}
        self._lock = threading.Lock()

    def list(self, parent_table: str) -> tuple[PartitionDescriptor, ...]:
        """
        Return the partitions of ``parent_table`` ordered by bound start.

        Served from cache when present and fresh; otherwise fetched from the
        engine and cached. A failed fetch returns an empty tuple and is not
        cached.
        """
        snapshot = self._snapshots.get(parent_table)
        if snapshot is not None and self._is_fresh(snapshot):
            return snapshot.partitions

        with self._lock:
            # Another thread may have refreshed while we waited
            snapshot = self._snapshots.get(parent_table)
            if snapshot is not None and self._is_fresh(snapshot):
                return snapshot.partitions

            try:
                fetched = self.source.fetch_partitions(parent_table)
            except Exception as e:
                logger.warning(
                    f"Could not load partitions for {parent_table}, treating as none: {e}"
                )
                return ()

            partitions = tuple(sorted(fetched, key=sort_key))
            snapshots = dict(self._snapshots)
            snapshots[parent_table] = _Snapshot(partitions, self._clock())
            self._snapshots = snapshots

        logger.debug(f"Loaded {len(partitions)} partitions for {parent_table}")
        return partitions

    def names(self, parent_table: str) -> list[str]:
        """Partition names of ``parent_table`` in bound order."""
        return [p.name for p in self.list(parent_table)]

    def find(self, parent_table: str, name: str) -> PartitionDescriptor | None:
        """Look up a partition by name."""
        for partition in self.list(parent_table):
            if partition.name == name:
                return partition
        return None

    def invalidate(self, parent_table: str | None = None) -> None:
        """Force the next ``list`` to re-fetch; ``None`` clears every table."""
        with self._lock:
            if parent_table is None:
                self._snapshots = {}
            elif parent_table in self._snapshots:
                snapshots = dict(self._snapshots)
                del snapshots[parent_table]
                self._snapshots = snapshots
        logger.debug(f"Invalidated partition catalog for {parent_table or 'all tables'}")

    def _is_fresh(self, snapshot: _Snapshot) -> bool:
        if self.ttl_seconds is None:
            return True
        return self._clock() - snapshot.fetched_at < self.ttl_seconds
