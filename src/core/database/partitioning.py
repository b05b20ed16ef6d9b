"""
Range Partition Creator
=======================

Provisions child partitions of a range partitioned table:
- Bound validation and early overlap detection against the catalog
- Collision-resistant partition names when none is given
- Two-step physical creation (create table, attach with bound) where a
  rejected attach drops the half-created table before the error surfaces
- Explicit partition drops

The storage engine is the authority on overlap. The catalog pre-check only
fails fast; concurrent creators are arbitrated by the engine at attach time.
"""
from __future__ import annotations

import random
import string
from typing import Any

from sqlalchemy import Table
from sqlalchemy.exc import SQLAlchemyError

from core.config import settings
from core.database.partition_backends import PartitionBackend, StorageFailure
from core.database.partition_catalog import PartitionBound, PartitionCatalog
from core.database.partition_keys import PartitionKeySpec
from core.exceptions import (
    DuplicateNameError,
    RangeOverlapError,
    UnknownPartitionError,
)
from core.logging import get_logger_with_context

PARTITION_NAME_ALPHABET = string.ascii_lowercase + string.digits

# PostgreSQL truncates identifiers beyond 63 bytes
MAX_IDENTIFIER_LENGTH = 63


def generate_partition_name(
    parent_table: str,
    rng: random.Random,
    suffix_length: int = 7,
) -> str:
    """
    Derive a partition name from the parent table plus a random suffix.

    Pure given ``rng``: the same seed yields the same name.
    """
    suffix = "".join(rng.choice(PARTITION_NAME_ALPHABET) for _ in range(suffix_length))
    prefix = parent_table[: MAX_IDENTIFIER_LENGTH - suffix_length - 1]
    return f"{prefix}_{suffix}"


class PartitionCreator:
    """
    Creates and drops the partitions of one parent table.

    Features:
    - ``create_partition(start, end, name=None) -> name``
    - atomic-looking outcome: a fully attached partition exists, or none does
    - catalog invalidation after every successful change
    """

    def __init__(
        self,
        table: Table,
        key_spec: PartitionKeySpec,
        backend: PartitionBackend,
        catalog: PartitionCatalog,
        rng: random.Random | None = None,
        suffix_length: int | None = None,
        max_name_attempts: int | None = None,
    ):
        self.table = table
        self.key_spec = key_spec
        self.backend = backend
        self.catalog = catalog
        self.rng = rng or random.Random()
        self.suffix_length = suffix_length or settings.partition_name_suffix_length
        self.max_name_attempts = max_name_attempts or settings.partition_name_max_attempts
        self.log = get_logger_with_context(__name__, table=table.name)
        backend.register(key_spec)

    @property
    def parent_table(self) -> str:
        return self.table.name

    def create_partitioned_table(self) -> None:
        """Create the parent table (and backend metadata) if missing."""
        self.backend.create_partitioned_table(self.table, self.key_spec)
        self.catalog.invalidate(self.parent_table)

    def create_partition(self, start: Any, end: Any, name: str | None = None) -> str:
        """
        Create a partition covering ``[start, end)``.

        Args:
            start: Inclusive lower bound
            end: Exclusive upper bound
            name: Partition name; generated from the parent name when omitted

        Returns:
            Name of the created partition

        Raises:
            ConfigurationError: bounds invalid or not ordered
            RangeOverlapError: bound intersects an existing partition
            DuplicateNameError: name already taken
        """
        bound = PartitionBound(self.key_spec.coerce(start), self.key_spec.coerce(end))
        existing = self.catalog.list(self.parent_table)

        overlapping = [p.name for p in existing if p.bound.overlaps(bound.start, bound.end)]
        if overlapping:
            raise RangeOverlapError(
                f"Range [{bound.start}, {bound.end}) of {self.parent_table} "
                f"overlaps partitions {', '.join(overlapping)}",
                table=self.parent_table,
                partition=name,
                start=bound.start,
                end=bound.end,
            )

        if name is not None:
            if any(p.name == name for p in existing):
                raise DuplicateNameError(
                    f"Partition {name} already exists on {self.parent_table}",
                    table=self.parent_table,
                    partition=name,
                )
            self._create(name, bound)
            return name

        taken = {p.name for p in existing}
        for _ in range(self.max_name_attempts):
            candidate = generate_partition_name(self.parent_table, self.rng, self.suffix_length)
            if candidate in taken:
                continue
            try:
                self._create(candidate, bound)
            except DuplicateNameError:
                # Name held by a table outside this catalog; try another
                taken.add(candidate)
                continue
            return candidate

        raise DuplicateNameError(
            f"Could not find an unused partition name for {self.parent_table} "
            f"after {self.max_name_attempts} attempts",
            table=self.parent_table,
        )

    def _create(self, name: str, bound: PartitionBound) -> None:
        try:
            self.backend.create_child_table(self.table, name, bound, self.key_spec)
        except SQLAlchemyError as e:
            if self.backend.classify(e) == StorageFailure.ALREADY_EXISTS:
                raise DuplicateNameError(
                    f"Table {name} already exists", table=self.parent_table, partition=name
                ) from e
            raise

        try:
            self.backend.attach_partition(self.table, name, bound, self.key_spec)
        except BaseException as e:
            dropped = self._cleanup(name)
            if isinstance(e, SQLAlchemyError) and self.backend.classify(e) == StorageFailure.CONSTRAINT_VIOLATION:
                raise RangeOverlapError(
                    f"Storage engine rejected range [{bound.start}, {bound.end}) "
                    f"for {name} on {self.parent_table}: {e}",
                    table=self.parent_table,
                    partition=name,
                    start=bound.start,
                    end=bound.end,
                    details={} if dropped else {"orphaned": name},
                ) from e
            raise

        self.catalog.invalidate(self.parent_table)
        self.log.info(
            f"Created partition {name} of {self.parent_table} for [{bound.start}, {bound.end})",
            extra={"partition": name},
        )

    def _cleanup(self, name: str) -> bool:
        """Drop a child table whose attach failed; False when the table is left behind."""
        try:
            self.backend.drop_partition(self.parent_table, name)
        except SQLAlchemyError as e:
            self.log.error(
                f"Failed to drop unattached partition table {name}, left orphaned: {e}",
                extra={"partition": name},
            )
            return False
        self.log.warning(
            f"Dropped unattached partition table {name} of {self.parent_table}",
            extra={"partition": name},
        )
        return True

    def drop_partition(self, name: str) -> None:
        """
        Drop an existing partition and its rows.

        Raises:
            UnknownPartitionError: no such partition in the catalog
        """
        if self.catalog.find(self.parent_table, name) is None:
            raise UnknownPartitionError(
                f"Partition {name} not found on {self.parent_table}",
                table=self.parent_table,
                partition=name,
            )

        try:
            self.backend.drop_partition(self.parent_table, name)
        except SQLAlchemyError as e:
            if self.backend.classify(e) == StorageFailure.NOT_FOUND:
                raise UnknownPartitionError(
                    f"Partition {name} not found on {self.parent_table}",
                    table=self.parent_table,
                    partition=name,
                ) from e
            raise
        finally:
            self.catalog.invalidate(self.parent_table)

        self.log.info(f"Dropped partition {name} of {self.parent_table}", extra={"partition": name})
