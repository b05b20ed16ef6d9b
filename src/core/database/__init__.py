"""
Database Core Module

Range partitioning: key model, partition catalog, storage backends, router
and partition creator.
"""

from .partition_keys import KeyType, PartitionKey, PartitionKeySpec
from .partition_catalog import PartitionBound, PartitionCatalog, PartitionDescriptor
from .partition_backends import (
    PartitionBackend,
    PostgresPartitionBackend,
    SQLitePartitionBackend,
    StorageFailure,
    create_partition_backend,
)
from .partition_router import KeyRange, RangeRouter, RoutedQuery
from .partitioning import PartitionCreator, generate_partition_name

__all__ = [
    "KeyType",
    "PartitionKey",
    "PartitionKeySpec",
    "PartitionBound",
    "PartitionCatalog",
    "PartitionDescriptor",
    "PartitionBackend",
    "PostgresPartitionBackend",
    "SQLitePartitionBackend",
    "StorageFailure",
    "create_partition_backend",
    "KeyRange",
    "RangeRouter",
    "RoutedQuery",
    "PartitionCreator",
    "generate_partition_name",
]
