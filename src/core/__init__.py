"""Core module containing configuration, logging, exceptions and the partition engine."""

from .config import settings
from .exceptions import (
    ConfigurationError,
    DuplicateNameError,
    NoPartitionError,
    PartitionKeyOutOfRangeError,
    PartitioningException,
    RangeOverlapError,
    TransientCatalogError,
    UnknownPartitionError,
)
from .logging import get_logger

__all__ = [
    "settings",
    "PartitioningException",
    "ConfigurationError",
    "RangeOverlapError",
    "DuplicateNameError",
    "NoPartitionError",
    "UnknownPartitionError",
    "PartitionKeyOutOfRangeError",
    "TransientCatalogError",
    "get_logger",
]
