"""
Custom exception classes for the application.
Provides specific error types for partition management and routing.
"""

from typing import Any


class BaseApplicationException(Exception):
    """Base exception class for all application exceptions."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize base exception.

        Args:
            message: Error message
            error_code: Optional error code for categorization
            details: Optional additional error details
        """
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationException(BaseApplicationException):
    """Raised when configuration is invalid or missing."""

    pass


class DatabaseException(BaseApplicationException):
    """Raised when database operations fail."""

    pass


class RepositoryException(DatabaseException):
    """Raised when repository operations fail."""

    pass


class PartitioningException(DatabaseException):
    """Base exception for partition lifecycle and routing errors."""

    def __init__(
        self,
        message: str,
        table: str | None = None,
        partition: str | None = None,
        **kwargs: Any
    ) -> None:
        """
        Initialize partitioning exception.

        Args:
            message: Error message
            table: Parent table involved
            partition: Partition name involved
            **kwargs: Additional arguments
        """
        details = kwargs.get("details", {})
        if table:
            details["table"] = table
        if partition:
            details["partition"] = partition
        kwargs["details"] = details
        self.table = table
        self.partition = partition
        super().__init__(message, **kwargs)


class ConfigurationError(PartitioningException, ConfigurationException):
    """Raised for a bad partition key or bound setup. Never retried."""

    pass


class RangeOverlapError(PartitioningException):
    """Raised when a new bound intersects an existing sibling partition."""

    def __init__(
        self,
        message: str,
        start: Any = None,
        end: Any = None,
        **kwargs: Any
    ) -> None:
        details = kwargs.get("details", {})
        if start is not None:
            details["start"] = str(start)
        if end is not None:
            details["end"] = str(end)
        kwargs["details"] = details
        self.start = start
        self.end = end
        super().__init__(message, **kwargs)


class DuplicateNameError(PartitioningException):
    """Raised when a partition name is already taken."""

    pass


class NoPartitionError(PartitioningException):
    """Raised when a write targets a key range that has not been provisioned."""

    def __init__(self, message: str, key: Any = None, **kwargs: Any) -> None:
        details = kwargs.get("details", {})
        if key is not None:
            details["key"] = str(key)
        kwargs["details"] = details
        self.key = key
        super().__init__(message, **kwargs)


class UnknownPartitionError(PartitioningException):
    """Raised when a partition looked up by name is not in the catalog."""

    pass


class PartitionKeyOutOfRangeError(PartitioningException):
    """Raised when the storage engine rejects a row outside its partition bound."""

    pass


class TransientCatalogError(PartitioningException):
    """
    Raised by storage backends when partition metadata cannot be read.
    The partition catalog converts it into an empty listing.
    """

    pass
