"""
Repository Pattern Implementation
Provides data access abstractions with clean separation of concerns.
"""
from __future__ import annotations

import builtins
from abc import ABC, abstractmethod
from collections.abc import Iterator
from typing import Any, Generic, TypeVar

from sqlalchemy import and_, or_
from sqlmodel import SQLModel

# Type variables for generic repository
T = TypeVar('T', bound=SQLModel)


class ISpecification(ABC):
    """Interface for query specifications (Specification pattern)."""

    @abstractmethod
    def to_sql_condition(self) -> Any:
        """Convert specification to SQL condition."""
        pass


class BaseSpecification(ISpecification):
    """Base implementation of specification pattern."""

    def __init__(self, conditions: list[Any] | None = None):
        self.conditions = conditions or []

    def to_sql_condition(self) -> Any:
        """Convert to SQL condition using AND logic."""
        if not self.conditions:
            return True
        if len(self.conditions) == 1:
            return self.conditions[0]
        return and_(*self.conditions)

    def and_(self, other: BaseSpecification) -> BaseSpecification:
        """Combine specifications with AND."""
        combined_conditions = self.conditions + other.conditions
        return BaseSpecification(combined_conditions)

    def or_(self, other: BaseSpecification) -> BaseSpecification:
        """Combine specifications with OR."""
        return BaseSpecification([or_(self.to_sql_condition(), other.to_sql_condition())])


def as_specification(specification: ISpecification | list[Any] | Any | None) -> BaseSpecification:
    """Accept a specification, a list of conditions or a single condition."""
    if specification is None:
        return BaseSpecification()
    if isinstance(specification, BaseSpecification):
        return specification
    if isinstance(specification, ISpecification):
        return BaseSpecification([specification.to_sql_condition()])
    if isinstance(specification, list):
        return BaseSpecification(specification)
    return BaseSpecification([specification])


class IRepository(Generic[T], ABC):
    """Generic synchronous repository interface."""

    @abstractmethod
    def add(self, entity: T) -> T:
        """Add a new entity."""
        pass

    @abstractmethod
    def get(self, id: Any) -> T | None:
        """Get entity by primary key."""
        pass

    @abstractmethod
    def update(self, entity: T) -> T:
        """Update an existing entity."""
        pass

    @abstractmethod
    def delete(self, id: Any) -> bool:
        """Delete entity by primary key."""
        pass

    @abstractmethod
    def list(self, specification: ISpecification | None = None,
             skip: int = 0, limit: int | None = None) -> builtins.list[T]:
        """List entities with optional filtering."""
        pass

    @abstractmethod
    def iter(self, specification: ISpecification | None = None) -> Iterator[T]:
        """Stream entities with optional filtering."""
        pass

    @abstractmethod
    def count(self, specification: ISpecification | None = None) -> int:
        """Count entities with optional filtering."""
        pass

    @abstractmethod
    def exists(self, id: Any) -> bool:
        """Check if entity exists."""
        pass


# Common specifications for querying

class KeyRangeSpecification(BaseSpecification):
    """Specification for half-open ``[start, end)`` filtering on one column."""

    def __init__(self, model_class: type, field_name: str, start: Any, end: Any | None = None):
        field_attr = getattr(model_class, field_name)
        if end is None:
            conditions = [field_attr == start]
        else:
            conditions = [field_attr >= start, field_attr < end]
        super().__init__(conditions)
