"""SQLModel models used by the partitioning tests."""
from datetime import datetime, timezone

from sqlalchemy import DateTime, TypeDecorator
from sqlmodel import Field, SQLModel


class UTCDateTime(TypeDecorator):
    """Timestamp stored as naive UTC that only binds timezone aware values."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime {value!r} cannot be stored as UTC")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class Event(SQLModel, table=True):
    """Timestamp partitioned model with a composite ``(id, created_at)`` key."""
    __tablename__ = "events"

    id: int = Field(primary_key=True)
    created_at: datetime = Field(primary_key=True, sa_type=DateTime())
    name: str
    value: int = 0


class Shipment(SQLModel, table=True):
    """Partitioned on a decorated UTC timestamp."""
    __tablename__ = "shipments"

    id: int = Field(primary_key=True)
    shipped_at: datetime = Field(primary_key=True, sa_type=UTCDateTime())
    carrier: str


class Delivery(SQLModel, table=True):
    """Partitioned on a ``timestamp with time zone`` column."""
    __tablename__ = "deliveries"

    id: int = Field(primary_key=True)
    delivered_at: datetime = Field(primary_key=True, sa_type=DateTime(timezone=True))
    courier: str


class Reading(SQLModel, table=True):
    """Integer partitioned model keyed on its id."""
    __tablename__ = "readings"

    id: int = Field(primary_key=True)
    sensor: str
