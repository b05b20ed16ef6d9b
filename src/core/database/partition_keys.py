"""
Partition Key Model
===================

Describes, per partitioned table, which column carries the range key, which
columns make up row identity, and how key values are compared and stored.

Only the designated partition column takes part in range membership. Other
identity components (for example a surrogate ``id`` next to ``created_at``)
are carried through for equality but never compared against bounds.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import Date, DateTime, Integer, Table, TypeDecorator, inspect
from sqlalchemy.exc import NoInspectionAvailable

from core.exceptions import ConfigurationError

UTC = timezone.utc


class KeyType(str, Enum):
    """Comparable types supported as range partition keys."""
    INTEGER = "integer"
    TIMESTAMP = "timestamp"
    DATE = "date"


@dataclass(frozen=True, order=False)
class PartitionKey:
    """
    Key of a single record.

    ``value`` is the range-bearing component, ``identity`` the full identity
    tuple of the row. Ordering uses ``value``; equality uses ``identity``.
    """
    value: Any
    identity: tuple[Any, ...] = field(default=())

    def __post_init__(self):
        if not self.identity:
            object.__setattr__(self, "identity", (self.value,))

    def __lt__(self, other: PartitionKey) -> bool:
        if not isinstance(other, PartitionKey):
            return NotImplemented
        return self.value < other.value

    def __le__(self, other: PartitionKey) -> bool:
        if not isinstance(other, PartitionKey):
            return NotImplemented
        return self.value <= other.value

    def __gt__(self, other: PartitionKey) -> bool:
        if not isinstance(other, PartitionKey):
            return NotImplemented
        return self.value > other.value

    def __ge__(self, other: PartitionKey) -> bool:
        if not isinstance(other, PartitionKey):
            return NotImplemented
        return self.value >= other.value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PartitionKey):
            return NotImplemented
        return self.identity == other.identity

    def __hash__(self) -> int:
        return hash(self.identity)

    def __str__(self) -> str:
        return str(self.value)


def storage_type(column_type):
    """The type a column stores, looking through ``TypeDecorator`` wrappers."""
    while isinstance(column_type, TypeDecorator):
        column_type = column_type.impl
    return column_type


def is_timezone_aware(column_type) -> bool:
    """
    Whether timestamp keys of this column are handled as UTC-aware values.

    Decorated timestamp types (e.g. UTC enforcing datetimes) count as aware.
    """
    if isinstance(column_type, TypeDecorator) and isinstance(storage_type(column_type), DateTime):
        return True
    return bool(getattr(storage_type(column_type), "timezone", False))


def key_type_for_column(column) -> KeyType:
    """Map a SQLAlchemy column type to a supported key type."""
    column_type = storage_type(column.type)
    # DateTime must be checked before Date: neither subclasses the other,
    # but dialect types may subclass both.
    if isinstance(column_type, DateTime):
        return KeyType.TIMESTAMP
    if isinstance(column_type, Date):
        return KeyType.DATE
    if isinstance(column_type, Integer):
        return KeyType.INTEGER
    raise ConfigurationError(
        f"Unsupported partition key type {column.type!r} for column {column.name}",
        table=column.table.name if column.table is not None else None,
    )


@dataclass(frozen=True)
class PartitionKeySpec:
    """Partition key description for one parent table."""
    table_name: str
    column: str
    key_type: KeyType
    identity_columns: tuple[str, ...]
    timezone: bool = False
    attribute: str | None = None
    identity_attributes: tuple[str, ...] = ()

    @classmethod
    def from_table(
        cls,
        table: Table,
        column: str,
        identity: tuple[str, ...] | list[str] | None = None,
    ) -> PartitionKeySpec:
        """
        Build a key spec from table metadata.

        Args:
            table: Parent table
            column: Name of the range partition column
            identity: Identity columns (default: the table's primary key)

        Raises:
            ConfigurationError: column missing or of an unsupported type
        """
        if column not in table.c:
            raise ConfigurationError(
                f"Partition column {column!r} does not exist on {table.name}",
                table=table.name,
            )

        key_column = table.c[column]
        key_type = key_type_for_column(key_column)

        if identity is None:
            identity = tuple(c.name for c in table.primary_key.columns) or (column,)
        else:
            identity = tuple(identity)
            missing = [name for name in identity if name not in table.c]
            if missing:
                raise ConfigurationError(
                    f"Identity columns {missing} do not exist on {table.name}",
                    table=table.name,
                )

        return cls(
            table_name=table.name,
            column=column,
            key_type=key_type,
            identity_columns=identity,
            timezone=is_timezone_aware(key_column.type),
            attribute=column,
            identity_attributes=identity,
        )

    @classmethod
    def from_model(
        cls,
        model: type,
        column: str,
        identity: tuple[str, ...] | list[str] | None = None,
    ) -> PartitionKeySpec:
        """Build a key spec from a mapped SQLModel/SQLAlchemy class."""
        try:
            mapper = inspect(model)
        except NoInspectionAvailable as e:
            raise ConfigurationError(f"{model!r} is not a mapped class") from e

        spec = cls.from_table(mapper.local_table, column, identity)

        # Attribute names can differ from column names
        by_column = {prop.columns[0].name: prop.key for prop in mapper.column_attrs}
        return cls(
            table_name=spec.table_name,
            column=spec.column,
            key_type=spec.key_type,
            identity_columns=spec.identity_columns,
            timezone=spec.timezone,
            attribute=by_column.get(spec.column, spec.column),
            identity_attributes=tuple(by_column.get(c, c) for c in spec.identity_columns),
        )

    @property
    def includes_key_in_identity(self) -> bool:
        return self.column in self.identity_columns

    def coerce(self, value: Any) -> Any:
        """
        Normalize a user supplied key value to the key type.

        Timestamps are normalized to the column: UTC-aware for timezone aware
        columns (naive input is taken as UTC), naive UTC otherwise.

        Raises:
            ConfigurationError: value cannot represent this key type
        """
        if isinstance(value, PartitionKey):
            value = value.value

        if self.key_type == KeyType.INTEGER:
            if isinstance(value, bool) or not isinstance(value, (int, str)):
                raise ConfigurationError(
                    f"Expected an integer partition key for {self.table_name}, got {value!r}",
                    table=self.table_name,
                )
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid integer partition key {value!r}", table=self.table_name
                ) from e

        if self.key_type == KeyType.TIMESTAMP:
            if isinstance(value, str):
                value = _parse_timestamp(value, self.table_name)
            elif isinstance(value, date) and not isinstance(value, datetime):
                value = datetime(value.year, value.month, value.day)
            if not isinstance(value, datetime):
                raise ConfigurationError(
                    f"Expected a datetime partition key for {self.table_name}, got {value!r}",
                    table=self.table_name,
                )
            return self._normalize_timezone(value)

        # DATE
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, str):
            try:
                return date.fromisoformat(value)
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid date partition key {value!r}", table=self.table_name
                ) from e
        if not isinstance(value, date):
            raise ConfigurationError(
                f"Expected a date partition key for {self.table_name}, got {value!r}",
                table=self.table_name,
            )
        return value

    def key_for(self, record: Any) -> PartitionKey:
        """
        Produce the partition key of a record.

        Args:
            record: Mapped instance or a mapping of column names to values

        Raises:
            ConfigurationError: the record has no partition key value
        """
        if isinstance(record, Mapping):
            def read(attr: str, col: str) -> Any:
                return record.get(attr, record.get(col))
        else:
            def read(attr: str, col: str) -> Any:
                return getattr(record, attr, None)

        value = read(self.attribute or self.column, self.column)
        if value is None:
            raise ConfigurationError(
                f"Record has no value for partition column {self.column!r}",
                table=self.table_name,
            )

        value = self.coerce(value)
        identity = tuple(
            value if col == self.column else read(attr, col)
            for attr, col in zip(self.identity_attributes or self.identity_columns, self.identity_columns)
        )
        return PartitionKey(value=value, identity=identity)

    def encode(self, value: Any) -> str:
        """Encode a bound value as ISO text (integers as decimal)."""
        value = self.coerce(value)
        if self.key_type == KeyType.INTEGER:
            return str(value)
        return value.isoformat()

    def decode(self, raw: Any) -> Any:
        """Decode a bound value read back from metadata, normalized like ``coerce``."""
        if raw is None:
            return None
        return self.coerce(decode_value(self.key_type, raw))

    def _normalize_timezone(self, value: datetime) -> datetime:
        if self.timezone:
            return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)
        if value.tzinfo is not None:
            return value.astimezone(UTC).replace(tzinfo=None)
        return value

    def partition_by_clause(self) -> str:
        """Render the PARTITION BY clause for the parent table."""
        if not self.includes_key_in_identity:
            raise ConfigurationError(
                f"Primary key of {self.table_name} must include partition column {self.column!r}",
                table=self.table_name,
            )
        return f"RANGE ({self.column})"


def decode_value(key_type: KeyType | str, raw: Any) -> Any:
    """
    Decode a stored bound value of the given key type.

    Accepts native values unchanged, decimal text for integers and ISO text
    (``T`` or space separated) for timestamps and dates.
    """
    key_type = KeyType(key_type)
    if raw is None:
        return None
    if key_type == KeyType.INTEGER:
        return int(raw)
    if key_type == KeyType.TIMESTAMP:
        if isinstance(raw, datetime):
            return raw
        return datetime.fromisoformat(normalize_utc_offset(str(raw)))
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw)[:10])


def _parse_timestamp(value: str, table_name: str) -> datetime:
    try:
        return datetime.fromisoformat(normalize_utc_offset(value))
    except ValueError as e:
        raise ConfigurationError(
            f"Invalid timestamp partition key {value!r}", table=table_name
        ) from e


def normalize_utc_offset(value: str) -> str:
    """Expand a short ``+HH`` offset (as PostgreSQL renders it) to ``+HH:MM``."""
    value = value.strip()
    # Only a time component carries an offset; "2024-01-01" must stay as is
    has_time = "T" in value or " " in value
    if has_time and len(value) > 3 and value[-3] in "+-" and value[-2:].isdigit():
        return f"{value}:00"
    return value
