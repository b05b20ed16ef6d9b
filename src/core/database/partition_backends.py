"""
Partition Storage Backends
==========================

Storage-engine boundary for range partitioning:

- PostgreSQL: declarative partitioning (``PARTITION BY RANGE`` parents,
  ``ATTACH PARTITION ... FOR VALUES FROM (...) TO (...)`` children). The
  engine rejects overlapping bounds and rows outside a partition's bound.
- SQLite: an emulation for development and tests. Children are plain tables
  with a CHECK constraint on the key range; bounds are recorded in a registry
  table whose trigger rejects overlapping inserts inside the engine.

Backends issue the physical operations and report failures as SQLAlchemy
errors. ``classify`` maps those errors to ``StorageFailure`` so callers can
tell overlap, duplicate, missing and transient failures apart.
"""
from __future__ import annotations

import re
import threading
from abc import ABC, abstractmethod
from datetime import date, datetime
from enum import Enum
from typing import Any

from sqlalchemy import CheckConstraint, Column, Engine, MetaData, Table, bindparam, text
from sqlalchemy.exc import DBAPIError, DisconnectionError, SQLAlchemyError

from core.config import settings
from core.database.partition_catalog import PartitionBound, PartitionDescriptor
from core.database.partition_keys import KeyType, PartitionKeySpec, decode_value, normalize_utc_offset
from core.exceptions import ConfigurationError, TransientCatalogError
from core.logging import get_logger

logger = get_logger(__name__)


class StorageFailure(str, Enum):
    """Storage failure categories."""
    CONSTRAINT_VIOLATION = "constraint_violation"
    UNIQUE_VIOLATION = "unique_violation"
    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    OTHER = "other"


class PartitionBackend(ABC):
    """Physical partition operations for one database engine."""

    dialect_name: str = ""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._tables: dict[tuple[str, str], Table] = {}
        self._key_specs: dict[str, PartitionKeySpec] = {}

    def register(self, key_spec: PartitionKeySpec) -> None:
        """Remember a table's key spec so fetched bounds come back normalized like user keys."""
        self._key_specs[key_spec.table_name] = key_spec

    def _bound(self, parent_table: str, start: Any, end: Any) -> PartitionBound:
        key_spec = self._key_specs.get(parent_table)
        if key_spec is not None:
            start, end = key_spec.decode(start), key_spec.decode(end)
        return PartitionBound(start=start, end=end)

    @abstractmethod
    def create_partitioned_table(self, table: Table, key_spec: PartitionKeySpec) -> None:
        """Create the parent table of a range partitioned model."""

    @abstractmethod
    def create_child_table(
        self, parent: Table, name: str, bound: PartitionBound, key_spec: PartitionKeySpec
    ) -> None:
        """Create the physical table of a new partition, not yet attached."""

    @abstractmethod
    def attach_partition(
        self, parent: Table, name: str, bound: PartitionBound, key_spec: PartitionKeySpec
    ) -> None:
        """Attach a child table with ``bound``; the engine rejects overlaps."""

    @abstractmethod
    def drop_partition(self, parent_table: str, name: str) -> None:
        """Detach (if attached) and drop a partition's table."""

    @abstractmethod
    def fetch_partitions(self, parent_table: str) -> list[PartitionDescriptor]:
        """
        Read the partitions of ``parent_table`` from engine metadata.

        Raises:
            TransientCatalogError: metadata could not be read
        """

    @abstractmethod
    def classify(self, error: BaseException) -> StorageFailure:
        """Map a storage error to a failure category."""

    def partition_table(self, parent: Table, name: str) -> Table:
        """
        A ``Table`` with the parent's columns under the partition's name.

        Used to aim ORM reads and Core DML at one partition. Built from
        in-memory metadata only; no query is issued.
        """
        cache_key = (parent.name, name)
        table = self._tables.get(cache_key)
        if table is None:
            table = parent.to_metadata(MetaData(), name=name)
            self._tables[cache_key] = table
        return table

    def quote(self, identifier: str) -> str:
        return self.engine.dialect.identifier_preparer.quote(identifier)


def _sqlstate(error: BaseException) -> str | None:
    orig = getattr(error, "orig", None) or error
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


def _is_transient(error: BaseException) -> bool:
    if isinstance(error, DisconnectionError):
        return True
    return isinstance(error, DBAPIError) and bool(error.connection_invalidated)


class PostgresPartitionBackend(PartitionBackend):
    """PostgreSQL declarative range partitioning."""

    dialect_name = "postgresql"

    # SQLSTATE codes, see https://www.postgresql.org/docs/current/errcodes-appendix.html
    SQLSTATE_FAILURES = {
        "23514": StorageFailure.CONSTRAINT_VIOLATION,   # check_violation / partition constraint
        "42P17": StorageFailure.CONSTRAINT_VIOLATION,   # invalid_object_definition / overlap
        "23505": StorageFailure.UNIQUE_VIOLATION,
        "42P07": StorageFailure.ALREADY_EXISTS,         # duplicate_table
        "42P01": StorageFailure.NOT_FOUND,              # undefined_table
        "40001": StorageFailure.TRANSIENT,              # serialization_failure
        "40P01": StorageFailure.TRANSIENT,              # deadlock_detected
        "55P03": StorageFailure.TRANSIENT,              # lock_not_available
        "57014": StorageFailure.TRANSIENT,              # query_canceled
    }

    FOR_VALUES_RE = re.compile(r"^FOR VALUES FROM \((?P<start>.+)\) TO \((?P<end>.+)\)$", re.DOTALL)

    PARTITIONS_SQL = """
        SELECT child.relname AS name,
               pg_get_expr(child.relpartbound, child.oid) AS bound
        FROM pg_inherits inh
        JOIN pg_class parent ON parent.oid = inh.inhparent
        JOIN pg_class child ON child.oid = inh.inhrelid
        JOIN pg_namespace ns ON ns.oid = parent.relnamespace
        WHERE parent.relname = :parent_table
          AND ns.nspname = :schema
    """

    def __init__(self, engine: Engine, schema: str = "public"):
        super().__init__(engine)
        self.schema = schema

    def create_partitioned_table(self, table: Table, key_spec: PartitionKeySpec) -> None:
        parent = table.to_metadata(MetaData())
        parent.dialect_kwargs["postgresql_partition_by"] = key_spec.partition_by_clause()
        with self.engine.begin() as conn:
            parent.create(conn, checkfirst=True)
        logger.info(f"Created partitioned table {table.name} ({key_spec.partition_by_clause()})")

    def create_child_table(
        self, parent: Table, name: str, bound: PartitionBound, key_spec: PartitionKeySpec
    ) -> None:
        sql = (
            f"CREATE TABLE {self.quote(name)} "
            f"(LIKE {self.quote(parent.name)} INCLUDING DEFAULTS INCLUDING CONSTRAINTS)"
        )
        with self.engine.begin() as conn:
            conn.execute(text(sql))

    def attach_partition(
        self, parent: Table, name: str, bound: PartitionBound, key_spec: PartitionKeySpec
    ) -> None:
        sql = (
            f"ALTER TABLE {self.quote(parent.name)} ATTACH PARTITION {self.quote(name)} "
            f"FOR VALUES FROM ({self.render_literal(bound.start, key_spec)}) "
            f"TO ({self.render_literal(bound.end, key_spec)})"
        )
        with self.engine.begin() as conn:
            conn.execute(text(sql))

    def drop_partition(self, parent_table: str, name: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(text(f"DROP TABLE {self.quote(name)}"))
        self._tables.pop((parent_table, name), None)

    def fetch_partitions(self, parent_table: str) -> list[PartitionDescriptor]:
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    text(self.PARTITIONS_SQL),
                    {"parent_table": parent_table, "schema": self.schema},
                ).all()
        except SQLAlchemyError as e:
            raise TransientCatalogError(
                f"Failed to read partitions of {parent_table}: {e}", table=parent_table
            ) from e

        partitions = []
        for row in rows:
            bound = self.parse_bound(row.bound)
            if bound is None:
                # DEFAULT partition has no range
                continue
            bound = self._bound(parent_table, bound.start, bound.end)
            partitions.append(PartitionDescriptor(name=row.name, bound=bound, parent_table=parent_table))
        return partitions

    @classmethod
    def parse_bound(cls, expression: str) -> PartitionBound | None:
        """
        Parse ``pg_get_expr(relpartbound)`` output.

        Returns None for a DEFAULT partition. Raises ValueError for
        expressions this partitioning scheme does not produce.
        """
        expression = expression.strip()
        if expression == "DEFAULT":
            return None

        match = cls.FOR_VALUES_RE.match(expression)
        if not match:
            raise ValueError(f"Unsupported partition bound expression: {expression}")

        return PartitionBound(
            start=cls.parse_literal(match.group("start")),
            end=cls.parse_literal(match.group("end")),
        )

    @staticmethod
    def parse_literal(literal: str) -> Any:
        """Parse one rendered bound value; MINVALUE/MAXVALUE become None."""
        literal = literal.strip()
        if literal.upper() in ("MINVALUE", "MAXVALUE"):
            return None

        if literal.startswith("'") and literal.endswith("'"):
            value = literal[1:-1].replace("''", "'")
            if re.fullmatch(r"\d{4}-\d{2}-\d{2}", value):
                return date.fromisoformat(value)
            if re.match(r"\d{4}-\d{2}-\d{2}[ T]\d{2}:\d{2}", value):
                return datetime.fromisoformat(normalize_utc_offset(value))
            raise ValueError(f"Unsupported partition bound literal: {literal}")

        if "," in literal:
            raise ValueError(f"Multi-column partition bounds are not supported: {literal}")
        return int(literal)

    @staticmethod
    def render_literal(value: Any, key_spec: PartitionKeySpec) -> str:
        """Render a bound value as a SQL literal for DDL, e.g. ``'2024-01-01T00:00:00+00:00'``."""
        encoded = key_spec.encode(value)
        if key_spec.key_type == KeyType.INTEGER:
            return encoded
        return f"'{encoded}'"

    def classify(self, error: BaseException) -> StorageFailure:
        code = _sqlstate(error)
        if code in self.SQLSTATE_FAILURES:
            return self.SQLSTATE_FAILURES[code]
        if code and code.startswith("08"):
            return StorageFailure.TRANSIENT
        if _is_transient(error):
            return StorageFailure.TRANSIENT
        return StorageFailure.OTHER


class SQLitePartitionBackend(PartitionBackend):
    """
    Range partitioning emulated on SQLite.

    The registry's bound columns carry no type affinity, so integers compare
    numerically and timestamps compare in SQLAlchemy's fixed-width text
    storage format.
    """

    dialect_name = "sqlite"

    REGISTRY_TABLE = "partition_registry"

    REGISTRY_SCHEMA = [
        f"""
        CREATE TABLE IF NOT EXISTS {REGISTRY_TABLE} (
            partition_name VARCHAR(255) PRIMARY KEY,
            parent_table VARCHAR(255) NOT NULL,
            partition_key VARCHAR(255) NOT NULL,
            key_type VARCHAR(50) NOT NULL,
            range_start,
            range_end,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            CHECK (range_start < range_end)
        )
        """,
        f"""
        CREATE INDEX IF NOT EXISTS idx_{REGISTRY_TABLE}_parent_table
            ON {REGISTRY_TABLE}(parent_table, range_start)
        """,
        f"""
        CREATE TRIGGER IF NOT EXISTS {REGISTRY_TABLE}_no_overlap
        BEFORE INSERT ON {REGISTRY_TABLE}
        WHEN EXISTS (
            SELECT 1 FROM {REGISTRY_TABLE}
            WHERE parent_table = NEW.parent_table
              AND range_start < NEW.range_end
              AND NEW.range_start < range_end
        )
        BEGIN
            SELECT RAISE(ABORT, 'partition bound overlaps an existing partition');
        END
        """,
    ]

    _MESSAGE_FAILURES = (
        ("overlaps an existing partition", StorageFailure.CONSTRAINT_VIOLATION),
        ("check constraint failed", StorageFailure.CONSTRAINT_VIOLATION),
        ("unique constraint failed", StorageFailure.UNIQUE_VIOLATION),
        ("already exists", StorageFailure.ALREADY_EXISTS),
        ("no such table", StorageFailure.NOT_FOUND),
        ("database is locked", StorageFailure.TRANSIENT),
        ("unable to open database", StorageFailure.TRANSIENT),
        ("disk i/o error", StorageFailure.TRANSIENT),
    )

    # SQLite takes a single writer; this keeps in-process creators ordered
    _ddl_lock = threading.Lock()

    def __init__(self, engine: Engine):
        super().__init__(engine)
        self._registry_ready = False

    def ensure_registry(self) -> None:
        """Create the bounds registry and its overlap trigger if missing."""
        if self._registry_ready:
            return
        with self._ddl_lock, self.engine.begin() as conn:
            for statement in self.REGISTRY_SCHEMA:
                conn.execute(text(statement))
        self._registry_ready = True

    def create_partitioned_table(self, table: Table, key_spec: PartitionKeySpec) -> None:
        self.ensure_registry()
        with self.engine.begin() as conn:
            table.create(conn, checkfirst=True)
        logger.info(f"Created partitioned table {table.name} (emulated RANGE ({key_spec.column}))")

    def create_child_table(
        self, parent: Table, name: str, bound: PartitionBound, key_spec: PartitionKeySpec
    ) -> None:
        self.ensure_registry()
        child = parent.to_metadata(MetaData(), name=name)
        # Index names are global in SQLite; partitions do not inherit them
        for index in list(child.indexes):
            child.indexes.discard(index)

        key_column = parent.c[key_spec.column]
        column = self.quote(key_spec.column)
        child.append_constraint(
            CheckConstraint(
                f"{column} >= {self.stored_literal(key_column, key_spec.coerce(bound.start))} "
                f"AND {column} < {self.stored_literal(key_column, key_spec.coerce(bound.end))}",
                name=f"{name}_partition_check",
            )
        )
        with self._ddl_lock, self.engine.begin() as conn:
            # checkfirst=False so an existing table surfaces as "already exists"
            child.create(conn, checkfirst=False)

    def attach_partition(
        self, parent: Table, name: str, bound: PartitionBound, key_spec: PartitionKeySpec
    ) -> None:
        key_type = parent.c[key_spec.column].type
        statement = text(
            f"INSERT INTO {self.REGISTRY_TABLE} "
            "(partition_name, parent_table, partition_key, key_type, range_start, range_end) "
            "VALUES (:name, :parent_table, :partition_key, :key_type, :range_start, :range_end)"
        ).bindparams(
            bindparam("range_start", type_=key_type),
            bindparam("range_end", type_=key_type),
        )
        with self._ddl_lock, self.engine.begin() as conn:
            conn.execute(
                statement,
                {
                    "name": name,
                    "parent_table": parent.name,
                    "partition_key": key_spec.column,
                    "key_type": key_spec.key_type.value,
                    "range_start": key_spec.coerce(bound.start),
                    "range_end": key_spec.coerce(bound.end),
                },
            )

    def drop_partition(self, parent_table: str, name: str) -> None:
        self.ensure_registry()
        with self._ddl_lock, self.engine.begin() as conn:
            conn.execute(
                text(f"DELETE FROM {self.REGISTRY_TABLE} WHERE partition_name = :name"),
                {"name": name},
            )
            conn.execute(text(f"DROP TABLE {self.quote(name)}"))
        self._tables.pop((parent_table, name), None)

    def fetch_partitions(self, parent_table: str) -> list[PartitionDescriptor]:
        try:
            self.ensure_registry()
            with self.engine.connect() as conn:
                rows = conn.execute(
                    text(
                        f"SELECT partition_name, key_type, range_start, range_end "
                        f"FROM {self.REGISTRY_TABLE} WHERE parent_table = :parent_table"
                    ),
                    {"parent_table": parent_table},
                ).all()
        except SQLAlchemyError as e:
            raise TransientCatalogError(
                f"Failed to read partitions of {parent_table}: {e}", table=parent_table
            ) from e

        return [
            PartitionDescriptor(
                name=row.partition_name,
                bound=self._bound(
                    parent_table,
                    decode_value(row.key_type, row.range_start),
                    decode_value(row.key_type, row.range_end),
                ),
                parent_table=parent_table,
            )
            for row in rows
        ]

    def stored_literal(self, column: Column, value: Any) -> str:
        """
        Render a key value as SQL text in the form the column stores it.

        Runs the column type's bind processing (decorators included), so the
        CHECK bound compares like stored rows: timestamps as SQLAlchemy's
        fixed-width text, integers as numbers.
        """
        dialect = self.engine.dialect
        process = column.type.dialect_impl(dialect).bind_processor(dialect)
        stored = process(value) if process is not None else value
        if isinstance(stored, int):
            return str(stored)
        escaped = str(stored).replace("'", "''")
        return f"'{escaped}'"

    def classify(self, error: BaseException) -> StorageFailure:
        message = str(getattr(error, "orig", None) or error).lower()
        for fragment, failure in self._MESSAGE_FAILURES:
            if fragment in message:
                return failure
        if _is_transient(error):
            return StorageFailure.TRANSIENT
        return StorageFailure.OTHER


def create_partition_backend(engine: Engine, schema: str | None = None) -> PartitionBackend:
    """Select the partition backend for an engine's dialect."""
    dialect = engine.dialect.name
    if dialect == PostgresPartitionBackend.dialect_name:
        return PostgresPartitionBackend(engine, schema=schema or settings.partition_schema)
    if dialect == SQLitePartitionBackend.dialect_name:
        return SQLitePartitionBackend(engine)

    raise ConfigurationError(f"Range partitioning is not supported on {dialect}")
