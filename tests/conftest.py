"""
Pytest Configuration and Fixtures
Provides shared fixtures for the partitioning tests.

SQLite databases live in a per-test temporary file so that DDL (which runs on
its own connection) and the ORM session see the same database. Commit the
session before creating or dropping partitions.
"""
import random
from collections.abc import Generator
from datetime import datetime, timedelta

import pytest
from sqlalchemy import Engine, create_engine
from sqlmodel import Session

from core.database.partition_backends import SQLitePartitionBackend
from core.database.partition_catalog import PartitionCatalog
from data_access.partitioned_table import PartitionedTable
from tests.partition_models import Event, Reading

T0 = datetime(2024, 1, 1)
ONE_DAY = timedelta(days=1)


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as requiring a PostgreSQL server"
    )


# Database fixtures
@pytest.fixture
def engine(tmp_path) -> Generator[Engine, None, None]:
    """SQLite engine on a temporary database file."""
    engine = create_engine(f"sqlite:///{tmp_path / 'partitions.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def backend(engine) -> SQLitePartitionBackend:
    return SQLitePartitionBackend(engine)


@pytest.fixture
def catalog(backend) -> PartitionCatalog:
    return PartitionCatalog(backend)


@pytest.fixture
def session(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


# Partitioned table fixtures
@pytest.fixture
def events(backend, catalog) -> PartitionedTable[Event]:
    """Events table with partitions a = [T0, T0+1d) and b = [T0+1d, T0+2d)."""
    table = PartitionedTable(
        Event, "created_at", backend=backend, catalog=catalog, rng=random.Random(42)
    )
    table.create_partitioned_table()
    table.create_partition(T0, T0 + ONE_DAY, name="events_a")
    table.create_partition(T0 + ONE_DAY, T0 + 2 * ONE_DAY, name="events_b")
    return table


@pytest.fixture
def readings(backend, catalog) -> PartitionedTable[Reading]:
    """Readings table with partitions [0, 100) and [100, 200)."""
    table = PartitionedTable(Reading, "id", backend=backend, catalog=catalog)
    table.create_partitioned_table()
    table.create_partition(0, 100, name="readings_low")
    table.create_partition(100, 200, name="readings_high")
    return table


@pytest.fixture
def seeded_events(events, session) -> PartitionedTable[Event]:
    """Three events in partition a, two in partition b."""
    repo = events.repository(session)
    repo.add_all([
        Event(id=1, created_at=T0 + timedelta(hours=1), name="a1", value=10),
        Event(id=2, created_at=T0 + timedelta(hours=12), name="a2", value=20),
        Event(id=3, created_at=T0 + timedelta(hours=23), name="a3", value=30),
        Event(id=4, created_at=T0 + ONE_DAY, name="b1", value=40),
        Event(id=5, created_at=T0 + ONE_DAY + timedelta(hours=6), name="b2", value=50),
    ])
    session.commit()
    return events
