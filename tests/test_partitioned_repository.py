"""
Integration Tests for Partition-Scoped Repositories
Tests reads and writes through scoped and range-bound accessors on SQLite.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import inspect, select, text

from core.exceptions import (
    NoPartitionError,
    PartitionKeyOutOfRangeError,
    RepositoryException,
    UnknownPartitionError,
)
from data_access.repositories.base_repository import BaseSpecification
from data_access.repositories.partitioned_repository import (
    ScopedPartitionRepository,
    UnboundPartitionRepository,
)
from tests.conftest import ONE_DAY, T0
from data_access.partitioned_table import PartitionedTable
from tests.partition_models import Event, Reading, Shipment

HOUR = timedelta(hours=1)
UTC_T0 = T0.replace(tzinfo=timezone.utc)
PLUS_ONE = timezone(timedelta(hours=1))


def ids(entities):
    return [e.id for e in entities]


class TestInPartition:
    """Test accessors bound to one partition."""

    def test_all_rows_of_partition(self, seeded_events, session):
        repo = seeded_events.in_partition(session, "events_a")

        assert isinstance(repo, ScopedPartitionRepository)
        assert ids(repo.all()) == [1, 2, 3]
        assert ids(seeded_events.in_partition(session, "events_b").list()) == [4, 5]

    def test_rows_are_logical_model_instances(self, seeded_events, session):
        event = seeded_events.in_partition(session, "events_b").first()

        assert isinstance(event, Event)
        assert event.name == "b1"
        assert inspect(event).detached

    def test_where_stays_in_partition(self, seeded_events, session):
        repo = seeded_events.in_partition(session, "events_a").where(Event.value >= 20)

        assert ids(repo.list()) == [2, 3]
        # Event 4 matches the predicate but lives in partition b
        assert repo.count() == 2
        assert repo.partition_name == "events_a"

    def test_chained_where(self, seeded_events, session):
        repo = (
            seeded_events.in_partition(session, "events_a")
            .where(Event.value >= 20)
            .where(BaseSpecification([Event.name == "a3"]))
        )

        assert ids(repo.list()) == [3]

    def test_either_of_two_predicates(self, seeded_events, session):
        low = BaseSpecification([Event.value <= 10])
        named = BaseSpecification([Event.name == "a3"])
        repo = seeded_events.in_partition(session, "events_a").where(low.or_(named))

        assert ids(repo.list()) == [1, 3]

    def test_list_with_skip_and_limit(self, seeded_events, session):
        repo = seeded_events.in_partition(session, "events_a")

        assert ids(repo.list(skip=1, limit=1)) == [2]

    def test_get_and_exists(self, seeded_events, session):
        repo = seeded_events.in_partition(session, "events_a")
        key = (2, T0 + 12 * HOUR)

        assert repo.get(key).name == "a2"
        assert repo.exists(key)
        assert repo.get((4, T0 + ONE_DAY)) is None

    def test_get_requires_full_identity(self, seeded_events, session):
        with pytest.raises(ValueError):
            seeded_events.in_partition(session, "events_a").get(2)

    def test_unknown_partition(self, seeded_events, session):
        with pytest.raises(UnknownPartitionError):
            seeded_events.in_partition(session, "events_zzz")

    def test_construction_issues_no_query(self, seeded_events, session):
        seeded_events.drop_partition("events_b")

        # Building the handle only builds SQL constructs
        repo = seeded_events.repository(session).in_partition("events_b")
        assert repo.table.name == "events_b"

    def test_write_inside_bound(self, seeded_events, session):
        repo = seeded_events.in_partition(session, "events_a")
        repo.add(Event(id=6, created_at=T0 + 2 * HOUR, name="a4"))
        session.commit()

        assert ids(repo.list()) == [1, 6, 2, 3]

    def test_write_outside_bound_rejected(self, seeded_events, session):
        repo = seeded_events.in_partition(session, "events_a")

        with pytest.raises(PartitionKeyOutOfRangeError) as exc_info:
            repo.add(Event(id=7, created_at=T0 + 30 * HOUR, name="misplaced"))

        assert exc_info.value.details["partition"] == "events_a"
        session.rollback()
        assert seeded_events.repository(session).count() == 5

    def test_update(self, seeded_events, session):
        repo = seeded_events.in_partition(session, "events_a")
        event = repo.get((1, T0 + HOUR))
        event.value = 99
        repo.update(event)
        session.commit()

        assert repo.get((1, T0 + HOUR)).value == 99

    def test_update_missing_row(self, seeded_events, session):
        repo = seeded_events.in_partition(session, "events_b")

        with pytest.raises(RepositoryException):
            repo.update(Event(id=1, created_at=T0 + HOUR, name="a1", value=0))

    def test_delete(self, seeded_events, session):
        repo = seeded_events.in_partition(session, "events_a")

        assert repo.delete((3, T0 + 23 * HOUR))
        assert not repo.delete((3, T0 + 23 * HOUR))
        session.commit()
        assert ids(repo.list()) == [1, 2]

    def test_delete_where(self, seeded_events, session):
        deleted = seeded_events.in_partition(session, "events_a").delete_where(Event.value < 25)
        session.commit()

        assert deleted == 2
        assert seeded_events.repository(session).count() == 3


class TestPartitionKeyRange:
    """Test range-bound accessors."""

    def test_range_within_one_partition(self, seeded_events, session):
        repo = seeded_events.partition_key_in(session, T0, T0 + 12 * HOUR)

        assert isinstance(repo, UnboundPartitionRepository)
        assert repo.routed().partition_names == ["events_a"]
        assert ids(repo.list()) == [1]

    def test_range_spanning_partitions_in_order(self, seeded_events, session):
        repo = seeded_events.partition_key_in(session, T0 + 12 * HOUR, T0 + 30 * HOUR)

        assert repo.routed().partition_names == ["events_a", "events_b"]
        assert ids(repo.list()) == [2, 3, 4]
        assert repo.count() == 3

    def test_range_predicate_applied_inside_each_partition(self, seeded_events, session):
        repo = seeded_events.partition_key_in(session, T0 + 12 * HOUR, T0 + 30 * HOUR)

        # Event 5 lives in partition b but is past the range end
        assert 5 not in ids(repo.iter())

    def test_unprovisioned_range_reads_empty(self, seeded_events, session):
        repo = seeded_events.partition_key_in(session, T0 + 5 * ONE_DAY, T0 + 6 * ONE_DAY)

        assert repo.list() == []
        assert repo.count() == 0
        assert repo.first() is None

    def test_skip_and_limit_across_partitions(self, seeded_events, session):
        repo = seeded_events.repository(session)

        assert ids(repo.list(skip=2, limit=2)) == [3, 4]
        assert ids(repo.list(skip=4)) == [5]

    def test_where_keeps_range(self, seeded_events, session):
        repo = seeded_events.partition_key_in(session, T0, T0 + 2 * ONE_DAY).where(Event.value > 25)

        assert ids(repo.list()) == [3, 4, 5]
        assert ids(repo.where(Event.name.like("b%")).list()) == [4, 5]

    def test_in_partition_carries_predicate(self, seeded_events, session):
        repo = seeded_events.repository(session).where(Event.value > 15).in_partition("events_a")

        assert ids(repo.list()) == [2, 3]

    def test_partition_key_eq(self, seeded_events, session):
        repo = seeded_events.partition_key_eq(session, T0 + ONE_DAY)

        assert repo.routed().partition_names == ["events_b"]
        assert ids(repo.list()) == [4]

    def test_string_range_bounds(self, seeded_events, session):
        repo = seeded_events.partition_key_in(session, "2024-01-01T00:00:00", "2024-01-01T06:00:00")

        assert ids(repo.list()) == [1]

    def test_routing_sees_partitions_created_later(self, seeded_events, session):
        repo = seeded_events.partition_key_in(session, T0, T0 + 10 * ONE_DAY)
        assert repo.routed().partition_names == ["events_a", "events_b"]

        seeded_events.create_partition(T0 + 2 * ONE_DAY, T0 + 3 * ONE_DAY, name="events_c")

        assert repo.routed().partition_names == ["events_a", "events_b", "events_c"]


class TestUnboundWrites:
    """Test writes routed by partition key."""

    def test_add_routes_to_covering_partition(self, events, session):
        repo = events.repository(session)
        repo.add(Event(id=1, created_at=T0 + 25 * HOUR, name="late"))
        repo.add(Event(id=2, created_at=T0 + HOUR, name="early"))
        session.commit()

        assert ids(events.in_partition(session, "events_a").list()) == [2]
        assert ids(events.in_partition(session, "events_b").list()) == [1]

    def test_add_without_partition(self, events, session):
        with pytest.raises(NoPartitionError):
            events.repository(session).add(Event(id=1, created_at=T0 + 9 * ONE_DAY, name="lost"))

    def test_get_with_composite_identity(self, seeded_events, session):
        repo = seeded_events.repository(session)

        assert repo.get((5, T0 + ONE_DAY + 6 * HOUR)).name == "b2"
        assert repo.get((5, T0 + 9 * ONE_DAY)) is None
        assert repo.exists((4, T0 + ONE_DAY))

    def test_update_and_delete(self, seeded_events, session):
        repo = seeded_events.repository(session)
        event = repo.get((4, T0 + ONE_DAY))
        event.name = "renamed"
        repo.update(event)
        assert repo.delete((1, T0 + HOUR))
        session.commit()

        assert repo.get((4, T0 + ONE_DAY)).name == "renamed"
        assert repo.count() == 4

    def test_move_between_partitions(self, seeded_events, session):
        repo = seeded_events.repository(session)
        event = repo.get((1, T0 + HOUR))

        repo.delete((event.id, event.created_at))
        event.created_at = T0 + 26 * HOUR
        repo.add(event)
        session.commit()

        assert ids(seeded_events.in_partition(session, "events_b").list()) == [4, 1, 5]

    def test_rows_are_not_visible_through_parent_table(self, seeded_events, session):
        """On SQLite the parent is a plain table; all rows live in partitions."""
        assert session.scalars(select(Event)).all() == []
        assert session.execute(text("SELECT COUNT(*) FROM events_a")).scalar() == 3


class TestIntegerPartitions:
    """Test an integer partition key."""

    def test_routing_by_id(self, readings, session):
        repo = readings.repository(session)
        repo.add_all([Reading(id=i, sensor=f"s{i}") for i in (5, 150, 99, 100)])
        session.commit()

        assert ids(readings.in_partition(session, "readings_low").list()) == [5, 99]
        assert ids(readings.partition_key_in(session, 50, 120).list()) == [99, 100]
        assert repo.get(150).sensor == "s150"
        assert readings.partition_key_eq(session, 100).first().id == 100

    def test_out_of_range_write(self, readings, session):
        with pytest.raises(PartitionKeyOutOfRangeError):
            readings.in_partition(session, "readings_low").add(Reading(id=150, sensor="x"))


class TestResolveOnTable:
    """Test key resolution through the table facade."""

    def test_string_key(self, events):
        assert [p.name for p in events.resolve("2024-01-01T05:00:00")] == ["events_a"]

    def test_string_range(self, events):
        resolved = events.resolve(("2024-01-01T12:00:00", "2024-01-02T12:00:00"))

        assert [p.name for p in resolved] == ["events_a", "events_b"]

    def test_aware_key_on_naive_column(self, events):
        # 00:30+01:00 on Jan 2 is 23:30 UTC on Jan 1
        key = datetime(2024, 1, 2, 0, 30, tzinfo=PLUS_ONE)

        assert [p.name for p in events.resolve(key)] == ["events_a"]


@pytest.fixture
def shipments(backend, catalog) -> PartitionedTable[Shipment]:
    """Shipments keyed on a UTC-only timestamp, bounds given naive and aware."""
    table = PartitionedTable(Shipment, "shipped_at", backend=backend, catalog=catalog)
    table.create_partitioned_table()
    table.create_partition(T0, T0 + ONE_DAY, name="shipments_a")
    table.create_partition(UTC_T0 + ONE_DAY, UTC_T0 + 2 * ONE_DAY, name="shipments_b")
    return table


class TestAwareTimestampKeys:
    """Test a key column that only stores timezone aware values."""

    def test_bounds_are_utc_aware(self, shipments):
        a, b = shipments.partition_descriptors()

        assert (a.start, a.end) == (UTC_T0, UTC_T0 + ONE_DAY)
        assert b.start.tzinfo == timezone.utc

    def test_naive_and_aware_writes(self, shipments, session):
        repo = shipments.repository(session)
        repo.add_all([
            Shipment(id=1, shipped_at=T0 + HOUR, carrier="naive"),
            Shipment(id=2, shipped_at=datetime(2024, 1, 2, 0, 30, tzinfo=PLUS_ONE), carrier="aware"),
            Shipment(id=3, shipped_at=UTC_T0 + ONE_DAY + HOUR, carrier="next day"),
        ])
        session.commit()

        first, second = shipments.in_partition(session, "shipments_a").list()
        assert (first.id, second.id) == (1, 2)
        assert second.shipped_at == datetime(2024, 1, 1, 23, 30, tzinfo=timezone.utc)
        assert ids(shipments.in_partition(session, "shipments_b").list()) == [3]

    def test_aware_range_and_identity(self, shipments, session):
        repo = shipments.repository(session)
        repo.add(Shipment(id=2, shipped_at=datetime(2024, 1, 1, 23, 30), carrier="late"))
        repo.add(Shipment(id=3, shipped_at=UTC_T0 + ONE_DAY + HOUR, carrier="next day"))
        session.commit()

        in_range = shipments.partition_key_in(session, "2024-01-01T20:00:00+00:00", UTC_T0 + ONE_DAY + 2 * HOUR)
        assert ids(in_range.list()) == [2, 3]
        assert repo.get((2, datetime(2024, 1, 2, 0, 30, tzinfo=PLUS_ONE))).carrier == "late"
        assert [p.name for p in shipments.resolve(datetime(2024, 1, 2, 0, 30, tzinfo=PLUS_ONE))] == ["shipments_a"]

    def test_write_outside_bound_rejected(self, shipments, session):
        with pytest.raises(PartitionKeyOutOfRangeError):
            shipments.in_partition(session, "shipments_a").add(
                Shipment(id=9, shipped_at=UTC_T0 + ONE_DAY + HOUR, carrier="misplaced")
            )
