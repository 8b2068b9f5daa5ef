# tests/integration/test_sql_stores.py

import pytest
from sqlalchemy.exc import OperationalError

from stayledger.domain.clock import ONE_DAY
from stayledger.domain.exceptions import ProjectionUnavailableError
from stayledger.domain.projection import BookingUpsert, PropertyUpsert, UpsertResult
from stayledger.domain.state_machine import BookingStatus
from stayledger.infrastructure.db.session import postgres_connect_args
from stayledger.infrastructure.repositories.projection_repository import SqlProjection
from stayledger.infrastructure.repositories.sync_state_repository import InMemorySyncStateStore

CHECK_IN = 1_700_179_200


def _created(ledger_id=1, **overrides):
    values = dict(
        ledger_id=ledger_id,
        property_ledger_id="villa",
        guest="0xguest",
        host="0xhost",
        check_in_date=CHECK_IN,
        check_out_date=CHECK_IN + 2 * ONE_DAY,
        total_amount=2**200,
        platform_fee=3,
        host_amount=2**200 - 3,
        status=BookingStatus.ACTIVE,
        transaction_id="0xtx",
    )
    values.update(overrides)
    return BookingUpsert(**values)


# ---------------------
# PROJECTION
# ---------------------

def test_booking_find_or_create(projection):
    assert projection.upsert_booking(_created()) == UpsertResult.CREATED
    assert projection.upsert_booking(_created()) == UpsertResult.UNCHANGED

    view = projection.find_booking_by_ledger_id(1)
    assert view.total_amount == 2**200
    assert view.number_of_nights == 2
    assert view.status == BookingStatus.ACTIVE
    assert view.is_check_in_complete is False


def test_patch_before_create_is_reported_missing(projection):
    patch = BookingUpsert(ledger_id=5, status=BookingStatus.CHECKED_IN, is_check_in_complete=True)

    assert projection.upsert_booking(patch) == UpsertResult.MISSING
    assert projection.find_booking_by_ledger_id(5) is None


def test_stale_status_is_not_applied(projection):
    projection.upsert_booking(_created())
    projection.upsert_booking(
        BookingUpsert(ledger_id=1, status=BookingStatus.CHECKED_IN, is_check_in_complete=True)
    )

    result = projection.upsert_booking(
        BookingUpsert(ledger_id=1, status=BookingStatus.CHECK_IN_READY, check_in_deadline=CHECK_IN + ONE_DAY)
    )

    view = projection.find_booking_by_ledger_id(1)
    assert result == UpsertResult.UPDATED  # deadline filled, status kept
    assert view.status == BookingStatus.CHECKED_IN
    assert view.check_in_deadline == CHECK_IN + ONE_DAY


def test_late_creation_event_does_not_rewind(projection):
    projection.upsert_booking(_created(status=BookingStatus.COMPLETED))

    assert projection.upsert_booking(_created()) == UpsertResult.UNCHANGED
    assert projection.find_booking_by_ledger_id(1).status == BookingStatus.COMPLETED


def test_property_versioning(projection):
    listed = PropertyUpsert(
        ledger_id="villa", owner="0xhost", price_per_night=100, is_active=True, source_height=1
    )
    assert projection.upsert_property(listed) == UpsertResult.CREATED
    assert projection.upsert_property(
        PropertyUpsert(ledger_id="villa", price_per_night=300, is_active=True, source_height=6)
    ) == UpsertResult.UPDATED
    assert projection.upsert_property(
        PropertyUpsert(ledger_id="villa", price_per_night=200, is_active=True, source_height=4)
    ) == UpsertResult.UNCHANGED
    projection.upsert_property(PropertyUpsert(ledger_id="villa", is_removed=True, source_height=7))

    view = projection.find_property_by_ledger_id("villa")
    assert view.price_per_night == 300
    assert view.is_removed
    assert not view.is_active


def test_bookings_listed_per_guest(projection):
    projection.upsert_booking(_created(ledger_id=2))
    projection.upsert_booking(_created(ledger_id=1))
    projection.upsert_booking(_created(ledger_id=3, guest="0xother"))

    views = projection.list_bookings_for_guest("0xguest")

    assert [view.ledger_id for view in views] == [1, 2]
    assert projection.list_bookings_for_guest("0xnobody") == []


class CancelledStatementSession:
    """Session whose statements are cancelled by the server's statement_timeout."""

    def execute(self, *args, **kwargs):
        raise OperationalError(
            "SELECT projected_bookings",
            {},
            Exception("canceling statement due to statement timeout"),
        )

    def commit(self):
        pass

    def rollback(self):
        pass

    def close(self):
        pass


def test_statement_timeout_maps_to_projection_unavailable():
    projection = SqlProjection(CancelledStatementSession)

    with pytest.raises(ProjectionUnavailableError):
        projection.upsert_booking(_created())
    with pytest.raises(ProjectionUnavailableError):
        projection.find_booking_by_ledger_id(1)
    with pytest.raises(ProjectionUnavailableError):
        projection.find_property_by_ledger_id("villa")


def test_postgres_connections_carry_statement_timeout():
    args = postgres_connect_args(connect_timeout=5, statement_timeout=2.5)

    assert args == {"connect_timeout": 5, "options": "-c statement_timeout=2500"}


# ---------------------
# SYNC STATE
# ---------------------

def test_cursor_round_trip(state_store):
    assert state_store.load_cursor("main") is None

    state_store.save_cursor("main", 5)
    state_store.save_cursor("main", 9)

    assert state_store.load_cursor("main") == 9
    assert state_store.load_cursor("other") is None


def test_mark_committed_is_idempotent(state_store):
    state_store.mark_committed("a" * 64, "CheckedIn", "0xtx", 3)
    state_store.mark_committed("a" * 64, "CheckedIn", "0xtx", 3)

    assert state_store.is_committed("a" * 64)
    assert not state_store.is_committed("b" * 64)
    assert state_store.committed_count() == 1


def _fill(store, clock, count):
    for index in range(count):
        store.mark_committed(f"{index:064d}", "CheckedIn", f"0x{index}", index)
        clock.advance(1)


def test_prune_respects_cap_and_safety_window(state_store, clock):
    _fill(state_store, clock, 10)

    # Everything is younger than the safety window.
    assert state_store.prune_committed(max_entries=4, min_age_seconds=3600, batch_limit=100) == 0

    clock.advance(3600)
    assert state_store.prune_committed(max_entries=4, min_age_seconds=3600, batch_limit=3) == 3
    assert state_store.prune_committed(max_entries=4, min_age_seconds=3600, batch_limit=100) == 3
    assert state_store.committed_count() == 4
    # Oldest go first.
    assert not state_store.is_committed(f"{0:064d}")
    assert state_store.is_committed(f"{9:064d}")


def test_in_memory_store_prunes_the_same_way(clock):
    store = InMemorySyncStateStore(clock)
    _fill(store, clock, 10)

    assert store.prune_committed(max_entries=4, min_age_seconds=3600, batch_limit=100) == 0
    clock.advance(3600)
    assert store.prune_committed(max_entries=4, min_age_seconds=3600, batch_limit=100) == 6
    assert store.committed_count() == 4
    assert store.is_committed(f"{6:064d}")
