from stayledger.application.booking_service import BookingService
from stayledger.application.settings import SyncSettings
from stayledger.application.sync_engine import EventSyncEngine
from stayledger.domain.booking import FeeSchedule
from stayledger.domain.clock import ONE_DAY, ManualClock
from stayledger.domain.lifecycle import BookingLifecycle, Transition
from stayledger.infrastructure.db.models import Base
from stayledger.infrastructure.db.session import SessionLocal, engine
from stayledger.infrastructure.ledger.memory_ledger import InMemoryLedger
from stayledger.infrastructure.repositories.projection_repository import SqlProjection
from stayledger.infrastructure.repositories.sync_state_repository import SqlSyncStateStore

ARBITER = "0xarbiter"
TREASURY = "0xtreasury"
HOST = "0xhost"
GUESTS = ["0xguest-amara", "0xguest-bruno", "0xguest-chen"]
NIGHTLY = 100_000_000_000_000_000  # 0.1 in 18-decimal units


def seed_properties(ledger: InMemoryLedger) -> None:
    property_defs = [
        {"property_id": "lisbon-loft", "price_per_night": NIGHTLY, "property_uri": "ipfs://lisbon-loft"},
        {"property_id": "kyoto-machiya", "price_per_night": 2 * NIGHTLY, "property_uri": "ipfs://kyoto-machiya"},
    ]
    for item in property_defs:
        ledger.list_property(owner=HOST, **item)


def seed_bookings(service: BookingService, clock: ManualClock) -> dict[str, int]:
    """Drives one booking through each lifecycle path and returns their ids."""
    start = (clock.now() // ONE_DAY + 2) * ONE_DAY
    stay = 3 * ONE_DAY

    happy = service.create_booking(GUESTS[0], "lisbon-loft", start, start + stay, 3 * NIGHTLY)
    consensus = service.create_booking(
        GUESTS[1], "kyoto-machiya", start, start + stay, 6 * NIGHTLY
    )
    escalated = service.create_booking(
        GUESTS[2],
        "lisbon-loft",
        start + stay,
        start + 2 * stay,
        0,
        payment_reference="pi_demo_0001",
        booking_uri="ipfs://booking-demo",
    )

    clock.set(start)
    service.transition(happy.booking.booking_id, Transition.OPEN_CHECK_IN_WINDOW)
    service.transition(happy.booking.booking_id, Transition.CHECK_IN, caller=GUESTS[0])
    service.transition(consensus.booking.booking_id, Transition.OPEN_CHECK_IN_WINDOW)

    clock.advance(ONE_DAY + 1)
    service.transition(consensus.booking.booking_id, Transition.PROCESS_MISSED_CHECK_IN)
    service.transition(consensus.booking.booking_id, Transition.HOST_RESOLVE_DISPUTE, caller=HOST)
    service.transition(consensus.booking.booking_id, Transition.GUEST_RESOLVE_DISPUTE, caller=GUESTS[1])

    clock.set(start + stay)
    service.transition(happy.booking.booking_id, Transition.COMPLETE_STAY)
    service.transition(escalated.booking.booking_id, Transition.OPEN_CHECK_IN_WINDOW)
    clock.advance(ONE_DAY + 1)
    service.transition(escalated.booking.booking_id, Transition.PROCESS_MISSED_CHECK_IN)
    clock.advance(ONE_DAY + 1)
    service.transition(escalated.booking.booking_id, Transition.ESCALATE_DISPUTE)
    service.transition(
        escalated.booking.booking_id,
        Transition.ADMIN_RESOLVE,
        caller=ARBITER,
        guest_percentage=60,
    )

    return {
        "happy path": happy.booking.booking_id,
        "missed check-in, consensus": consensus.booking.booking_id,
        "escalated": escalated.booking.booking_id,
    }


def main() -> None:
    Base.metadata.create_all(bind=engine)

    clock = ManualClock()
    lifecycle = BookingLifecycle(
        clock=clock,
        fee_schedule=FeeSchedule.from_env(),
        arbiter=ARBITER,
        treasury=TREASURY,
    )
    ledger = InMemoryLedger(lifecycle)
    service = BookingService(ledger, lifecycle)
    projection = SqlProjection(SessionLocal)
    sync_engine = EventSyncEngine(
        ledger,
        projection,
        SqlSyncStateStore(SessionLocal, clock=clock),
        SyncSettings(cursor_name="demo-ledger"),
    )
    try:
        sync_engine.resume_from(0)

        seed_properties(ledger)
        bookings = seed_bookings(service, clock)
        report = sync_engine.poll()
        print(
            f"Synced {report.applied} events up to block {report.cursor} "
            f"({report.failed} failed, {report.ignored} ignored)."
        )

        for label, booking_id in bookings.items():
            view = projection.find_booking_by_ledger_id(booking_id)
            print(f"  booking {booking_id} [{label}]: {view.status.value if view else 'not projected'}")
    finally:
        sync_engine.close()


if __name__ == "__main__":
    main()
