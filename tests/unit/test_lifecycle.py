# tests/unit/test_lifecycle.py

import pytest

from stayledger.domain.clock import ONE_DAY
from stayledger.domain.exceptions import (
    DateConflictError,
    DisputeExpiredError,
    DisputeWindowOpenError,
    IncorrectPaymentError,
    InvalidDateRangeError,
    InvalidPercentageError,
    InvalidPropertyError,
    NotArbiterError,
    NotGuestError,
    NotPartyError,
    PastCheckInError,
    SelfBookingError,
    StayNotFinishedError,
    TooEarlyError,
    WindowExpiredError,
)
from stayledger.domain.lifecycle import MISSED_CHECK_IN_REASON, Transition
from stayledger.domain.state_machine import BookingStatus

HOST = "0xhost"
GUEST = "0xguest"
OTHER_GUEST = "0xother"
ARBITER = "0xarbiter"
TREASURY = "0xtreasury"
NIGHTLY = 10**18


@pytest.fixture
def listed(ledger):
    ledger.list_property(property_id="villa", owner=HOST, price_per_night=NIGHTLY)
    return "villa"


@pytest.fixture
def booking_id(ledger, listed, check_in):
    outcome = ledger.create_booking(GUEST, listed, check_in, check_in + 3 * ONE_DAY, 3 * NIGHTLY)
    return outcome.booking.booking_id


def _status(ledger, booking_id):
    return ledger.read_booking(booking_id).status


def _paid(ledger, recipient):
    return sum(t.amount for t in ledger.settlements if t.recipient == recipient)


def _into_dispute(ledger, clock, booking_id, check_in):
    clock.set(check_in)
    ledger.submit_transition(booking_id, Transition.OPEN_CHECK_IN_WINDOW)
    clock.advance(ONE_DAY + 1)
    ledger.submit_transition(booking_id, Transition.PROCESS_MISSED_CHECK_IN)


# ---------------------
# HAPPY PATH
# ---------------------

def test_happy_path_completes_and_pays_out(ledger, clock, booking_id, check_in):
    booking = ledger.read_booking(booking_id)
    assert booking.status == BookingStatus.ACTIVE
    assert booking.number_of_nights == 3
    assert booking.platform_fee == 3 * NIGHTLY * 300 // 10_000
    assert booking.platform_fee + booking.host_amount == booking.total_amount

    clock.set(check_in)
    ledger.submit_transition(booking_id, Transition.OPEN_CHECK_IN_WINDOW)
    assert _status(ledger, booking_id) == BookingStatus.CHECK_IN_READY
    assert ledger.read_booking(booking_id).check_in_deadline == check_in + ONE_DAY

    ledger.submit_transition(booking_id, Transition.CHECK_IN, {"caller": GUEST})
    booking = ledger.read_booking(booking_id)
    assert booking.status == BookingStatus.CHECKED_IN
    assert booking.is_check_in_complete

    clock.set(check_in + 3 * ONE_DAY)
    outcome = ledger.submit_transition(booking_id, Transition.COMPLETE_STAY)

    assert outcome.booking.status == BookingStatus.COMPLETED
    assert [name for name, _ in outcome.events] == ["BookingCompleted"]
    assert _paid(ledger, TREASURY) == booking.platform_fee
    assert _paid(ledger, HOST) == booking.host_amount


def test_open_window_before_check_in_date_is_retryable(ledger, booking_id):
    with pytest.raises(TooEarlyError) as exc_info:
        ledger.submit_transition(booking_id, Transition.OPEN_CHECK_IN_WINDOW)

    assert exc_info.value.code == "TooEarly"
    assert exc_info.value.retryable


def test_complete_stay_waits_for_check_out(ledger, clock, booking_id, check_in):
    clock.set(check_in)
    ledger.submit_transition(booking_id, Transition.OPEN_CHECK_IN_WINDOW)
    ledger.submit_transition(booking_id, Transition.CHECK_IN, {"caller": GUEST})

    with pytest.raises(StayNotFinishedError):
        ledger.submit_transition(booking_id, Transition.COMPLETE_STAY)


def test_check_in_after_deadline_is_rejected(ledger, clock, booking_id, check_in):
    clock.set(check_in)
    ledger.submit_transition(booking_id, Transition.OPEN_CHECK_IN_WINDOW)
    clock.advance(ONE_DAY + 1)

    with pytest.raises(WindowExpiredError):
        ledger.submit_transition(booking_id, Transition.CHECK_IN, {"caller": GUEST})


def test_rejected_transition_leaves_booking_and_log_untouched(ledger, clock, booking_id, check_in):
    clock.set(check_in)
    ledger.submit_transition(booking_id, Transition.OPEN_CHECK_IN_WINDOW)
    before = ledger.read_booking(booking_id)
    height = ledger.current_height()

    with pytest.raises(NotGuestError):
        ledger.submit_transition(booking_id, Transition.CHECK_IN, {"caller": OTHER_GUEST})

    assert ledger.read_booking(booking_id) == before
    assert ledger.current_height() == height


# ---------------------
# DISPUTES
# ---------------------

def test_missed_check_in_then_consensus(ledger, clock, booking_id, check_in):
    _into_dispute(ledger, clock, booking_id, check_in)
    booking = ledger.read_booking(booking_id)
    assert booking.status == BookingStatus.DISPUTED
    assert booking.dispute_reason == MISSED_CHECK_IN_REASON
    assert booking.dispute_deadline == clock.now() + ONE_DAY

    outcome = ledger.submit_transition(booking_id, Transition.HOST_RESOLVE_DISPUTE, {"caller": HOST})
    assert outcome.booking.status == BookingStatus.DISPUTED
    assert outcome.booking.is_resolved_by_host
    assert not outcome.booking.is_resolved_by_guest

    outcome = ledger.submit_transition(booking_id, Transition.GUEST_RESOLVE_DISPUTE, {"caller": GUEST})
    assert outcome.booking.status == BookingStatus.COMPLETED
    assert [name for name, _ in outcome.events] == ["DisputeResolvedByGuest", "BookingCompleted"]
    assert _paid(ledger, HOST) == outcome.booking.host_amount


def test_only_parties_resolve_disputes(ledger, clock, booking_id, check_in):
    _into_dispute(ledger, clock, booking_id, check_in)

    with pytest.raises(NotPartyError):
        ledger.submit_transition(booking_id, Transition.HOST_RESOLVE_DISPUTE, {"caller": GUEST})
    with pytest.raises(NotPartyError):
        ledger.submit_transition(booking_id, Transition.GUEST_RESOLVE_DISPUTE, {"caller": HOST})


def test_escalation_and_admin_split(ledger, clock, booking_id, check_in):
    _into_dispute(ledger, clock, booking_id, check_in)

    with pytest.raises(DisputeWindowOpenError):
        ledger.submit_transition(booking_id, Transition.ESCALATE_DISPUTE)

    ledger.submit_transition(booking_id, Transition.HOST_RESOLVE_DISPUTE, {"caller": HOST})
    clock.advance(ONE_DAY + 1)

    with pytest.raises(DisputeExpiredError):
        ledger.submit_transition(booking_id, Transition.GUEST_RESOLVE_DISPUTE, {"caller": GUEST})

    # One-sided resolution does not block escalation.
    ledger.submit_transition(booking_id, Transition.ESCALATE_DISPUTE)
    assert _status(ledger, booking_id) == BookingStatus.ESCALATED_TO_ADMIN

    with pytest.raises(NotArbiterError):
        ledger.submit_transition(
            booking_id, Transition.ADMIN_RESOLVE, {"caller": HOST, "guest_percentage": 50}
        )
    with pytest.raises(InvalidPercentageError):
        ledger.submit_transition(
            booking_id, Transition.ADMIN_RESOLVE, {"caller": ARBITER, "guest_percentage": 101}
        )

    outcome = ledger.submit_transition(
        booking_id, Transition.ADMIN_RESOLVE, {"caller": ARBITER, "guest_percentage": 60}
    )
    booking = outcome.booking
    guest_share = booking.host_amount * 60 // 100

    assert booking.status == BookingStatus.COMPLETED
    assert _paid(ledger, GUEST) == guest_share
    assert _paid(ledger, HOST) == booking.host_amount - guest_share
    assert _paid(ledger, TREASURY) == booking.platform_fee
    assert sum(t.amount for t in ledger.settlements) == booking.total_amount


def test_full_refund_by_arbiter_ends_refunded(ledger, clock, booking_id, check_in):
    _into_dispute(ledger, clock, booking_id, check_in)
    clock.advance(ONE_DAY + 1)
    ledger.submit_transition(booking_id, Transition.ESCALATE_DISPUTE)

    outcome = ledger.submit_transition(
        booking_id, Transition.ADMIN_RESOLVE, {"caller": ARBITER, "guest_percentage": 100}
    )

    assert outcome.booking.status == BookingStatus.REFUNDED
    assert [name for name, _ in outcome.events] == ["AdminResolved", "BookingRefunded"]
    assert _paid(ledger, HOST) == 0


# ---------------------
# CREATION RULES
# ---------------------

def test_overlapping_booking_is_rejected(ledger, listed, booking_id, check_in):
    with pytest.raises(DateConflictError) as exc_info:
        ledger.create_booking(
            OTHER_GUEST, listed, check_in + ONE_DAY, check_in + 2 * ONE_DAY, NIGHTLY
        )
    assert exc_info.value.code == "DateConflict"

    # Check-out day is free for the next stay.
    outcome = ledger.create_booking(
        OTHER_GUEST, listed, check_in + 3 * ONE_DAY, check_in + 4 * ONE_DAY, NIGHTLY
    )
    assert outcome.booking.status == BookingStatus.ACTIVE


def test_cancelled_booking_releases_dates(ledger, listed, booking_id, check_in):
    outcome = ledger.submit_transition(booking_id, Transition.CANCEL, {"caller": GUEST})

    assert outcome.booking.status == BookingStatus.CANCELLED
    assert _paid(ledger, GUEST) == outcome.booking.host_amount
    assert _paid(ledger, TREASURY) == outcome.booking.platform_fee

    rebooked = ledger.create_booking(
        OTHER_GUEST, listed, check_in, check_in + ONE_DAY, NIGHTLY
    )
    assert rebooked.booking.booking_id != booking_id


def test_cancel_rejected_once_check_in_date_arrives(ledger, clock, booking_id, check_in):
    clock.set(check_in)

    with pytest.raises(PastCheckInError):
        ledger.submit_transition(booking_id, Transition.CANCEL, {"caller": GUEST})


@pytest.mark.parametrize(
    "guest, offset_in, nights_seconds, amount, error",
    [
        (HOST, 0, 2 * ONE_DAY, 2 * NIGHTLY, SelfBookingError),
        (GUEST, -3 * ONE_DAY, 2 * ONE_DAY, 2 * NIGHTLY, InvalidDateRangeError),
        (GUEST, 0, ONE_DAY + 60, NIGHTLY, InvalidDateRangeError),
        (GUEST, 0, 0, 0, InvalidDateRangeError),
        (GUEST, 0, 2 * ONE_DAY, NIGHTLY, IncorrectPaymentError),
    ],
)
def test_creation_validation(ledger, listed, check_in, guest, offset_in, nights_seconds, amount, error):
    start = check_in + offset_in
    height = ledger.current_height()

    with pytest.raises(error):
        ledger.create_booking(guest, listed, start, start + nights_seconds, amount)

    assert ledger.current_height() == height


def test_inactive_property_cannot_be_booked(ledger, listed, check_in):
    ledger.update_property(listed, HOST, price_per_night=NIGHTLY, is_active=False)

    with pytest.raises(InvalidPropertyError):
        ledger.create_booking(GUEST, listed, check_in, check_in + ONE_DAY, NIGHTLY)


def test_off_chain_booking_uses_its_own_fee_and_needs_reference(ledger, listed, check_in):
    with pytest.raises(IncorrectPaymentError):
        ledger.create_paid_booking(GUEST, listed, check_in, check_in + ONE_DAY, NIGHTLY, payment_reference="")

    outcome = ledger.create_paid_booking(
        GUEST, listed, check_in, check_in + ONE_DAY, NIGHTLY, payment_reference="pi_123"
    )
    booking = outcome.booking

    assert booking.paid_off_chain
    assert booking.platform_fee == NIGHTLY * 50 // 10_000
    assert outcome.events[0][0] == "BookingCreatedPaid"
    assert outcome.events[0][1]["payment_reference"] == "pi_123"


def test_off_chain_settlement_moves_no_funds(ledger, clock, listed, check_in):
    outcome = ledger.create_paid_booking(
        GUEST, listed, check_in, check_in + ONE_DAY, NIGHTLY, payment_reference="pi_456"
    )
    booking_id = outcome.booking.booking_id
    clock.set(check_in)
    ledger.submit_transition(booking_id, Transition.OPEN_CHECK_IN_WINDOW)
    ledger.submit_transition(booking_id, Transition.CHECK_IN, {"caller": GUEST})
    clock.set(check_in + ONE_DAY)
    ledger.submit_transition(booking_id, Transition.COMPLETE_STAY)

    assert _status(ledger, booking_id) == BookingStatus.COMPLETED
    assert ledger.settlements == []


# ---------------------
# TIME TRIGGERS
# ---------------------

def test_due_transition_follows_the_clock(ledger, lifecycle, clock, booking_id, check_in):
    assert lifecycle.due_transition(ledger.read_booking(booking_id)) is None

    clock.set(check_in)
    assert lifecycle.due_transition(ledger.read_booking(booking_id)) is Transition.OPEN_CHECK_IN_WINDOW

    ledger.submit_transition(booking_id, Transition.OPEN_CHECK_IN_WINDOW)
    assert lifecycle.due_transition(ledger.read_booking(booking_id)) is None

    clock.advance(ONE_DAY + 1)
    assert lifecycle.due_transition(ledger.read_booking(booking_id)) is Transition.PROCESS_MISSED_CHECK_IN
