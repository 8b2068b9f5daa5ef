# stayledger/domain/lifecycle.py

"""
Booking lifecycle rules.

Every transition checks all of its preconditions before touching the
booking, so a raised error leaves the booking exactly as it was. Time is
read only through the injected clock.
"""

from enum import Enum
from typing import Any, Iterable

from stayledger.domain.booking import (
    Booking,
    FeeSchedule,
    PaymentChannel,
    Property,
    TransitionOutcome,
)
from stayledger.domain.clock import ONE_DAY, Clock
from stayledger.domain.exceptions import (
    AlreadyOpenedError,
    AlreadyResolvedError,
    DateConflictError,
    DisputeExpiredError,
    DisputeWindowOpenError,
    IncorrectPaymentError,
    InvalidDateRangeError,
    InvalidPercentageError,
    InvalidPropertyError,
    NotActiveError,
    NotArbiterError,
    NotCancellableError,
    NotCheckedInError,
    NotDisputedError,
    NotEscalatedError,
    NotGuestError,
    NotInWindowError,
    NotPartyError,
    NotReadyError,
    PastCheckInError,
    SelfBookingError,
    StayNotFinishedError,
    TooEarlyError,
    WindowExpiredError,
    WindowNotExpiredError,
)
from stayledger.domain.state_machine import BookingStateMachine, BookingStatus

CHECK_IN_WINDOW_SECONDS = ONE_DAY
DISPUTE_WINDOW_SECONDS = ONE_DAY
MISSED_CHECK_IN_REASON = "Missed check-in"


class Transition(str, Enum):
    OPEN_CHECK_IN_WINDOW = "open_check_in_window"
    CHECK_IN = "check_in"
    PROCESS_MISSED_CHECK_IN = "process_missed_check_in"
    HOST_RESOLVE_DISPUTE = "host_resolve_dispute"
    GUEST_RESOLVE_DISPUTE = "guest_resolve_dispute"
    ESCALATE_DISPUTE = "escalate_dispute"
    ADMIN_RESOLVE = "admin_resolve"
    CANCEL = "cancel"
    COMPLETE_STAY = "complete_stay"


# Time triggers anyone may fire.
PERMISSIONLESS_TRANSITIONS = frozenset({
    Transition.OPEN_CHECK_IN_WINDOW,
    Transition.PROCESS_MISSED_CHECK_IN,
    Transition.ESCALATE_DISPUTE,
    Transition.COMPLETE_STAY,
})


class BookingLifecycle:

    def __init__(
        self,
        clock: Clock,
        fee_schedule: FeeSchedule,
        arbiter: str,
        treasury: str,
    ):
        self.clock = clock
        self.fee_schedule = fee_schedule
        self.arbiter = arbiter
        self.treasury = treasury

    def apply(
        self,
        booking: Booking,
        transition: Transition | str,
        args: dict[str, Any] | None = None,
    ) -> TransitionOutcome:
        """Dispatches a named transition; ``args`` carries caller and parameters."""
        transition = Transition(transition)
        args = args or {}
        caller = args.get("caller", "")

        if transition is Transition.OPEN_CHECK_IN_WINDOW:
            return self.open_check_in_window(booking)
        if transition is Transition.CHECK_IN:
            return self.check_in(booking, caller)
        if transition is Transition.PROCESS_MISSED_CHECK_IN:
            return self.process_missed_check_in(booking)
        if transition is Transition.HOST_RESOLVE_DISPUTE:
            return self.host_resolve_dispute(booking, caller)
        if transition is Transition.GUEST_RESOLVE_DISPUTE:
            return self.guest_resolve_dispute(booking, caller)
        if transition is Transition.ESCALATE_DISPUTE:
            return self.escalate_dispute(booking)
        if transition is Transition.ADMIN_RESOLVE:
            return self.admin_resolve(booking, caller, args.get("guest_percentage"))
        if transition is Transition.CANCEL:
            return self.cancel(booking, caller)
        return self.complete_stay(booking)

    def due_transition(self, booking: Booking) -> Transition | None:
        """Returns the time-triggered transition that would succeed right now, if any."""
        now = self.clock.now()
        status = booking.status
        if status == BookingStatus.ACTIVE:
            if now >= booking.check_in_date and booking.check_in_window_start == 0:
                return Transition.OPEN_CHECK_IN_WINDOW
        elif status == BookingStatus.CHECK_IN_READY:
            if now > booking.check_in_deadline:
                return Transition.PROCESS_MISSED_CHECK_IN
        elif status == BookingStatus.DISPUTED:
            both_resolved = booking.is_resolved_by_host and booking.is_resolved_by_guest
            if now > booking.dispute_deadline and not both_resolved:
                return Transition.ESCALATE_DISPUTE
        elif status == BookingStatus.CHECKED_IN:
            if now >= booking.check_out_date:
                return Transition.COMPLETE_STAY
        return None

    # -----------------------------
    # Creation
    # -----------------------------
    def create(
        self,
        booking_id: int,
        prop: Property | None,
        guest: str,
        check_in_date: int,
        check_out_date: int,
        total_amount: int,
        existing_bookings: Iterable[Booking],
        channel: PaymentChannel = PaymentChannel.ESCROW,
        payment_reference: str | None = None,
        booking_uri: str | None = None,
    ) -> TransitionOutcome:
        """
        Validates and builds a new Active booking.

        The caller must hold whatever lock makes the overlap check and the
        insert of the returned booking one atomic step.
        """
        if prop is None or not prop.is_active:
            raise InvalidPropertyError(detail=f"Property {getattr(prop, 'property_id', '?')} is not bookable")

        off_chain = channel is PaymentChannel.OFF_CHAIN
        # A custodial relay may book on the host's behalf off-chain.
        if not off_chain and prop.owner == guest:
            raise SelfBookingError()

        self._validate_dates(check_in_date, check_out_date)

        if total_amount < 0:
            raise IncorrectPaymentError(detail="Amount must be non-negative")
        nights = (check_out_date - check_in_date) // ONE_DAY
        if off_chain:
            if not payment_reference:
                raise IncorrectPaymentError(detail="Off-chain booking needs a payment reference")
        elif prop.price_per_night and total_amount != prop.price_per_night * nights:
            raise IncorrectPaymentError(
                detail=f"Expected {prop.price_per_night * nights}, got {total_amount}"
            )

        for other in existing_bookings:
            if other.property_id != prop.property_id or not other.holds_dates:
                continue
            if other.overlaps(check_in_date, check_out_date):
                raise DateConflictError(
                    detail=f"Dates overlap booking {other.booking_id} on property {prop.property_id}"
                )

        platform_fee, host_amount = self.fee_schedule.split(total_amount, channel)
        booking = Booking(
            booking_id=booking_id,
            property_id=prop.property_id,
            guest=guest,
            host=prop.owner,
            check_in_date=check_in_date,
            check_out_date=check_out_date,
            total_amount=total_amount,
            platform_fee=platform_fee,
            host_amount=host_amount,
            status=BookingStatus.ACTIVE,
            paid_off_chain=off_chain,
            payment_reference=payment_reference if off_chain else None,
            booking_uri=booking_uri,
        )

        outcome = TransitionOutcome(booking=booking)
        args = dict(
            booking_id=booking.booking_id,
            property_id=booking.property_id,
            guest=booking.guest,
            host=booking.host,
            check_in_date=booking.check_in_date,
            check_out_date=booking.check_out_date,
            total_amount=booking.total_amount,
            platform_fee=booking.platform_fee,
            host_amount=booking.host_amount,
        )
        if off_chain:
            outcome.emit(
                "BookingCreatedPaid",
                **args,
                payment_reference=payment_reference,
                booking_uri=booking_uri,
            )
        else:
            outcome.emit("BookingCreated", **args)
        return outcome

    def _validate_dates(self, check_in_date: int, check_out_date: int) -> None:
        now = self.clock.now()
        if check_in_date <= now:
            raise InvalidDateRangeError(detail="Check-in must be in the future")
        if check_out_date <= check_in_date:
            raise InvalidDateRangeError(detail="Check-out must be after check-in")
        if (check_out_date - check_in_date) % ONE_DAY != 0:
            raise InvalidDateRangeError(detail="Stay must be a whole number of days")

    # -----------------------------
    # Check-in
    # -----------------------------
    def open_check_in_window(self, booking: Booking) -> TransitionOutcome:
        now = self.clock.now()
        if booking.status != BookingStatus.ACTIVE:
            raise NotActiveError(booking.booking_id)
        if now < booking.check_in_date:
            raise TooEarlyError(booking.booking_id)
        if booking.check_in_window_start != 0:
            raise AlreadyOpenedError(booking.booking_id)

        self._move(booking, BookingStatus.CHECK_IN_READY)
        booking.check_in_window_start = now
        booking.check_in_deadline = now + CHECK_IN_WINDOW_SECONDS

        outcome = TransitionOutcome(booking=booking)
        outcome.emit(
            "CheckInWindowOpened",
            booking_id=booking.booking_id,
            window_start=booking.check_in_window_start,
            deadline=booking.check_in_deadline,
        )
        return outcome

    def check_in(self, booking: Booking, caller: str) -> TransitionOutcome:
        now = self.clock.now()
        if caller != booking.guest:
            raise NotGuestError(booking.booking_id)
        if booking.status != BookingStatus.CHECK_IN_READY:
            raise NotReadyError(booking.booking_id)
        if now > booking.check_in_deadline:
            raise WindowExpiredError(booking.booking_id)

        self._move(booking, BookingStatus.CHECKED_IN)
        booking.is_check_in_complete = True

        outcome = TransitionOutcome(booking=booking)
        outcome.emit("CheckedIn", booking_id=booking.booking_id, guest=booking.guest)
        return outcome

    def process_missed_check_in(self, booking: Booking) -> TransitionOutcome:
        now = self.clock.now()
        if booking.status != BookingStatus.CHECK_IN_READY:
            raise NotInWindowError(booking.booking_id)
        if now <= booking.check_in_deadline:
            raise WindowNotExpiredError(booking.booking_id)

        self._move(booking, BookingStatus.DISPUTED)
        booking.dispute_deadline = now + DISPUTE_WINDOW_SECONDS
        booking.dispute_reason = MISSED_CHECK_IN_REASON

        outcome = TransitionOutcome(booking=booking)
        outcome.emit(
            "DisputeRaised",
            booking_id=booking.booking_id,
            reason=booking.dispute_reason,
            deadline=booking.dispute_deadline,
        )
        return outcome

    # -----------------------------
    # Disputes
    # -----------------------------
    def host_resolve_dispute(self, booking: Booking, caller: str) -> TransitionOutcome:
        if caller != booking.host:
            raise NotPartyError(booking.booking_id, detail="Only the host can do this")
        self._ensure_dispute_open(booking)

        booking.is_resolved_by_host = True
        outcome = TransitionOutcome(booking=booking)
        outcome.emit("DisputeResolvedByHost", booking_id=booking.booking_id, host=booking.host)
        self._settle_if_consensus(booking, outcome)
        return outcome

    def guest_resolve_dispute(self, booking: Booking, caller: str) -> TransitionOutcome:
        if caller != booking.guest:
            raise NotPartyError(booking.booking_id, detail="Only the guest can do this")
        self._ensure_dispute_open(booking)

        booking.is_resolved_by_guest = True
        outcome = TransitionOutcome(booking=booking)
        outcome.emit("DisputeResolvedByGuest", booking_id=booking.booking_id, guest=booking.guest)
        self._settle_if_consensus(booking, outcome)
        return outcome

    def _ensure_dispute_open(self, booking: Booking) -> None:
        if booking.status != BookingStatus.DISPUTED:
            raise NotDisputedError(booking.booking_id)
        if self.clock.now() > booking.dispute_deadline:
            raise DisputeExpiredError(booking.booking_id)

    def _settle_if_consensus(self, booking: Booking, outcome: TransitionOutcome) -> None:
        # Evaluated after every vote; both flags are monotonic.
        if booking.is_resolved_by_host and booking.is_resolved_by_guest:
            self._complete(booking, outcome)

    def escalate_dispute(self, booking: Booking) -> TransitionOutcome:
        if booking.status != BookingStatus.DISPUTED:
            raise NotDisputedError(booking.booking_id)
        if self.clock.now() <= booking.dispute_deadline:
            raise DisputeWindowOpenError(booking.booking_id)
        # One party resolving alone does not block escalation.
        if booking.is_resolved_by_host and booking.is_resolved_by_guest:
            raise AlreadyResolvedError(booking.booking_id)

        self._move(booking, BookingStatus.ESCALATED_TO_ADMIN)
        outcome = TransitionOutcome(booking=booking)
        outcome.emit("DisputeEscalated", booking_id=booking.booking_id)
        return outcome

    def admin_resolve(
        self,
        booking: Booking,
        caller: str,
        guest_percentage: int,
    ) -> TransitionOutcome:
        if caller != self.arbiter:
            raise NotArbiterError(booking.booking_id)
        if booking.status != BookingStatus.ESCALATED_TO_ADMIN:
            raise NotEscalatedError(booking.booking_id)
        if isinstance(guest_percentage, bool) or not isinstance(guest_percentage, int):
            raise InvalidPercentageError(booking.booking_id)
        if not 0 <= guest_percentage <= 100:
            raise InvalidPercentageError(booking.booking_id)

        # Only host_amount is split; the platform fee is kept either way.
        guest_share = booking.host_amount * guest_percentage // 100
        host_share = booking.host_amount - guest_share
        refunded = guest_percentage == 100
        self._move(booking, BookingStatus.REFUNDED if refunded else BookingStatus.COMPLETED)

        outcome = TransitionOutcome(booking=booking)
        if not booking.paid_off_chain:
            outcome.pay(self.treasury, booking.platform_fee, "platform_fee")
            outcome.pay(booking.guest, guest_share, "dispute_refund")
            outcome.pay(booking.host, host_share, "host_payout")

        outcome.emit(
            "AdminResolved",
            booking_id=booking.booking_id,
            guest_percentage=guest_percentage,
            guest_amount=guest_share,
            host_amount=host_share,
        )
        if refunded:
            outcome.emit("BookingRefunded", booking_id=booking.booking_id, amount=guest_share)
        else:
            outcome.emit("BookingCompleted", booking_id=booking.booking_id)
        return outcome

    # -----------------------------
    # Cancellation and completion
    # -----------------------------
    def cancel(self, booking: Booking, caller: str) -> TransitionOutcome:
        if caller != booking.guest:
            raise NotGuestError(booking.booking_id)
        if booking.status != BookingStatus.ACTIVE:
            raise NotCancellableError(booking.booking_id)
        if self.clock.now() >= booking.check_in_date:
            raise PastCheckInError(booking.booking_id)

        self._move(booking, BookingStatus.CANCELLED)
        outcome = TransitionOutcome(booking=booking)
        if not booking.paid_off_chain:
            outcome.pay(self.treasury, booking.platform_fee, "platform_fee")
            outcome.pay(booking.guest, booking.host_amount, "cancellation_refund")
        outcome.emit("BookingCancelled", booking_id=booking.booking_id)
        return outcome

    def complete_stay(self, booking: Booking) -> TransitionOutcome:
        if booking.status != BookingStatus.CHECKED_IN:
            raise NotCheckedInError(booking.booking_id)
        if self.clock.now() < booking.check_out_date:
            raise StayNotFinishedError(booking.booking_id)

        outcome = TransitionOutcome(booking=booking)
        self._complete(booking, outcome)
        return outcome

    def _complete(self, booking: Booking, outcome: TransitionOutcome) -> None:
        self._move(booking, BookingStatus.COMPLETED)
        if not booking.paid_off_chain:
            outcome.pay(self.treasury, booking.platform_fee, "platform_fee")
            outcome.pay(booking.host, booking.host_amount, "host_payout")
        outcome.emit("BookingCompleted", booking_id=booking.booking_id)

    @staticmethod
    def _move(booking: Booking, to_status: BookingStatus) -> None:
        BookingStateMachine.validate_transition(booking.status, to_status)
        booking.status = to_status
