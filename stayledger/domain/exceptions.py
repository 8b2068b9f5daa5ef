

class StayLedgerError(Exception):
    """
    Base exception for all domain-level errors
    inside the StayLedger booking core.
    """


class InvalidStateTransitionError(StayLedgerError):
    """
    Raised when an illegal booking state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class BookingRuleError(StayLedgerError):
    """
    A booking transition precondition failed.

    ``code`` is the stable identifier callers switch on; the message is
    for humans.
    """

    code = "BookingRuleViolation"
    retryable = False

    def __init__(self, booking_id: int | None = None, detail: str | None = None):
        self.booking_id = booking_id
        message = detail or self.__doc__.strip().splitlines()[0]
        if booking_id is not None:
            message = f"{message} (booking {booking_id})"
        super().__init__(message)


# -----------------------------
# Validation errors
# -----------------------------
class BookingValidationError(BookingRuleError):
    """Booking input was rejected."""


class InvalidPropertyError(BookingValidationError):
    """Property does not exist or is not active."""

    code = "InvalidProperty"


class SelfBookingError(BookingValidationError):
    """Host cannot book their own property."""

    code = "SelfBooking"


class InvalidDateRangeError(BookingValidationError):
    """Check-in must be in the future and the stay a whole number of days."""

    code = "InvalidDateRange"


class DateConflictError(BookingValidationError):
    """Dates overlap an existing booking on this property."""

    code = "DateConflict"


class IncorrectPaymentError(BookingValidationError):
    """Escrowed amount does not match the nightly price."""

    code = "IncorrectPayment"


class InvalidPercentageError(BookingValidationError):
    """Guest percentage must be between 0 and 100."""

    code = "InvalidPercentage"


# -----------------------------
# Authorization errors
# -----------------------------
class BookingAuthorizationError(BookingRuleError):
    """Caller is not allowed to perform this transition."""


class NotGuestError(BookingAuthorizationError):
    """Only the guest can do this."""

    code = "NotGuest"


class NotPartyError(BookingAuthorizationError):
    """Only a party to the booking can do this."""

    code = "NotParty"


class NotArbiterError(BookingAuthorizationError):
    """Only the arbiter can resolve escalated disputes."""

    code = "NotArbiter"


# -----------------------------
# Status / timing errors
# -----------------------------
class BookingTimingError(BookingRuleError):
    """Booking is not in the right status or time window."""


class NotActiveError(BookingTimingError):
    """Booking is not active."""

    code = "NotActive"


class TooEarlyError(BookingTimingError):
    """Check-in date has not been reached yet."""

    code = "TooEarly"
    retryable = True


class AlreadyOpenedError(BookingTimingError):
    """Check-in window already opened."""

    code = "AlreadyOpened"


class NotReadyError(BookingTimingError):
    """Booking is not ready for check-in."""

    code = "NotReady"


class WindowExpiredError(BookingTimingError):
    """Check-in window has expired."""

    code = "WindowExpired"


class NotInWindowError(BookingTimingError):
    """Booking is not in its check-in window."""

    code = "NotInWindow"


class WindowNotExpiredError(BookingTimingError):
    """Check-in window has not expired yet."""

    code = "WindowNotExpired"
    retryable = True


class NotDisputedError(BookingTimingError):
    """Booking is not disputed."""

    code = "NotDisputed"


class DisputeExpiredError(BookingTimingError):
    """Dispute resolution window has expired."""

    code = "DisputeExpired"


class DisputeWindowOpenError(BookingTimingError):
    """Dispute resolution window is still open."""

    code = "DisputeWindowOpen"
    retryable = True


class AlreadyResolvedError(BookingTimingError):
    """Both parties already resolved the dispute."""

    code = "AlreadyResolved"


class NotEscalatedError(BookingTimingError):
    """Booking is not escalated to the arbiter."""

    code = "NotEscalated"


class NotCancellableError(BookingTimingError):
    """Booking can no longer be cancelled."""

    code = "NotCancellable"


class PastCheckInError(BookingTimingError):
    """Check-in date has already passed."""

    code = "PastCheckIn"


class NotCheckedInError(BookingTimingError):
    """Guest has not checked in."""

    code = "NotCheckedIn"


class StayNotFinishedError(BookingTimingError):
    """Check-out date has not been reached yet."""

    code = "StayNotFinished"
    retryable = True


class BookingNotFoundError(StayLedgerError):
    """Raised when a ledger lookup finds no such booking."""


# -----------------------------
# Sync / infrastructure errors
# -----------------------------
class SyncError(StayLedgerError):
    """Base class for event synchronization failures."""


class EventHandlerError(SyncError):
    """
    Raised when a ledger event cannot be mapped onto the projection.
    The event stays unprocessed and is retried on the next poll.
    """

    def __init__(self, identity: str, event_name: str, reason: str):
        self.identity = identity
        self.event_name = event_name
        super().__init__(f"{event_name} [{identity[:12]}]: {reason}")


class InfrastructureError(StayLedgerError):
    """A collaborator could not be reached. Retry on the next cycle."""


class LedgerUnavailableError(InfrastructureError):
    """Raised when the ledger cannot be read or times out."""


class ProjectionUnavailableError(InfrastructureError):
    """Raised when the projection store cannot be written or times out."""
