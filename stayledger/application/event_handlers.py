# stayledger/application/event_handlers.py

"""
Pure mappers from a decoded ledger event to the projection mutation it
implies. No I/O happens here; the sync engine applies the result.
"""

from typing import Any, Callable, Union

from stayledger.domain.events import EventKind, LedgerEvent
from stayledger.domain.projection import BookingUpsert, PropertyUpsert
from stayledger.domain.state_machine import BookingStatus

Mutation = Union[BookingUpsert, PropertyUpsert, None]


def _int(args: dict[str, Any], name: str) -> int:
    # Large ledger integers may arrive as decimal strings.
    value = args[name]
    if isinstance(value, bool):
        raise TypeError(f"{name} must be an integer, got bool")
    return int(value)


def _opt_str(args: dict[str, Any], name: str) -> str | None:
    value = args.get(name)
    if value in (None, ""):
        return None
    return str(value)


# -----------------------------
# Property events
# -----------------------------
def _property_listed(event: LedgerEvent) -> PropertyUpsert:
    args = event.args
    return PropertyUpsert(
        ledger_id=str(args["property_id"]),
        owner=str(args["owner"]),
        token_address=_opt_str(args, "token_address"),
        price_per_night=_int(args, "price_per_night") if "price_per_night" in args else None,
        is_active=True,
        property_uri=_opt_str(args, "property_uri"),
        source_height=event.block_height,
    )


def _property_updated(event: LedgerEvent) -> PropertyUpsert:
    args = event.args
    return PropertyUpsert(
        ledger_id=str(args["property_id"]),
        price_per_night=_int(args, "price_per_night"),
        is_active=bool(args["is_active"]),
        source_height=event.block_height,
    )


def _property_removed(event: LedgerEvent) -> PropertyUpsert:
    return PropertyUpsert(
        ledger_id=str(event.args["property_id"]),
        is_removed=True,
        source_height=event.block_height,
    )


def _property_metadata_updated(event: LedgerEvent) -> PropertyUpsert:
    return PropertyUpsert(
        ledger_id=str(event.args["property_id"]),
        property_uri=_opt_str(event.args, "property_uri"),
        source_height=event.block_height,
    )


# -----------------------------
# Booking events
# -----------------------------
def _booking_created(event: LedgerEvent) -> BookingUpsert:
    args = event.args
    paid_off_chain = event.kind is EventKind.BOOKING_CREATED_PAID
    return BookingUpsert(
        ledger_id=_int(args, "booking_id"),
        property_ledger_id=str(args["property_id"]),
        guest=str(args["guest"]),
        host=str(args["host"]),
        check_in_date=_int(args, "check_in_date"),
        check_out_date=_int(args, "check_out_date"),
        total_amount=_int(args, "total_amount"),
        platform_fee=_int(args, "platform_fee"),
        host_amount=_int(args, "host_amount"),
        status=BookingStatus.ACTIVE,
        paid_off_chain=paid_off_chain,
        payment_reference=_opt_str(args, "payment_reference") if paid_off_chain else None,
        booking_uri=_opt_str(args, "booking_uri"),
        transaction_id=event.tx_id,
    )


def _check_in_window_opened(event: LedgerEvent) -> BookingUpsert:
    args = event.args
    return BookingUpsert(
        ledger_id=_int(args, "booking_id"),
        status=BookingStatus.CHECK_IN_READY,
        check_in_window_start=_int(args, "window_start"),
        check_in_deadline=_int(args, "deadline"),
    )


def _checked_in(event: LedgerEvent) -> BookingUpsert:
    return BookingUpsert(
        ledger_id=_int(event.args, "booking_id"),
        status=BookingStatus.CHECKED_IN,
        is_check_in_complete=True,
    )


def _dispute_raised(event: LedgerEvent) -> BookingUpsert:
    args = event.args
    return BookingUpsert(
        ledger_id=_int(args, "booking_id"),
        status=BookingStatus.DISPUTED,
        dispute_reason=_opt_str(args, "reason"),
        dispute_deadline=_int(args, "deadline"),
    )


def _resolved_by_host(event: LedgerEvent) -> BookingUpsert:
    return BookingUpsert(ledger_id=_int(event.args, "booking_id"), is_resolved_by_host=True)


def _resolved_by_guest(event: LedgerEvent) -> BookingUpsert:
    return BookingUpsert(ledger_id=_int(event.args, "booking_id"), is_resolved_by_guest=True)


def _admin_resolved(event: LedgerEvent) -> BookingUpsert:
    percentage = _int(event.args, "guest_percentage")
    return BookingUpsert(
        ledger_id=_int(event.args, "booking_id"),
        status=BookingStatus.REFUNDED if percentage == 100 else BookingStatus.COMPLETED,
        guest_percentage=percentage,
    )


def _status_only(status: BookingStatus) -> Callable[[LedgerEvent], BookingUpsert]:
    def handler(event: LedgerEvent) -> BookingUpsert:
        return BookingUpsert(ledger_id=_int(event.args, "booking_id"), status=status)

    return handler


def _ignored(event: LedgerEvent) -> None:
    return None


HANDLERS: dict[EventKind, Callable[[LedgerEvent], Mutation]] = {
    EventKind.PROPERTY_LISTED: _property_listed,
    EventKind.PROPERTY_UPDATED: _property_updated,
    EventKind.PROPERTY_REMOVED: _property_removed,
    EventKind.PROPERTY_METADATA_UPDATED: _property_metadata_updated,
    EventKind.BOOKING_CREATED: _booking_created,
    EventKind.BOOKING_CREATED_PAID: _booking_created,
    EventKind.CHECK_IN_WINDOW_OPENED: _check_in_window_opened,
    EventKind.CHECKED_IN: _checked_in,
    EventKind.DISPUTE_RAISED: _dispute_raised,
    EventKind.DISPUTE_RESOLVED_BY_HOST: _resolved_by_host,
    EventKind.DISPUTE_RESOLVED_BY_GUEST: _resolved_by_guest,
    EventKind.DISPUTE_ESCALATED: _status_only(BookingStatus.ESCALATED_TO_ADMIN),
    EventKind.ADMIN_RESOLVED: _admin_resolved,
    EventKind.BOOKING_COMPLETED: _status_only(BookingStatus.COMPLETED),
    EventKind.BOOKING_CANCELLED: _status_only(BookingStatus.CANCELLED),
    EventKind.BOOKING_REFUNDED: _status_only(BookingStatus.REFUNDED),
    EventKind.IGNORED: _ignored,
}


def mutation_for(event: LedgerEvent) -> Mutation:
    """
    Maps an event to its projection mutation, or None for events that
    leave the projection alone.

    Raises KeyError, TypeError or ValueError when the event's arguments
    are missing or malformed.
    """
    return HANDLERS[event.kind](event)
