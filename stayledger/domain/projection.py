# stayledger/domain/projection.py

"""
Projection records and the forward-only merge rules that make
re-applying a ledger event a no-op.
"""

from dataclasses import dataclass, fields
from typing import Any

from stayledger.domain.state_machine import BookingStateMachine, BookingStatus

# Fields a booking record needs before it can be inserted.
BOOKING_CREATE_FIELDS = (
    "property_ledger_id",
    "guest",
    "host",
    "check_in_date",
    "check_out_date",
    "total_amount",
    "platform_fee",
    "host_amount",
    "status",
)

# Once set, these never change.
WRITE_ONCE_FIELDS = frozenset({
    "check_in_window_start",
    "check_in_deadline",
    "dispute_deadline",
    "dispute_reason",
    "payment_reference",
    "booking_uri",
    "guest_percentage",
})

# Once true, these never go back to false.
MONOTONIC_FLAGS = frozenset({
    "is_check_in_complete",
    "is_resolved_by_host",
    "is_resolved_by_guest",
})


class UpsertResult:
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    MISSING = "missing"


@dataclass
class BookingUpsert:
    """Partial or complete booking state, keyed by ledger booking id."""

    ledger_id: int
    property_ledger_id: str | None = None
    guest: str | None = None
    host: str | None = None
    check_in_date: int | None = None
    check_out_date: int | None = None
    total_amount: int | None = None
    platform_fee: int | None = None
    host_amount: int | None = None
    status: BookingStatus | None = None
    check_in_window_start: int | None = None
    check_in_deadline: int | None = None
    dispute_deadline: int | None = None
    is_check_in_complete: bool | None = None
    is_resolved_by_host: bool | None = None
    is_resolved_by_guest: bool | None = None
    dispute_reason: str | None = None
    paid_off_chain: bool | None = None
    payment_reference: str | None = None
    booking_uri: str | None = None
    guest_percentage: int | None = None
    transaction_id: str | None = None

    def provided(self) -> dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "ledger_id" and getattr(self, f.name) is not None
        }

    @property
    def can_create(self) -> bool:
        return all(getattr(self, name) is not None for name in BOOKING_CREATE_FIELDS)


@dataclass
class PropertyUpsert:
    ledger_id: str
    owner: str | None = None
    token_address: str | None = None
    price_per_night: int | None = None
    is_active: bool | None = None
    property_uri: str | None = None
    is_removed: bool | None = None
    source_height: int | None = None

    def provided(self) -> dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "ledger_id" and getattr(self, f.name) is not None
        }

    @property
    def can_create(self) -> bool:
        return self.owner is not None


@dataclass(frozen=True)
class BookingView:
    ledger_id: int
    property_ledger_id: str
    guest: str
    host: str
    check_in_date: int
    check_out_date: int
    number_of_nights: int
    total_amount: int
    platform_fee: int
    host_amount: int
    status: BookingStatus
    check_in_window_start: int | None
    check_in_deadline: int | None
    dispute_deadline: int | None
    is_check_in_complete: bool
    is_resolved_by_host: bool
    is_resolved_by_guest: bool
    dispute_reason: str | None
    paid_off_chain: bool
    payment_reference: str | None
    booking_uri: str | None
    guest_percentage: int | None


@dataclass(frozen=True)
class PropertyView:
    ledger_id: str
    owner: str
    token_address: str | None
    price_per_night: int
    is_active: bool
    property_uri: str | None
    is_removed: bool


def merge_booking_fields(current: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """
    Returns the subset of ``incoming`` that should be written over
    ``current``. Stale or repeated values produce an empty dict.
    """
    changes: dict[str, Any] = {}
    for name, value in incoming.items():
        existing = current.get(name)

        if name == "status":
            if existing is None or (
                value != existing and BookingStateMachine.is_reachable(existing, value)
            ):
                changes[name] = value
            continue

        if name in MONOTONIC_FLAGS:
            if value and not existing:
                changes[name] = True
            continue

        if name in WRITE_ONCE_FIELDS:
            # Ledger deadlines use 0 for "not set yet".
            unset = existing is None or existing == "" or (
                existing == 0 and name != "guest_percentage"
            )
            if unset and value not in (None, "") and value != existing:
                changes[name] = value
            continue

        # Creation-time facts are immutable; only fill gaps.
        if existing is None:
            changes[name] = value
    return changes


def merge_property_fields(current: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """
    Listings are mutable both ways, so mutable fields are versioned by the
    ledger height they were observed at; anything older than what the
    projection already holds is dropped.
    """
    changes: dict[str, Any] = {}
    incoming_height = incoming.get("source_height")
    current_height = current.get("source_height")
    stale = (
        incoming_height is not None
        and current_height is not None
        and incoming_height < current_height
    )
    removed = bool(current.get("is_removed"))

    for name, value in incoming.items():
        if name == "source_height":
            continue
        if name == "is_removed":
            if value and not removed:
                changes[name] = True
                changes["is_active"] = False
                removed = True
            continue
        if name in ("owner", "token_address"):
            if current.get(name) is None:
                changes[name] = value
            continue
        if stale or (name == "is_active" and removed):
            continue
        if current.get(name) != value:
            changes[name] = value

    if changes and incoming_height is not None and (
        current_height is None or incoming_height > current_height
    ):
        changes["source_height"] = incoming_height
    return changes
