# stayledger/domain/events.py

import hashlib
import json
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any


class EventKind(str, Enum):
    """Every ledger event name the sync engine knows about."""

    PROPERTY_LISTED = "PropertyListed"
    PROPERTY_UPDATED = "PropertyUpdated"
    PROPERTY_REMOVED = "PropertyRemoved"
    PROPERTY_METADATA_UPDATED = "PropertyMetadataUpdated"
    BOOKING_CREATED = "BookingCreated"
    BOOKING_CREATED_PAID = "BookingCreatedPaid"
    CHECK_IN_WINDOW_OPENED = "CheckInWindowOpened"
    CHECKED_IN = "CheckedIn"
    DISPUTE_RAISED = "DisputeRaised"
    DISPUTE_RESOLVED_BY_HOST = "DisputeResolvedByHost"
    DISPUTE_RESOLVED_BY_GUEST = "DisputeResolvedByGuest"
    DISPUTE_ESCALATED = "DisputeEscalated"
    ADMIN_RESOLVED = "AdminResolved"
    BOOKING_COMPLETED = "BookingCompleted"
    BOOKING_CANCELLED = "BookingCancelled"
    BOOKING_REFUNDED = "BookingRefunded"
    IGNORED = "Ignored"

    @classmethod
    def of(cls, event_name: str) -> "EventKind":
        try:
            kind = cls(event_name)
        except ValueError:
            return cls.IGNORED
        return kind


# Token and ownership events the contracts inherit; never projected.
STANDARD_TOKEN_EVENTS = frozenset({"OwnershipTransferred", "Approval", "Transfer"})


@dataclass(frozen=True)
class LedgerEvent:
    tx_id: str
    event_name: str
    args: dict[str, Any] = field(default_factory=dict)
    block_height: int = 0
    tx_index: int = 0
    log_index: int = 0

    @property
    def kind(self) -> EventKind:
        return EventKind.of(self.event_name)

    @property
    def is_known(self) -> bool:
        return self.kind is not EventKind.IGNORED or self.event_name in STANDARD_TOKEN_EVENTS

    @property
    def ordering_key(self) -> tuple[int, int, int]:
        return (self.block_height, self.tx_index, self.log_index)

    @property
    def identity(self) -> str:
        return event_identity(self.tx_id, self.event_name, self.args)


def canonicalize(value: Any) -> Any:
    """
    Make a value hash-stable: integers become decimal strings so large
    amounts survive JSON, bytes become 0x-prefixed hex, sets are sorted,
    tuples become lists, mapping keys are sorted later by json.dumps.
    Anything else falls back to its string form.
    """
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, Enum):
        return canonicalize(value.value)
    if isinstance(value, (int, Decimal)):
        return str(value)
    if isinstance(value, (str, float)):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    if isinstance(value, dict):
        return {str(key): canonicalize(val) for key, val in value.items()}
    if isinstance(value, (list, tuple)):
        return [canonicalize(item) for item in value]
    if isinstance(value, (set, frozenset)):
        items = [canonicalize(item) for item in value]
        return sorted(items, key=lambda item: json.dumps(item, sort_keys=True))
    return str(value)


def event_identity(tx_id: str, event_name: str, args: dict[str, Any]) -> str:
    payload = {
        "tx": tx_id,
        "event": event_name,
        "args": canonicalize(args),
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()
