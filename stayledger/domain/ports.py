# stayledger/domain/ports.py

"""Interfaces of the collaborators the booking core depends on."""

from typing import Any, Protocol

from stayledger.domain.booking import Booking, Property, TransitionOutcome
from stayledger.domain.events import LedgerEvent
from stayledger.domain.projection import (
    BookingUpsert,
    BookingView,
    PropertyUpsert,
    PropertyView,
)


class Ledger(Protocol):
    """Authoritative booking state and ordered event source."""

    def read_booking(self, booking_id: int) -> Booking | None:
        ...

    def read_property(self, property_id: str) -> Property | None:
        ...

    def current_height(self) -> int:
        ...

    def query_events(self, from_height: int, to_height: int) -> list[LedgerEvent]:
        ...

    def submit_transition(
        self,
        booking_id: int,
        transition: str,
        args: dict[str, Any] | None = None,
    ) -> TransitionOutcome:
        ...

    def all_property_ids(self) -> list[str]:
        ...

    def guest_booking_ids(self, guest: str) -> list[int]:
        ...

    def property_booking_ids(self, property_id: str) -> list[int]:
        ...


class Projection(Protocol):
    """Mutable query store derived from ledger events."""

    def upsert_booking(self, record: BookingUpsert) -> str:
        ...

    def find_booking_by_ledger_id(self, ledger_id: int) -> BookingView | None:
        ...

    def list_bookings_for_guest(self, guest: str) -> list[BookingView]:
        ...

    def upsert_property(self, record: PropertyUpsert) -> str:
        ...

    def find_property_by_ledger_id(self, ledger_id: str) -> PropertyView | None:
        ...


class SyncStateStore(Protocol):
    """Durable cursor plus the committed-event identity set."""

    def load_cursor(self, name: str) -> int | None:
        ...

    def save_cursor(self, name: str, block_height: int) -> None:
        ...

    def is_committed(self, identity: str) -> bool:
        ...

    def mark_committed(
        self,
        identity: str,
        event_name: str,
        tx_id: str,
        block_height: int,
    ) -> None:
        ...

    def committed_count(self) -> int:
        ...

    def prune_committed(
        self,
        max_entries: int,
        min_age_seconds: int,
        batch_limit: int,
    ) -> int:
        ...
