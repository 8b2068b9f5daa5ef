# stayledger/infrastructure/ledger/memory_ledger.py

import hashlib
import logging
import threading
from typing import Any

from stayledger.domain.booking import (
    Booking,
    PaymentChannel,
    Property,
    Transfer,
    TransitionOutcome,
)
from stayledger.domain.events import LedgerEvent
from stayledger.domain.exceptions import (
    BookingNotFoundError,
    InvalidPropertyError,
    NotPartyError,
)
from stayledger.domain.lifecycle import BookingLifecycle

logger = logging.getLogger(__name__)


class InMemoryLedger:
    """
    Reference ledger: append-only event log, one block per transaction.

    All mutations go through one lock, so transitions on a booking are
    serialized and the overlap check plus insert of a new booking is a
    single atomic step.
    """

    def __init__(self, lifecycle: BookingLifecycle):
        self.lifecycle = lifecycle
        self._lock = threading.RLock()
        self._properties: dict[str, Property] = {}
        self._bookings: dict[int, Booking] = {}
        self._events: list[LedgerEvent] = []
        self._height = 0
        self._next_booking_id = 1
        self.settlements: list[Transfer] = []

    # -----------------------------
    # Reads
    # -----------------------------
    def current_height(self) -> int:
        with self._lock:
            return self._height

    def read_booking(self, booking_id: int) -> Booking | None:
        with self._lock:
            booking = self._bookings.get(int(booking_id))
            return booking.copy() if booking else None

    def read_property(self, property_id: str) -> Property | None:
        with self._lock:
            prop = self._properties.get(property_id)
            return Property(**vars(prop)) if prop else None

    def query_events(self, from_height: int, to_height: int) -> list[LedgerEvent]:
        with self._lock:
            return [
                event
                for event in self._events
                if from_height <= event.block_height <= to_height
            ]

    def all_property_ids(self) -> list[str]:
        with self._lock:
            return list(self._properties)

    def guest_booking_ids(self, guest: str) -> list[int]:
        with self._lock:
            return sorted(bid for bid, b in self._bookings.items() if b.guest == guest)

    def property_booking_ids(self, property_id: str) -> list[int]:
        with self._lock:
            return sorted(
                bid for bid, b in self._bookings.items() if b.property_id == property_id
            )

    # -----------------------------
    # Property listing
    # -----------------------------
    def list_property(
        self,
        property_id: str,
        owner: str,
        price_per_night: int,
        property_uri: str | None = None,
        token_address: str | None = None,
    ) -> Property:
        with self._lock:
            if property_id in self._properties:
                raise InvalidPropertyError(detail=f"Property {property_id} already listed")
            prop = Property(
                property_id=property_id,
                owner=owner,
                price_per_night=price_per_night,
                is_active=True,
                token_address=token_address or _derive_address("token", property_id),
                property_uri=property_uri,
            )
            self._properties[property_id] = prop
            self._append_block([
                (
                    "PropertyListed",
                    dict(
                        property_id=prop.property_id,
                        token_address=prop.token_address,
                        owner=prop.owner,
                        price_per_night=prop.price_per_night,
                        property_uri=prop.property_uri,
                    ),
                )
            ])
            return Property(**vars(prop))

    def update_property(
        self,
        property_id: str,
        caller: str,
        price_per_night: int,
        is_active: bool,
    ) -> None:
        with self._lock:
            prop = self._owned_property(property_id, caller)
            prop.price_per_night = price_per_night
            prop.is_active = is_active
            self._append_block([
                (
                    "PropertyUpdated",
                    dict(property_id=property_id, price_per_night=price_per_night, is_active=is_active),
                )
            ])

    def remove_property(self, property_id: str, caller: str) -> None:
        with self._lock:
            prop = self._owned_property(property_id, caller)
            prop.is_active = False
            self._append_block([("PropertyRemoved", dict(property_id=property_id))])

    def update_property_metadata(self, property_id: str, caller: str, property_uri: str) -> None:
        with self._lock:
            prop = self._owned_property(property_id, caller)
            prop.property_uri = property_uri
            self._append_block([
                ("PropertyMetadataUpdated", dict(property_id=property_id, property_uri=property_uri))
            ])

    def _owned_property(self, property_id: str, caller: str) -> Property:
        prop = self._properties.get(property_id)
        if prop is None:
            raise InvalidPropertyError(detail=f"Property {property_id} not found")
        if prop.owner != caller:
            raise NotPartyError(detail="Not property owner")
        return prop

    # -----------------------------
    # Bookings
    # -----------------------------
    def create_booking(
        self,
        guest: str,
        property_id: str,
        check_in_date: int,
        check_out_date: int,
        total_amount: int,
    ) -> TransitionOutcome:
        return self._create(
            guest=guest,
            property_id=property_id,
            check_in_date=check_in_date,
            check_out_date=check_out_date,
            total_amount=total_amount,
            channel=PaymentChannel.ESCROW,
        )

    def create_paid_booking(
        self,
        guest: str,
        property_id: str,
        check_in_date: int,
        check_out_date: int,
        total_amount: int,
        payment_reference: str,
        booking_uri: str | None = None,
    ) -> TransitionOutcome:
        return self._create(
            guest=guest,
            property_id=property_id,
            check_in_date=check_in_date,
            check_out_date=check_out_date,
            total_amount=total_amount,
            channel=PaymentChannel.OFF_CHAIN,
            payment_reference=payment_reference,
            booking_uri=booking_uri,
        )

    def _create(self, property_id: str, **kwargs) -> TransitionOutcome:
        with self._lock:
            existing = [b for b in self._bookings.values() if b.property_id == property_id]
            outcome = self.lifecycle.create(
                booking_id=self._next_booking_id,
                prop=self._properties.get(property_id),
                existing_bookings=existing,
                **kwargs,
            )
            self._next_booking_id += 1
            self._commit(outcome)
            logger.info(
                "Booking %s created on property %s (%s)",
                outcome.booking.booking_id,
                property_id,
                "off-chain" if outcome.booking.paid_off_chain else "escrow",
            )
            return outcome

    def submit_transition(
        self,
        booking_id: int,
        transition: str,
        args: dict[str, Any] | None = None,
    ) -> TransitionOutcome:
        with self._lock:
            stored = self._bookings.get(int(booking_id))
            if stored is None:
                raise BookingNotFoundError(f"Booking {booking_id} not found")
            # Work on a copy so a rejected transition leaves the stored booking untouched.
            outcome = self.lifecycle.apply(stored.copy(), transition, args)
            self._commit(outcome)
            return outcome

    def _commit(self, outcome: TransitionOutcome) -> None:
        booking = outcome.booking
        self._bookings[booking.booking_id] = booking
        self.settlements.extend(outcome.transfers)
        self._append_block(outcome.events)

    def _append_block(self, events: list[tuple[str, dict]]) -> None:
        self._height += 1
        tx_id = _derive_address("tx", str(self._height), length=64)
        for log_index, (event_name, args) in enumerate(events):
            self._events.append(
                LedgerEvent(
                    tx_id=tx_id,
                    event_name=event_name,
                    args=dict(args),
                    block_height=self._height,
                    tx_index=0,
                    log_index=log_index,
                )
            )

    def emit_raw(self, event_name: str, args: dict[str, Any]) -> None:
        """Appends an event with no state change, e.g. a token Transfer."""
        with self._lock:
            self._append_block([(event_name, args)])


def _derive_address(kind: str, seed: str, length: int = 40) -> str:
    return "0x" + hashlib.sha256(f"{kind}:{seed}".encode("utf-8")).hexdigest()[:length]
