# stayledger/application/booking_service.py

import logging
from typing import Any

from stayledger.domain.booking import Property, TransitionOutcome
from stayledger.domain.exceptions import BookingNotFoundError, BookingRuleError
from stayledger.domain.lifecycle import (
    PERMISSIONLESS_TRANSITIONS,
    BookingLifecycle,
    Transition,
)
from stayledger.infrastructure.ledger.memory_ledger import InMemoryLedger

logger = logging.getLogger(__name__)


class BookingService:
    """Application service coordinating booking workflow on the ledger."""

    def __init__(self, ledger: InMemoryLedger, lifecycle: BookingLifecycle):
        self.ledger = ledger
        self.lifecycle = lifecycle

    def list_property(
        self,
        property_id: str,
        owner: str,
        price_per_night: int,
        property_uri: str | None = None,
    ) -> Property:
        prop = self.ledger.list_property(
            property_id,
            owner,
            price_per_night,
            property_uri=property_uri,
        )
        logger.info("Property %s listed by %s at %s per night", property_id, owner, price_per_night)
        return prop

    def create_booking(
        self,
        guest: str,
        property_id: str,
        check_in_date: int,
        check_out_date: int,
        total_amount: int,
        payment_reference: str | None = None,
        booking_uri: str | None = None,
    ) -> TransitionOutcome:
        if payment_reference is not None:
            return self.ledger.create_paid_booking(
                guest=guest,
                property_id=property_id,
                check_in_date=check_in_date,
                check_out_date=check_out_date,
                total_amount=total_amount,
                payment_reference=payment_reference,
                booking_uri=booking_uri,
            )
        return self.ledger.create_booking(
            guest=guest,
            property_id=property_id,
            check_in_date=check_in_date,
            check_out_date=check_out_date,
            total_amount=total_amount,
        )

    def transition(
        self,
        booking_id: int,
        transition: Transition | str,
        caller: str = "",
        **params: Any,
    ) -> TransitionOutcome:
        transition = Transition(transition)
        try:
            outcome = self.ledger.submit_transition(
                booking_id,
                transition.value,
                {"caller": caller, **params},
            )
        except BookingRuleError as exc:
            logger.info(
                "Transition %s on booking %s rejected: %s (%s)",
                transition.value,
                booking_id,
                exc.code,
                exc,
            )
            raise

        logger.info(
            "Booking %s: %s -> %s",
            booking_id,
            transition.value,
            outcome.booking.status.value,
        )
        return outcome

    def fire_due_transitions(self) -> list[tuple[int, Transition]]:
        """
        Keeper pass: fires every permissionless time trigger that is due.
        A trigger that loses a race with another caller is logged and skipped.
        """
        fired: list[tuple[int, Transition]] = []
        for property_id in self.ledger.all_property_ids():
            for booking_id in self.ledger.property_booking_ids(property_id):
                booking = self.ledger.read_booking(booking_id)
                if booking is None:
                    continue
                due = self.lifecycle.due_transition(booking)
                if due is None or due not in PERMISSIONLESS_TRANSITIONS:
                    continue
                try:
                    self.transition(booking_id, due)
                except (BookingRuleError, BookingNotFoundError) as exc:
                    logger.warning("Keeper skipped %s on booking %s: %s", due.value, booking_id, exc)
                    continue
                fired.append((booking_id, due))

        if fired:
            logger.info("Keeper fired %s due transitions", len(fired))
        return fired
