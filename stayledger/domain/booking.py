# stayledger/domain/booking.py

import os
from dataclasses import dataclass, field, replace
from enum import Enum

from stayledger.domain.clock import ONE_DAY
from stayledger.domain.state_machine import BookingStatus, RELEASED_STATUSES

BPS_DENOMINATOR = 10_000
DEFAULT_ESCROW_FEE_BPS = 300
DEFAULT_OFF_CHAIN_FEE_BPS = 50


class PaymentChannel(str, Enum):
    ESCROW = "ESCROW"
    OFF_CHAIN = "OFF_CHAIN"


@dataclass(frozen=True)
class FeeSchedule:
    """Platform fee rate per payment channel, in basis points."""

    escrow_bps: int = DEFAULT_ESCROW_FEE_BPS
    off_chain_bps: int = DEFAULT_OFF_CHAIN_FEE_BPS

    def __post_init__(self):
        for bps in (self.escrow_bps, self.off_chain_bps):
            if not 0 <= bps <= BPS_DENOMINATOR:
                raise ValueError(f"Fee rate out of range: {bps} bps")

    @classmethod
    def from_env(cls) -> "FeeSchedule":
        return cls(
            escrow_bps=int(os.getenv("ESCROW_FEE_BPS", str(DEFAULT_ESCROW_FEE_BPS))),
            off_chain_bps=int(os.getenv("OFF_CHAIN_FEE_BPS", str(DEFAULT_OFF_CHAIN_FEE_BPS))),
        )

    def rate_for(self, channel: PaymentChannel) -> int:
        if channel is PaymentChannel.OFF_CHAIN:
            return self.off_chain_bps
        return self.escrow_bps

    def split(self, total_amount: int, channel: PaymentChannel) -> tuple[int, int]:
        """Returns (platform_fee, host_amount); the two always sum to total_amount."""
        if total_amount < 0:
            raise ValueError("total_amount must be non-negative")
        platform_fee = total_amount * self.rate_for(channel) // BPS_DENOMINATOR
        return platform_fee, total_amount - platform_fee


@dataclass
class Property:
    property_id: str
    owner: str
    price_per_night: int = 0
    is_active: bool = True
    token_address: str | None = None
    property_uri: str | None = None


@dataclass
class Booking:
    booking_id: int
    property_id: str
    guest: str
    host: str
    check_in_date: int
    check_out_date: int
    total_amount: int
    platform_fee: int
    host_amount: int
    status: BookingStatus = BookingStatus.ACTIVE
    check_in_window_start: int = 0
    check_in_deadline: int = 0
    dispute_deadline: int = 0
    is_check_in_complete: bool = False
    is_resolved_by_host: bool = False
    is_resolved_by_guest: bool = False
    dispute_reason: str = ""
    paid_off_chain: bool = False
    payment_reference: str | None = None
    booking_uri: str | None = None

    @property
    def number_of_nights(self) -> int:
        return (self.check_out_date - self.check_in_date) // ONE_DAY

    @property
    def holds_dates(self) -> bool:
        return self.status not in RELEASED_STATUSES

    def overlaps(self, check_in_date: int, check_out_date: int) -> bool:
        return check_in_date < self.check_out_date and check_out_date > self.check_in_date

    def copy(self) -> "Booking":
        return replace(self)


@dataclass(frozen=True)
class Transfer:
    """A settlement payment the ledger owes as a result of a transition."""

    recipient: str
    amount: int
    reason: str


@dataclass
class TransitionOutcome:
    booking: Booking
    events: list[tuple[str, dict]] = field(default_factory=list)
    transfers: list[Transfer] = field(default_factory=list)

    def emit(self, event_name: str, **args) -> None:
        self.events.append((event_name, args))

    def pay(self, recipient: str, amount: int, reason: str) -> None:
        if amount > 0:
            self.transfers.append(Transfer(recipient=recipient, amount=amount, reason=reason))
