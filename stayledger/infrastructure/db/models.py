# stayledger/infrastructure/db/models.py

from sqlalchemy import (
    String,
    Integer,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Text,
    UniqueConstraint,
    CheckConstraint,
    Index,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TypeDecorator
from datetime import datetime
from uuid import uuid4

from stayledger.infrastructure.db.session import Base
from stayledger.domain.state_machine import BookingStatus


class LedgerAmount(TypeDecorator):
    """
    Ledger amounts are 256-bit unsigned integers, wider than any SQL
    integer type. Stored as decimal text, loaded back as int.
    """

    impl = String(78)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


class ProjectedProperty(Base):
    __tablename__ = "projected_properties"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    ledger_id: Mapped[str] = mapped_column(String(128), nullable=False)
    owner: Mapped[str] = mapped_column(String(128), nullable=False)
    token_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    price_per_night: Mapped[int] = mapped_column(LedgerAmount, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_removed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    property_uri: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_height: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("ledger_id", name="uq_projected_property_ledger_id"),
    )


class ProjectedBooking(Base):
    """
    Booking as last seen on the ledger.
    The ledger controls transitions; rows only move forward.
    """

    __tablename__ = "projected_bookings"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    ledger_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # No foreign key: a booking may be projected before its property.
    property_ledger_id: Mapped[str] = mapped_column(String(128), nullable=False)
    guest: Mapped[str] = mapped_column(String(128), nullable=False)
    host: Mapped[str] = mapped_column(String(128), nullable=False)
    check_in_date: Mapped[int] = mapped_column(BigInteger, nullable=False)
    check_out_date: Mapped[int] = mapped_column(BigInteger, nullable=False)
    number_of_nights: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[int] = mapped_column(LedgerAmount, nullable=False)
    platform_fee: Mapped[int] = mapped_column(LedgerAmount, nullable=False)
    host_amount: Mapped[int] = mapped_column(LedgerAmount, nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, name="booking_status"),
        nullable=False,
        default=BookingStatus.ACTIVE,
    )
    check_in_window_start: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    check_in_deadline: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    dispute_deadline: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    is_check_in_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_resolved_by_host: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_resolved_by_guest: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_off_chain: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    booking_uri: Mapped[str | None] = mapped_column(Text, nullable=True)
    guest_percentage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("ledger_id", name="uq_projected_booking_ledger_id"),
        CheckConstraint(
            "check_out_date > check_in_date",
            name="ck_booking_dates_ordered",
        ),
        CheckConstraint(
            "guest_percentage IS NULL OR (guest_percentage >= 0 AND guest_percentage <= 100)",
            name="ck_guest_percentage_range",
        ),
        Index("ix_projected_booking_guest", "guest"),
        Index("ix_projected_booking_property", "property_ledger_id"),
    )


class ProcessedEvent(Base):
    """Committed event identity. Presence means the event was applied."""

    __tablename__ = "processed_events"

    identity: Mapped[str] = mapped_column(String(64), primary_key=True)
    event_name: Mapped[str] = mapped_column(String(64), nullable=False)
    tx_id: Mapped[str] = mapped_column(String(128), nullable=False)
    block_height: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # Unix seconds from the injected clock, so pruning is testable.
    committed_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        Index("ix_processed_event_committed_at", "committed_at"),
    )


class SyncCursor(Base):
    __tablename__ = "sync_cursors"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    block_height: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("block_height >= 0", name="ck_cursor_nonnegative"),
    )
