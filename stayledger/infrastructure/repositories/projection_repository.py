# stayledger/infrastructure/repositories/projection_repository.py

import logging
from contextlib import contextmanager
from dataclasses import fields
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import (
    IntegrityError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError as SQLAlchemyTimeoutError,
)
from sqlalchemy.orm import Session, sessionmaker

from stayledger.domain.exceptions import ProjectionUnavailableError, SyncError
from stayledger.domain.projection import (
    BookingUpsert,
    BookingView,
    PropertyUpsert,
    PropertyView,
    UpsertResult,
    merge_booking_fields,
    merge_property_fields,
)
from stayledger.domain.clock import ONE_DAY
from stayledger.infrastructure.db.models import ProjectedBooking, ProjectedProperty
from stayledger.infrastructure.db.session import get_db_session

logger = logging.getLogger(__name__)

_BOOKING_FIELDS = [f.name for f in fields(BookingUpsert) if f.name != "ledger_id"]
_PROPERTY_FIELDS = [f.name for f in fields(PropertyUpsert) if f.name != "ledger_id"]


def _is_db_degraded(exc: Exception) -> bool:
    return isinstance(exc, (OperationalError, SQLAlchemyTimeoutError))


class SqlProjection:
    """
    Projection store on SQLAlchemy.

    Inserts are find-or-create on the ledger id; a concurrent writer that
    wins the insert race turns our attempt into an update.
    """

    def __init__(self, session_factory: sessionmaker | None = None):
        self.session_factory = session_factory

    # -----------------------------
    # Bookings
    # -----------------------------
    def upsert_booking(self, record: BookingUpsert) -> str:
        return self._with_retry(self._upsert_booking, record)

    def _upsert_booking(self, db: Session, record: BookingUpsert) -> str:
        row = db.execute(
            select(ProjectedBooking)
            .where(ProjectedBooking.ledger_id == record.ledger_id)
            .with_for_update()
        ).scalar_one_or_none()

        if row is None:
            if not record.can_create:
                return UpsertResult.MISSING
            values = record.provided()
            values["number_of_nights"] = (
                record.check_out_date - record.check_in_date
            ) // ONE_DAY
            db.add(ProjectedBooking(ledger_id=record.ledger_id, **values))
            db.flush()
            logger.info("Projected booking %s created", record.ledger_id)
            return UpsertResult.CREATED

        current = {name: getattr(row, name) for name in _BOOKING_FIELDS}
        changes = merge_booking_fields(current, record.provided())
        if not changes:
            return UpsertResult.UNCHANGED
        for name, value in changes.items():
            setattr(row, name, value)
        logger.debug("Projected booking %s updated: %s", record.ledger_id, sorted(changes))
        return UpsertResult.UPDATED

    def find_booking_by_ledger_id(self, ledger_id: int) -> BookingView | None:
        with self._reading(ledger_id) as db:
            row = db.execute(
                select(ProjectedBooking).where(ProjectedBooking.ledger_id == ledger_id)
            ).scalar_one_or_none()
            return _booking_view(row) if row else None

    def list_bookings_for_guest(self, guest: str) -> list[BookingView]:
        with self._reading(guest) as db:
            rows = db.execute(
                select(ProjectedBooking)
                .where(ProjectedBooking.guest == guest)
                .order_by(ProjectedBooking.ledger_id)
            ).scalars().all()
            return [_booking_view(row) for row in rows]

    # -----------------------------
    # Properties
    # -----------------------------
    def upsert_property(self, record: PropertyUpsert) -> str:
        return self._with_retry(self._upsert_property, record)

    def _upsert_property(self, db: Session, record: PropertyUpsert) -> str:
        row = db.execute(
            select(ProjectedProperty)
            .where(ProjectedProperty.ledger_id == record.ledger_id)
            .with_for_update()
        ).scalar_one_or_none()

        if row is None:
            if not record.can_create:
                return UpsertResult.MISSING
            values = record.provided()
            if values.get("is_removed"):
                values["is_active"] = False
            db.add(ProjectedProperty(ledger_id=record.ledger_id, **values))
            db.flush()
            logger.info("Projected property %s created", record.ledger_id)
            return UpsertResult.CREATED

        current = {name: getattr(row, name) for name in _PROPERTY_FIELDS}
        changes = merge_property_fields(current, record.provided())
        if not changes:
            return UpsertResult.UNCHANGED
        for name, value in changes.items():
            setattr(row, name, value)
        return UpsertResult.UPDATED

    def find_property_by_ledger_id(self, ledger_id: str) -> PropertyView | None:
        with self._reading(ledger_id) as db:
            row = db.execute(
                select(ProjectedProperty).where(ProjectedProperty.ledger_id == ledger_id)
            ).scalar_one_or_none()
            return _property_view(row) if row else None

    # -----------------------------
    # Plumbing
    # -----------------------------
    def _session(self):
        return get_db_session(self.session_factory)

    @contextmanager
    def _reading(self, key: Any):
        try:
            with self._session() as db:
                yield db
        except SQLAlchemyError as exc:
            raise self._translate(exc, key) from exc

    def _with_retry(self, operation, record) -> str:
        try:
            with self._session() as db:
                return operation(db, record)
        except IntegrityError:
            # Lost an insert race on the ledger id; the row exists now.
            logger.info("Concurrent insert for ledger id %s; retrying as update", record.ledger_id)
        except SQLAlchemyError as exc:
            raise self._translate(exc, record.ledger_id) from exc

        try:
            with self._session() as db:
                return operation(db, record)
        except SQLAlchemyError as exc:
            raise self._translate(exc, record.ledger_id) from exc

    @staticmethod
    def _translate(exc: SQLAlchemyError, key: Any) -> Exception:
        if _is_db_degraded(exc):
            return ProjectionUnavailableError(f"Projection store unavailable: {exc}")
        return SyncError(f"Projection access for {key} failed: {exc}")


def _booking_view(row: ProjectedBooking) -> BookingView:
    return BookingView(
        ledger_id=row.ledger_id,
        property_ledger_id=row.property_ledger_id,
        guest=row.guest,
        host=row.host,
        check_in_date=row.check_in_date,
        check_out_date=row.check_out_date,
        number_of_nights=row.number_of_nights,
        total_amount=row.total_amount,
        platform_fee=row.platform_fee,
        host_amount=row.host_amount,
        status=row.status,
        check_in_window_start=row.check_in_window_start,
        check_in_deadline=row.check_in_deadline,
        dispute_deadline=row.dispute_deadline,
        is_check_in_complete=row.is_check_in_complete,
        is_resolved_by_host=row.is_resolved_by_host,
        is_resolved_by_guest=row.is_resolved_by_guest,
        dispute_reason=row.dispute_reason,
        paid_off_chain=row.paid_off_chain,
        payment_reference=row.payment_reference,
        booking_uri=row.booking_uri,
        guest_percentage=row.guest_percentage,
    )


def _property_view(row: ProjectedProperty) -> PropertyView:
    return PropertyView(
        ledger_id=row.ledger_id,
        owner=row.owner,
        token_address=row.token_address,
        price_per_night=row.price_per_night,
        is_active=row.is_active,
        property_uri=row.property_uri,
        is_removed=row.is_removed,
    )
