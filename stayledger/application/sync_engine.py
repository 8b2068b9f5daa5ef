# stayledger/application/sync_engine.py

"""
Applies ordered ledger events to the projection exactly once.

Every event is keyed by a content identity. An identity is committed only
after its projection mutation is applied, and the durable cursor never
moves past an event that failed, so a crash at any point leads to a
replay that the committed set and the forward-only merge rules absorb.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable

from stayledger.application.event_handlers import mutation_for
from stayledger.application.settings import SyncSettings
from stayledger.domain.booking import Booking, Property
from stayledger.domain.events import LedgerEvent
from stayledger.domain.exceptions import (
    EventHandlerError,
    InfrastructureError,
    LedgerUnavailableError,
    SyncError,
)
from stayledger.domain.ports import Ledger, Projection, SyncStateStore
from stayledger.domain.projection import (
    BookingUpsert,
    PropertyUpsert,
    UpsertResult,
)
from stayledger.domain.state_machine import BookingStateMachine, BookingStatus

logger = logging.getLogger(__name__)


@dataclass
class ProcessingReport:
    from_height: int = 0
    to_height: int = 0
    fetched: int = 0
    applied: int = 0
    skipped: int = 0
    ignored: int = 0
    missing: int = 0
    failed: int = 0
    busy: bool = False
    halted: bool = False
    cursor: int | None = None
    failures: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ReconcileScope:
    """
    What a reconciliation pass walks. With neither field set, every
    listed property and all of its bookings.
    """

    guest: str | None = None
    property_id: str | None = None

    def describe(self) -> str:
        if self.guest:
            return f"guest:{self.guest}"
        if self.property_id:
            return f"property:{self.property_id}"
        return "all"


@dataclass
class ReconciliationReport:
    scope: str
    properties_checked: int = 0
    bookings_checked: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0

    def count(self, result: str) -> None:
        if result == UpsertResult.CREATED:
            self.created += 1
        elif result == UpsertResult.UPDATED:
            self.updated += 1
        else:
            self.unchanged += 1


def booking_snapshot(booking: Booking, transaction_id: str | None = None) -> BookingUpsert:
    """Full projection record for a booking read from ledger state."""
    return BookingUpsert(
        ledger_id=booking.booking_id,
        property_ledger_id=booking.property_id,
        guest=booking.guest,
        host=booking.host,
        check_in_date=booking.check_in_date,
        check_out_date=booking.check_out_date,
        total_amount=booking.total_amount,
        platform_fee=booking.platform_fee,
        host_amount=booking.host_amount,
        status=_ledger_status(booking.status),
        # The ledger reports unset deadlines as 0 and an unset reason as "".
        check_in_window_start=booking.check_in_window_start or None,
        check_in_deadline=booking.check_in_deadline or None,
        dispute_deadline=booking.dispute_deadline or None,
        is_check_in_complete=booking.is_check_in_complete,
        is_resolved_by_host=booking.is_resolved_by_host,
        is_resolved_by_guest=booking.is_resolved_by_guest,
        dispute_reason=booking.dispute_reason or None,
        paid_off_chain=booking.paid_off_chain,
        payment_reference=booking.payment_reference,
        booking_uri=booking.booking_uri,
        transaction_id=transaction_id,
    )


def _ledger_status(status: BookingStatus | int) -> BookingStatus:
    # Raw ledger reads report the status as its uint8 code.
    if isinstance(status, BookingStatus):
        return status
    return BookingStateMachine.from_ledger_code(status)


def property_snapshot(prop: Property, observed_at: int) -> PropertyUpsert:
    return PropertyUpsert(
        ledger_id=prop.property_id,
        owner=prop.owner,
        token_address=prop.token_address,
        price_per_night=prop.price_per_night,
        is_active=prop.is_active,
        property_uri=prop.property_uri,
        source_height=observed_at,
    )


class EventSyncEngine:

    def __init__(
        self,
        ledger: Ledger,
        projection: Projection,
        state_store: SyncStateStore,
        settings: SyncSettings | None = None,
    ):
        self.ledger = ledger
        self.projection = projection
        self.state_store = state_store
        self.settings = settings or SyncSettings()

        self._cursor: int | None = None
        self._poll_lock = threading.Lock()
        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()
        self._last_report: ProcessingReport | None = None
        self._ledger_calls = 0
        self._ledger_calls_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.ledger_max_workers,
            thread_name_prefix="ledger-call",
        )

    # -----------------------------
    # Cursor
    # -----------------------------
    @property
    def cursor(self) -> int | None:
        return self._cursor

    def resume_from(self, cursor: int | None = None) -> int:
        """
        Sets the starting cursor: an explicit value wins, then the persisted
        cursor, then the ledger head (minus the recovery window, if any).
        """
        with self._poll_lock:
            return self._resume(cursor)

    def _resume(self, cursor: int | None) -> int:
        if cursor is not None:
            if cursor < 0:
                raise ValueError("Cursor must be non-negative")
            start = cursor
        else:
            head = self._ledger_call(self.ledger.current_height)
            persisted = self.state_store.load_cursor(self.settings.cursor_name)
            if persisted is not None and persisted > head:
                logger.warning(
                    "Persisted cursor %s is ahead of ledger head %s; discarding it",
                    persisted,
                    head,
                )
                persisted = None

            if persisted is not None:
                start = persisted
            elif self.settings.recovery_window_blocks > 0:
                start = max(head - self.settings.recovery_window_blocks, 0)
            else:
                start = head

        self.state_store.save_cursor(self.settings.cursor_name, start)
        self._cursor = start
        logger.info("Event sync resuming after block %s", start)
        return start

    # -----------------------------
    # Polling
    # -----------------------------
    def poll(self) -> ProcessingReport:
        if not self._poll_lock.acquire(blocking=False):
            logger.debug("Poll already in progress; skipping")
            return ProcessingReport(busy=True, cursor=self._cursor)
        try:
            report = self._poll()
            self._last_report = report
            return report
        finally:
            self._poll_lock.release()

    def _poll(self) -> ProcessingReport:
        if self._cursor is None:
            self._resume(None)
        cursor = self._cursor

        head = self._ledger_call(self.ledger.current_height)
        report = ProcessingReport(from_height=cursor + 1, to_height=head, cursor=cursor)
        if head <= cursor:
            return report

        events = self._ledger_call(self.ledger.query_events, cursor + 1, head)
        events = sorted(events, key=lambda event: event.ordering_key)
        report.fetched = len(events)

        lowest_failed: int | None = None
        for event in events:
            try:
                identity = event.identity
            except (TypeError, ValueError, RecursionError) as exc:
                label = f"{event.tx_id}:{event.log_index}"
                logger.error(
                    "Cannot derive identity for %s at %s in block %s: %s",
                    event.event_name,
                    label,
                    event.block_height,
                    exc,
                )
                lowest_failed = _lowest(lowest_failed, event.block_height)
                report.failed += 1
                report.failures.append(label)
                continue

            if self.state_store.is_committed(identity) or not self._claim(identity):
                report.skipped += 1
                continue

            try:
                result = self._apply(event, identity)
                self.state_store.mark_committed(
                    identity, event.event_name, event.tx_id, event.block_height
                )
            except InfrastructureError as exc:
                logger.error(
                    "Collaborator unavailable at %s [%s] in block %s; halting batch: %s",
                    event.event_name,
                    identity[:12],
                    event.block_height,
                    exc,
                )
                lowest_failed = _lowest(lowest_failed, event.block_height)
                report.halted = True
                report.failed += 1
                report.failures.append(identity)
                break
            except SyncError as exc:
                logger.error("Failed to apply ledger event %s: %s", identity, exc)
                lowest_failed = _lowest(lowest_failed, event.block_height)
                report.failed += 1
                report.failures.append(identity)
                continue
            finally:
                self._release(identity)

            if result is None:
                report.ignored += 1
            elif result == UpsertResult.MISSING:
                report.missing += 1
            else:
                report.applied += 1

        new_cursor = head if lowest_failed is None else lowest_failed - 1
        if new_cursor > cursor:
            self.state_store.save_cursor(self.settings.cursor_name, new_cursor)
            self._cursor = new_cursor
        report.cursor = self._cursor

        logger.info(
            "Synced blocks %s-%s: %s applied, %s skipped, %s ignored, %s failed (cursor %s)",
            report.from_height,
            report.to_height,
            report.applied,
            report.skipped,
            report.ignored,
            report.failed,
            report.cursor,
        )
        return report

    def _apply(self, event: LedgerEvent, identity: str) -> str | None:
        try:
            mutation = mutation_for(event)
        except (KeyError, TypeError, ValueError) as exc:
            raise EventHandlerError(identity, event.event_name, f"malformed arguments: {exc!r}") from exc

        if mutation is None:
            if not event.is_known:
                logger.warning("Ignoring unknown ledger event %s [%s]", event.event_name, identity[:12])
            return None

        if isinstance(mutation, PropertyUpsert):
            result = self.projection.upsert_property(mutation)
            if result == UpsertResult.MISSING:
                result = self._heal(event, mutation.ledger_id, self._recover_property)
            return result

        result = self.projection.upsert_booking(mutation)
        if result == UpsertResult.MISSING:
            result = self._heal(event, mutation.ledger_id, self._reconcile_booking)
        if result == UpsertResult.CREATED:
            self._ensure_property(self._projected_property_id(mutation))
        return result

    def _heal(self, event: LedgerEvent, ledger_id: Any, recover: Callable[[Any], str | None]) -> str:
        """A patch arrived for a record the projection never saw; rebuild it from ledger state."""
        logger.warning(
            "%s for ledger id %s has no projected record; rebuilding it from ledger state",
            event.event_name,
            ledger_id,
        )
        result = recover(ledger_id)
        if result is None:
            logger.warning("Ledger has no state for %s %s; leaving it for reconcile", event.event_name, ledger_id)
            return UpsertResult.MISSING
        return result

    def _projected_property_id(self, mutation: BookingUpsert) -> str | None:
        if mutation.property_ledger_id is not None:
            return mutation.property_ledger_id
        view = self.projection.find_booking_by_ledger_id(mutation.ledger_id)
        return view.property_ledger_id if view else None

    def _ensure_property(self, property_id: str | None) -> None:
        if property_id is None or self.projection.find_property_by_ledger_id(property_id):
            return
        logger.warning("Property %s is not projected yet; rebuilding it from ledger state", property_id)
        self._recover_property(property_id)

    def _recover_property(self, property_id: str) -> str | None:
        return self._reconcile_property(property_id, self._ledger_call(self.ledger.current_height))

    def _claim(self, identity: str) -> bool:
        with self._in_flight_lock:
            if identity in self._in_flight:
                return False
            self._in_flight.add(identity)
            return True

    def _release(self, identity: str) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(identity)

    # -----------------------------
    # Reconciliation
    # -----------------------------
    def reconcile(self, scope: ReconcileScope | None = None) -> ReconciliationReport:
        """
        Re-derives projection records from current ledger state. Writes go
        through the same idempotent upserts as poll(), so this never takes
        the poll lock.
        """
        scope = scope or ReconcileScope()
        report = ReconciliationReport(scope=scope.describe())
        observed_at = self._ledger_call(self.ledger.current_height)

        if scope.guest:
            property_ids: list[str] = []
            booking_ids = self._ledger_call(self.ledger.guest_booking_ids, scope.guest)
        elif scope.property_id:
            property_ids = [scope.property_id]
            booking_ids = self._ledger_call(self.ledger.property_booking_ids, scope.property_id)
        else:
            property_ids = self._ledger_call(self.ledger.all_property_ids)
            booking_ids = []
            for property_id in property_ids:
                booking_ids.extend(
                    self._ledger_call(self.ledger.property_booking_ids, property_id)
                )

        for property_id in property_ids:
            report.properties_checked += 1
            self._reconcile_one(
                report,
                f"property {property_id}",
                lambda pid=property_id: self._reconcile_property(pid, observed_at),
            )

        for booking_id in booking_ids:
            report.bookings_checked += 1
            self._reconcile_one(
                report,
                f"booking {booking_id}",
                lambda bid=booking_id: self._reconcile_booking(bid),
            )

        logger.info(
            "Reconcile (%s): %s properties, %s bookings checked; %s created, %s updated, %s failed",
            report.scope,
            report.properties_checked,
            report.bookings_checked,
            report.created,
            report.updated,
            report.failed,
        )
        return report

    def _reconcile_one(
        self,
        report: ReconciliationReport,
        label: str,
        action: Callable[[], str | None],
    ) -> None:
        try:
            result = action()
        except InfrastructureError:
            raise
        except SyncError as exc:
            report.failed += 1
            logger.error("Reconcile failed for %s: %s", label, exc)
            return
        if result is None:
            report.failed += 1
            logger.warning("Reconcile found no ledger state for %s", label)
            return
        report.count(result)

    def _reconcile_property(self, property_id: str, observed_at: int) -> str | None:
        prop = self._ledger_call(self.ledger.read_property, property_id)
        if prop is None:
            return None
        return self.projection.upsert_property(property_snapshot(prop, observed_at))

    def _reconcile_booking(self, booking_id: int) -> str | None:
        booking = self._ledger_call(self.ledger.read_booking, booking_id)
        if booking is None:
            return None
        try:
            record = booking_snapshot(booking)
        except ValueError as exc:
            raise SyncError(f"Booking {booking_id} has unreadable ledger state: {exc}") from exc
        return self.projection.upsert_booking(record)

    # -----------------------------
    # Maintenance
    # -----------------------------
    def prune_committed(self) -> int:
        removed = self.state_store.prune_committed(
            max_entries=self.settings.max_committed_entries,
            min_age_seconds=self.settings.prune_safety_seconds,
            batch_limit=self.settings.prune_batch_limit,
        )
        if removed:
            logger.info("Pruned %s committed event identities", removed)
        return removed

    def stats(self) -> dict[str, Any]:
        with self._in_flight_lock:
            in_flight = len(self._in_flight)
        with self._ledger_calls_lock:
            ledger_calls = self._ledger_calls
        last = self._last_report
        return {
            "cursor": self._cursor,
            "committed": self.state_store.committed_count(),
            "in_flight": in_flight,
            "polling": self._poll_lock.locked(),
            "ledger_calls_running": ledger_calls,
            "last_poll_applied": last.applied if last else 0,
            "last_poll_failed": last.failed if last else 0,
        }

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def _ledger_call(self, fn: Callable[..., Any], *args) -> Any:
        name = getattr(fn, "__name__", fn)
        limit = self.settings.ledger_max_workers
        with self._ledger_calls_lock:
            # Timed-out calls keep their thread until the ledger answers.
            if self._ledger_calls >= limit:
                logger.warning(
                    "All %s ledger call threads are held by unfinished calls; failing %s fast",
                    limit,
                    name,
                )
                raise LedgerUnavailableError(f"Ledger call {name} rejected: {limit} calls still running")
            self._ledger_calls += 1

        def run():
            try:
                return fn(*args)
            finally:
                self._ledger_call_done()

        try:
            future = self._executor.submit(run)
        except RuntimeError as exc:
            self._ledger_call_done()
            raise LedgerUnavailableError(f"Ledger call {name} rejected: {exc}") from exc

        try:
            return future.result(timeout=self.settings.ledger_timeout_seconds)
        except FutureTimeoutError as exc:
            if future.cancel():
                self._ledger_call_done()
            raise LedgerUnavailableError(
                f"Ledger call {name} timed out after "
                f"{self.settings.ledger_timeout_seconds}s"
            ) from exc
        except OSError as exc:
            raise LedgerUnavailableError(f"Ledger unreachable: {exc}") from exc

    def _ledger_call_done(self) -> None:
        with self._ledger_calls_lock:
            self._ledger_calls -= 1


def _lowest(current: int | None, height: int) -> int:
    return height if current is None else min(current, height)
