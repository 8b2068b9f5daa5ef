import logging

from fastapi import APIRouter, Depends, HTTPException, status, Request

from stayledger.api.schemas.schemas import (
    BookingCreateRequest,
    BookingCreateResponse,
    BookingProjectionResponse,
    PropertyListingRequest,
    PropertyListingResponse,
    PropertyProjectionResponse,
    TransitionRequest,
    TransitionResponse,
    SyncStatusResponse,
    ProcessingReportResponse,
    ReconcileRequest,
    ReconciliationReportResponse,
    PruneResponse,
)
from stayledger.application.booking_service import BookingService
from stayledger.application.sync_engine import EventSyncEngine, ReconcileScope
from stayledger.domain.exceptions import (
    BookingAuthorizationError,
    BookingNotFoundError,
    BookingRuleError,
    BookingTimingError,
    BookingValidationError,
    InfrastructureError,
    InvalidStateTransitionError,
)
from stayledger.domain.projection import BookingView
from stayledger.domain.state_machine import BookingStateMachine
from stayledger.infrastructure.repositories.projection_repository import SqlProjection


router = APIRouter()
logger = logging.getLogger(__name__)


def get_engine(request: Request) -> EventSyncEngine:
    return request.app.state.engine


def get_projection(request: Request) -> SqlProjection:
    return request.app.state.projection


def get_booking_service(request: Request) -> BookingService:
    return request.app.state.booking_service


def _rule_error_status(exc: BookingRuleError) -> int:
    if isinstance(exc, BookingAuthorizationError):
        return status.HTTP_403_FORBIDDEN
    if isinstance(exc, BookingValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, BookingTimingError):
        return status.HTTP_409_CONFLICT
    return status.HTTP_400_BAD_REQUEST


def _rule_error(exc: BookingRuleError) -> HTTPException:
    return HTTPException(
        status_code=_rule_error_status(exc),
        detail={"code": exc.code, "message": str(exc), "retryable": exc.retryable},
    )


def _unavailable(exc: InfrastructureError) -> HTTPException:
    logger.warning("Collaborator unavailable: %s", exc)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=str(exc),
    )


def _booking_response(view: BookingView) -> BookingProjectionResponse:
    return BookingProjectionResponse(
        ledger_id=view.ledger_id,
        property_ledger_id=view.property_ledger_id,
        guest=view.guest,
        host=view.host,
        check_in_date=view.check_in_date,
        check_out_date=view.check_out_date,
        number_of_nights=view.number_of_nights,
        total_amount=str(view.total_amount),
        platform_fee=str(view.platform_fee),
        host_amount=str(view.host_amount),
        status=view.status.value,
        ledger_status=BookingStateMachine.to_ledger_code(view.status),
        check_in_window_start=view.check_in_window_start,
        check_in_deadline=view.check_in_deadline,
        dispute_deadline=view.dispute_deadline,
        is_check_in_complete=view.is_check_in_complete,
        is_resolved_by_host=view.is_resolved_by_host,
        is_resolved_by_guest=view.is_resolved_by_guest,
        dispute_reason=view.dispute_reason,
        paid_off_chain=view.paid_off_chain,
        payment_reference=view.payment_reference,
        booking_uri=view.booking_uri,
        guest_percentage=view.guest_percentage,
    )


@router.get("/health")
def health():
    return {"message": "StayLedger sync engine is running"}


@router.post("/properties", response_model=PropertyListingResponse)
def list_property(
    request: PropertyListingRequest,
    service: BookingService = Depends(get_booking_service),
):
    try:
        prop = service.list_property(
            property_id=request.property_id,
            owner=request.owner,
            price_per_night=request.price_per_night,
            property_uri=request.property_uri,
        )
    except BookingRuleError as exc:
        raise _rule_error(exc) from exc

    return PropertyListingResponse(
        property_id=prop.property_id,
        owner=prop.owner,
        token_address=prop.token_address,
        price_per_night=str(prop.price_per_night),
        is_active=prop.is_active,
    )


@router.post("/bookings", response_model=BookingCreateResponse)
def create_booking(
    request: BookingCreateRequest,
    service: BookingService = Depends(get_booking_service),
):
    try:
        outcome = service.create_booking(
            guest=request.guest,
            property_id=request.property_id,
            check_in_date=request.check_in_date,
            check_out_date=request.check_out_date,
            total_amount=request.total_amount,
            payment_reference=request.payment_reference,
            booking_uri=request.booking_uri,
        )
    except BookingRuleError as exc:
        raise _rule_error(exc) from exc

    booking = outcome.booking
    return BookingCreateResponse(
        booking_id=booking.booking_id,
        status=booking.status.value,
        total_amount=str(booking.total_amount),
        platform_fee=str(booking.platform_fee),
        host_amount=str(booking.host_amount),
        paid_off_chain=booking.paid_off_chain,
        events=[name for name, _ in outcome.events],
    )


@router.get("/bookings/{ledger_id}", response_model=BookingProjectionResponse)
def get_booking(
    ledger_id: int,
    projection: SqlProjection = Depends(get_projection),
):
    try:
        view = projection.find_booking_by_ledger_id(ledger_id)
    except InfrastructureError as exc:
        raise _unavailable(exc) from exc

    if not view:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Booking not found",
        )

    return _booking_response(view)


@router.get("/guests/{guest}/bookings", response_model=list[BookingProjectionResponse])
def list_guest_bookings(
    guest: str,
    projection: SqlProjection = Depends(get_projection),
):
    try:
        views = projection.list_bookings_for_guest(guest)
    except InfrastructureError as exc:
        raise _unavailable(exc) from exc

    return [_booking_response(view) for view in views]


@router.get("/properties/{ledger_id}", response_model=PropertyProjectionResponse)
def get_property(
    ledger_id: str,
    projection: SqlProjection = Depends(get_projection),
):
    try:
        view = projection.find_property_by_ledger_id(ledger_id)
    except InfrastructureError as exc:
        raise _unavailable(exc) from exc

    if not view:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Property not found",
        )

    return PropertyProjectionResponse(
        ledger_id=view.ledger_id,
        owner=view.owner,
        token_address=view.token_address,
        price_per_night=str(view.price_per_night),
        is_active=view.is_active,
        is_removed=view.is_removed,
        property_uri=view.property_uri,
    )


@router.post("/bookings/{booking_id}/transitions", response_model=TransitionResponse)
def submit_transition(
    booking_id: int,
    request: TransitionRequest,
    service: BookingService = Depends(get_booking_service),
):
    params = {}
    if request.transition == "admin_resolve":
        params["guest_percentage"] = request.guest_percentage

    try:
        outcome = service.transition(
            booking_id,
            request.transition,
            caller=request.caller,
            **params,
        )
    except BookingNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except BookingRuleError as exc:
        raise _rule_error(exc) from exc
    except InvalidStateTransitionError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc

    return TransitionResponse(
        booking_id=outcome.booking.booking_id,
        status=outcome.booking.status.value,
        events=[name for name, _ in outcome.events],
    )


@router.get("/sync/status", response_model=SyncStatusResponse)
def sync_status(
    request: Request,
    engine: EventSyncEngine = Depends(get_engine),
):
    try:
        stats = engine.stats()
        head = engine.ledger.current_height()
    except InfrastructureError as exc:
        raise _unavailable(exc) from exc

    worker = getattr(request.app.state, "worker", None)
    return SyncStatusResponse(
        cursor=stats["cursor"],
        ledger_head=head,
        committed=stats["committed"],
        in_flight=stats["in_flight"],
        polling=stats["polling"],
        worker_running=bool(worker and worker.running),
    )


@router.post("/sync/poll", response_model=ProcessingReportResponse)
def trigger_poll(engine: EventSyncEngine = Depends(get_engine)):
    try:
        report = engine.poll()
    except InfrastructureError as exc:
        raise _unavailable(exc) from exc

    return ProcessingReportResponse(
        from_height=report.from_height,
        to_height=report.to_height,
        fetched=report.fetched,
        applied=report.applied,
        skipped=report.skipped,
        ignored=report.ignored,
        missing=report.missing,
        failed=report.failed,
        busy=report.busy,
        halted=report.halted,
        cursor=report.cursor,
    )


@router.post("/sync/reconcile", response_model=ReconciliationReportResponse)
def trigger_reconcile(
    request: ReconcileRequest,
    engine: EventSyncEngine = Depends(get_engine),
):
    if request.guest and request.property_id:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Reconcile either one guest or one property, not both",
        )

    try:
        report = engine.reconcile(
            ReconcileScope(guest=request.guest, property_id=request.property_id)
        )
    except InfrastructureError as exc:
        raise _unavailable(exc) from exc

    return ReconciliationReportResponse(
        scope=report.scope,
        properties_checked=report.properties_checked,
        bookings_checked=report.bookings_checked,
        created=report.created,
        updated=report.updated,
        unchanged=report.unchanged,
        failed=report.failed,
    )


@router.post("/sync/prune", response_model=PruneResponse)
def trigger_prune(engine: EventSyncEngine = Depends(get_engine)):
    try:
        removed = engine.prune_committed()
        committed = engine.state_store.committed_count()
    except InfrastructureError as exc:
        raise _unavailable(exc) from exc

    return PruneResponse(removed=removed, committed=committed)
