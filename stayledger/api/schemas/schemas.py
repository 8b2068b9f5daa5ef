from typing import Literal
from pydantic import BaseModel, Field


class BookingProjectionResponse(BaseModel):
    ledger_id: int
    property_ledger_id: str
    guest: str
    host: str
    check_in_date: int
    check_out_date: int
    number_of_nights: int
    # Amounts are decimal strings; they can exceed 64 bits.
    total_amount: str
    platform_fee: str
    host_amount: str
    status: str
    ledger_status: int
    check_in_window_start: int | None = None
    check_in_deadline: int | None = None
    dispute_deadline: int | None = None
    is_check_in_complete: bool
    is_resolved_by_host: bool
    is_resolved_by_guest: bool
    dispute_reason: str | None = None
    paid_off_chain: bool
    payment_reference: str | None = None
    booking_uri: str | None = None
    guest_percentage: int | None = None


class PropertyProjectionResponse(BaseModel):
    ledger_id: str
    owner: str
    token_address: str | None = None
    price_per_night: str
    is_active: bool
    is_removed: bool
    property_uri: str | None = None


class TransitionRequest(BaseModel):
    transition: Literal[
        "open_check_in_window",
        "check_in",
        "process_missed_check_in",
        "host_resolve_dispute",
        "guest_resolve_dispute",
        "escalate_dispute",
        "admin_resolve",
        "cancel",
        "complete_stay",
    ]
    caller: str = ""
    guest_percentage: int | None = Field(default=None, ge=0, le=100)


class TransitionResponse(BaseModel):
    booking_id: int
    status: str
    events: list[str]


class SyncStatusResponse(BaseModel):
    cursor: int | None
    ledger_head: int
    committed: int
    in_flight: int
    polling: bool
    worker_running: bool


class ProcessingReportResponse(BaseModel):
    from_height: int
    to_height: int
    fetched: int
    applied: int
    skipped: int
    ignored: int
    missing: int
    failed: int
    busy: bool
    halted: bool
    cursor: int | None


class ReconcileRequest(BaseModel):
    guest: str | None = None
    property_id: str | None = None


class ReconciliationReportResponse(BaseModel):
    scope: str
    properties_checked: int
    bookings_checked: int
    created: int
    updated: int
    unchanged: int
    failed: int


class PruneResponse(BaseModel):
    removed: int
    committed: int


class PropertyListingRequest(BaseModel):
    property_id: str = Field(min_length=1)
    owner: str = Field(min_length=1)
    price_per_night: int = Field(ge=0)
    property_uri: str | None = None


class PropertyListingResponse(BaseModel):
    property_id: str
    owner: str
    token_address: str | None = None
    price_per_night: str
    is_active: bool


class BookingCreateRequest(BaseModel):
    guest: str = Field(min_length=1)
    property_id: str = Field(min_length=1)
    check_in_date: int = Field(ge=0)
    check_out_date: int = Field(ge=0)
    total_amount: int = Field(ge=0)
    # Set when the stay was paid through the off-chain channel.
    payment_reference: str | None = None
    booking_uri: str | None = None


class BookingCreateResponse(BaseModel):
    booking_id: int
    status: str
    total_amount: str
    platform_fee: str
    host_amount: str
    paid_off_chain: bool
    events: list[str]
