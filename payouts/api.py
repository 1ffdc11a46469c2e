from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from .audit import AuditLog
from .clock import Clock, SystemClock
from .config import Settings, configure_logging, get_settings
from .deals import DealService
from .errors import (
    ConflictError,
    ExternalLedgerError,
    ExternalLedgerNotConfigured,
    NotFoundError,
    PayoutServiceError,
    ValidationError,
)
from .ledger_client import ExternalLedgerClient
from .models import (
    Adjustment,
    AdjustmentBatchResponse,
    AdjustmentGroup,
    AdjustmentStatus,
    AdjustmentSummary,
    AssignEventRequest,
    AssignmentStatus,
    AuditHistoryResponse,
    ChangeMerchantIdRequest,
    ComparisonReport,
    ConfirmAdjustmentsRequest,
    ConfirmEventsRequest,
    Deal,
    DealMutationResponse,
    DeleteRecordsRequest,
    DeleteRecordsResponse,
    EditAdjustmentRequest,
    EventConfirmationResponse,
    MassMarkPaidRequest,
    PaidStatusResponse,
    RegisterEventRequest,
    RejectAdjustmentsRequest,
    SourceEvent,
    SubmitAdjustmentRequest,
    SubmitAdjustmentResponse,
    SyncResult,
    UpdateParticipantsRequest,
)
from .partners import PartnerLookup, TTLCache
from .reconciler import PayoutReconciler
from .storage import InMemoryStorage
from .sync_queue import PayoutChangeQueue
from .workflow import AdjustmentService


@dataclass
class Services:
    storage: InMemoryStorage
    audit: AuditLog
    reconciler: PayoutReconciler
    adjustments: AdjustmentService
    deals: DealService
    queue: PayoutChangeQueue


def build_services(
    settings: Settings,
    storage: Optional[InMemoryStorage] = None,
    ledger: Optional[ExternalLedgerClient] = None,
    clock: Optional[Clock] = None,
) -> Services:
    """Wire the services around one store, one clock and (when configured) one ledger client."""
    clock = clock or SystemClock()
    storage = storage or InMemoryStorage(max_page_size=settings.STORE_MAX_PAGE_SIZE)
    if ledger is None and settings.external_ledger_configured:
        ledger = ExternalLedgerClient.from_settings(settings)

    audit = AuditLog(storage, clock)
    partners = PartnerLookup(
        storage,
        TTLCache(settings.PARTNER_CACHE_CAPACITY, settings.PARTNER_CACHE_TTL_SECONDS, clock),
    )
    reconciler = PayoutReconciler(storage, ledger, clock, settings, partners)
    queue = PayoutChangeQueue(reconciler.sync_payouts, immediate=settings.SYNC_IMMEDIATELY)
    return Services(
        storage=storage,
        audit=audit,
        reconciler=reconciler,
        adjustments=AdjustmentService(storage, reconciler, audit, queue, clock),
        deals=DealService(storage, reconciler, audit, queue, clock),
        queue=queue,
    )


def http_error(e: PayoutServiceError) -> HTTPException:
    if isinstance(e, ValidationError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(e, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, ConflictError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(e, ExternalLedgerNotConfigured):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(e, ExternalLedgerError):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(
        status_code=code,
        detail={"success": False, "error": str(e), "error_type": type(e).__name__},
    )


settings = get_settings()
configure_logging(settings.LOG_LEVEL)

app = FastAPI(
    title=settings.APP_NAME,
    description="Residual payout splits, adjustment workflow and external ledger reconciliation",
    version=settings.APP_VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

services = build_services(settings)


@app.get("/health", tags=["System"])
def health_check():
    return {
        "status": "healthy",
        "service": "residual-payouts",
        "external_ledger_configured": services.reconciler.ledger is not None,
    }


# ==================== ADJUSTMENTS ====================


@app.post("/adjustments", response_model=SubmitAdjustmentResponse, status_code=status.HTTP_201_CREATED, tags=["Adjustments"])
def submit_adjustment(request: SubmitAdjustmentRequest) -> SubmitAdjustmentResponse:
    try:
        return services.adjustments.submit_adjustment(
            request.deal_id, request.participants, note=request.note, performed_by=request.performed_by
        )
    except PayoutServiceError as e:
        raise http_error(e)


@app.get("/adjustments", response_model=list[Adjustment], tags=["Adjustments"])
def list_adjustments(
    deal_id: Optional[UUID] = None,
    adjustment_status: Optional[AdjustmentStatus] = Query(None, alias="status"),
) -> list[Adjustment]:
    return services.adjustments.list_adjustments(deal_id, adjustment_status)


@app.get("/adjustments/groups", response_model=list[AdjustmentGroup], tags=["Adjustments"])
def list_adjustment_groups(deal_id: Optional[UUID] = None) -> list[AdjustmentGroup]:
    return services.adjustments.list_groups(deal_id)


@app.get("/adjustments/summary", response_model=dict[str, AdjustmentSummary], tags=["Adjustments"])
def adjustment_summary() -> dict[str, AdjustmentSummary]:
    return services.adjustments.summary()


@app.put("/adjustments/groups/{group_id}", response_model=SubmitAdjustmentResponse, tags=["Adjustments"])
def edit_adjustment(group_id: UUID, request: EditAdjustmentRequest) -> SubmitAdjustmentResponse:
    try:
        return services.adjustments.edit_adjustment(
            group_id, request.participants, note=request.note, performed_by=request.performed_by
        )
    except PayoutServiceError as e:
        raise http_error(e)


@app.post("/adjustments/confirm", response_model=AdjustmentBatchResponse, tags=["Adjustments"])
def confirm_adjustments(request: ConfirmAdjustmentsRequest) -> AdjustmentBatchResponse:
    try:
        return services.adjustments.confirm_adjustments(request.adjustment_ids, request.performed_by)
    except PayoutServiceError as e:
        raise http_error(e)


@app.post("/adjustments/reject", response_model=AdjustmentBatchResponse, tags=["Adjustments"])
def reject_adjustments(request: RejectAdjustmentsRequest) -> AdjustmentBatchResponse:
    try:
        return services.adjustments.reject_adjustments(
            request.adjustment_ids, request.reason, request.performed_by
        )
    except PayoutServiceError as e:
        raise http_error(e)


@app.get("/adjustments/{adjustment_id}", response_model=Adjustment, tags=["Adjustments"])
def get_adjustment(adjustment_id: UUID) -> Adjustment:
    try:
        return services.adjustments.get_adjustment(adjustment_id)
    except PayoutServiceError as e:
        raise http_error(e)


# ==================== DEALS ====================


@app.get("/deals", response_model=list[Deal], tags=["Deals"])
def list_deals(mid: Optional[str] = None, limit: int = 100, offset: int = 0) -> list[Deal]:
    return services.deals.list_deals(mid, offset=offset, limit=limit)


@app.get("/deals/{deal_id}", response_model=Deal, tags=["Deals"])
def get_deal(deal_id: UUID) -> Deal:
    try:
        return services.deals.get_deal(deal_id)
    except PayoutServiceError as e:
        raise http_error(e)


@app.patch("/deals/{deal_id}/mid", response_model=DealMutationResponse, tags=["Deals"])
def change_merchant_id(deal_id: UUID, request: ChangeMerchantIdRequest) -> DealMutationResponse:
    try:
        return services.deals.change_merchant_id(deal_id, request.mid)
    except PayoutServiceError as e:
        raise http_error(e)


@app.put("/deals/{deal_id}/participants", response_model=DealMutationResponse, tags=["Deals"])
def update_participants(deal_id: UUID, request: UpdateParticipantsRequest) -> DealMutationResponse:
    try:
        return services.deals.update_participants(deal_id, request.participants)
    except PayoutServiceError as e:
        raise http_error(e)


@app.delete("/deals/{deal_id}", response_model=DealMutationResponse, tags=["Deals"])
def delete_deal(deal_id: UUID) -> DealMutationResponse:
    try:
        return services.deals.delete_deal(deal_id)
    except PayoutServiceError as e:
        raise http_error(e)


# ==================== EVENTS ====================


@app.post("/events", response_model=SourceEvent, status_code=status.HTTP_201_CREATED, tags=["Events"])
def register_event(request: RegisterEventRequest) -> SourceEvent:
    try:
        return services.deals.register_event(request)
    except PayoutServiceError as e:
        raise http_error(e)


@app.get("/events", response_model=list[SourceEvent], tags=["Events"])
def list_events(
    deal_id: Optional[UUID] = None,
    assignment_status: Optional[AssignmentStatus] = Query(None, alias="status"),
) -> list[SourceEvent]:
    return services.deals.list_events(assignment_status, deal_id)


@app.post("/events/assign", response_model=DealMutationResponse, tags=["Events"])
def assign_event(request: AssignEventRequest) -> DealMutationResponse:
    try:
        return services.deals.assign_event(
            request.event_id,
            participants=request.participants,
            deal_id=request.deal_id,
            payout_type=request.payout_type,
            is_draft=request.is_draft,
        )
    except PayoutServiceError as e:
        raise http_error(e)


@app.post("/events/confirm", response_model=EventConfirmationResponse, tags=["Events"])
def confirm_events(request: ConfirmEventsRequest) -> EventConfirmationResponse:
    try:
        return services.deals.confirm_events(request.event_ids)
    except PayoutServiceError as e:
        raise http_error(e)


@app.post("/events/unconfirm", response_model=DealMutationResponse, tags=["Events"])
def unconfirm_events(request: ConfirmEventsRequest) -> DealMutationResponse:
    try:
        return services.deals.unconfirm_events(request.event_ids)
    except PayoutServiceError as e:
        raise http_error(e)


# ==================== PAYOUTS ====================


@app.post("/payouts/mass-mark-paid", response_model=PaidStatusResponse, tags=["Payouts"])
def mass_mark_paid(request: MassMarkPaidRequest) -> PaidStatusResponse:
    try:
        return services.deals.mass_mark_paid(request.partner_ids)
    except PayoutServiceError as e:
        raise http_error(e)


@app.post("/payouts/{payout_id}/mark-paid", response_model=PaidStatusResponse, tags=["Payouts"])
def toggle_paid(payout_id: UUID) -> PaidStatusResponse:
    try:
        return services.deals.toggle_paid(payout_id)
    except PayoutServiceError as e:
        raise http_error(e)


# ==================== EXTERNAL LEDGER ====================


@app.post("/ledger/compare", response_model=ComparisonReport, tags=["External Ledger"])
def compare_ledger(month: Optional[str] = None) -> ComparisonReport:
    try:
        return services.reconciler.compare(month)
    except PayoutServiceError as e:
        raise http_error(e)


@app.post("/ledger/sync", response_model=SyncResult, tags=["External Ledger"])
def sync_ledger(month: Optional[str] = None) -> SyncResult:
    try:
        return services.reconciler.sync_all(month)
    except PayoutServiceError as e:
        raise http_error(e)


@app.post("/ledger/delete-records", response_model=DeleteRecordsResponse, tags=["External Ledger"])
def delete_ledger_records(request: DeleteRecordsRequest) -> DeleteRecordsResponse:
    try:
        return services.reconciler.delete_orphans(request.record_ids)
    except PayoutServiceError as e:
        raise http_error(e)


# ==================== HISTORY ====================


@app.get("/history", response_model=AuditHistoryResponse, tags=["History"])
def get_history(
    entity_id: Optional[str] = None,
    entity_type: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> AuditHistoryResponse:
    return services.audit.query(entity_id, entity_type, search, offset=offset, limit=limit)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
