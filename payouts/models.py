from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, field_validator


def to_decimal(value: Any) -> Any:
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, str) and value.strip() == "":
        return Decimal("0")
    return value


def to_mid(value: Any) -> Any:
    # Leading zeros are significant, a MID must never round-trip through a number
    if value is None:
        return value
    return str(value).strip()


def parse_enum(enum_cls, value: Any, field_name: str):
    if isinstance(value, enum_cls):
        return value
    normalized = str(value).lower().strip()
    for member in enum_cls:
        if member.value == normalized:
            return member
    valid = ", ".join(m.value for m in enum_cls)
    raise ValueError(f'Invalid {field_name}: "{value}". Valid values: {valid}')


class AssignmentStatus(str, Enum):
    UNASSIGNED = "unassigned"
    PENDING = "pending"
    CONFIRMED = "confirmed"

    @classmethod
    def parse(cls, value: Any) -> "AssignmentStatus":
        return parse_enum(cls, value, "assignment_status")


class PaidStatus(str, Enum):
    UNPAID = "unpaid"
    PENDING = "pending"
    PAID = "paid"

    @classmethod
    def parse(cls, value: Any) -> "PaidStatus":
        return parse_enum(cls, value, "paid_status")


class PayoutType(str, Enum):
    RESIDUAL = "residual"
    UPFRONT = "upfront"
    TRUEUP = "trueup"
    BONUS = "bonus"
    CLAWBACK = "clawback"
    ADJUSTMENT = "adjustment"


class AdjustmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class AdjustmentType(str, Enum):
    CLAWBACK = "clawback"
    ADDITIONAL = "additional"


class Participant(BaseModel):
    partner_id: str = Field(..., min_length=1, description="External partner identifier")
    name: str = ""
    role: str = "Partner"
    email: Optional[str] = None
    split_pct: Decimal = Field(default=Decimal("0"), ge=0, le=100)

    model_config = ConfigDict(from_attributes=True)

    @field_validator("split_pct", mode="before")
    @classmethod
    def coerce_split(cls, value: Any) -> Any:
        return to_decimal(value)


class Partner(BaseModel):
    id: UUID
    external_id: Optional[str] = None
    name: str
    role: str = "Partner"
    email: Optional[str] = None
    is_active: bool = True

    model_config = ConfigDict(from_attributes=True)


class Deal(BaseModel):
    id: UUID
    deal_id: str
    mid: str
    merchant_name: Optional[str] = None
    payout_type: PayoutType = PayoutType.RESIDUAL
    participants: list[Participant] = Field(default_factory=list)
    net_residual: Decimal = Decimal("0")
    is_legacy_import: bool = False
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("mid", mode="before")
    @classmethod
    def normalize_mid(cls, value: Any) -> Any:
        return to_mid(value)


class SourceEvent(BaseModel):
    id: UUID
    mid: str
    merchant_name: Optional[str] = None
    payout_month: Optional[str] = None
    payout_type: PayoutType = PayoutType.RESIDUAL
    volume: Decimal = Decimal("0")
    fees: Decimal = Decimal("0")
    adjustments: Decimal = Decimal("0")
    chargebacks: Decimal = Decimal("0")
    net_residual: Decimal = Decimal("0")
    deal_id: Optional[UUID] = None
    assignment_status: AssignmentStatus = AssignmentStatus.UNASSIGNED
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("mid", mode="before")
    @classmethod
    def normalize_mid(cls, value: Any) -> Any:
        return to_mid(value)


class Payout(BaseModel):
    id: UUID
    deal_id: Optional[str] = None
    event_id: Optional[UUID] = None
    mid: Optional[str] = None
    merchant_name: Optional[str] = None
    payout_month: Optional[str] = None
    payout_date: Optional[str] = None
    payout_type: Optional[PayoutType] = None
    partner_id: Optional[str] = None
    partner_uuid: Optional[UUID] = None
    partner_name: Optional[str] = None
    partner_role: Optional[str] = None
    split_pct: Decimal = Decimal("0")
    amount: Decimal = Decimal("0")
    net_residual: Decimal = Decimal("0")
    volume: Decimal = Decimal("0")
    fees: Decimal = Decimal("0")
    assignment_status: AssignmentStatus = AssignmentStatus.PENDING
    paid_status: PaidStatus = PaidStatus.UNPAID
    paid_at: Optional[datetime] = None
    is_legacy_import: bool = False
    external_record_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("mid", mode="before")
    @classmethod
    def normalize_mid(cls, value: Any) -> Any:
        return to_mid(value)


class AuditEntry(BaseModel):
    id: UUID
    action_type: str
    entity_type: str
    entity_id: Optional[str] = None
    entity_name: Optional[str] = None
    previous_data: Optional[dict] = None
    new_data: Optional[dict] = None
    description: str = ""
    is_undone: bool = False
    request_id: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Adjustment(BaseModel):
    id: UUID
    group_id: Optional[UUID] = None
    deal_id: UUID
    participant_id: Optional[str] = None
    participant_name: Optional[str] = None
    old_split_pct: Decimal
    new_split_pct: Decimal
    adjustment_amount: Decimal
    adjustment_type: AdjustmentType
    note: Optional[str] = None
    status: AdjustmentStatus
    is_undone: bool = False
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "Adjustment":
        data = entry.new_data or {}
        return cls(
            id=entry.id,
            group_id=data.get("group_id"),
            deal_id=data.get("deal_id") or entry.entity_id,
            participant_id=data.get("participant_id"),
            participant_name=data.get("participant_name"),
            old_split_pct=Decimal(str(data.get("old_split_pct", "0"))),
            new_split_pct=Decimal(str(data.get("new_split_pct", "0"))),
            adjustment_amount=Decimal(str(data.get("adjustment_amount", "0"))),
            adjustment_type=data.get("adjustment_type", AdjustmentType.ADDITIONAL),
            note=data.get("note"),
            status=data.get("status", AdjustmentStatus.CONFIRMED),
            is_undone=entry.is_undone,
            created_at=entry.created_at,
            confirmed_at=data.get("confirmed_at"),
            rejected_at=data.get("rejected_at"),
            rejection_reason=data.get("rejection_reason"),
        )

    def can_confirm(self) -> bool:
        return self.status == AdjustmentStatus.PENDING and not self.is_undone

    def can_reject(self) -> bool:
        return self.status == AdjustmentStatus.PENDING and not self.is_undone


class AdjustmentGroup(BaseModel):
    group_key: str
    group_id: Optional[UUID] = None
    deal_id: UUID
    status: AdjustmentStatus
    created_at: datetime
    adjustments: list[Adjustment]
    total_clawback: Decimal = Decimal("0")
    total_additional: Decimal = Decimal("0")


class AdjustmentSummary(BaseModel):
    total: int = 0
    pending: int = 0


class LedgerRecord(BaseModel):
    id: str
    fields: dict[str, Any] = Field(default_factory=dict)
    created_time: Optional[str] = None


# Requests


class SubmitAdjustmentRequest(BaseModel):
    deal_id: UUID
    participants: list[dict[str, Any]]
    note: Optional[str] = None
    performed_by: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "deal_id": "550e8400-e29b-41d4-a716-446655440000",
            "participants": [
                {"partner_airtable_id": "recA", "partner_name": "Alice", "split_pct": 50},
                {"partner_airtable_id": "recB", "partner_name": "Bob", "split_pct": 50},
            ],
            "note": "Rebalanced after renegotiation",
        }
    })


class EditAdjustmentRequest(BaseModel):
    participants: list[dict[str, Any]]
    note: Optional[str] = None
    performed_by: Optional[str] = None


class ConfirmAdjustmentsRequest(BaseModel):
    adjustment_ids: list[UUID] = Field(default_factory=list)
    performed_by: Optional[str] = None


class RejectAdjustmentsRequest(BaseModel):
    adjustment_ids: list[UUID] = Field(default_factory=list)
    reason: Optional[str] = None
    performed_by: Optional[str] = None


class RegisterEventRequest(BaseModel):
    mid: str
    merchant_name: Optional[str] = None
    payout_month: Optional[str] = None
    payout_type: PayoutType = PayoutType.RESIDUAL
    volume: Decimal = Decimal("0")
    fees: Decimal = Decimal("0")
    adjustments: Decimal = Decimal("0")
    chargebacks: Decimal = Decimal("0")

    @field_validator("mid", mode="before")
    @classmethod
    def normalize_mid(cls, value: Any) -> Any:
        return to_mid(value)

    @field_validator("volume", "fees", "adjustments", "chargebacks", mode="before")
    @classmethod
    def coerce_amounts(cls, value: Any) -> Any:
        return to_decimal(value)


class AssignEventRequest(BaseModel):
    event_id: UUID
    deal_id: Optional[UUID] = None
    participants: Optional[list[dict[str, Any]]] = None
    payout_type: Optional[PayoutType] = None
    is_draft: bool = False


class ConfirmEventsRequest(BaseModel):
    event_ids: list[UUID] = Field(default_factory=list)


class UpdateParticipantsRequest(BaseModel):
    participants: list[dict[str, Any]]


class ChangeMerchantIdRequest(BaseModel):
    mid: str

    @field_validator("mid", mode="before")
    @classmethod
    def normalize_mid(cls, value: Any) -> Any:
        return to_mid(value)


class MassMarkPaidRequest(BaseModel):
    partner_ids: list[str] = Field(default_factory=list)


class DeleteRecordsRequest(BaseModel):
    record_ids: list[str] = Field(default_factory=list)


# Responses


class SyncResult(BaseModel):
    synced: int = 0
    created: int = 0
    updated: int = 0
    duplicates_deleted: int = 0
    unchanged: int = 0
    orphaned: int = 0
    errors: list[str] = Field(default_factory=list)
    error: Optional[str] = None


class FieldChange(BaseModel):
    field: str
    old_value: Any = None
    new_value: Any = None


class ComparedPayout(BaseModel):
    payout_id: UUID
    record_id: Optional[str] = None
    mid: Optional[str] = None
    merchant_name: Optional[str] = None
    partner_name: Optional[str] = None
    payout_month: Optional[str] = None
    changes: list[FieldChange] = Field(default_factory=list)
    fields: dict[str, Any] = Field(default_factory=dict)


class OrphanedRecord(BaseModel):
    record_id: str
    payout_id: str
    mid: str = ""
    merchant_name: str = ""
    partner_name: str = ""
    payout_month: str = ""
    amount: Any = 0


class ComparisonReport(BaseModel):
    new_records: list[ComparedPayout] = Field(default_factory=list)
    changed_records: list[ComparedPayout] = Field(default_factory=list)
    orphaned_records: list[OrphanedRecord] = Field(default_factory=list)
    duplicate_record_ids: list[str] = Field(default_factory=list)
    unchanged_count: int = 0
    total_local: int = 0
    total_remote: int = 0

    @property
    def duplicate_count(self) -> int:
        return len(self.duplicate_record_ids)


class SubmitAdjustmentResponse(BaseModel):
    group_id: UUID
    deal: Deal
    adjustments: list[Adjustment]
    message: str


class AdjustmentBatchResponse(BaseModel):
    success: bool = True
    confirmed: int = 0
    rejected: int = 0
    skipped: int = 0
    total: int = 0
    payouts_updated: int = 0
    sync: Optional[SyncResult] = None
    errors: list[str] = Field(default_factory=list)


class EventConfirmationResponse(BaseModel):
    success: bool = True
    confirmed: int = 0
    skipped: int = 0
    skipped_without_deals: int = 0
    skipped_without_participants: int = 0
    payouts_created: int = 0
    payout_ids: list[UUID] = Field(default_factory=list)
    sync: Optional[SyncResult] = None
    errors: list[str] = Field(default_factory=list)


class DealMutationResponse(BaseModel):
    success: bool = True
    deal: Optional[Deal] = None
    payouts_updated: int = 0
    payouts_created: int = 0
    payouts_deleted: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    sync: Optional[SyncResult] = None
    errors: list[str] = Field(default_factory=list)
    message: str = ""


class PaidStatusResponse(BaseModel):
    success: bool = True
    updated: int = 0
    paid_status: Optional[PaidStatus] = None
    payout_ids: list[UUID] = Field(default_factory=list)
    sync: Optional[SyncResult] = None
    message: str = ""


class AuditHistoryResponse(BaseModel):
    entries: list[AuditEntry]
    total_count: int


class DeleteRecordsResponse(BaseModel):
    success: bool = True
    deleted: int = 0
    requested: int = 0
    errors: list[str] = Field(default_factory=list)
