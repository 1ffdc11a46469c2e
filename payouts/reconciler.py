"""
Payout reconciliation.

Local side: materializes payout rows from confirmed source events, rebuilds
them wholesale, and cascades participant changes onto existing rows.

Remote side: diffs local payouts against the external ledger and applies the
minimal set of writes. The ledger has no uniqueness constraint, so every
record is bucketed by its "Payout ID" field:

    0 records  -> create
    1 record   -> update, only when a compared field differs
    N records  -> update the first (when changed), delete the other N-1

Buckets without a local payout are orphans. They are reported, and only
removed through the explicit ``delete_orphans`` pathway.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence
from uuid import UUID, uuid4

from .allocation import as_decimal, compute_amount
from .clock import Clock, SystemClock
from .config import Settings, get_settings
from .errors import ExternalLedgerNotConfigured, ValidationError
from .ledger_client import ExternalLedgerClient, build_match_formula
from .models import (
    AssignmentStatus,
    ComparedPayout,
    ComparisonReport,
    Deal,
    DeleteRecordsResponse,
    FieldChange,
    LedgerRecord,
    OrphanedRecord,
    PaidStatus,
    Participant,
    Payout,
    SourceEvent,
    SyncResult,
)
from .partners import PartnerLookup
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

PAYOUT_ID_FIELD = "Payout ID"
PAYOUT_MONTH_FIELD = "Payout Month"

COMPARE_FIELDS = (
    "Paid Status",
    "Paid At",
    "Status",
    "Split %",
    "Payout Amount",
    "Partner Role",
    "Partner Name",
    "Partner ID",
    "Merchant Name",
    "MID",
    "Payout Month",
    "Volume",
    "Fees",
    "Net Residual",
)

SPLIT_MATCH_TOLERANCE = Decimal("0.01")


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def format_payout_fields(payout: Payout) -> dict[str, Any]:
    """
    Build the external ledger payload for a payout.

    Numeric fields are always present. Text and select fields are included
    only when non-empty, since the ledger rejects empty select options.
    """
    fields: dict[str, Any] = {
        PAYOUT_ID_FIELD: str(payout.id),
        "Split %": float(payout.split_pct or 0),
        "Payout Amount": float(payout.amount or 0),
        "Volume": float(payout.volume or 0),
        "Fees": float(payout.fees or 0),
        "Net Residual": float(payout.net_residual or 0),
    }

    optional = {
        "Deal ID": payout.deal_id,
        "MID": payout.mid,
        "Merchant Name": payout.merchant_name,
        PAYOUT_MONTH_FIELD: payout.payout_month,
        "Payout Date": payout.payout_date,
        "Partner ID": payout.partner_id,
        "Partner Name": payout.partner_name,
        "Partner Role": payout.partner_role,
        "Paid At": format_timestamp(payout.paid_at),
        "Payout Type": payout.payout_type.value if payout.payout_type else None,
        "Status": payout.assignment_status.value if payout.assignment_status else None,
        "Paid Status": payout.paid_status.value if payout.paid_status else None,
    }
    for name, value in optional.items():
        if value is not None and str(value).strip() != "":
            fields[name] = value

    fields["Is Legacy"] = "Yes" if payout.is_legacy_import else "No"
    return fields


def values_match(remote: Any, local: Any) -> bool:
    """Compare a ledger value with a local one: null equals "", numbers compare numerically."""
    if remote is None:
        remote = ""
    if local is None:
        local = ""

    if isinstance(local, (int, float, Decimal)) and not isinstance(local, bool):
        try:
            return float(remote or 0) == float(local)
        except (TypeError, ValueError):
            return False

    return str(remote) == str(local)


def diff_fields(remote_fields: dict, local_fields: dict) -> list[FieldChange]:
    changes = []
    for name in COMPARE_FIELDS:
        old, new = remote_fields.get(name), local_fields.get(name)
        if not values_match(old, new):
            changes.append(FieldChange(field=name, old_value=old, new_value=new))
    return changes


def bucket_records(records: Iterable[LedgerRecord]) -> dict[str, list[LedgerRecord]]:
    """Group remote records by payout id, keeping every record so duplicates surface."""
    buckets: dict[str, list[LedgerRecord]] = {}
    for record in records:
        payout_id = record.fields.get(PAYOUT_ID_FIELD)
        if not payout_id:
            continue
        buckets.setdefault(str(payout_id), []).append(record)
    return buckets


@dataclass
class PlannedWrite:
    payout: Payout
    fields: dict[str, Any]
    record_id: Optional[str] = None
    changes: list[FieldChange] = field(default_factory=list)


@dataclass
class SyncPlan:
    creates: list[PlannedWrite] = field(default_factory=list)
    updates: list[PlannedWrite] = field(default_factory=list)
    deletes: list[str] = field(default_factory=list)
    unchanged: list[PlannedWrite] = field(default_factory=list)
    orphans: list[LedgerRecord] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.creates or self.updates or self.deletes)


def plan_sync(payouts: Sequence[Payout], buckets: dict[str, list[LedgerRecord]]) -> SyncPlan:
    plan = SyncPlan()
    local_ids = set()

    for payout in payouts:
        key = str(payout.id)
        local_ids.add(key)
        fields = format_payout_fields(payout)
        records = buckets.get(key) or []

        if not records:
            plan.creates.append(PlannedWrite(payout=payout, fields=fields))
            continue

        keep, duplicates = records[0], records[1:]
        if duplicates:
            logger.warning(f"Payout {key} has {len(records)} ledger records, deleting {len(duplicates)}")
            plan.deletes.extend(r.id for r in duplicates)

        changes = diff_fields(keep.fields, fields)
        write = PlannedWrite(payout=payout, fields=fields, record_id=keep.id, changes=changes)
        if changes:
            # Clear compared fields that are now empty locally
            for change in changes:
                if change.field not in fields:
                    write.fields[change.field] = None
            plan.updates.append(write)
        else:
            plan.unchanged.append(write)

    for key, records in buckets.items():
        if key not in local_ids:
            plan.orphans.extend(records)

    return plan


@dataclass
class MaterializedPayouts:
    created: list[UUID] = field(default_factory=list)
    existing: list[UUID] = field(default_factory=list)

    @property
    def ids(self) -> list[UUID]:
        return self.created + self.existing


@dataclass
class RebuildResult:
    deleted: int = 0
    created: list[UUID] = field(default_factory=list)


class PayoutReconciler:
    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: Optional[ExternalLedgerClient] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        partners: Optional[PartnerLookup] = None,
    ):
        self.storage = storage
        self.ledger = ledger
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()
        self.partners = partners

    # ==================== LOCAL ====================

    def fetch_local_payouts(
        self,
        payout_ids: Optional[Iterable[UUID]] = None,
        month: Optional[str] = None,
        deal_id: Optional[str] = None,
    ) -> list[Payout]:
        """Read every matching payout, paging until a short page comes back."""
        eq: dict = {}
        in_: dict = {}
        if month:
            eq["payout_month"] = month
        if deal_id:
            eq["deal_id"] = deal_id
        if payout_ids is not None:
            in_["id"] = set(payout_ids)
            if not in_["id"]:
                return []

        rows = self.storage.select_all(
            "payouts",
            page_size=self.settings.STORE_MAX_PAGE_SIZE,
            eq=eq,
            in_=in_,
            order_by="created_at",
        )
        return [Payout(**row) for row in rows]

    def _partner_uuids(self, participants: Iterable[Participant]) -> dict:
        if not (self.settings.FEATURE_WRITE_PARTNER_ID and self.partners):
            return {}
        return self.partners.get_partner_ids(p.partner_id for p in participants)

    def _validate_statuses(self, row: dict) -> dict:
        if self.settings.FEATURE_VALIDATE_STATUS:
            row["assignment_status"] = AssignmentStatus.parse(row["assignment_status"])
            row["paid_status"] = PaidStatus.parse(row["paid_status"])
        return row

    def _build_payout_row(
        self,
        deal: Deal,
        event: SourceEvent,
        participant: Participant,
        partner_uuids: dict,
        assignment_status: AssignmentStatus,
    ) -> dict:
        now = self.clock.now()
        return self._validate_statuses({
            "id": uuid4(),
            "deal_id": deal.deal_id,
            "event_id": event.id,
            "mid": event.mid or deal.mid,
            "merchant_name": event.merchant_name or deal.merchant_name,
            "payout_month": event.payout_month,
            "payout_date": None,
            "payout_type": event.payout_type or deal.payout_type,
            "partner_id": participant.partner_id,
            "partner_uuid": partner_uuids.get(participant.partner_id),
            "partner_name": participant.name,
            "partner_role": participant.role,
            "split_pct": participant.split_pct,
            "amount": compute_amount(event.net_residual, participant.split_pct),
            "net_residual": event.net_residual,
            "volume": event.volume,
            "fees": event.fees,
            "assignment_status": assignment_status,
            "paid_status": PaidStatus.UNPAID,
            "paid_at": None,
            "is_legacy_import": deal.is_legacy_import,
            "external_record_id": None,
            "created_at": now,
            "updated_at": now,
        })

    def materialize_payouts(self, events: Sequence[SourceEvent], deals: dict[UUID, Deal]) -> MaterializedPayouts:
        """
        Create one payout per (event, active participant) pair.

        Pairs that already have a payout are left alone, so re-running is a no-op.
        """
        result = MaterializedPayouts()
        all_participants = [p for deal in deals.values() for p in deal.participants]
        partner_uuids = self._partner_uuids(all_participants)

        for event in events:
            deal = deals.get(event.deal_id) if event.deal_id else None
            if deal is None:
                logger.warning(f"Event {event.id} has no deal, skipping payout creation")
                continue

            existing = {
                row["partner_id"]: row["id"]
                for row in self.storage.select_all("payouts", eq={"event_id": event.id})
            }
            for participant in deal.participants:
                if participant.split_pct <= 0:
                    continue
                if participant.partner_id in existing:
                    result.existing.append(existing[participant.partner_id])
                    continue
                row = self._build_payout_row(deal, event, participant, partner_uuids, AssignmentStatus.CONFIRMED)
                self.storage.insert("payouts", row)
                result.created.append(row["id"])

        logger.info(f"Materialized {len(result.created)} payouts ({len(result.existing)} already existed)")
        return result

    def rebuild_payouts(self, deal: Deal) -> RebuildResult:
        """Replace every payout of the deal with fresh rows from its participants and linked events."""
        previous = self.storage.select_all("payouts", eq={"deal_id": deal.deal_id})
        paid_state = {
            (row["event_id"], row["partner_id"]): (row["paid_status"], row["paid_at"])
            for row in previous
        }
        result = RebuildResult(deleted=self.storage.delete_where("payouts", eq={"deal_id": deal.deal_id}))

        events = [SourceEvent(**row) for row in self.storage.select_all("events", eq={"deal_id": deal.id})]
        if not events:
            logger.warning(f"No events linked to deal {deal.deal_id}, skipping payout creation")
            return result

        partner_uuids = self._partner_uuids(deal.participants)
        for event in events:
            status = (
                AssignmentStatus.CONFIRMED
                if event.assignment_status == AssignmentStatus.CONFIRMED
                else AssignmentStatus.PENDING
            )
            for participant in deal.participants:
                if participant.split_pct <= 0:
                    continue
                row = self._build_payout_row(deal, event, participant, partner_uuids, status)
                paid = paid_state.get((event.id, participant.partner_id))
                if paid:
                    row["paid_status"], row["paid_at"] = paid
                self.storage.insert("payouts", row)
                result.created.append(row["id"])

        logger.info(f"Rebuilt deal {deal.deal_id}: deleted {result.deleted}, created {len(result.created)}")
        return result

    def _match_row(self, rows: list[dict], participant: Participant, matched: set) -> Optional[dict]:
        for row in rows:
            if row["id"] not in matched and row.get("partner_id") == participant.partner_id:
                return row

        # Legacy rows carry no partner identifier, fall back to the closest split
        candidates = [
            row for row in rows
            if row["id"] not in matched
            and not row.get("partner_id")
            and abs(as_decimal(row.get("split_pct")) - participant.split_pct) < SPLIT_MATCH_TOLERANCE
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda r: abs(as_decimal(r.get("split_pct")) - participant.split_pct))

    def apply_participant_changes(self, deal: Deal, participants: Sequence[Participant]) -> list[UUID]:
        """
        Cascade a participant set onto the deal's existing payouts, event by event.

        Matched rows are updated in place, participants without a row get a new
        one (only for rows tied to an event), and rows nobody matched are zeroed.
        Returns the ids of every payout touched.
        """
        rows = self.storage.select_all("payouts", eq={"deal_id": deal.deal_id}, order_by="created_at")
        by_event: dict[Optional[UUID], list[dict]] = {}
        for row in rows:
            by_event.setdefault(row.get("event_id"), []).append(row)

        partner_uuids = self._partner_uuids(participants)
        now = self.clock.now()
        touched: list[UUID] = []

        for event_id, event_rows in by_event.items():
            template = event_rows[0]
            base = as_decimal(template.get("net_residual"))
            matched: set = set()

            for participant in participants:
                amount = compute_amount(base, participant.split_pct)
                row = self._match_row(event_rows, participant, matched)
                if row is not None:
                    matched.add(row["id"])
                    self.storage.update("payouts", row["id"], {
                        "partner_id": participant.partner_id,
                        "partner_uuid": partner_uuids.get(participant.partner_id, row.get("partner_uuid")),
                        "partner_name": participant.name,
                        "partner_role": participant.role,
                        "split_pct": participant.split_pct,
                        "amount": amount,
                        "updated_at": now,
                    })
                    touched.append(row["id"])
                elif event_id is not None and participant.split_pct > 0:
                    new_row = self._validate_statuses({
                        **template,
                        "id": uuid4(),
                        "partner_id": participant.partner_id,
                        "partner_uuid": partner_uuids.get(participant.partner_id),
                        "partner_name": participant.name,
                        "partner_role": participant.role,
                        "split_pct": participant.split_pct,
                        "amount": amount,
                        "payout_type": template.get("payout_type") or deal.payout_type,
                        "assignment_status": template.get("assignment_status") or AssignmentStatus.CONFIRMED,
                        "paid_status": PaidStatus.UNPAID,
                        "paid_at": None,
                        "external_record_id": None,
                        "created_at": now,
                        "updated_at": now,
                    })
                    self.storage.insert("payouts", new_row)
                    touched.append(new_row["id"])

            for row in event_rows:
                if row["id"] not in matched:
                    self.storage.update("payouts", row["id"], {
                        "split_pct": Decimal("0"),
                        "amount": Decimal("0"),
                        "updated_at": now,
                    })
                    touched.append(row["id"])

        logger.info(f"Cascaded {len(participants)} participants onto {len(touched)} payouts of deal {deal.deal_id}")
        return touched

    # ==================== REMOTE ====================

    def _require_ledger(self) -> ExternalLedgerClient:
        if self.ledger is None:
            raise ExternalLedgerNotConfigured()
        return self.ledger

    def plan_sync(self, payouts: Sequence[Payout], buckets: dict[str, list[LedgerRecord]]) -> SyncPlan:
        return plan_sync(payouts, buckets)

    def _fetch_month(self, month: Optional[str]) -> list[LedgerRecord]:
        ledger = self._require_ledger()
        formula = build_match_formula(PAYOUT_MONTH_FIELD, [month]) if month else None
        return ledger.list_records(formula)

    def _link_records(self, writes: Iterable[PlannedWrite]) -> None:
        for write in writes:
            if write.record_id and write.payout.external_record_id != write.record_id:
                self.storage.update("payouts", write.payout.id, {"external_record_id": write.record_id})

    def execute(self, plan: SyncPlan) -> SyncResult:
        """Apply a plan: deletes first, then creates, then updates."""
        ledger = self._require_ledger()
        result = SyncResult(unchanged=len(plan.unchanged), orphaned=len(plan.orphans))

        if plan.orphans:
            logger.warning(f"{len(plan.orphans)} ledger records have no local payout")

        if plan.deletes:
            deleted = ledger.delete_records(plan.deletes)
            result.duplicates_deleted = deleted.processed
            result.errors.extend(deleted.errors)

        if plan.creates:
            created = ledger.create_records([w.fields for w in plan.creates])
            result.created = created.processed
            result.errors.extend(created.errors)
            for record in created.records:
                payout_id = record.fields.get(PAYOUT_ID_FIELD)
                if payout_id:
                    self.storage.update("payouts", UUID(str(payout_id)), {"external_record_id": record.id})

        if plan.updates:
            updated = ledger.update_records([(w.record_id, w.fields) for w in plan.updates])
            result.updated = updated.processed
            result.errors.extend(updated.errors)

        self._link_records(plan.updates + plan.unchanged)
        result.synced = result.created + result.updated
        logger.info(
            f"Ledger sync: created {result.created}, updated {result.updated}, "
            f"duplicates deleted {result.duplicates_deleted}, unchanged {result.unchanged}, "
            f"orphaned {result.orphaned}, errors {len(result.errors)}"
        )
        return result

    def sync_payouts(self, payout_ids: Iterable[UUID]) -> SyncResult:
        """Targeted sync of specific payouts, used after local mutations."""
        ids = list(dict.fromkeys(payout_ids))
        if not ids:
            return SyncResult()
        ledger = self._require_ledger()

        payouts = self.fetch_local_payouts(payout_ids=ids)
        records = ledger.find_records(PAYOUT_ID_FIELD, [str(i) for i in ids])
        return self.execute(self.plan_sync(payouts, bucket_records(records)))

    def sync_all(self, month: Optional[str] = None) -> SyncResult:
        """Full diff of local payouts (optionally one month) against the ledger."""
        payouts = self.fetch_local_payouts(month=month)
        records = self._fetch_month(month)
        logger.info(f"Syncing {len(payouts)} local payouts against {len(records)} ledger records")
        return self.execute(self.plan_sync(payouts, bucket_records(records)))

    def compare(self, month: Optional[str] = None) -> ComparisonReport:
        """Dry run of ``sync_all``: report what would change without writing."""
        payouts = self.fetch_local_payouts(month=month)
        records = self._fetch_month(month)
        plan = self.plan_sync(payouts, bucket_records(records))

        def describe(write: PlannedWrite) -> ComparedPayout:
            payout = write.payout
            return ComparedPayout(
                payout_id=payout.id,
                record_id=write.record_id,
                mid=payout.mid,
                merchant_name=payout.merchant_name,
                partner_name=payout.partner_name,
                payout_month=payout.payout_month,
                changes=write.changes,
                fields=write.fields,
            )

        return ComparisonReport(
            new_records=[describe(w) for w in plan.creates],
            changed_records=[describe(w) for w in plan.updates],
            orphaned_records=[
                OrphanedRecord(
                    record_id=r.id,
                    payout_id=str(r.fields.get(PAYOUT_ID_FIELD, "")),
                    mid=str(r.fields.get("MID") or ""),
                    merchant_name=str(r.fields.get("Merchant Name") or ""),
                    partner_name=str(r.fields.get("Partner Name") or ""),
                    payout_month=str(r.fields.get(PAYOUT_MONTH_FIELD) or ""),
                    amount=r.fields.get("Payout Amount") or 0,
                )
                for r in plan.orphans
            ],
            duplicate_record_ids=plan.deletes,
            unchanged_count=len(plan.unchanged),
            total_local=len(payouts),
            total_remote=len(records),
        )

    def delete_orphans(self, record_ids: Sequence[str]) -> DeleteRecordsResponse:
        ids = [r for r in dict.fromkeys(record_ids) if r]
        if not ids:
            raise ValidationError("No record IDs provided")
        deleted = self._require_ledger().delete_records(ids)
        logger.info(f"Deleted {deleted.processed} of {len(ids)} ledger records on request")
        return DeleteRecordsResponse(
            success=not deleted.errors,
            deleted=deleted.processed,
            requested=len(ids),
            errors=deleted.errors,
        )
