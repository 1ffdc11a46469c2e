"""
Adjustment workflow.

A split change on a deal is proposed as a batch of per-participant
adjustment records, stored in the audit log under entity type
``adjustment`` and sharing one ``group_id``:

    submit -> pending -> confirmed   (payouts cascaded, external sync)
                      -> rejected    (payouts untouched, deal split restored)
                      -> edit        (pending again, same group_id)

Confirmed and rejected are terminal.
"""

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence
from uuid import UUID, uuid4

from .allocation import classify_delta, compute_delta, require_exact_total
from .audit import AuditLog
from .clock import Clock, SystemClock
from .errors import (
    AdjustmentNotFoundError,
    DealNotFoundError,
    InvalidStateTransitionError,
    PayoutServiceError,
    StorageError,
    ValidationError,
)
from .models import (
    Adjustment,
    AdjustmentBatchResponse,
    AdjustmentGroup,
    AdjustmentStatus,
    AdjustmentSummary,
    AdjustmentType,
    AssignmentStatus,
    AuditEntry,
    Deal,
    Participant,
    SubmitAdjustmentResponse,
)
from .participants import normalize_participants, normalize_role
from .reconciler import PayoutReconciler
from .storage import InMemoryStorage
from .sync_queue import PayoutChangeQueue

logger = logging.getLogger(__name__)

ENTITY_TYPE = "adjustment"
BATCH_ENTITY_TYPE = "adjustment_batch"
DEFAULT_REJECTION_REASON = "Manually rejected"


def compute_changes(
    current: Sequence[Participant],
    proposed: Sequence[Participant],
    base: Decimal,
) -> list[dict[str, Any]]:
    """
    Per-participant split deltas between two participant sets.

    Removed participants count as a new split of 0, added ones as an old
    split of 0. Participants whose split did not move are left out.
    """
    current_by_id = {p.partner_id: p for p in current}
    proposed_by_id = {p.partner_id: p for p in proposed}
    ordered_ids = list(proposed_by_id) + [pid for pid in current_by_id if pid not in proposed_by_id]

    changes = []
    for partner_id in ordered_ids:
        before = current_by_id.get(partner_id)
        after = proposed_by_id.get(partner_id)
        old_split = before.split_pct if before else Decimal("0")
        new_split = after.split_pct if after else Decimal("0")

        delta = compute_delta(base, old_split, new_split)
        adjustment_type = classify_delta(delta)
        if adjustment_type is None:
            continue

        changes.append({
            "participant_id": partner_id,
            "participant_name": (after or before).name,
            "old_split_pct": old_split,
            "new_split_pct": new_split,
            "adjustment_amount": delta,
            "adjustment_type": adjustment_type,
        })
    return changes


def revert_participants(
    participants: Sequence[Participant],
    adjustments: Iterable[Adjustment],
    only_if_current: bool = False,
) -> list[Participant]:
    """Roll each adjustment back to its old split. With ``only_if_current`` a participant is
    only rolled back while it still holds the adjustment's proposed split."""
    by_id = {p.partner_id: p for p in participants}
    for adjustment in adjustments:
        partner_id = adjustment.participant_id
        if not partner_id:
            continue
        current = by_id.get(partner_id)
        current_split = current.split_pct if current else Decimal("0")
        if only_if_current and current_split != adjustment.new_split_pct:
            continue

        if adjustment.old_split_pct == 0:
            by_id.pop(partner_id, None)
        elif current is not None:
            by_id[partner_id] = current.model_copy(update={"split_pct": adjustment.old_split_pct})
        else:
            name = adjustment.participant_name or ""
            by_id[partner_id] = Participant(
                partner_id=partner_id,
                name=name,
                role=normalize_role(name, ""),
                split_pct=adjustment.old_split_pct,
            )
    return list(by_id.values())


class AdjustmentService:
    def __init__(
        self,
        storage: InMemoryStorage,
        reconciler: PayoutReconciler,
        audit: Optional[AuditLog] = None,
        queue: Optional[PayoutChangeQueue] = None,
        clock: Optional[Clock] = None,
    ):
        self.storage = storage
        self.reconciler = reconciler
        self.clock = clock or SystemClock()
        self.audit = audit or AuditLog(storage, self.clock)
        self.queue = queue

    def _load_deal(self, deal_id: UUID) -> Deal:
        row = self.storage.get("deals", deal_id)
        if row is None:
            raise DealNotFoundError(f"Deal {deal_id} not found")
        return Deal(**row)

    def _save_participants(self, deal: Deal, participants: Sequence[Participant]) -> Deal:
        row = self.storage.update("deals", deal.id, {
            "participants": [p.model_dump() for p in participants],
            "updated_at": self.clock.now(),
        })
        if row is None:
            raise DealNotFoundError(f"Deal {deal.id} not found")
        return Deal(**row)

    def _live_entries(self, deal_id: Optional[UUID] = None, include_undone: bool = False) -> list[AuditEntry]:
        return self.audit.entries(ENTITY_TYPE, deal_id, include_undone=include_undone)

    # ==================== SUBMIT / EDIT ====================

    def submit_adjustment(
        self,
        deal_id: UUID,
        participants: Sequence[Any],
        note: Optional[str] = None,
        performed_by: Optional[str] = None,
        group_id: Optional[UUID] = None,
        baseline: Optional[Sequence[Participant]] = None,
    ) -> SubmitAdjustmentResponse:
        """
        Propose a new participant split for a deal.

        Writes one pending record per changed participant and updates the
        deal's participant list. Payouts are not touched until confirmation.
        """
        deal = self._load_deal(deal_id)
        proposed = normalize_participants(participants)
        require_exact_total(proposed)

        current = list(baseline) if baseline is not None else deal.participants
        changes = compute_changes(current, proposed, deal.net_residual)
        if not changes:
            raise ValidationError("No split changes to submit")

        group_id = group_id or uuid4()
        adjustments = []
        for change in changes:
            entry = self.audit.record(
                action_type="adjust",
                entity_type=ENTITY_TYPE,
                entity_id=deal.id,
                entity_name=deal.merchant_name or deal.mid,
                previous_data={"split_pct": change["old_split_pct"]},
                new_data={
                    **change,
                    "group_id": group_id,
                    "deal_id": deal.id,
                    "note": note,
                    "status": AdjustmentStatus.PENDING,
                    "submitted_by": performed_by,
                },
                description=(
                    f"{change['participant_name'] or change['participant_id']}: "
                    f"{change['old_split_pct']}% -> {change['new_split_pct']}%"
                ),
            )
            adjustments.append(Adjustment.from_entry(entry))

        deal = self._save_participants(deal, proposed)
        logger.info(f"Submitted {len(adjustments)} adjustment(s) for deal {deal.deal_id} in group {group_id}")
        return SubmitAdjustmentResponse(
            group_id=group_id,
            deal=deal,
            adjustments=adjustments,
            message=f"Submitted {len(adjustments)} pending adjustment(s)",
        )

    def edit_adjustment(
        self,
        group_id: UUID,
        participants: Sequence[Any],
        note: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> SubmitAdjustmentResponse:
        """Replace a pending proposal. Deltas are recomputed against the split before the proposal."""
        entries = [
            e for e in self._live_entries()
            if (e.new_data or {}).get("group_id") == str(group_id)
        ]
        if not entries:
            raise AdjustmentNotFoundError(f"Adjustment group {group_id} not found")

        records = [Adjustment.from_entry(e) for e in entries]
        if any(r.status != AdjustmentStatus.PENDING for r in records):
            raise InvalidStateTransitionError("Only pending adjustments can be edited")

        deal = self._load_deal(records[0].deal_id)
        baseline = revert_participants(deal.participants, records)
        response = self.submit_adjustment(
            deal.id, participants, note=note, performed_by=performed_by,
            group_id=group_id, baseline=baseline,
        )

        superseded_at = self.clock.now()
        for entry in entries:
            self.audit.update(
                entry.id,
                new_data={**(entry.new_data or {}), "superseded_at": superseded_at},
                is_undone=True,
            )
        logger.info(f"Edited adjustment group {group_id}: superseded {len(entries)} record(s)")
        return response

    # ==================== CONFIRM / REJECT ====================

    def _confirmed_split(self, deal: Deal) -> list[Participant]:
        """The deal's participants with every still-pending proposal rolled back, newest first."""
        pending = [
            a for a in (Adjustment.from_entry(e) for e in self._live_entries(deal.id))
            if a.status == AdjustmentStatus.PENDING
        ]
        return revert_participants(deal.participants, reversed(pending), only_if_current=True)

    def _pending(self, adjustment_ids: Iterable[UUID], response: AdjustmentBatchResponse) -> list[AuditEntry]:
        ids = list(dict.fromkeys(adjustment_ids))
        response.total = len(ids)
        found = {e.id: e for e in self.audit.find(ids)}

        pending = []
        for adjustment_id in ids:
            entry = found.get(adjustment_id)
            if entry is None or entry.entity_type != ENTITY_TYPE:
                response.skipped += 1
                continue
            if not Adjustment.from_entry(entry).can_confirm():
                response.skipped += 1
                continue
            pending.append(entry)
        return pending

    def confirm_adjustments(
        self,
        adjustment_ids: Iterable[UUID],
        performed_by: Optional[str] = None,
    ) -> AdjustmentBatchResponse:
        """
        Confirm pending adjustments and cascade each affected deal's confirmed
        split onto its payouts. Proposals still pending on the same deal are
        rolled back first, so they take no monetary effect.

        Unknown or non-pending ids are skipped; per-record failures are
        collected and do not stop the batch.
        """
        response = AdjustmentBatchResponse()
        entries = self._pending(adjustment_ids, response)
        if not entries:
            return response

        now = self.clock.now()
        affected_deals: dict[UUID, None] = {}
        confirmed_ids = []
        for entry in entries:
            try:
                self.audit.update(entry.id, new_data={
                    **(entry.new_data or {}),
                    "status": AdjustmentStatus.CONFIRMED,
                    "confirmed_at": now,
                    "confirmed_by": performed_by,
                })
            except StorageError as e:
                logger.error(f"Failed to confirm adjustment {entry.id}: {e}")
                response.errors.append(f"Failed to confirm {entry.id}: {e}")
                continue
            response.confirmed += 1
            confirmed_ids.append(entry.id)
            affected_deals[Adjustment.from_entry(entry).deal_id] = None

        payout_ids = []
        for deal_id in affected_deals:
            try:
                deal = self._load_deal(deal_id)
                touched = self.reconciler.apply_participant_changes(deal, self._confirmed_split(deal))
                confirmed_events = {
                    row["id"] for row in self.storage.select_all(
                        "events", eq={"deal_id": deal.id, "assignment_status": AssignmentStatus.CONFIRMED}
                    )
                }
                # Payouts of events still awaiting confirmation keep their status
                self.storage.update_where(
                    "payouts",
                    {"assignment_status": AssignmentStatus.CONFIRMED, "updated_at": now},
                    in_={"id": set(touched), "event_id": confirmed_events | {None}},
                )
                payout_ids.extend(dict.fromkeys(touched))
                logger.info(f"Applied confirmed adjustments to deal {deal.deal_id} (MID {deal.mid})")
            except PayoutServiceError as e:
                logger.error(f"Failed to apply adjustments to deal {deal_id}: {e}")
                response.errors.append(f"Deal {deal_id}: {e}")

        response.payouts_updated = len(payout_ids)
        if payout_ids and self.queue is not None:
            response.sync = self.queue.publish(payout_ids)

        self.audit.record_safely(
            action_type="confirm",
            entity_type=BATCH_ENTITY_TYPE,
            entity_id=confirmed_ids[0] if confirmed_ids else None,
            entity_name=f"Confirmed {response.confirmed} adjustment(s)",
            previous_data={"status": AdjustmentStatus.PENDING},
            new_data={
                "status": AdjustmentStatus.CONFIRMED,
                "confirmed_ids": confirmed_ids,
                "confirmed_count": response.confirmed,
                "performed_by": performed_by,
            },
            description=f"Confirmed {response.confirmed} pending adjustment(s)",
        )
        response.success = not response.errors
        return response

    def reject_adjustments(
        self,
        adjustment_ids: Iterable[UUID],
        reason: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> AdjustmentBatchResponse:
        response = AdjustmentBatchResponse()
        entries = self._pending(adjustment_ids, response)
        if not entries:
            return response

        reason = reason or DEFAULT_REJECTION_REASON
        now = self.clock.now()
        rejected_by_deal: dict[UUID, list[Adjustment]] = defaultdict(list)
        rejected_ids = []
        for entry in entries:
            try:
                self.audit.update(
                    entry.id,
                    new_data={
                        **(entry.new_data or {}),
                        "status": AdjustmentStatus.REJECTED,
                        "rejected_at": now,
                        "rejection_reason": reason,
                        "rejected_by": performed_by,
                    },
                    is_undone=True,
                )
            except StorageError as e:
                logger.error(f"Failed to reject adjustment {entry.id}: {e}")
                response.errors.append(f"Failed to reject {entry.id}: {e}")
                continue
            response.rejected += 1
            rejected_ids.append(entry.id)
            adjustment = Adjustment.from_entry(entry)
            rejected_by_deal[adjustment.deal_id].append(adjustment)

        for deal_id, adjustments in rejected_by_deal.items():
            try:
                deal = self._load_deal(deal_id)
                restored = revert_participants(deal.participants, adjustments, only_if_current=True)
                if restored != deal.participants:
                    self._save_participants(deal, restored)
                    logger.info(f"Restored split of deal {deal.deal_id} after rejection")
            except PayoutServiceError as e:
                logger.error(f"Failed to restore split of deal {deal_id}: {e}")
                response.errors.append(f"Deal {deal_id}: {e}")

        self.audit.record_safely(
            action_type="reject",
            entity_type=BATCH_ENTITY_TYPE,
            entity_id=rejected_ids[0] if rejected_ids else None,
            entity_name=f"Rejected {response.rejected} adjustment(s)",
            previous_data={"status": AdjustmentStatus.PENDING},
            new_data={
                "status": AdjustmentStatus.REJECTED,
                "rejected_ids": rejected_ids,
                "rejection_reason": reason,
                "performed_by": performed_by,
            },
            description=f"Rejected {response.rejected} pending adjustment(s): {reason}",
        )
        response.success = not response.errors
        return response

    # ==================== READ SIDE ====================

    def get_adjustment(self, adjustment_id: UUID) -> Adjustment:
        entry = self.audit.get(adjustment_id)
        if entry is None or entry.entity_type != ENTITY_TYPE:
            raise AdjustmentNotFoundError(f"Adjustment {adjustment_id} not found")
        return Adjustment.from_entry(entry)

    def list_adjustments(
        self,
        deal_id: Optional[UUID] = None,
        status: Optional[AdjustmentStatus] = None,
    ) -> list[Adjustment]:
        # Rejected records are flagged undone, superseded ones carry superseded_at
        entries = [
            e for e in self._live_entries(deal_id, include_undone=True)
            if "superseded_at" not in (e.new_data or {})
        ]
        adjustments = [Adjustment.from_entry(e) for e in entries]
        if status is not None:
            adjustments = [a for a in adjustments if a.status == status]
        adjustments.sort(key=lambda a: a.created_at, reverse=True)
        return adjustments

    @staticmethod
    def group_key(adjustment: Adjustment) -> str:
        if adjustment.group_id:
            return str(adjustment.group_id)
        # Legacy records predate group ids
        minute = adjustment.created_at.replace(second=0, microsecond=0)
        return f"{adjustment.deal_id}:{minute.isoformat()}:{adjustment.status.value}"

    def list_groups(self, deal_id: Optional[UUID] = None) -> list[AdjustmentGroup]:
        grouped: dict[str, list[Adjustment]] = {}
        for adjustment in self.list_adjustments(deal_id):
            grouped.setdefault(self.group_key(adjustment), []).append(adjustment)

        groups = []
        for key, adjustments in grouped.items():
            statuses = {a.status for a in adjustments}
            for status in (AdjustmentStatus.PENDING, AdjustmentStatus.CONFIRMED, AdjustmentStatus.REJECTED):
                if status in statuses:
                    break
            first = min(adjustments, key=lambda a: a.created_at)
            groups.append(AdjustmentGroup(
                group_key=key,
                group_id=first.group_id,
                deal_id=first.deal_id,
                status=status,
                created_at=first.created_at,
                adjustments=adjustments,
                total_clawback=sum(
                    (abs(a.adjustment_amount) for a in adjustments if a.adjustment_type == AdjustmentType.CLAWBACK),
                    Decimal("0"),
                ),
                total_additional=sum(
                    (a.adjustment_amount for a in adjustments if a.adjustment_type == AdjustmentType.ADDITIONAL),
                    Decimal("0"),
                ),
            ))
        groups.sort(key=lambda g: g.created_at, reverse=True)
        return groups

    def summary(self) -> dict[str, AdjustmentSummary]:
        """Adjustment group counts per deal."""
        counts: dict[str, AdjustmentSummary] = {}
        for group in self.list_groups():
            item = counts.setdefault(str(group.deal_id), AdjustmentSummary())
            item.total += 1
            if group.status == AdjustmentStatus.PENDING:
                item.pending += 1
        return counts
