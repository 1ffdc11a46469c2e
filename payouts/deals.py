"""
Deal lifecycle and cascades.

A deal groups one merchant's residual events under a participant split.
Changes to a deal's merchant identifier or participants cascade to its
payouts and source events; every cascade publishes the touched payouts to
the change queue for external sync.
"""

import logging
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence
from uuid import UUID, uuid4

from .allocation import require_exact_total, require_intake_total, sum_splits
from .audit import AuditLog
from .clock import Clock, SystemClock
from .errors import (
    DealNotFoundError,
    EventNotFoundError,
    MerchantIdConflictError,
    PayoutNotFoundError,
    ValidationError,
)
from .models import (
    AssignmentStatus,
    Deal,
    DealMutationResponse,
    EventConfirmationResponse,
    PaidStatus,
    PaidStatusResponse,
    Payout,
    PayoutType,
    RegisterEventRequest,
    SourceEvent,
    to_mid,
)
from .participants import normalize_participants
from .reconciler import PayoutReconciler
from .storage import InMemoryStorage
from .sync_queue import PayoutChangeQueue

logger = logging.getLogger(__name__)


def generate_deal_id() -> str:
    return f"deal_{uuid4().hex[:8]}"


class DealService:
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

    def _publish(self, payout_ids: Sequence[UUID]):
        if payout_ids and self.queue is not None:
            return self.queue.publish(payout_ids)
        return None

    # ==================== READS ====================

    def get_deal(self, deal_id: UUID) -> Deal:
        row = self.storage.get("deals", deal_id)
        if row is None:
            raise DealNotFoundError(f"Deal {deal_id} not found")
        return Deal(**row)

    def find_deal(self, mid: str, payout_type: Optional[PayoutType] = None) -> Optional[Deal]:
        eq: dict = {"mid": to_mid(mid)}
        if payout_type is not None:
            eq["payout_type"] = payout_type
        rows = self.storage.select("deals", eq=eq, order_by="created_at", limit=1)
        return Deal(**rows[0]) if rows else None

    def list_deals(self, mid: Optional[str] = None, offset: int = 0, limit: int = 100) -> list[Deal]:
        eq = {"mid": to_mid(mid)} if mid else {}
        rows = self.storage.select("deals", eq=eq, order_by="created_at", offset=offset, limit=limit)
        return [Deal(**row) for row in rows]

    def get_event(self, event_id: UUID) -> SourceEvent:
        row = self.storage.get("events", event_id)
        if row is None:
            raise EventNotFoundError(f"Event {event_id} not found")
        return SourceEvent(**row)

    def list_events(
        self,
        status: Optional[AssignmentStatus] = None,
        deal_id: Optional[UUID] = None,
    ) -> list[SourceEvent]:
        eq: dict = {}
        if status is not None:
            eq["assignment_status"] = AssignmentStatus.parse(status)
        if deal_id is not None:
            eq["deal_id"] = deal_id
        rows = self.storage.select_all("events", eq=eq, order_by="created_at")
        return [SourceEvent(**row) for row in rows]

    # ==================== EVENTS ====================

    def register_event(self, request: RegisterEventRequest) -> SourceEvent:
        """Record one imported residual line for a merchant and month."""
        if not request.mid:
            raise ValidationError("MID is required")
        now = self.clock.now()
        event_data = {
            "id": uuid4(),
            **request.model_dump(),
            "net_residual": request.fees - request.adjustments - request.chargebacks,
            "deal_id": None,
            "assignment_status": AssignmentStatus.UNASSIGNED,
            "created_at": now,
            "updated_at": now,
        }
        self.storage.insert("events", event_data)
        return SourceEvent(**event_data)

    def assign_event(
        self,
        event_id: UUID,
        participants: Optional[Sequence[Any]] = None,
        deal_id: Optional[UUID] = None,
        payout_type: Optional[PayoutType] = None,
        is_draft: bool = False,
    ) -> DealMutationResponse:
        """
        Link an event to a deal.

        With ``deal_id`` the existing deal and its participants are used.
        Otherwise the deal for (mid, category) is created or has its
        participants replaced. Intake accepts split totals of 80-105%.
        """
        event = self.get_event(event_id)
        payout_type = payout_type or event.payout_type
        now = self.clock.now()

        if deal_id is not None:
            deal = self.get_deal(deal_id)
            if not deal.participants:
                raise ValidationError(f"Deal {deal.deal_id} has no participants")
            created = False
        else:
            if not participants:
                raise ValidationError("Participants are required to assign an event")
            normalized = normalize_participants(participants)
            require_intake_total(normalized)
            stored = [p.model_dump() for p in normalized]

            existing = self.find_deal(event.mid, payout_type)
            if existing is not None:
                row = self.storage.update("deals", existing.id, {"participants": stored, "updated_at": now})
                created = False
            else:
                row = self.storage.insert("deals", {
                    "id": uuid4(),
                    "deal_id": generate_deal_id(),
                    "mid": event.mid,
                    "merchant_name": event.merchant_name,
                    "payout_type": payout_type,
                    "participants": stored,
                    "net_residual": Decimal("0"),
                    "is_legacy_import": False,
                    "created_at": now,
                    "updated_at": now,
                })
                created = True
            deal = Deal(**row)

        status = AssignmentStatus.UNASSIGNED if is_draft else AssignmentStatus.PENDING
        self.storage.update("events", event.id, {
            "deal_id": deal.id,
            "assignment_status": status,
            "payout_type": payout_type,
            "updated_at": now,
        })

        self.audit.record_safely(
            action_type="create" if created else "update",
            entity_type="assignment",
            entity_id=event.id,
            entity_name=event.merchant_name or event.mid,
            previous_data={"assignment_status": event.assignment_status, "deal_id": event.deal_id},
            new_data={"assignment_status": status, "deal_id": deal.id, "participants": deal.participants},
            description=(
                f"Assigned {event.merchant_name or event.mid} to "
                f"{', '.join(p.name or p.partner_id for p in deal.participants)}"
            ),
        )
        logger.info(f"Assigned event {event.id} to deal {deal.deal_id} ({status.value})")
        return DealMutationResponse(
            deal=deal,
            events_updated=1,
            message=f"Event assigned to deal {deal.deal_id} with status {status.value}",
        )

    def _load_deals(self, deal_ids: Iterable[UUID]) -> dict[UUID, Deal]:
        ids = set(deal_ids)
        if not ids:
            return {}
        return {row["id"]: Deal(**row) for row in self.storage.select_all("deals", in_={"id": ids})}

    def _refresh_net_residual(self, deal: Deal) -> Deal:
        events = self.storage.select_all(
            "events", eq={"deal_id": deal.id, "assignment_status": AssignmentStatus.CONFIRMED}
        )
        total = sum((SourceEvent(**row).net_residual for row in events), Decimal("0"))
        row = self.storage.update("deals", deal.id, {"net_residual": total, "updated_at": self.clock.now()})
        return Deal(**row)

    def confirm_events(self, event_ids: Iterable[UUID]) -> EventConfirmationResponse:
        """
        Confirm assigned events and materialize their payouts.

        Events without a deal, or whose deal has no participants, are skipped
        and counted. Fails only when nothing at all can be confirmed.
        """
        ids = list(dict.fromkeys(event_ids))
        if not ids:
            raise ValidationError("No event IDs provided")

        events = [SourceEvent(**row) for row in self.storage.select_all("events", in_={"id": set(ids)})]
        if not events:
            raise EventNotFoundError("No events found")

        deals = self._load_deals(e.deal_id for e in events if e.deal_id)
        without_deals = [e for e in events if not e.deal_id]
        without_participants = [
            e for e in events
            if e.deal_id and (e.deal_id not in deals or not deals[e.deal_id].participants)
        ]
        confirmable = [e for e in events if e.deal_id in deals and deals[e.deal_id].participants]

        if not confirmable:
            blocked = without_deals or without_participants
            reason = "deals" if without_deals else "participants"
            mids = ", ".join(e.mid for e in blocked)
            raise ValidationError(
                f"Cannot confirm events without {reason} assigned. Please assign partners first for MIDs: {mids}"
            )

        now = self.clock.now()
        confirmable_ids = {e.id for e in confirmable}
        self.storage.update_where(
            "events",
            {"assignment_status": AssignmentStatus.CONFIRMED, "updated_at": now},
            in_={"id": confirmable_ids},
        )
        for deal_id in {e.deal_id for e in confirmable}:
            deals[deal_id] = self._refresh_net_residual(deals[deal_id])

        existing = self.storage.update_where(
            "payouts",
            {"assignment_status": AssignmentStatus.CONFIRMED, "updated_at": now},
            in_={"event_id": confirmable_ids},
        )
        confirmed_events = [e.model_copy(update={"assignment_status": AssignmentStatus.CONFIRMED}) for e in confirmable]
        materialized = self.reconciler.materialize_payouts(confirmed_events, deals)
        payout_ids = list(dict.fromkeys([row["id"] for row in existing] + materialized.ids))

        self.audit.record_safely(
            action_type="bulk_update",
            entity_type="assignment",
            entity_id=",".join(str(i) for i in confirmable_ids),
            entity_name=f"{len(confirmable)} events",
            previous_data={"status": AssignmentStatus.PENDING},
            new_data={"status": AssignmentStatus.CONFIRMED, "event_ids": list(confirmable_ids)},
            description=(
                f"Confirmed {len(confirmable)} assignment(s)"
                + (f" (skipped {len(without_participants)} without participants)" if without_participants else "")
            ),
        )

        return EventConfirmationResponse(
            confirmed=len(confirmable),
            skipped=len(without_deals) + len(without_participants),
            skipped_without_deals=len(without_deals),
            skipped_without_participants=len(without_participants),
            payouts_created=len(materialized.created),
            payout_ids=payout_ids,
            sync=self._publish(payout_ids),
        )

    def unconfirm_events(self, event_ids: Iterable[UUID]) -> DealMutationResponse:
        """Revert confirmed events (and their payouts) to pending."""
        ids = list(dict.fromkeys(event_ids))
        if not ids:
            raise ValidationError("No event IDs provided")

        rows = self.storage.select_all(
            "events", in_={"id": set(ids)}, eq={"assignment_status": AssignmentStatus.CONFIRMED}
        )
        if not rows:
            raise ValidationError("No confirmed events found to unconfirm")

        now = self.clock.now()
        confirmed_ids = {row["id"] for row in rows}
        self.storage.update_where(
            "events", {"assignment_status": AssignmentStatus.PENDING, "updated_at": now}, in_={"id": confirmed_ids}
        )
        payouts = self.storage.update_where(
            "payouts", {"assignment_status": AssignmentStatus.PENDING, "updated_at": now}, in_={"event_id": confirmed_ids}
        )
        for deal in self._load_deals(row["deal_id"] for row in rows if row["deal_id"]).values():
            self._refresh_net_residual(deal)

        self.audit.record_safely(
            action_type="bulk_update",
            entity_type="assignment",
            entity_id=",".join(str(i) for i in confirmed_ids),
            entity_name=f"{len(rows)} events",
            previous_data={"status": AssignmentStatus.CONFIRMED},
            new_data={"status": AssignmentStatus.PENDING, "event_ids": list(confirmed_ids)},
            description=f"Unconfirmed {len(rows)} assignment(s), reverted to pending",
        )

        payout_ids = [row["id"] for row in payouts]
        return DealMutationResponse(
            events_updated=len(rows),
            payouts_updated=len(payout_ids),
            sync=self._publish(payout_ids),
            message=f"Unconfirmed {len(rows)} event(s)",
        )

    # ==================== DEAL MUTATIONS ====================

    def update_participants(self, deal_id: UUID, participants: Sequence[Any]) -> DealMutationResponse:
        """Replace a deal's participants (exactly 100%) and rebuild its payouts from scratch."""
        deal = self.get_deal(deal_id)
        normalized = normalize_participants(participants)
        require_exact_total(normalized)

        row = self.storage.update("deals", deal.id, {
            "participants": [p.model_dump() for p in normalized],
            "updated_at": self.clock.now(),
        })
        updated = Deal(**row)
        rebuild = self.reconciler.rebuild_payouts(updated)

        self.audit.record_safely(
            action_type="update",
            entity_type="deal",
            entity_id=deal.id,
            entity_name=deal.merchant_name or deal.mid,
            previous_data={"participants": deal.participants},
            new_data={"participants": updated.participants},
            description=f"Updated participants of {deal.deal_id} ({sum_splits(normalized)}%)",
        )
        return DealMutationResponse(
            deal=updated,
            payouts_deleted=rebuild.deleted,
            payouts_created=len(rebuild.created),
            sync=self._publish(rebuild.created),
            message=f"Rebuilt {len(rebuild.created)} payouts for {deal.deal_id}",
        )

    def change_merchant_id(self, deal_id: UUID, new_mid: str) -> DealMutationResponse:
        """
        Move a deal to a new MID, cascading to its payouts and events.

        Refused when any other deal already holds the MID.
        """
        deal = self.get_deal(deal_id)
        new_mid = to_mid(new_mid)
        if not new_mid:
            raise ValidationError("MID is required")
        if new_mid == deal.mid:
            return DealMutationResponse(deal=deal, message="MID unchanged")

        for other in self.storage.select("deals", eq={"mid": new_mid}, neq={"id": deal.id}, limit=1):
            logger.warning(f"MID {new_mid} already belongs to deal {other['deal_id']}")
            raise MerchantIdConflictError(new_mid, other["deal_id"])

        now = self.clock.now()
        row = self.storage.update("deals", deal.id, {"mid": new_mid, "updated_at": now})
        payouts = self.storage.update_where(
            "payouts", {"mid": new_mid, "updated_at": now}, eq={"deal_id": deal.deal_id}
        )
        events = self.storage.update_where(
            "events", {"mid": new_mid, "updated_at": now}, eq={"deal_id": deal.id}
        )
        logger.info(
            f"Updated MID from {deal.mid} to {new_mid} for deal {deal.deal_id}: "
            f"{len(payouts)} payouts, {len(events)} events"
        )

        self.audit.record_safely(
            action_type="update",
            entity_type="deal",
            entity_id=deal.id,
            entity_name=deal.merchant_name or new_mid,
            previous_data={"mid": deal.mid},
            new_data={"mid": new_mid},
            description=f"Changed MID of {deal.deal_id} from {deal.mid} to {new_mid}",
        )
        payout_ids = [p["id"] for p in payouts]
        return DealMutationResponse(
            deal=Deal(**row),
            payouts_updated=len(payouts),
            events_updated=len(events),
            sync=self._publish(payout_ids),
            message=f"MID changed to {new_mid}",
        )

    def delete_deal(self, deal_id: UUID) -> DealMutationResponse:
        """Delete a deal with its payouts and source events. Ledger records are left as orphans."""
        deal = self.get_deal(deal_id)
        payouts_deleted = self.storage.delete_where("payouts", eq={"deal_id": deal.deal_id})
        events_deleted = self.storage.delete_where("events", eq={"deal_id": deal.id})
        self.storage.delete("deals", deal.id)
        logger.info(f"Deleted deal {deal.deal_id}: {payouts_deleted} payouts, {events_deleted} events")

        self.audit.record_safely(
            action_type="delete",
            entity_type="deal",
            entity_id=deal.id,
            entity_name=deal.merchant_name or deal.mid,
            previous_data=deal,
            description=f"Deleted deal {deal.deal_id} with {payouts_deleted} payouts and {events_deleted} events",
        )
        return DealMutationResponse(
            payouts_deleted=payouts_deleted,
            events_deleted=events_deleted,
            message=f"Deleted deal {deal.deal_id}",
        )

    # ==================== PAID STATUS ====================

    def toggle_paid(self, payout_id: UUID) -> PaidStatusResponse:
        row = self.storage.get("payouts", payout_id)
        if row is None:
            raise PayoutNotFoundError(f"Payout {payout_id} not found")
        payout = Payout(**row)

        now = self.clock.now()
        if payout.paid_status == PaidStatus.PAID:
            paid_status, paid_at = PaidStatus.UNPAID, None
        else:
            paid_status, paid_at = PaidStatus.PAID, now
        self.storage.update("payouts", payout.id, {
            "paid_status": PaidStatus.parse(paid_status),
            "paid_at": paid_at,
            "updated_at": now,
        })

        self.audit.record_safely(
            action_type="update",
            entity_type="payout",
            entity_id=payout.id,
            entity_name=payout.merchant_name or payout.mid,
            previous_data={"paid_status": payout.paid_status, "paid_at": payout.paid_at},
            new_data={"paid_status": paid_status, "paid_at": paid_at},
            description=f"Marked payout for {payout.partner_name or payout.partner_id} as {paid_status.value}",
        )
        return PaidStatusResponse(
            updated=1,
            paid_status=paid_status,
            payout_ids=[payout.id],
            sync=self._publish([payout.id]),
            message=f"Payout marked as {paid_status.value}",
        )

    def mass_mark_paid(self, partner_ids: Iterable[str]) -> PaidStatusResponse:
        partner_ids = [p for p in dict.fromkeys(partner_ids) if p]
        if not partner_ids:
            raise ValidationError("No partner IDs provided")

        now = self.clock.now()
        rows = self.storage.update_where(
            "payouts",
            {"paid_status": PaidStatus.PAID, "paid_at": now, "updated_at": now},
            in_={"partner_id": set(partner_ids)},
            eq={"paid_status": PaidStatus.UNPAID},
        )
        payout_ids = [row["id"] for row in rows]

        if payout_ids:
            self.audit.record_safely(
                action_type="bulk_update",
                entity_type="payout",
                entity_id=",".join(partner_ids),
                entity_name=f"{len(partner_ids)} partners",
                previous_data={"paid_status": PaidStatus.UNPAID, "payout_ids": payout_ids},
                new_data={"paid_status": PaidStatus.PAID, "count": len(payout_ids), "partner_ids": partner_ids},
                description=f"Mass marked {len(payout_ids)} payouts as paid for {len(partner_ids)} partner(s)",
            )
        return PaidStatusResponse(
            updated=len(payout_ids),
            paid_status=PaidStatus.PAID,
            payout_ids=payout_ids,
            sync=self._publish(payout_ids),
            message=f"Marked {len(payout_ids)} payouts as paid",
        )
