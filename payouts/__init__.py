"""
Residual Payout Adjustment & Reconciliation Engine

This module provides:
- Split-percentage to dollar allocation math
- Participant normalization across historical field spellings
- Adjustment lifecycle: pending → confirmed / rejected, with audit history
- Deal cascades for merchant id and participant changes
- Idempotent, duplicate-collapsing sync of payouts to an external ledger
"""

from .models import (
    AdjustmentStatus,
    AssignmentStatus,
    PaidStatus,
    Participant,
    Deal,
    SourceEvent,
    Payout,
    Adjustment,
)
from .reconciler import PayoutReconciler
from .workflow import AdjustmentService
from .deals import DealService

__all__ = [
    "AdjustmentStatus",
    "AssignmentStatus",
    "PaidStatus",
    "Participant",
    "Deal",
    "SourceEvent",
    "Payout",
    "Adjustment",
    "PayoutReconciler",
    "AdjustmentService",
    "DealService",
]
