"""
Split-percentage to dollar allocation math.

All functions are pure and operate on ``Decimal``. Amounts are not rounded;
callers round for display with ``round_currency``.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Optional, Union

from .errors import SplitTotalError
from .models import AdjustmentType

HUNDRED = Decimal("100")
INTAKE_MIN_TOTAL = Decimal("80")
INTAKE_MAX_TOTAL = Decimal("105")
CENT = Decimal("0.01")

Number = Union[Decimal, int, float, str]


def as_decimal(value: Optional[Number]) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, str) and value.strip() == "":
        return Decimal("0")
    return Decimal(value)


def compute_amount(base: Number, split_pct: Number) -> Decimal:
    return as_decimal(base) * as_decimal(split_pct) / HUNDRED


def compute_delta(base: Number, old_pct: Number, new_pct: Number) -> Decimal:
    return as_decimal(base) * (as_decimal(new_pct) - as_decimal(old_pct)) / HUNDRED


def classify_delta(delta: Number) -> Optional[AdjustmentType]:
    """Negative deltas are clawbacks, positive are additional payouts, zero is a no-op."""
    delta = as_decimal(delta)
    if delta < 0:
        return AdjustmentType.CLAWBACK
    if delta > 0:
        return AdjustmentType.ADDITIONAL
    return None


def _split_of(participant: Any) -> Decimal:
    if isinstance(participant, dict):
        return as_decimal(participant.get("split_pct"))
    return as_decimal(getattr(participant, "split_pct", None))


def sum_splits(participants: Iterable[Any]) -> Decimal:
    return sum((_split_of(p) for p in participants), Decimal("0"))


def is_within_intake_tolerance(total: Number) -> bool:
    total = as_decimal(total)
    return INTAKE_MIN_TOTAL <= total <= INTAKE_MAX_TOTAL


def require_intake_total(participants: Iterable[Any]) -> Decimal:
    total = sum_splits(participants)
    if not is_within_intake_tolerance(total):
        raise SplitTotalError(total, f"should be between {INTAKE_MIN_TOTAL}% and {INTAKE_MAX_TOTAL}%")
    return total


def require_exact_total(participants: Iterable[Any]) -> Decimal:
    total = sum_splits(participants)
    if total != HUNDRED:
        raise SplitTotalError(total, "must equal exactly 100%")
    return total


def round_currency(amount: Number) -> Decimal:
    return as_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)
