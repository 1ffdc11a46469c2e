"""
Outbound change queue.

Local mutations publish the ids of the payouts they touched; the consumer
(normally ``PayoutReconciler.sync_payouts``) pushes them to the external
ledger. In immediate mode the queue drains inline right after publishing.
External sync is best-effort: a failure is logged and reported on the
result, never raised into the mutation that triggered it.
"""

import logging
from typing import Callable, Iterable, Optional
from uuid import UUID

from .errors import ExternalLedgerNotConfigured, PayoutServiceError
from .models import SyncResult

logger = logging.getLogger(__name__)

Consumer = Callable[[list[UUID]], SyncResult]


class PayoutChangeQueue:
    def __init__(self, consumer: Optional[Consumer] = None, immediate: bool = True):
        self.consumer = consumer
        self.immediate = immediate
        self._pending: dict[UUID, None] = {}

    def bind(self, consumer: Consumer) -> None:
        self.consumer = consumer

    @property
    def pending(self) -> list[UUID]:
        return list(self._pending)

    def publish(self, payout_ids: Iterable[UUID]) -> Optional[SyncResult]:
        for payout_id in payout_ids:
            self._pending[payout_id] = None
        if self.immediate:
            return self.drain()
        return None

    def drain(self) -> Optional[SyncResult]:
        if not self._pending or self.consumer is None:
            return None

        payout_ids = list(self._pending)
        self._pending.clear()
        try:
            return self.consumer(payout_ids)
        except ExternalLedgerNotConfigured as e:
            logger.info(f"Skipping external sync of {len(payout_ids)} payout(s): {e}")
            return SyncResult(error=str(e))
        except PayoutServiceError as e:
            logger.warning(f"External sync of {len(payout_ids)} payout(s) failed: {e}")
            return SyncResult(error=str(e))
