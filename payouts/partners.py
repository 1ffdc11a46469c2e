"""
Partner lookups keyed by external partner identifier.

Resolves external ids (e.g. "recABC123") to internal partner UUIDs through a
TTL cache. Capacity, TTL and the clock are injected so expiry is controllable.
"""

import logging
from collections import OrderedDict
from typing import Generic, Hashable, Iterable, Optional, TypeVar

from .clock import Clock, SystemClock
from .models import Partner
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """Least-recently-used cache whose entries expire ``ttl_seconds`` after insertion."""

    def __init__(self, capacity: int = 1024, ttl_seconds: float = 300.0, clock: Optional[Clock] = None):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self.clock = clock or SystemClock()
        self._entries: "OrderedDict[K, tuple[float, V]]" = OrderedDict()

    def get(self, key: K) -> Optional[V]:
        item = self._entries.get(key)
        if item is None:
            return None
        stored_at, value = item
        if self.clock.monotonic() - stored_at > self.ttl_seconds:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    def set(self, key: K, value: V) -> None:
        self._entries[key] = (self.clock.monotonic(), value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class PartnerLookup:
    def __init__(self, storage: InMemoryStorage, cache: Optional[TTLCache[str, Partner]] = None):
        self.storage = storage
        self.cache = cache if cache is not None else TTLCache()

    def get_partner(self, external_id: Optional[str]) -> Optional[Partner]:
        if not external_id:
            return None
        cached = self.cache.get(external_id)
        if cached:
            return cached

        rows = self.storage.select("partners", eq={"external_id": external_id}, limit=1)
        if not rows:
            return None
        partner = Partner(**rows[0])
        self.cache.set(external_id, partner)
        return partner

    def get_partner_id(self, external_id: Optional[str]):
        partner = self.get_partner(external_id)
        return partner.id if partner else None

    def get_partner_ids(self, external_ids: Iterable[str]) -> dict:
        result = {}
        uncached = []
        for external_id in external_ids:
            if not external_id:
                continue
            cached = self.cache.get(external_id)
            if cached:
                result[external_id] = cached.id
            else:
                uncached.append(external_id)

        if uncached:
            rows = self.storage.select_all("partners", in_={"external_id": set(uncached)})
            for row in rows:
                partner = Partner(**row)
                self.cache.set(partner.external_id, partner)
                result[partner.external_id] = partner.id

        missing = [i for i in uncached if i not in result]
        if missing:
            logger.warning(f"Participants without partner records: {', '.join(missing)}")
        return result
