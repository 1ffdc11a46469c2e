"""
Unit Tests for Partner Lookups

Tests cover:
1. TTL expiry driven by the injected clock
2. LRU eviction at capacity
3. Lookups against seeded partners
4. Partner UUIDs written onto payouts behind the feature flag
"""

import pytest
from decimal import Decimal
from uuid import UUID

from payouts.api import build_services
from payouts.models import RegisterEventRequest
from payouts.partners import PartnerLookup, TTLCache
from payouts.storage import InMemoryStorage

COMPANY_UUID = UUID("11111111-1111-1111-1111-111111111111")
FUND_UUID = UUID("22222222-2222-2222-2222-222222222222")


class TestTTLCache:
    """Tests for the TTL/LRU cache."""

    def test_entries_expire_after_ttl(self, clock):
        """An entry is gone once the clock passes its TTL."""
        cache = TTLCache(capacity=10, ttl_seconds=60, clock=clock)
        cache.set("recA", "Alice")

        clock.advance(59)
        assert cache.get("recA") == "Alice"

        clock.advance(2)
        assert cache.get("recA") is None
        assert len(cache) == 0

    def test_least_recently_used_is_evicted(self, clock):
        """Reading an entry protects it from eviction."""
        cache = TTLCache(capacity=2, ttl_seconds=60, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")

        cache.set("c", 3)

        assert cache.get("a") == 1
        assert cache.get("b") is None
        assert cache.get("c") == 3

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            TTLCache(capacity=0)


class TestPartnerLookup:
    """Tests for partner id resolution."""

    def test_seeded_partner_resolves(self, clock):
        lookup = PartnerLookup(InMemoryStorage(), TTLCache(clock=clock))

        partner = lookup.get_partner("recLUMINOCO0001")

        assert partner.id == COMPANY_UUID
        assert partner.name == "Lumino (Company)"
        assert lookup.get_partner_id("recLUMINOFD0001") == FUND_UUID

    def test_unknown_and_empty_ids(self, clock):
        lookup = PartnerLookup(InMemoryStorage(), TTLCache(clock=clock))

        assert lookup.get_partner("recNOPE") is None
        assert lookup.get_partner(None) is None

    def test_bulk_lookup_skips_missing(self, clock):
        """Ids without a partner record are left out of the mapping."""
        lookup = PartnerLookup(InMemoryStorage(), TTLCache(clock=clock))

        ids = lookup.get_partner_ids(["recLUMINOCO0001", "recNOPE", "", "recLUMINOFD0001"])

        assert ids == {"recLUMINOCO0001": COMPANY_UUID, "recLUMINOFD0001": FUND_UUID}

    def test_lookups_are_cached(self, clock):
        """A cached partner is served even after the row disappears, until the TTL passes."""
        storage = InMemoryStorage()
        lookup = PartnerLookup(storage, TTLCache(ttl_seconds=60, clock=clock))
        lookup.get_partner("recLUMINOCO0001")
        storage.delete("partners", COMPANY_UUID)

        assert lookup.get_partner_id("recLUMINOCO0001") == COMPANY_UUID

        clock.advance(61)
        assert lookup.get_partner_id("recLUMINOCO0001") is None


class TestPartnerIdFlag:
    """Tests for writing partner UUIDs onto payouts."""

    participants = [
        {"partner_airtable_id": "recLUMINOCO0001", "partner_name": "Lumino (Company)", "split_pct": 30},
        {"partner_airtable_id": "recALICE", "partner_name": "Alice", "split_pct": 70},
    ]

    def test_flag_off_leaves_partner_uuid_empty(self, services, make_deal):
        deal, _ = make_deal(self.participants)

        payouts = services.reconciler.fetch_local_payouts(deal_id=deal.deal_id)

        assert {p.partner_uuid for p in payouts} == {None}

    def test_flag_on_resolves_known_partners(self, settings, ledger_client, clock):
        """Known partners get their UUID; unknown ones stay empty."""
        services = build_services(
            settings.model_copy(update={"FEATURE_WRITE_PARTNER_ID": True}), ledger=ledger_client, clock=clock
        )
        event = services.deals.register_event(RegisterEventRequest(mid="0012345", fees=Decimal("1000")))
        deal = services.deals.assign_event(event.id, participants=self.participants).deal
        services.deals.confirm_events([event.id])

        payouts = {p.partner_id: p for p in services.reconciler.fetch_local_payouts(deal_id=deal.deal_id)}

        assert payouts["recLUMINOCO0001"].partner_uuid == COMPANY_UUID
        assert payouts["recLUMINOCO0001"].partner_role == "Company"
        assert payouts["recALICE"].partner_uuid is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
