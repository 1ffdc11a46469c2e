"""
Unit Tests for the HTTP API

Tests cover:
1. Health and event intake (MID kept as a string)
2. Adjustment submit / confirm over HTTP
3. Error mapping: 400, 404, 409, 503
"""

import pytest
from fastapi.testclient import TestClient
from uuid import uuid4

from payouts import api
from payouts.api import build_services
from payouts.models import RegisterEventRequest


@pytest.fixture
def client(monkeypatch, services):
    monkeypatch.setattr(api, "services", services)
    return TestClient(api.app)


def create_deal(client, participants, mid="0012345"):
    event = client.post("/events", json={"mid": mid, "merchant_name": "Corner Cafe", "fees": "1000"}).json()
    assigned = client.post("/events/assign", json={"event_id": event["id"], "participants": participants}).json()
    client.post("/events/confirm", json={"event_ids": [event["id"]]})
    return assigned["deal"]


class TestSystem:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["external_ledger_configured"] is True


class TestEvents:
    """Tests for event endpoints."""

    def test_register_keeps_mid_leading_zeros(self, client):
        response = client.post("/events", json={"mid": "0012345", "fees": 250.75})

        assert response.status_code == 201
        body = response.json()
        assert body["mid"] == "0012345"
        assert body["assignment_status"] == "unassigned"

    def test_confirm_creates_payouts(self, client, sixty_forty):
        event = client.post("/events", json={"mid": "0012345", "fees": "1000"}).json()
        client.post("/events/assign", json={"event_id": event["id"], "participants": sixty_forty})

        response = client.post("/events/confirm", json={"event_ids": [event["id"]]})

        assert response.status_code == 200
        assert response.json()["payouts_created"] == 2
        assert response.json()["sync"]["created"] == 2

    def test_empty_confirm_is_bad_request(self, client):
        response = client.post("/events/confirm", json={"event_ids": []})

        assert response.status_code == 400
        assert response.json()["detail"]["success"] is False


class TestAdjustments:
    """Tests for adjustment endpoints."""

    def test_submit_and_confirm(self, client, sixty_forty, fifty_fifty):
        deal = create_deal(client, sixty_forty)

        submitted = client.post("/adjustments", json={"deal_id": deal["id"], "participants": fifty_fifty})
        assert submitted.status_code == 201
        ids = [a["id"] for a in submitted.json()["adjustments"]]

        confirmed = client.post("/adjustments/confirm", json={"adjustment_ids": ids})

        assert confirmed.status_code == 200
        assert confirmed.json()["confirmed"] == 2
        listed = client.get("/adjustments", params={"deal_id": deal["id"], "status": "confirmed"}).json()
        assert len(listed) == 2

    def test_bad_total_is_400_with_error_type(self, client, sixty_forty):
        deal = create_deal(client, sixty_forty)

        response = client.post("/adjustments", json={
            "deal_id": deal["id"],
            "participants": [
                {"partner_airtable_id": "recALICE", "partner_name": "Alice", "split_pct": 49},
                {"partner_airtable_id": "recBOB", "partner_name": "Bob", "split_pct": 50},
            ],
        })

        assert response.status_code == 400
        assert response.json()["detail"]["error_type"] == "SplitTotalError"

    def test_unknown_adjustment_is_404(self, client):
        response = client.get(f"/adjustments/{uuid4()}")

        assert response.status_code == 404

    def test_amounts_serialize_as_strings(self, client, sixty_forty, fifty_fifty):
        """Decimals cross the wire as strings."""
        deal = create_deal(client, sixty_forty)

        body = client.post("/adjustments", json={"deal_id": deal["id"], "participants": fifty_fifty}).json()

        assert {a["adjustment_amount"] for a in body["adjustments"]} == {"-100", "100"}


class TestDeals:
    """Tests for deal endpoints."""

    def test_mid_conflict_is_409(self, client, sixty_forty):
        deal = create_deal(client, sixty_forty)
        create_deal(client, sixty_forty, mid="0099999")

        response = client.patch(f"/deals/{deal['id']}/mid", json={"mid": "0099999"})

        assert response.status_code == 409
        assert response.json()["detail"]["error_type"] == "MerchantIdConflictError"

    def test_unknown_deal_is_404(self, client):
        assert client.get(f"/deals/{uuid4()}").status_code == 404


class TestLedger:
    """Tests for external ledger endpoints."""

    def test_compare_without_ledger_is_503(self, monkeypatch, settings, clock):
        unconfigured = build_services(settings.model_copy(update={"EXTERNAL_LEDGER_API_KEY": None}), clock=clock)
        monkeypatch.setattr(api, "services", unconfigured)

        response = TestClient(api.app).post("/ledger/compare")

        assert response.status_code == 503
        assert response.json()["detail"]["error_type"] == "ExternalLedgerNotConfigured"

    def test_compare_reports_new_records(self, client, services, sixty_forty):
        event = services.deals.register_event(RegisterEventRequest(mid="0012345", fees=1000))
        services.deals.assign_event(event.id, participants=sixty_forty)
        services.queue.immediate = False
        services.deals.confirm_events([event.id])

        response = client.post("/ledger/compare")

        assert response.status_code == 200
        assert len(response.json()["new_records"]) == 2

    def test_delete_records_requires_ids(self, client):
        response = client.post("/ledger/delete-records", json={"record_ids": []})

        assert response.status_code == 400


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
