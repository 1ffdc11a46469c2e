"""
Shared fixtures for payout tests.

The external ledger is faked at the HTTP layer: an httpx.MockTransport backed
by an in-memory record table that understands the ledger's paging cursor,
"{Field}=\"value\"" formulas and batched writes. Every fixture is opt-in.
"""

import json
import re
from decimal import Decimal
from typing import Optional

import httpx
import pytest

from payouts.api import build_services
from payouts.clock import DeterministicClock
from payouts.config import Settings
from payouts.ledger_client import ExternalLedgerClient
from payouts.models import RegisterEventRequest

FORMULA_TERM = re.compile(r'\{([^}]+)\}="((?:[^"\\]|\\.)*)"')


class FakeLedger:
    """In-memory stand-in for the external ledger's REST API."""

    def __init__(self, page_size: int = 100):
        self.page_size = page_size
        self.records: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.fail_methods: set[str] = set()
        self.garbled_methods: set[str] = set()
        self._next_id = 1

    def add(self, fields: dict) -> str:
        record_id = f"rec{self._next_id:05d}"
        self._next_id += 1
        self.records[record_id] = dict(fields)
        return record_id

    def by_payout(self, payout_id) -> list[dict]:
        return [
            {"id": rid, "fields": fields}
            for rid, fields in self.records.items()
            if fields.get("Payout ID") == str(payout_id)
        ]

    def methods(self) -> list[str]:
        return [r.method for r in self.requests]

    def _matches(self, fields: dict, formula: Optional[str]) -> bool:
        if not formula:
            return True
        terms = FORMULA_TERM.findall(formula)
        return any(str(fields.get(name, "")) == value.replace('\\"', '"') for name, value in terms)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method in self.fail_methods:
            return httpx.Response(422, json={"error": {"type": "INVALID_REQUEST"}})
        if request.method in self.garbled_methods:
            return httpx.Response(200, text="<html>gateway</html>")

        if request.method == "GET":
            params = request.url.params
            page_size = min(int(params.get("pageSize", self.page_size)), self.page_size)
            offset = int(params.get("offset", "0"))
            matched = [
                {"id": rid, "fields": fields, "createdTime": "2024-01-01T00:00:00.000Z"}
                for rid, fields in self.records.items()
                if self._matches(fields, params.get("filterByFormula"))
            ]
            page = matched[offset:offset + page_size]
            body: dict = {"records": page}
            if offset + page_size < len(matched):
                body["offset"] = str(offset + page_size)
            return httpx.Response(200, json=body)

        if request.method == "POST":
            created = []
            for item in json.loads(request.content)["records"]:
                record_id = self.add(item["fields"])
                created.append({"id": record_id, "fields": self.records[record_id]})
            return httpx.Response(200, json={"records": created})

        if request.method == "PATCH":
            updated = []
            for item in json.loads(request.content)["records"]:
                fields = self.records[item["id"]]
                for name, value in item["fields"].items():
                    if value is None:
                        fields.pop(name, None)
                    else:
                        fields[name] = value
                updated.append({"id": item["id"], "fields": fields})
            return httpx.Response(200, json={"records": updated})

        if request.method == "DELETE":
            deleted = []
            for record_id in request.url.params.get_list("records[]"):
                self.records.pop(record_id, None)
                deleted.append({"id": record_id, "deleted": True})
            return httpx.Response(200, json={"records": deleted})

        return httpx.Response(405)


@pytest.fixture
def clock():
    return DeterministicClock()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        EXTERNAL_LEDGER_API_KEY="key_test",
        EXTERNAL_LEDGER_BASE_ID="appTest",
        EXTERNAL_LEDGER_TABLE_ID="tblPayouts",
    )


@pytest.fixture
def fake_ledger():
    return FakeLedger()


@pytest.fixture
def sleeps():
    """Records every rate-limit delay instead of sleeping."""
    return []


@pytest.fixture
def ledger_client(settings, fake_ledger, sleeps):
    http = httpx.Client(transport=httpx.MockTransport(fake_ledger.handler))
    return ExternalLedgerClient.from_settings(settings, http_client=http, sleep=sleeps.append)


@pytest.fixture
def services(settings, ledger_client, clock):
    return build_services(settings, ledger=ledger_client, clock=clock)


@pytest.fixture
def make_deal(services):
    """Register, assign and confirm one event; returns the resulting (deal, event)."""

    def _make_deal(
        participants: list[dict],
        mid: str = "0012345",
        merchant_name: str = "Corner Cafe",
        fees: Decimal = Decimal("1000"),
        payout_month: str = "2024-01",
    ):
        event = services.deals.register_event(RegisterEventRequest(
            mid=mid, merchant_name=merchant_name, payout_month=payout_month, fees=fees,
        ))
        assigned = services.deals.assign_event(event.id, participants=participants)
        services.deals.confirm_events([event.id])
        return services.deals.get_deal(assigned.deal.id), services.deals.get_event(event.id)

    return _make_deal


def participant(partner_id: str, name: str, split) -> dict:
    return {"partner_airtable_id": partner_id, "partner_name": name, "split_pct": split}


@pytest.fixture
def sixty_forty():
    return [participant("recALICE", "Alice", 60), participant("recBOB", "Bob", 40)]


@pytest.fixture
def fifty_fifty():
    return [participant("recALICE", "Alice", 50), participant("recBOB", "Bob", 50)]
