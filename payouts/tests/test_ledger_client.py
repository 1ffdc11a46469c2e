"""
Unit Tests for the External Ledger Client

Tests cover:
1. Cursor pagination and filtered reads
2. Batched writes with the inter-batch delay
3. Per-batch error collection
4. Configuration and transport failures
"""

import httpx
import pytest

from payouts.config import Settings
from payouts.errors import ExternalLedgerError, ExternalLedgerNotConfigured
from payouts.ledger_client import ExternalLedgerClient, build_match_formula


class TestFormulas:
    """Tests for filterByFormula construction."""

    def test_single_value(self):
        """One value is a bare equality."""
        assert build_match_formula("Payout ID", ["abc"]) == '{Payout ID}="abc"'

    def test_many_values_use_or(self):
        """Several values are OR-ed together."""
        assert build_match_formula("MID", ["001", "002"]) == 'OR({MID}="001",{MID}="002")'

    def test_quotes_are_escaped(self):
        """Embedded quotes cannot break out of the string literal."""
        assert build_match_formula("Merchant Name", ['Joe "The" Cafe']) == '{Merchant Name}="Joe \\"The\\" Cafe"'


class TestReads:
    """Tests for paginated reads."""

    def test_follows_offset_cursor_until_absent(self, ledger_client, fake_ledger):
        """Every page is fetched, stopping when no cursor is returned."""
        fake_ledger.page_size = 2
        for i in range(5):
            fake_ledger.add({"Payout ID": f"p{i}"})

        records = ledger_client.list_records()

        assert [r.fields["Payout ID"] for r in records] == ["p0", "p1", "p2", "p3", "p4"]
        assert fake_ledger.methods() == ["GET", "GET", "GET"]

    def test_find_records_filters_by_field(self, ledger_client, fake_ledger):
        """Only records with a matching field value are returned."""
        fake_ledger.add({"Payout ID": "p1"})
        fake_ledger.add({"Payout ID": "p2"})
        fake_ledger.add({"Payout ID": "p1"})

        records = ledger_client.find_records("Payout ID", ["p1"])

        # Verify duplicates are all returned
        assert len(records) == 2
        assert {r.fields["Payout ID"] for r in records} == {"p1"}

    def test_find_records_chunks_large_filters(self, fake_ledger):
        """Long id lists are split across several formula requests."""
        client = ExternalLedgerClient(
            api_key="key", base_id="app", table_id="tbl", filter_chunk_size=2,
            http_client=httpx.Client(transport=httpx.MockTransport(fake_ledger.handler)),
            sleep=lambda _: None,
        )
        for i in range(5):
            fake_ledger.add({"Payout ID": f"p{i}"})

        records = client.find_records("Payout ID", [f"p{i}" for i in range(5)])

        assert len(records) == 5
        assert fake_ledger.methods() == ["GET", "GET", "GET"]

    def test_requests_carry_bearer_token(self, ledger_client, fake_ledger):
        """Requests are authenticated with the configured key."""
        ledger_client.list_records()

        request = fake_ledger.requests[0]
        assert request.headers["Authorization"] == "Bearer key_test"
        assert request.url.path == "/v0/appTest/tblPayouts"

    def test_read_failure_raises(self, ledger_client, fake_ledger):
        """A failed page aborts the read instead of returning a partial set."""
        fake_ledger.fail_methods = {"GET"}

        with pytest.raises(ExternalLedgerError) as exc_info:
            ledger_client.list_records()

        assert exc_info.value.status_code == 422


class TestWrites:
    """Tests for batched writes."""

    def test_creates_are_batched_by_ten(self, ledger_client, fake_ledger, sleeps):
        """25 records take three requests, each followed by the rate-limit delay."""
        result = ledger_client.create_records([{"Payout ID": f"p{i}"} for i in range(25)])

        assert result.processed == 25
        assert len(result.records) == 25
        assert result.errors == []
        assert fake_ledger.methods() == ["POST", "POST", "POST"]
        assert sleeps == [0.22, 0.22, 0.22]
        assert len(fake_ledger.records) == 25

    def test_updates_send_record_ids(self, ledger_client, fake_ledger):
        """Updates patch the addressed record."""
        record_id = fake_ledger.add({"Payout ID": "p1", "Status": "pending"})

        result = ledger_client.update_records([(record_id, {"Status": "confirmed"})])

        assert result.processed == 1
        assert fake_ledger.records[record_id]["Status"] == "confirmed"

    def test_deletes_use_record_query_params(self, ledger_client, fake_ledger):
        """Deletes address records through records[] query parameters."""
        ids = [fake_ledger.add({"Payout ID": f"p{i}"}) for i in range(3)]

        result = ledger_client.delete_records(ids[:2])

        assert result.processed == 2
        assert fake_ledger.requests[0].url.params.get_list("records[]") == ids[:2]
        assert list(fake_ledger.records) == [ids[2]]

    def test_failed_batches_are_collected(self, ledger_client, fake_ledger, sleeps):
        """A failing batch is recorded and the remaining batches still run."""
        fake_ledger.fail_methods = {"POST"}

        result = ledger_client.create_records([{"Payout ID": f"p{i}"} for i in range(12)])

        assert result.processed == 0
        assert len(result.errors) == 2
        assert result.errors[0].startswith("Create batch 0: 422")
        assert result.errors[1].startswith("Create batch 1: 422")
        assert len(sleeps) == 2

    def test_non_json_reply_is_a_batch_error(self, ledger_client, fake_ledger, sleeps):
        """A 200 carrying an HTML body fails its batch without stopping the rest."""
        fake_ledger.garbled_methods = {"POST"}

        result = ledger_client.create_records([{"Payout ID": f"p{i}"} for i in range(12)])

        assert result.processed == 0
        assert [e.split(":")[0] for e in result.errors] == ["Create batch 0", "Create batch 1"]
        assert "invalid JSON" in result.errors[0]
        assert len(sleeps) == 2

    def test_non_json_read_raises(self, ledger_client, fake_ledger):
        fake_ledger.garbled_methods = {"GET"}

        with pytest.raises(ExternalLedgerError, match="invalid JSON"):
            ledger_client.list_records()

    def test_record_without_id_raises(self, settings):
        """A listed record missing its id is a ledger error."""
        def reply(request):
            return httpx.Response(200, json={"records": [{"fields": {"Payout ID": "p1"}}]})

        client = ExternalLedgerClient.from_settings(
            settings, http_client=httpx.Client(transport=httpx.MockTransport(reply)), sleep=lambda _: None,
        )

        with pytest.raises(ExternalLedgerError, match="Malformed"):
            client.list_records()

    def test_empty_write_sends_nothing(self, ledger_client, fake_ledger, sleeps):
        """No records means no requests and no delay."""
        result = ledger_client.delete_records([])

        assert result.processed == 0
        assert fake_ledger.requests == []
        assert sleeps == []


class TestConfiguration:
    """Tests for configuration and transport errors."""

    def test_missing_key_is_not_configured(self):
        """A client cannot be built without credentials."""
        settings = Settings(_env_file=None, EXTERNAL_LEDGER_API_KEY=None, EXTERNAL_LEDGER_TABLE_ID="tbl")

        with pytest.raises(ExternalLedgerNotConfigured):
            ExternalLedgerClient.from_settings(settings)

    def test_transport_errors_are_wrapped(self):
        """Network failures surface as ExternalLedgerError."""
        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = ExternalLedgerClient(
            api_key="key", base_id="app", table_id="tbl",
            http_client=httpx.Client(transport=httpx.MockTransport(unreachable)),
        )

        with pytest.raises(ExternalLedgerError) as exc_info:
            client.list_records()

        assert "connection refused" in str(exc_info.value)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
