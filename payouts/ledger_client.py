"""
External ledger client.

Thin wrapper over the external tabular ledger's REST API:
- Paginated reads driven by the opaque ``offset`` cursor the service returns
- Filtered reads via ``filterByFormula``
- Batched create / update / delete (at most ``batch_size`` records per call)
- A fixed delay after every write batch to respect the requests-per-second limit

A failed batch is recorded and the next batch is attempted; nothing is retried.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Sequence

import httpx

from .config import Settings
from .errors import ExternalLedgerError, ExternalLedgerNotConfigured
from .models import LedgerRecord

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Outcome of a batched write."""
    processed: int = 0
    records: list[LedgerRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def quote_formula_value(value: str) -> str:
    return '"' + str(value).replace("\\", "\\\\").replace('"', '\\"') + '"'


def build_match_formula(field_name: str, values: Sequence[str]) -> str:
    parts = [f"{{{field_name}}}={quote_formula_value(v)}" for v in values]
    if len(parts) == 1:
        return parts[0]
    return f"OR({','.join(parts)})"


def _chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class ExternalLedgerClient:
    def __init__(
        self,
        api_key: str,
        base_id: str,
        table_id: str,
        api_url: str = "https://api.airtable.com/v0",
        batch_size: int = 10,
        page_size: int = 100,
        rate_limit_seconds: float = 0.22,
        timeout: float = 30.0,
        filter_chunk_size: int = 50,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not api_key or not table_id:
            raise ExternalLedgerNotConfigured()
        self.api_key = api_key
        self.base_id = base_id
        self.table_id = table_id
        self.api_url = api_url.rstrip("/")
        self.batch_size = batch_size
        self.page_size = page_size
        self.rate_limit_seconds = rate_limit_seconds
        self.filter_chunk_size = filter_chunk_size
        self.sleep = sleep
        self._owns_client = http_client is None
        self.http = http_client or httpx.Client(timeout=timeout)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "ExternalLedgerClient":
        if not settings.external_ledger_configured:
            raise ExternalLedgerNotConfigured()
        return cls(
            api_key=settings.EXTERNAL_LEDGER_API_KEY,
            base_id=settings.EXTERNAL_LEDGER_BASE_ID,
            table_id=settings.EXTERNAL_LEDGER_TABLE_ID,
            api_url=settings.EXTERNAL_LEDGER_API_URL,
            batch_size=settings.EXTERNAL_LEDGER_BATCH_SIZE,
            page_size=settings.EXTERNAL_LEDGER_PAGE_SIZE,
            rate_limit_seconds=settings.EXTERNAL_LEDGER_RATE_LIMIT_SECONDS,
            timeout=settings.EXTERNAL_LEDGER_TIMEOUT_SECONDS,
            filter_chunk_size=settings.EXTERNAL_LEDGER_FILTER_CHUNK_SIZE,
            http_client=http_client,
            sleep=sleep,
        )

    @property
    def table_url(self) -> str:
        return f"{self.api_url}/{self.base_id}/{self.table_id}"

    def close(self) -> None:
        if self._owns_client:
            self.http.close()

    def _request(self, method: str, params: Any = None, json: Optional[dict] = None) -> dict:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            response = self.http.request(method, self.table_url, headers=headers, params=params, json=json)
        except httpx.HTTPError as e:
            raise ExternalLedgerError(f"{method} {self.table_url} failed: {e}")

        if response.status_code >= 400:
            logger.error(f"External ledger error: {response.status_code} - {response.text}")
            raise ExternalLedgerError(
                f"{response.status_code} - {response.text}", status_code=response.status_code
            )
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"External ledger returned a non-JSON body: {response.text[:200]}")
            raise ExternalLedgerError(
                f"{response.status_code} - invalid JSON response: {e}", status_code=response.status_code
            )
        if not isinstance(data, dict):
            raise ExternalLedgerError(
                f"{response.status_code} - unexpected response body", status_code=response.status_code
            )
        return data

    # ==================== READS ====================

    def list_records(self, filter_formula: Optional[str] = None) -> list[LedgerRecord]:
        """Fetch every record matching the formula, following the offset cursor to the end."""
        records: list[LedgerRecord] = []
        offset: Optional[str] = None
        while True:
            params = {"pageSize": str(self.page_size)}
            if filter_formula:
                params["filterByFormula"] = filter_formula
            if offset:
                params["offset"] = offset

            data = self._request("GET", params=params)
            try:
                for raw in data.get("records") or []:
                    records.append(LedgerRecord(
                        id=raw["id"], fields=raw.get("fields") or {}, created_time=raw.get("createdTime"),
                    ))
            except (KeyError, TypeError, AttributeError, ValueError) as e:
                raise ExternalLedgerError(f"Malformed record in list response: {e}")

            offset = data.get("offset")
            if not offset:
                break
        return records

    def find_records(self, field_name: str, values: Iterable[str]) -> list[LedgerRecord]:
        unique = list(dict.fromkeys(str(v) for v in values if v))
        records: list[LedgerRecord] = []
        for chunk in _chunks(unique, self.filter_chunk_size):
            records.extend(self.list_records(build_match_formula(field_name, chunk)))
        return records

    # ==================== WRITES ====================

    def _run_batches(
        self,
        label: str,
        items: Sequence[Any],
        send: Callable[[Sequence[Any]], list[LedgerRecord]],
    ) -> BatchResult:
        result = BatchResult()
        for index, batch in enumerate(_chunks(items, self.batch_size)):
            try:
                written = send(batch)
                result.processed += len(batch)
                result.records.extend(written)
            except ExternalLedgerError as e:
                message = f"{label} batch {index}: {e}"
                result.errors.append(message)
                logger.error(f"{label} failed: {e}")
            self.sleep(self.rate_limit_seconds)
        return result

    def _records_from(self, data: dict) -> list[LedgerRecord]:
        try:
            return [
                LedgerRecord(id=r["id"], fields=r.get("fields") or {}, created_time=r.get("createdTime"))
                for r in data.get("records") or []
                if "id" in r
            ]
        except (TypeError, AttributeError, ValueError) as e:
            raise ExternalLedgerError(f"Malformed record in write response: {e}")

    def create_records(self, fields_list: Sequence[dict]) -> BatchResult:
        def send(batch):
            data = self._request("POST", json={"records": [{"fields": f} for f in batch]})
            return self._records_from(data)
        return self._run_batches("Create", list(fields_list), send)

    def update_records(self, updates: Sequence[tuple[str, dict]]) -> BatchResult:
        def send(batch):
            body = {"records": [{"id": record_id, "fields": fields} for record_id, fields in batch]}
            return self._records_from(self._request("PATCH", json=body))
        return self._run_batches("Update", list(updates), send)

    def delete_records(self, record_ids: Sequence[str]) -> BatchResult:
        def send(batch):
            self._request("DELETE", params=[("records[]", record_id) for record_id in batch])
            return []
        return self._run_batches("Delete", list(record_ids), send)
