import copy
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from .errors import StorageError

DEFAULT_MAX_PAGE_SIZE = 1000


def _matches(
    row: dict,
    eq: Optional[dict] = None,
    neq: Optional[dict] = None,
    in_: Optional[dict] = None,
    gt: Optional[dict] = None,
    gte: Optional[dict] = None,
    lte: Optional[dict] = None,
) -> bool:
    for key, value in (eq or {}).items():
        if row.get(key) != value:
            return False
    for key, value in (neq or {}).items():
        if row.get(key) == value:
            return False
    for key, values in (in_ or {}).items():
        if row.get(key) not in values:
            return False
    for key, value in (gt or {}).items():
        if row.get(key) is None or not row[key] > value:
            return False
    for key, value in (gte or {}).items():
        if row.get(key) is None or not row[key] >= value:
            return False
    for key, value in (lte or {}).items():
        if row.get(key) is None or not row[key] <= value:
            return False
    return True


class InMemoryStorage:
    """
    Row store with filter predicates and server-side paging.

    Reads never return more than ``max_page_size`` rows per call, so callers
    that need every matching row must page explicitly (see ``select_all``).
    Rows are copied on the way in and out.
    """

    TABLES = ("deals", "events", "payouts", "partners", "action_history")

    def __init__(self, max_page_size: int = DEFAULT_MAX_PAGE_SIZE):
        self.max_page_size = max_page_size
        self.tables: dict[str, dict[UUID, dict]] = {name: {} for name in self.TABLES}
        self._seed_data()

    def _seed_data(self):
        now = datetime.now(timezone.utc)
        partners = [
            (UUID("11111111-1111-1111-1111-111111111111"), "recLUMINOCO0001", "Lumino (Company)", "Company"),
            (UUID("22222222-2222-2222-2222-222222222222"), "recLUMINOFD0001", "Lumino Income Fund LP", "Fund I"),
        ]
        for partner_id, external_id, name, role in partners:
            self.tables["partners"][partner_id] = {
                "id": partner_id, "external_id": external_id,
                "external_source": "airtable", "name": name, "role": role,
                "email": None, "is_active": True, "created_at": now,
            }

    def _table(self, name: str) -> dict[UUID, dict]:
        try:
            return self.tables[name]
        except KeyError:
            raise StorageError(f"Unknown table: {name}")

    def insert(self, table: str, row: dict) -> dict:
        rows = self._table(table)
        if row.get("id") is None:
            raise StorageError(f"Row for {table} has no id")
        if row["id"] in rows:
            raise StorageError(f"Duplicate id {row['id']} in {table}")
        rows[row["id"]] = copy.deepcopy(row)
        return copy.deepcopy(row)

    def get(self, table: str, row_id: UUID) -> Optional[dict]:
        row = self._table(table).get(row_id)
        return copy.deepcopy(row) if row is not None else None

    def select(
        self,
        table: str,
        *,
        eq: Optional[dict] = None,
        neq: Optional[dict] = None,
        in_: Optional[dict] = None,
        gt: Optional[dict] = None,
        gte: Optional[dict] = None,
        lte: Optional[dict] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> list[dict]:
        matched = [
            row for row in list(self._table(table).values())
            if _matches(row, eq, neq, in_, gt, gte, lte)
        ]
        if order_by:
            present = [r for r in matched if r.get(order_by) is not None]
            missing = [r for r in matched if r.get(order_by) is None]
            present.sort(key=lambda r: r[order_by], reverse=descending)
            matched = present + missing

        page_size = self.max_page_size if limit is None else min(limit, self.max_page_size)
        return [copy.deepcopy(r) for r in matched[offset:offset + page_size]]

    def select_all(self, table: str, *, page_size: Optional[int] = None, **filters: Any) -> list[dict]:
        page_size = page_size or self.max_page_size
        rows: list[dict] = []
        offset = 0
        while True:
            page = self.select(table, offset=offset, limit=page_size, **filters)
            rows.extend(page)
            if len(page) < page_size:
                break
            offset += page_size
        return rows

    def count(self, table: str, **filters: Any) -> int:
        return sum(1 for row in list(self._table(table).values()) if _matches(row, **filters))

    def update(self, table: str, row_id: UUID, changes: dict) -> Optional[dict]:
        rows = self._table(table)
        row = rows.get(row_id)
        if row is None:
            return None
        row.update(copy.deepcopy(changes))
        return copy.deepcopy(row)

    def update_where(self, table: str, changes: dict, **filters: Any) -> list[dict]:
        updated = []
        for row in list(self._table(table).values()):
            if _matches(row, **filters):
                row.update(copy.deepcopy(changes))
                updated.append(copy.deepcopy(row))
        return updated

    def delete(self, table: str, row_id: UUID) -> bool:
        return self._table(table).pop(row_id, None) is not None

    def delete_where(self, table: str, **filters: Any) -> int:
        rows = self._table(table)
        doomed = [row_id for row_id, row in list(rows.items()) if _matches(row, **filters)]
        return sum(1 for row_id in doomed if rows.pop(row_id, None) is not None)
