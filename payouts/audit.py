import logging
from typing import Any, Iterable, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel
from pydantic_core import to_jsonable_python

from .clock import Clock, SystemClock
from .errors import StorageError
from .models import AuditEntry, AuditHistoryResponse
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

TABLE = "action_history"


def snapshot(value: Any) -> Any:
    """JSON-safe copy of a model, dict or list for before/after audit fields."""
    if value is None:
        return None
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return to_jsonable_python(value)


class AuditLog:
    """Append-only change history, also the backing store for adjustment records."""

    def __init__(self, storage: InMemoryStorage, clock: Optional[Clock] = None):
        self.storage = storage
        self.clock = clock or SystemClock()

    def record(
        self,
        action_type: str,
        entity_type: str,
        entity_id: Optional[Any] = None,
        entity_name: Optional[str] = None,
        previous_data: Any = None,
        new_data: Any = None,
        description: str = "",
        request_id: Optional[str] = None,
    ) -> AuditEntry:
        entry_data = {
            "id": uuid4(),
            "action_type": action_type,
            "entity_type": entity_type,
            "entity_id": str(entity_id) if entity_id is not None else None,
            "entity_name": entity_name,
            "previous_data": snapshot(previous_data),
            "new_data": snapshot(new_data),
            "description": description,
            "is_undone": False,
            "request_id": request_id,
            "created_at": self.clock.now(),
        }
        self.storage.insert(TABLE, entry_data)
        return AuditEntry(**entry_data)

    def record_safely(self, *args: Any, **kwargs: Any) -> Optional[AuditEntry]:
        """Best-effort variant for history that must never fail the caller's mutation."""
        try:
            return self.record(*args, **kwargs)
        except StorageError:
            logger.exception(f"Failed to write audit entry: {kwargs.get('description', '')}")
            return None

    def get(self, entry_id: UUID) -> Optional[AuditEntry]:
        row = self.storage.get(TABLE, entry_id)
        return AuditEntry(**row) if row else None

    def find(self, entry_ids: Iterable[UUID]) -> list[AuditEntry]:
        ids = list(entry_ids)
        if not ids:
            return []
        rows = self.storage.select_all(TABLE, in_={"id": set(ids)})
        by_id = {row["id"]: AuditEntry(**row) for row in rows}
        return [by_id[i] for i in ids if i in by_id]

    def update(
        self,
        entry_id: UUID,
        new_data: Optional[dict] = None,
        is_undone: Optional[bool] = None,
    ) -> AuditEntry:
        changes: dict = {}
        if new_data is not None:
            changes["new_data"] = snapshot(new_data)
        if is_undone is not None:
            changes["is_undone"] = is_undone
        row = self.storage.update(TABLE, entry_id, changes)
        if row is None:
            raise StorageError(f"Audit entry {entry_id} not found")
        return AuditEntry(**row)

    def entries(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[Any] = None,
        include_undone: bool = False,
    ) -> list[AuditEntry]:
        eq: dict = {}
        if entity_type:
            eq["entity_type"] = entity_type
        if entity_id is not None:
            eq["entity_id"] = str(entity_id)
        if not include_undone:
            eq["is_undone"] = False
        rows = self.storage.select_all(TABLE, eq=eq, order_by="created_at")
        return [AuditEntry(**row) for row in rows]

    def query(
        self,
        entity_id: Optional[Any] = None,
        entity_type: Optional[str] = None,
        search: Optional[str] = None,
        include_undone: bool = True,
        offset: int = 0,
        limit: int = 50,
    ) -> AuditHistoryResponse:
        entries = self.entries(entity_type, entity_id, include_undone)
        if search:
            needle = search.lower()
            entries = [
                e for e in entries
                if needle in (e.description or "").lower() or needle in (e.entity_name or "").lower()
            ]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return AuditHistoryResponse(
            entries=entries[offset:offset + limit],
            total_count=len(entries),
        )
