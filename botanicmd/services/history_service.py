"""Per-session identification history (newest first, bounded)."""

import uuid
from datetime import UTC, datetime
from typing import Literal

import structlog

from botanicmd.models.workflow import HistoryEntry

logger = structlog.get_logger(__name__)

MAX_HISTORY = 100


def _utcnow() -> datetime:
    return datetime.now(UTC)


class HistoryService:
    def __init__(self, max_entries: int = MAX_HISTORY, now_provider=_utcnow) -> None:
        self.max_entries = max_entries
        self.now_provider = now_provider
        self._entries: list[HistoryEntry] = []

    def add_entry(
        self,
        *,
        plant_name: str,
        entry_type: Literal["image", "text"],
        scientific_name: str | None = None,
        query: str | None = None,
        result: Literal["success", "error"] = "success",
    ) -> HistoryEntry:
        entry = HistoryEntry(
            id=str(uuid.uuid4()),
            plant_name=plant_name,
            scientific_name=scientific_name,
            date=self.now_provider(),
            type=entry_type,
            query=query,
            result=result,
        )
        self._entries = [entry, *self._entries][: self.max_entries]
        logger.debug("history_entry_added", entry_id=entry.id, plant_name=plant_name)
        return entry

    def get_history(self) -> list[HistoryEntry]:
        return sorted(self._entries, key=lambda e: e.date, reverse=True)

    def delete_entry(self, entry_id: str) -> bool:
        before = len(self._entries)
        self._entries = [e for e in self._entries if e.id != entry_id]
        return len(self._entries) != before

    def clear(self) -> None:
        self._entries = []
