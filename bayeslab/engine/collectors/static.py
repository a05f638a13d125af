"""In-memory HistorySource for offline analysis from exported history files."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path

from bayeslab.errors import FetchError
from bayeslab.models import HistoryEntry, sort_history

logger = logging.getLogger(__name__)


class StaticHistorySource:
    """Serves pre-loaded history, clipped to the requested window.

    Like Home Assistant, the state in effect at ``start`` (the last change
    before it) is included as the first row.
    """

    def __init__(self, history_by_entity: dict[str, list[HistoryEntry]]):
        self._history = {entity_id: sort_history(rows) for entity_id, rows in history_by_entity.items()}

    @classmethod
    def from_file(cls, path: str | Path) -> StaticHistorySource:
        """Load ``{entity_id: [{"state": ..., "last_changed": ...}, ...]}`` JSON."""
        with open(path) as f:
            raw = json.load(f)
        if not isinstance(raw, dict):
            raise ValueError(f"{path}: expected an object keyed by entity_id")
        history = {
            entity_id: [HistoryEntry.from_ha({**row, "entity_id": entity_id}) for row in rows]
            for entity_id, rows in raw.items()
        }
        logger.info("Loaded history for %d entities from %s", len(history), path)
        return cls(history)

    @property
    def entity_ids(self) -> list[str]:
        return list(self._history)

    async def fetch_history(
        self, entity_ids: list[str], start: datetime, end: datetime
    ) -> dict[str, list[HistoryEntry]]:
        result = {}
        for entity_id in entity_ids:
            rows = self._history.get(entity_id)
            if rows is None:
                raise FetchError(entity_id, "no history available")
            before = [row for row in rows if row.changed_at < start]
            inside = [row for row in rows if start <= row.changed_at <= end]
            result[entity_id] = before[-1:] + inside
        return result
