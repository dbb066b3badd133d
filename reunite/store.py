"""
Reunite — Item store boundary
The only place raw item records are validated. The matching engine receives
Item objects and never sees malformed data.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Protocol

from pydantic import ValidationError

from .models import Item, Polarity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ItemFilter:
    type: Polarity | None = None
    status: str | None = "active"
    exclude_user_id: str | None = None
    limit: int | None = None


class ItemStore(Protocol):
    """Query surface the relay needs from the data store."""

    def list_active_items(self, criteria: ItemFilter) -> list[Item]: ...


class InMemoryItemStore:
    """List-backed store for development and tests."""

    def __init__(self, records: Iterable[Item | dict[str, Any]] = ()):
        self._items: list[Item] = []
        self.load(records)

    def __len__(self) -> int:
        return len(self._items)

    def load(self, records: Iterable[Item | dict[str, Any]]) -> int:
        """Add records, skipping malformed ones. Returns how many were added."""
        added = 0
        for record in records:
            if isinstance(record, Item):
                self._items.append(record)
                added += 1
                continue
            try:
                self._items.append(Item.model_validate(record))
            except ValidationError as exc:
                logger.warning("Rejected malformed item %r: %s", record.get("id") if isinstance(record, dict) else record, exc)
                continue
            added += 1
        return added

    def list_active_items(self, criteria: ItemFilter) -> list[Item]:
        found: list[Item] = []
        for item in self._items:
            if criteria.status is not None and item.status != criteria.status:
                continue
            if criteria.type is not None and item.type != criteria.type:
                continue
            if criteria.exclude_user_id is not None and item.user_id == criteria.exclude_user_id:
                continue
            found.append(item)
            if criteria.limit is not None and len(found) >= criteria.limit:
                break
        return found


def read_items_file(path: str | Path) -> list[dict[str, Any]]:
    """
    Raw item records from a JSON file: either a list of records or an
    object with an "items" list. Records are validated by InMemoryItemStore.load.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("items")
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of item records")
    return data
