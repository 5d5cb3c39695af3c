"""
Item and topic storage.

Production items and topic proposals are persisted as JSON documents under
the data directory (``items.json`` keyed by item id, ``topics.json`` keyed by
topic id).  Every write goes through an atomic tmp-file replace.

Storage failures surface as ``StoreError`` so callers that promise never to
raise (the reset primitive, the hooks) can convert them into a boolean or a
log entry.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from autoheal.phases import Phase, ProductionItem
from autoheal.utils import load_json, now_iso, parse_iso, save_json

logger = logging.getLogger("autoheal.store")

ITEMS_FILENAME = "items.json"
TOPICS_FILENAME = "topics.json"

PENDING_TOPIC_STATUSES = frozenset({"ready", "queued", "planned", "proposed"})


class StoreError(Exception):
    """Raised when the underlying storage cannot be read or written."""


class ItemNotFoundError(StoreError):
    """Raised when an item id does not exist."""


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------


class ItemStore:
    """JSON-backed store of production items.

    Nothing is cached between calls: every read goes to disk and every write
    loads, changes and replaces the file in one step, so handles held by
    different processes see each other's changes.
    """

    def __init__(self, data_dir: Path) -> None:
        self._path = Path(data_dir) / ITEMS_FILENAME

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Dict[str, Dict[str, Any]]:
        raw = load_json(self._path, default={})
        if isinstance(raw, list):
            # Older dumps were a plain list of items
            return {r.get("id", str(uuid.uuid4())): r for r in raw if isinstance(r, dict)}
        if isinstance(raw, dict):
            return raw
        logger.warning("Corrupt item file %s: expected dict, got %s", self._path, type(raw).__name__)
        return {}

    def _flush(self, items: Dict[str, Dict[str, Any]]) -> None:
        try:
            save_json(self._path, items)
        except OSError as exc:
            raise StoreError(f"Could not write {self._path}: {exc}") from exc

    def get(self, item_id: str) -> Optional[ProductionItem]:
        data = self._load().get(item_id)
        if data is None:
            return None
        return ProductionItem.from_dict(data)

    def require(self, item_id: str) -> ProductionItem:
        item = self.get(item_id)
        if item is None:
            raise ItemNotFoundError(f"Item {item_id} not found")
        return item

    def save(self, item: ProductionItem) -> ProductionItem:
        """Upsert an item."""
        items = self._load()
        items[item.id] = item.to_dict()
        self._flush(items)
        return item

    def update(self, item_id: str, mutate: Callable[[ProductionItem], Any]) -> ProductionItem:
        """Load, mutate and persist a single item against the current file."""
        items = self._load()
        data = items.get(item_id)
        if data is None:
            raise ItemNotFoundError(f"Item {item_id} not found")
        item = ProductionItem.from_dict(data)
        mutate(item)
        items[item.id] = item.to_dict()
        self._flush(items)
        return item

    def list_items(
        self,
        phases: Optional[Iterable[Phase]] = None,
        site_id: Optional[str] = None,
        completed_since: Optional[datetime] = None,
        updated_before: Optional[datetime] = None,
        min_attempts: Optional[int] = None,
        max_attempts: Optional[int] = None,
        has_rejection_reason: Optional[bool] = None,
        order_by: str = "updated_at",
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[ProductionItem]:
        """Filtered listing.  ``max_attempts`` is exclusive, ``min_attempts`` inclusive."""
        wanted = {p.value for p in phases} if phases is not None else None
        results: List[ProductionItem] = []
        for data in self._load().values():
            if wanted is not None and data.get("current_phase") not in wanted:
                continue
            if site_id and data.get("site_id") != site_id:
                continue
            if has_rejection_reason is True and not data.get("rejection_reason"):
                continue
            if has_rejection_reason is False and data.get("rejection_reason"):
                continue
            attempts = data.get("phase_attempts") or 0
            if min_attempts is not None and attempts < min_attempts:
                continue
            if max_attempts is not None and attempts >= max_attempts:
                continue
            if completed_since is not None:
                completed = parse_iso(data.get("completed_at"))
                if completed is None or completed < completed_since:
                    continue
            if updated_before is not None:
                updated = parse_iso(data.get("updated_at"))
                if updated is None or updated >= updated_before:
                    continue
            results.append(ProductionItem.from_dict(data))

        results.sort(key=lambda i: getattr(i, order_by, None) or "", reverse=descending)
        if limit is not None:
            results = results[:limit]
        return results

    def count(self) -> int:
        return len(self._load())


# ---------------------------------------------------------------------------
# Topics
# ---------------------------------------------------------------------------


@dataclass
class TopicProposal:
    """A backlog topic waiting to become a production item."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    keyword: str = ""
    site_id: str = ""
    locale: str = "en"
    status: str = "proposed"
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TopicProposal:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in known})


class TopicStore:
    """JSON-backed topic backlog."""

    def __init__(self, data_dir: Path) -> None:
        self._path = Path(data_dir) / TOPICS_FILENAME

    def _load(self) -> Dict[str, Dict[str, Any]]:
        raw = load_json(self._path, default={})
        return raw if isinstance(raw, dict) else {}

    def add(self, topic: TopicProposal) -> TopicProposal:
        topics = self._load()
        topics[topic.id] = topic.to_dict()
        try:
            save_json(self._path, topics)
        except OSError as exc:
            raise StoreError(f"Could not write {self._path}: {exc}") from exc
        return topic

    def count_pending(self, site_id: Optional[str] = None) -> int:
        """Topics still waiting to be produced."""
        count = 0
        for data in self._load().values():
            if data.get("status") not in PENDING_TOPIC_STATUSES:
                continue
            if site_id and data.get("site_id") != site_id:
                continue
            count += 1
        return count
