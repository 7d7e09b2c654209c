"""
Content Catalog.

Holds the metadata of every content item known to the engine: the text
used for vectorization, categories/tags and the timestamps used for
recency. The catalog is written by content notifications and read by
training, candidate widening and recency scoring.
"""

from typing import Any, Dict, Iterable, List, Optional, Tuple
from dataclasses import dataclass, field
from datetime import datetime, timezone
import threading


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(ts: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps as UTC."""
    if ts is None:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class ContentItem:
    """One content item (post/article)."""
    item_id: int
    title: str = ''
    body: str = ''
    categories: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    author: Optional[str] = None
    published_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.published_at = ensure_utc(self.published_at)
        self.updated_at = ensure_utc(self.updated_at)

    def age_days(self, now: Optional[datetime] = None) -> float:
        now = ensure_utc(now) or utcnow()
        return max((now - self.published_at).total_seconds() / 86400.0, 0.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.item_id,
            'title': self.title,
            'categories': list(self.categories),
            'tags': list(self.tags),
            'author': self.author,
            'published_at': self.published_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }


class ContentCatalog:
    """Thread-safe item_id -> ContentItem mapping."""

    def __init__(self, items: Optional[Iterable[ContentItem]] = None):
        self._items: Dict[int, ContentItem] = {}
        self._lock = threading.Lock()
        for item in items or []:
            self.upsert(item)

    def upsert(self, item: ContentItem) -> bool:
        """Insert or replace an item. Returns True if the item is new."""
        with self._lock:
            is_new = item.item_id not in self._items
            self._items[item.item_id] = item
            return is_new

    def get(self, item_id: int) -> Optional[ContentItem]:
        return self._items.get(item_id)

    def __contains__(self, item_id: int) -> bool:
        return item_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    def items(self) -> List[ContentItem]:
        """All items ordered by id."""
        with self._lock:
            return [self._items[i] for i in sorted(self._items)]

    def updated_since(self, since: Optional[datetime]) -> List[ContentItem]:
        if since is None:
            return self.items()
        since = ensure_utc(since)
        return [item for item in self.items() if item.updated_at > since]

    def most_recent(self, limit: Optional[int] = None) -> List[int]:
        """Item ids by published date (newest first), ties by lower id."""
        ordered: List[Tuple[float, int]] = sorted(
            (-item.published_at.timestamp(), item.item_id) for item in self.items()
        )
        ids = [item_id for _, item_id in ordered]
        return ids if limit is None else ids[:limit]
