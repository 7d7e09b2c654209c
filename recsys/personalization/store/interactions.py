"""
Interaction Store.

Append-only log of interaction events and recommendation feedback. Feeds
online profile updates, the training corpus (popularity and co-interaction
statistics) and operator metrics.

Example:
    >>> store = InteractionStore()
    >>> store.append(InteractionEvent(session_id='guest_1', item_id=7, type='like', weight=0.8))
    >>> store.history('guest_1', limit=10)
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
import threading
import uuid

import numpy as np
import pandas as pd
import scipy.sparse as sp

from .catalog import ensure_utc, utcnow

NEGATIVE_FEEDBACK = ('not_helpful', 'not_interested', 'irrelevant', 'inappropriate')


@dataclass(frozen=True)
class InteractionEvent:
    """A logged user action. Immutable once created."""
    session_id: str
    item_id: int
    type: str
    weight: float
    metadata: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    user_id: Optional[int] = None
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        object.__setattr__(self, 'timestamp', ensure_utc(self.timestamp))
        object.__setattr__(self, 'metadata', dict(self.metadata or {}))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_id': self.event_id,
            'session_id': self.session_id,
            'user_id': self.user_id,
            'item_id': self.item_id,
            'type': self.type,
            'weight': self.weight,
            'metadata': dict(self.metadata),
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class FeedbackRecord:
    """Explicit feedback on a recommended item."""
    item_id: int
    feedback_type: str
    session_id: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def is_negative(self) -> bool:
        return self.feedback_type in NEGATIVE_FEEDBACK


class InteractionStore:
    """Thread-safe in-memory interaction and feedback log."""

    def __init__(self):
        self._events: List[InteractionEvent] = []
        self._by_session: Dict[str, List[int]] = defaultdict(list)
        self._feedback: List[FeedbackRecord] = []
        self._lock = threading.Lock()

    # ========================================================================
    # Interactions
    # ========================================================================

    def append(self, event: InteractionEvent) -> InteractionEvent:
        with self._lock:
            self._by_session[event.session_id].append(len(self._events))
            self._events.append(event)
        return event

    def count(self) -> int:
        return len(self._events)

    def session_count(self) -> int:
        return len(self._by_session)

    def events(self) -> List[InteractionEvent]:
        with self._lock:
            return list(self._events)

    def events_since(self, since: Optional[datetime]) -> List[InteractionEvent]:
        if since is None:
            return self.events()
        since = ensure_utc(since)
        return [e for e in self.events() if e.timestamp > since]

    def history(self, session_id: str, limit: Optional[int] = None) -> List[InteractionEvent]:
        """Past interactions of a session, most recent first."""
        with self._lock:
            indexed = [(self._events[i].timestamp, i) for i in self._by_session.get(session_id, [])]
        indexed.sort(reverse=True)
        events = [self._events[i] for _, i in indexed]
        return events if limit is None else events[:limit]

    def positive_history(self, session_id: str, limit: int) -> List[int]:
        """Distinct item ids with positive weight, most recent first."""
        seen: List[int] = []
        for event in self.history(session_id):
            if event.weight > 0 and event.item_id not in seen:
                seen.append(event.item_id)
                if len(seen) >= limit:
                    break
        return seen

    def weighted_popularity(self) -> Dict[int, float]:
        """item_id -> sum of positive interaction weights."""
        counts: Dict[int, float] = defaultdict(float)
        for event in self.events():
            if event.weight > 0:
                counts[event.item_id] += event.weight
        return dict(counts)

    def session_item_matrix(
        self,
        item_index: Mapping[int, int]
    ) -> Tuple[sp.csr_matrix, List[str]]:
        """
        Binary session x item matrix of positive interactions.

        Args:
            item_index: item_id -> column index (items outside are ignored)

        Returns:
            (csr matrix of shape (num_sessions, len(item_index)), session ids)
        """
        pairs: Set[Tuple[str, int]] = set()
        for event in self.events():
            if event.weight > 0 and event.item_id in item_index:
                pairs.add((event.session_id, item_index[event.item_id]))

        sessions = sorted({s for s, _ in pairs})
        row_of = {s: i for i, s in enumerate(sessions)}
        rows = np.array([row_of[s] for s, _ in pairs], dtype=np.int64)
        cols = np.array([c for _, c in pairs], dtype=np.int64)
        data = np.ones(len(pairs), dtype=np.float64)

        matrix = sp.csr_matrix(
            (data, (rows, cols)), shape=(len(sessions), len(item_index))
        )
        return matrix, sessions

    def to_frame(self, since: Optional[datetime] = None) -> pd.DataFrame:
        """Interactions as a DataFrame (one row per event)."""
        columns = ['event_id', 'session_id', 'user_id', 'item_id', 'type', 'weight', 'timestamp']
        rows = [
            (e.event_id, e.session_id, e.user_id, e.item_id, e.type, e.weight, e.timestamp)
            for e in self.events_since(since)
        ]
        frame = pd.DataFrame(rows, columns=columns)
        frame['timestamp'] = pd.to_datetime(frame['timestamp'], utc=True)
        return frame

    # ========================================================================
    # Feedback
    # ========================================================================

    def record_feedback(self, record: FeedbackRecord) -> FeedbackRecord:
        with self._lock:
            self._feedback.append(record)
        return record

    def feedback(self, since: Optional[datetime] = None) -> List[FeedbackRecord]:
        with self._lock:
            records = list(self._feedback)
        if since is not None:
            since = ensure_utc(since)
            records = [r for r in records if r.timestamp > since]
        return records

    def negative_feedback_counts(self) -> Dict[int, int]:
        counts: Dict[int, int] = defaultdict(int)
        for record in self.feedback():
            if record.is_negative:
                counts[record.item_id] += 1
        return dict(counts)

    def not_interested(self, session_id: str) -> Set[int]:
        """Items a session explicitly asked not to see again."""
        return {
            r.item_id for r in self.feedback()
            if r.session_id == session_id and r.feedback_type == 'not_interested'
        }

    def items_interacted(self, session_ids: Sequence[str]) -> Set[int]:
        wanted = set(session_ids)
        return {e.item_id for e in self.events() if e.session_id in wanted}
