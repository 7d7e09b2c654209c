"""
Profile Updater.

Online learning of session interest profiles. Each interaction moves the
profile with an exponential moving average:

    profile' = (1 - alpha) * decayed_profile + alpha * direction

- alpha = clamp(learning_rate * |weight|, min_alpha, max_alpha), in (0, 1)
- direction = item vector for positive weights, the negated item vector
  for negative ones; both are fixed targets, so repeated events converge
- decayed_profile = profile * 0.5 ** (elapsed_days / profile_half_life_days)

Updates of one session are serialized through a FIFO keyed lock and apply
in the order they reach it; different sessions update in parallel.
"""

from typing import Any, Dict, Iterator, Mapping, Optional
from contextlib import contextmanager, nullcontext
from dataclasses import replace
from datetime import datetime
import logging
import math
import threading

import numpy as np

from recsys.personalization.config import EngineConfig
from recsys.personalization.errors import EngineError
from recsys.personalization.store import FeatureStore, InteractionEvent, ModelSnapshot, UserProfile, utcnow
from recsys.personalization.validation import validate_parameter, validate_score

logger = logging.getLogger(__name__)

# Metadata keys holding time spent on the item (seconds)
DWELL_KEYS = ('seconds', 'time_spent', 'dwell_seconds')


class _TicketQueue:
    def __init__(self, guard: threading.Lock):
        self.turn = threading.Condition(guard)
        self.next_ticket = 0
        self.serving = 0


class KeyedLocks:
    """
    One FIFO lock per key, dropped when no thread holds or waits for it.

    Each caller of ``hold`` draws a ticket on arrival and enters in ticket
    order, so updates of one key apply in the order they reached the lock.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._queues: Dict[str, _TicketQueue] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            queue = self._queues.get(key)
            if queue is None:
                queue = self._queues[key] = _TicketQueue(self._guard)
            ticket = queue.next_ticket
            queue.next_ticket += 1
            while queue.serving != ticket:
                queue.turn.wait()
        try:
            yield
        finally:
            with self._guard:
                queue.serving += 1
                if queue.serving == queue.next_ticket:
                    del self._queues[key]
                else:
                    queue.turn.notify_all()

    def waiting(self, key: str) -> int:
        """Threads holding or queued for ``key``."""
        with self._guard:
            queue = self._queues.get(key)
            return 0 if queue is None else queue.next_ticket - queue.serving

    def __len__(self) -> int:
        return len(self._queues)


def resolve_weight(
    interaction_type: str,
    weight: Optional[float],
    metadata: Optional[Mapping[str, Any]],
    config: EngineConfig
) -> float:
    """
    Effective event weight: explicit weight or the type default, boosted
    for long dwell time, capped at +/- max_event_weight.
    """
    if weight is None:
        weight = config.interaction_weights.get(interaction_type, 0.0)
    validate_parameter(
        'weight', weight,
        lambda w: isinstance(w, (int, float)) and not isinstance(w, bool) and math.isfinite(w),
        'a finite number'
    )
    weight = float(weight)

    for key in DWELL_KEYS:
        seconds = (metadata or {}).get(key)
        if isinstance(seconds, (int, float)) and seconds > config.dwell_boost_seconds:
            weight *= config.dwell_boost_factor
            break

    cap = config.max_event_weight
    return max(-cap, min(cap, weight))


class ProfileUpdater:
    """Applies interaction events to stored profiles."""

    def __init__(self, feature_store: FeatureStore, config: Optional[EngineConfig] = None):
        self.store = feature_store
        self.config = config or EngineConfig()
        self.locks = KeyedLocks()

    def alpha(self, weight: float) -> float:
        c = self.config
        return min(max(c.learning_rate * abs(weight), c.min_alpha), c.max_alpha)

    def decay_factor(self, last_updated: datetime, now: datetime) -> float:
        elapsed_days = max((now - last_updated).total_seconds() / 86400.0, 0.0)
        return 0.5 ** (elapsed_days / self.config.profile_half_life_days)

    def apply(
        self,
        profile: UserProfile,
        event: InteractionEvent,
        item_vector: np.ndarray,
        now: Optional[datetime] = None
    ) -> UserProfile:
        """Pure update: returns a new profile, ``profile`` is untouched."""
        now = now or utcnow()
        item_vector = np.asarray(item_vector, dtype=np.float64)
        if item_vector.shape != profile.vector.shape:
            raise EngineError.invalid_dimension('item_vector', profile.dimension, int(item_vector.size))

        vector = profile.vector * self.decay_factor(profile.last_updated, now)
        if event.weight > 0:
            direction = item_vector
        elif event.weight < 0:
            direction = -item_vector
        else:
            direction = None

        if direction is not None:
            alpha = self.alpha(event.weight)
            vector = (1.0 - alpha) * vector + alpha * direction

        return replace(
            profile.copy(),
            vector=vector,
            last_updated=now,
            interaction_count=profile.interaction_count + 1,
        )

    def update(
        self,
        session_id: str,
        event: InteractionEvent,
        snapshot: Optional[ModelSnapshot] = None,
        held: bool = False
    ) -> UserProfile:
        """
        Apply ``event`` to the stored profile of ``session_id``.

        ``held=True`` means the caller already holds ``locks.hold(session_id)``.

        Raises:
            EngineError: (profile_update) missing item vector, computation
                or persistence failure, carrying the cause
        """
        snapshot = snapshot or self.store.current()
        with nullcontext() if held else self.locks.hold(session_id):
            try:
                item_vector = snapshot.vector(event.item_id)
                if item_vector is None:
                    raise KeyError(f"no content vector for item {event.item_id} in model v{snapshot.version}")
                profile = self.store.get_or_create_profile(session_id, user_id=event.user_id)
                updated = self.apply(profile, event, item_vector)
                updated.model_version = snapshot.version
                self.store.put_profile(updated)
            except Exception as e:
                raise EngineError.profile_update_failed(
                    session_id, e, item_id=event.item_id, event_type=event.type, model_version=snapshot.version
                ) from e
        return updated

    def set_preferences(self, session_id: str, preferences: Mapping[str, float]) -> UserProfile:
        """
        Merge explicit preferences ``{term: weight in [-1, 1]}`` into the
        overlay; a weight of 0 removes the term.
        """
        cleaned = {}
        for term, weight in preferences.items():
            validate_parameter(
                'explicit_preferences', term,
                lambda t: isinstance(t, str) and t.strip() != '', 'non-empty string terms'
            )
            cleaned[term.strip()] = validate_score(weight, -1.0, 1.0, field=f'explicit_preferences.{term}')

        with self.locks.hold(session_id):
            profile = self.store.get_or_create_profile(session_id)
            merged = dict(profile.explicit_preferences)
            for term, weight in cleaned.items():
                if weight == 0:
                    merged.pop(term, None)
                else:
                    merged[term] = weight
            profile.explicit_preferences = merged
            profile.last_updated = utcnow()
            self.store.put_profile(profile)
        return profile
