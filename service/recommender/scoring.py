"""
Hybrid Scorer.

Combines four signals, each normalized to [0, 1], with per-algorithm
weights that sum to 1:

    score = w_content * content + w_collab * collaborative
          + w_recency * recency + w_popularity * popularity

Signals:
- content: cosine(candidate, reference vector), clipped at 0
- collaborative: mean item-item co-interaction cosine between the
  candidate and the session's recent positively weighted history
- recency: 0.5 ** (age_days / half_life_days), non-increasing in age
- popularity: log1p(count) / log1p(max count), reduced by negative feedback

Ranking ties are broken by higher popularity, then lower item id.

Example:
    >>> scorer = HybridScorer(config)
    >>> ranked = scorer.rank(candidate_ids, reference, context)
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from dataclasses import dataclass, field
from datetime import datetime
import math

import numpy as np

from recsys.personalization.config import SIGNALS, EngineConfig
from recsys.personalization.store import ContentCatalog, ModelSnapshot, utcnow
from recsys.personalization.validation import validate_algorithm, validate_score


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class ScoringContext:
    """Per-request inputs shared by every candidate."""
    snapshot: ModelSnapshot
    algorithm: str = 'hybrid'
    history_ids: Sequence[int] = ()
    catalog: Optional[ContentCatalog] = None
    negative_feedback: Optional[Mapping[int, int]] = None
    now: datetime = field(default_factory=utcnow)


@dataclass
class ScoredItem:
    """A candidate with its relevance score and signal breakdown."""
    item_id: int
    score: float
    popularity: float = 0.0
    components: Dict[str, float] = field(default_factory=dict)

    @property
    def sort_key(self) -> Tuple[float, float, int]:
        return (-self.score, -self.popularity, self.item_id)


# ============================================================================
# Vector Helpers
# ============================================================================

def unit(vector: Optional[np.ndarray]) -> Optional[np.ndarray]:
    if vector is None:
        return None
    norm = np.linalg.norm(vector)
    return vector / norm if norm > 0 else None


def cosine(a: Optional[np.ndarray], b: Optional[np.ndarray]) -> float:
    ua, ub = unit(a), unit(b)
    if ua is None or ub is None:
        return 0.0
    return float(np.dot(ua, ub))


def reference_vector(
    profile_vector: Optional[np.ndarray],
    current_vector: Optional[np.ndarray] = None
) -> Optional[np.ndarray]:
    """
    Vector candidates are compared against: the profile, the current item,
    or an even blend of both when both carry signal.
    """
    up, uc = unit(profile_vector), unit(current_vector)
    if up is not None and uc is not None:
        return 0.5 * up + 0.5 * uc
    if up is not None:
        return up
    return uc


# ============================================================================
# HybridScorer
# ============================================================================

class HybridScorer:
    """Weighted multi-signal relevance scorer."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    def weights_for(self, algorithm: str) -> Dict[str, float]:
        validate_algorithm(algorithm, self.config.weights.keys())
        return self.config.weights[algorithm]

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def content_signal(self, candidate: np.ndarray, reference: Optional[np.ndarray]) -> float:
        return min(max(cosine(candidate, reference), 0.0), 1.0)

    def collaborative_signal(self, item_id: Optional[int], context: ScoringContext) -> float:
        snapshot = context.snapshot
        matrix = snapshot.collaborative
        if matrix is None or item_id is None:
            return 0.0
        row = snapshot.collaborative_index.get(item_id)
        history = [
            snapshot.collaborative_index[h]
            for h in list(context.history_ids)[:self.config.collaborative_history_size]
            if h in snapshot.collaborative_index and h != item_id
        ]
        if row is None or not history:
            return 0.0
        values = matrix[row, history].toarray().ravel()
        return float(min(max(values.mean(), 0.0), 1.0))

    def recency_signal(self, item_id: Optional[int], context: ScoringContext) -> float:
        published = None
        if context.catalog is not None and item_id is not None:
            item = context.catalog.get(item_id)
            if item is not None:
                published = item.published_at
        if published is None and item_id is not None:
            published = context.snapshot.computed_at.get(item_id)
        if published is None:
            return 0.0
        age_days = max((context.now - published).total_seconds() / 86400.0, 0.0)
        return float(0.5 ** (age_days / self.config.recency_half_life_days))

    def popularity_signal(self, item_id: Optional[int], context: ScoringContext) -> float:
        snapshot = context.snapshot
        max_count = snapshot.max_popularity
        if item_id is None or max_count <= 0:
            return 0.0
        base = math.log1p(snapshot.popularity.get(item_id, 0.0)) / math.log1p(max_count)
        negative = context.negative_feedback
        if negative is None:
            negative = snapshot.negative_feedback
        penalty = 1.0 - self.config.negative_feedback_penalty * negative.get(item_id, 0)
        return float(min(max(base * penalty, 0.0), 1.0))

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def score_breakdown(
        self,
        candidate_vector: np.ndarray,
        profile_vector: Optional[np.ndarray],
        context: ScoringContext,
        item_id: Optional[int] = None
    ) -> Tuple[float, Dict[str, float]]:
        """
        Score one candidate.

        Returns:
            (score in [0, 1], weighted contribution per active signal)
        """
        weights = self.weights_for(context.algorithm)
        compute = {
            'content': lambda: self.content_signal(candidate_vector, profile_vector),
            'collaborative': lambda: self.collaborative_signal(item_id, context),
            'recency': lambda: self.recency_signal(item_id, context),
            'popularity': lambda: self.popularity_signal(item_id, context),
        }
        components = {
            signal: weights[signal] * compute[signal]()
            for signal in SIGNALS if weights.get(signal, 0.0) > 0
        }
        total = min(max(sum(components.values()), 0.0), 1.0)
        return validate_score(total, 0.0, 1.0, field='relevance_score'), components

    def score(
        self,
        candidate_vector: np.ndarray,
        profile_vector: Optional[np.ndarray],
        context: ScoringContext,
        item_id: Optional[int] = None
    ) -> float:
        return self.score_breakdown(candidate_vector, profile_vector, context, item_id)[0]

    def rank(
        self,
        candidate_ids: Sequence[int],
        reference: Optional[np.ndarray],
        context: ScoringContext
    ) -> List[ScoredItem]:
        """Score candidates of the pinned snapshot; best first."""
        self.weights_for(context.algorithm)
        snapshot = context.snapshot
        scored = []
        for item_id in candidate_ids:
            vector = snapshot.vector(item_id)
            if vector is None:
                continue
            total, components = self.score_breakdown(vector, reference, context, item_id)
            scored.append(ScoredItem(
                item_id=item_id,
                score=total,
                popularity=snapshot.popularity.get(item_id, 0.0),
                components=components,
            ))
        scored.sort(key=lambda s: s.sort_key)
        return scored


def explain(item: ScoredItem) -> Dict[str, Any]:
    """Human readable explanation from the dominant signal."""
    reasons = {
        'content': 'Similar to content you engaged with',
        'collaborative': 'Popular with readers who liked the same items',
        'recency': 'Recently published',
        'popularity': 'Trending right now',
    }
    if not item.components or max(item.components.values()) <= 0:
        return {'reason': 'Suggested to help learn your interests', 'signals': dict(item.components)}
    primary = max(item.components, key=lambda s: (item.components[s], s))
    return {
        'primary_signal': primary,
        'reason': reasons[primary],
        'signals': {k: round(v, 4) for k, v in item.components.items()},
    }
