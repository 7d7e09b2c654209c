"""
Diversity Reranking Module.

Maximal-marginal-relevance greedy selection over scored candidates:

    pick argmax (1 - diversity_boost) * relevance - diversity_boost * max_sim

where max_sim is the highest content similarity (cosine clipped to [0, 1])
to the items already selected. With diversity_boost = 0 the output is
exactly the score order truncated to ``limit``.

Example:
    >>> reranker = DiversityReranker()
    >>> result = reranker.rerank(scored, diversity_boost=0.3, limit=10, vector_of=snapshot.vector)
"""

from typing import Callable, Dict, List, Optional, Sequence
from dataclasses import dataclass
import logging

import numpy as np

from recsys.personalization.validation import validate_diversity_boost, validate_limit
from .scoring import ScoredItem, unit

logger = logging.getLogger(__name__)

VectorLookup = Callable[[int], Optional[np.ndarray]]


@dataclass
class RerankedResult:
    """Result of a reranking operation."""
    items: List[ScoredItem]
    diversity_score: float
    num_candidates: int


class DiversityReranker:
    """MMR reranker using content vector similarity."""

    def _similarity_fn(self, vector_of: VectorLookup) -> Callable[[int, int], float]:
        units: Dict[int, Optional[np.ndarray]] = {}

        def get_unit(item_id: int) -> Optional[np.ndarray]:
            if item_id not in units:
                units[item_id] = unit(vector_of(item_id))
            return units[item_id]

        def similarity(a: int, b: int) -> float:
            ua, ub = get_unit(a), get_unit(b)
            if ua is None or ub is None:
                return 0.0
            return float(min(max(np.dot(ua, ub), 0.0), 1.0))

        return similarity

    def rerank(
        self,
        scored: Sequence[ScoredItem],
        diversity_boost: float,
        limit: int,
        vector_of: VectorLookup
    ) -> RerankedResult:
        """
        Select up to ``limit`` items from ``scored``.

        Args:
            scored: Candidates (any order; sorted by score internally)
            diversity_boost: 0 = pure relevance, 1 = maximum spread
            limit: Maximum number of items
            vector_of: item_id -> content vector (None if unknown)
        """
        validate_diversity_boost(diversity_boost)
        validate_limit(limit)

        ordered = sorted(scored, key=lambda s: s.sort_key)
        similarity = self._similarity_fn(vector_of)

        if diversity_boost == 0:
            selected = ordered[:limit]
        else:
            selected: List[ScoredItem] = []
            remaining = list(ordered)
            max_sim = {s.item_id: 0.0 for s in remaining}
            while remaining and len(selected) < limit:
                best_index = 0
                best_value = None
                for i, candidate in enumerate(remaining):
                    value = (1 - diversity_boost) * candidate.score - diversity_boost * max_sim[candidate.item_id]
                    # strict > keeps the earlier (better ranked) item on ties
                    if best_value is None or value > best_value:
                        best_index, best_value = i, value
                chosen = remaining.pop(best_index)
                selected.append(chosen)
                for candidate in remaining:
                    sim = similarity(candidate.item_id, chosen.item_id)
                    if sim > max_sim[candidate.item_id]:
                        max_sim[candidate.item_id] = sim

        diversity = intra_list_diversity([s.item_id for s in selected], vector_of, similarity)
        return RerankedResult(items=list(selected), diversity_score=diversity, num_candidates=len(scored))


def intra_list_diversity(
    item_ids: Sequence[int],
    vector_of: VectorLookup,
    similarity: Optional[Callable[[int, int], float]] = None
) -> float:
    """1 - mean pairwise similarity (1.0 for fewer than two items)."""
    if similarity is None:
        similarity = DiversityReranker()._similarity_fn(vector_of)
    sims = [
        similarity(a, b)
        for i, a in enumerate(item_ids)
        for b in item_ids[i + 1:]
    ]
    return 1.0 - float(np.mean(sims)) if sims else 1.0
