"""
Candidate Generator.

Builds the candidate set of one request from the pinned snapshot:

(a) locate the nearest cluster of the locating vector (current item's
    vector, else the profile reference vector); an all-zero vector skips
    this step
(b) take the cluster members (ascending id) minus exclusions and the
    current item
(c) if fewer than ``limit_hint``, widen with globally popular items, then
    most recent items (catalog publication time, else vector time), not
    yet included
(d) if still empty, raise a ``NO_CANDIDATES`` recommendation error

Only items with a vector in the pinned snapshot are eligible. Member and
global lists are cached per snapshot version.
"""

from typing import Iterable, List, Optional, Set
import logging

import numpy as np

from recsys.personalization.errors import EngineError
from recsys.personalization.store import ContentCatalog, ModelSnapshot
from .cache import CacheManager

logger = logging.getLogger(__name__)


class CandidateGenerator:

    def __init__(self, cache: CacheManager, catalog: Optional[ContentCatalog] = None):
        self.cache = cache
        self.catalog = catalog

    def cluster_members(self, snapshot: ModelSnapshot, locating_vector: Optional[np.ndarray]) -> List[int]:
        clustering = snapshot.clustering
        if clustering is None or locating_vector is None or not np.any(locating_vector):
            return []
        cluster_id = clustering.assign(locating_vector)
        return self.cache.get_cluster_members(
            snapshot.version, cluster_id,
            lambda: sorted(i for i in clustering.members(cluster_id) if i in snapshot)
        )

    def popular_items(self, snapshot: ModelSnapshot) -> List[int]:
        return self.cache.get_global_list(snapshot.version, 'popularity', snapshot.popularity_order)

    def recent_items(self, snapshot: ModelSnapshot) -> List[int]:
        def compute() -> List[int]:
            # Items without catalog metadata fall back to their vector time
            def published(item_id: int) -> float:
                item = self.catalog.get(item_id) if self.catalog is not None else None
                ts = item.published_at if item is not None else snapshot.computed_at.get(item_id, snapshot.created_at)
                return ts.timestamp()
            return sorted(snapshot.item_ids, key=lambda i: (-published(i), i))
        return self.cache.get_global_list(snapshot.version, 'recency', compute)

    def generate(
        self,
        snapshot: ModelSnapshot,
        locating_vector: Optional[np.ndarray],
        current_item: Optional[int] = None,
        exclude: Iterable[int] = (),
        limit_hint: int = 10,
        session_id: str = ''
    ) -> List[int]:
        """
        Ordered candidate ids for one request.

        Raises:
            EngineError: (recommendation) NO_CANDIDATES when nothing is eligible
        """
        excluded: Set[int] = set(exclude)
        if current_item is not None:
            excluded.add(current_item)

        candidates: List[int] = []
        seen: Set[int] = set()

        def take(item_ids: Iterable[int], stop_at: Optional[int]) -> None:
            for item_id in item_ids:
                if stop_at is not None and len(candidates) >= stop_at:
                    return
                if item_id in excluded or item_id in seen or item_id not in snapshot:
                    continue
                seen.add(item_id)
                candidates.append(item_id)

        members = self.cluster_members(snapshot, locating_vector)
        take(members, None)
        from_cluster = len(candidates)

        if len(candidates) < limit_hint:
            take(self.popular_items(snapshot), limit_hint)
        if len(candidates) < limit_hint:
            take(self.recent_items(snapshot), limit_hint)

        if not candidates:
            raise EngineError.no_candidates(
                session_id,
                model_version=snapshot.version,
                excluded=len(excluded),
                cluster_members=len(members)
            )

        logger.debug(
            f"Candidates for {session_id or 'anonymous'}: {len(candidates)} "
            f"({from_cluster} from cluster, v{snapshot.version})"
        )
        return candidates
