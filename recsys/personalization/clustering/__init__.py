"""
Clustering Model.

Partitions the content vector space into clusters (scikit-learn KMeans on
L2-normalized rows, fixed random_state) and assigns new vectors to the
nearest centroid by cosine distance. Ties go to the lowest cluster id.

The model is built during training and published inside a ModelSnapshot,
so swapping it is a snapshot swap.

Example:
    >>> model = ClusteringModel.build(item_ids, matrix, k=8)
    >>> cluster_id = model.assign(vector)
    >>> model.members(cluster_id)
"""

from typing import Any, Dict, List, Optional, Sequence
from collections import Counter
from dataclasses import dataclass, field
import logging
import math

import numpy as np
from sklearn.cluster import KMeans

from ..errors import EngineError

logger = logging.getLogger(__name__)

METRIC = 'cosine'


@dataclass
class Cluster:
    """A group of content items around a centroid."""
    cluster_id: int
    centroid: np.ndarray
    member_ids: List[int] = field(default_factory=list)
    cohesion: float = 0.0

    @property
    def size(self) -> int:
        return len(self.member_ids)


def default_k(n_items: int) -> int:
    """round(sqrt(n)) clamped to [1, n]."""
    if n_items <= 0:
        return 1
    return int(min(max(round(math.sqrt(n_items)), 1), n_items))


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """L2-normalize rows; zero rows stay zero."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


class ClusteringModel:
    """Fitted clusters with cosine nearest-centroid assignment."""

    def __init__(
        self,
        clusters: Sequence[Cluster],
        inertia: float = 0.0,
        random_state: Optional[int] = None
    ):
        self._clusters = sorted(clusters, key=lambda c: c.cluster_id)
        self.k = len(self._clusters)
        self.metric = METRIC
        self.inertia = inertia
        self.random_state = random_state
        self._centroids = normalize_rows(
            np.vstack([c.centroid for c in self._clusters])
        ) if self._clusters else np.zeros((0, 0))
        self._membership = {
            item_id: c.cluster_id for c in self._clusters for item_id in c.member_ids
        }

    @classmethod
    def build(
        cls,
        item_ids: Sequence[int],
        matrix: np.ndarray,
        k: Optional[int] = None,
        random_state: int = 42
    ) -> 'ClusteringModel':
        """
        Fit KMeans over content vectors.

        Args:
            item_ids: Item ids in row order
            matrix: (n_items, dimension) content vectors
            k: Number of clusters (None = round(sqrt(n)))
            random_state: Seed for deterministic results

        Returns:
            Fitted ClusteringModel
        """
        n_items = len(item_ids)
        if n_items == 0:
            raise EngineError.insufficient_data('content_vectors', 1, 0, mode='clustering')

        k = default_k(n_items) if k is None else min(k, n_items)
        data = normalize_rows(np.asarray(matrix, dtype=np.float64))

        kmeans = KMeans(n_clusters=k, n_init=10, random_state=random_state)
        labels = kmeans.fit_predict(data)

        clusters = []
        for cluster_id in range(k):
            rows = np.where(labels == cluster_id)[0]
            members = sorted(int(item_ids[r]) for r in rows)
            centroid = kmeans.cluster_centers_[cluster_id]
            cohesion = _mean_cosine(data[rows], centroid) if len(rows) else 0.0
            clusters.append(Cluster(cluster_id, centroid, members, cohesion))

        logger.info(f"KMeans fitted: k={k}, n_items={n_items}, inertia={kmeans.inertia_:.4f}")
        return cls(clusters, inertia=float(kmeans.inertia_), random_state=random_state)

    # ========================================================================
    # Queries
    # ========================================================================

    def assign(self, vector: np.ndarray) -> int:
        """Nearest centroid by cosine distance; ties -> lowest cluster id."""
        if not self._clusters:
            raise EngineError.invalid_parameter('clustering', 'empty', 'a fitted model')
        vector = np.asarray(vector, dtype=np.float64)
        norm = np.linalg.norm(vector)
        unit = vector / norm if norm > 0 else vector
        distances = 1.0 - self._centroids @ unit
        return self._clusters[int(np.argmin(distances))].cluster_id

    def clusters(self) -> List[Cluster]:
        """Clusters ordered by id."""
        return list(self._clusters)

    def members(self, cluster_id: int) -> List[int]:
        for c in self._clusters:
            if c.cluster_id == cluster_id:
                return list(c.member_ids)
        return []

    def cluster_of(self, item_id: int) -> Optional[int]:
        return self._membership.get(item_id)

    def labels(self, item_ids: Sequence[int]) -> np.ndarray:
        """Cluster id per item (-1 for items outside the fitted set)."""
        return np.array([self._membership.get(i, -1) for i in item_ids])

    def summary(self, catalog: Any = None, top_n: int = 3) -> List[Dict[str, Any]]:
        """Per-cluster size, cohesion and (with a catalog) top categories."""
        rows = []
        for c in self._clusters:
            entry: Dict[str, Any] = {
                'cluster_id': c.cluster_id,
                'size': c.size,
                'cohesion': round(c.cohesion, 4),
            }
            if catalog is not None:
                counts: Counter = Counter()
                for item_id in c.member_ids:
                    item = catalog.get(item_id)
                    if item is not None:
                        counts.update(item.categories)
                entry['top_categories'] = [name for name, _ in counts.most_common(top_n)]
            rows.append(entry)
        return rows


def _mean_cosine(rows: np.ndarray, centroid: np.ndarray) -> float:
    norm = np.linalg.norm(centroid)
    if norm == 0:
        return 0.0
    return float(np.mean(rows @ (centroid / norm)))
