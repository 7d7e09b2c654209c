"""
Clustering quality metrics recorded on every training job.

Metrics:
- cohesion: mean cosine similarity of items to their cluster centroid
- inertia: KMeans within-cluster sum of squares
- silhouette: cosine silhouette score (only when 2 <= distinct clusters < n)
- size spread: min / max / std of cluster sizes
"""

from typing import Any, Dict, Sequence
import logging

import numpy as np
from sklearn.metrics import silhouette_score

from ..clustering import ClusteringModel, normalize_rows

logger = logging.getLogger(__name__)


def evaluate_clustering(
    model: ClusteringModel,
    item_ids: Sequence[int],
    matrix: np.ndarray
) -> Dict[str, Any]:
    """
    Compute quality metrics of a fitted clustering.

    Args:
        model: Fitted ClusteringModel
        item_ids: Item ids in row order of ``matrix``
        matrix: Content vectors the model was fitted on

    Returns:
        Dict of metrics (silhouette is None when undefined)
    """
    data = normalize_rows(np.asarray(matrix, dtype=np.float64))
    labels = model.labels(item_ids)
    clusters = {c.cluster_id: c for c in model.clusters()}

    similarities = []
    for row, label in enumerate(labels):
        if label < 0:
            continue
        centroid = clusters[int(label)].centroid
        norm = np.linalg.norm(centroid)
        similarities.append(float(data[row] @ centroid / norm) if norm > 0 else 0.0)
    cohesion = float(np.mean(similarities)) if similarities else 0.0

    silhouette = None
    distinct = len(set(int(l) for l in labels if l >= 0))
    if 2 <= distinct < len(item_ids):
        silhouette = float(silhouette_score(data, labels, metric='cosine'))

    sizes = np.array([c.size for c in clusters.values()]) if clusters else np.zeros(1)

    return {
        'num_items': len(item_ids),
        'num_clusters': model.k,
        'cohesion': cohesion,
        'inertia': float(model.inertia),
        'silhouette': silhouette,
        'min_cluster_size': int(sizes.min()),
        'max_cluster_size': int(sizes.max()),
        'cluster_size_std': float(sizes.std()),
    }
