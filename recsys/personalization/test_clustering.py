"""
Tests for content clustering and its evaluation.

Run: pytest recsys/personalization/test_clustering.py
"""

import numpy as np
import pytest

from recsys.personalization.clustering import Cluster, ClusteringModel, default_k, normalize_rows
from recsys.personalization.errors import EngineError
from recsys.personalization.training.evaluation import evaluate_clustering


def _two_groups():
    item_ids = [10, 11, 12, 20, 21, 22]
    matrix = np.array([
        [1.0, 0.1, 0.0],
        [0.9, 0.0, 0.1],
        [1.0, 0.0, 0.0],
        [0.0, 1.0, 0.1],
        [0.1, 0.9, 0.0],
        [0.0, 1.0, 0.0],
    ])
    return item_ids, matrix


@pytest.mark.parametrize("n, k", [(1, 1), (4, 2), (10, 3), (100, 10), (2, 1)])
def test_default_k(n, k):
    assert default_k(n) == k


def test_normalize_rows_leaves_zero_rows():
    rows = normalize_rows(np.array([[3.0, 4.0], [0.0, 0.0]]))
    assert rows[0].tolist() == pytest.approx([0.6, 0.8])
    assert rows[1].tolist() == [0.0, 0.0]


def test_build_separates_groups():
    item_ids, matrix = _two_groups()
    model = ClusteringModel.build(item_ids, matrix, k=2, random_state=42)

    assert model.k == 2
    assert model.metric == 'cosine'
    assert model.cluster_of(10) == model.cluster_of(11) == model.cluster_of(12)
    assert model.cluster_of(20) == model.cluster_of(21) == model.cluster_of(22)
    assert model.cluster_of(10) != model.cluster_of(20)
    assert [c.cluster_id for c in model.clusters()] == [0, 1]
    assert sorted(sum((c.member_ids for c in model.clusters()), [])) == item_ids


def test_build_is_deterministic():
    item_ids, matrix = _two_groups()
    a = ClusteringModel.build(item_ids, matrix, k=2, random_state=7)
    b = ClusteringModel.build(item_ids, matrix, k=2, random_state=7)
    assert a.labels(item_ids).tolist() == b.labels(item_ids).tolist()


def test_build_clamps_k_and_rejects_empty():
    item_ids, matrix = _two_groups()
    assert ClusteringModel.build(item_ids[:2], matrix[:2], k=5).k == 2
    with pytest.raises(EngineError) as exc:
        ClusteringModel.build([], np.zeros((0, 3)))
    assert exc.value.code == 'INSUFFICIENT_DATA'


def test_assign_nearest_centroid_and_ties():
    model = ClusteringModel([
        Cluster(0, np.array([1.0, 0.0]), [1], 1.0),
        Cluster(1, np.array([0.0, 1.0]), [2], 1.0),
    ])
    assert model.assign(np.array([0.2, 0.9])) == 1
    assert model.assign(np.array([5.0, 0.1])) == 0
    # Equidistant: lowest cluster id wins
    assert model.assign(np.array([1.0, 1.0])) == 0
    assert model.members(1) == [2]
    assert model.labels([1, 2, 3]).tolist() == [0, 1, -1]


def test_clusters_are_a_list_ordered_by_id():
    model = ClusteringModel([
        Cluster(7, np.array([0.0, 1.0]), [2], 1.0),
        Cluster(3, np.array([1.0, 0.0]), [1], 1.0),
    ])
    clusters = model.clusters()
    assert isinstance(clusters, list)
    assert [c.cluster_id for c in clusters] == [3, 7]
    clusters.pop()
    assert model.k == len(model.clusters()) == 2

    # Evaluation looks clusters up by id, not by position
    metrics = evaluate_clustering(model, [1, 2], np.array([[1.0, 0.0], [0.0, 1.0]]))
    assert metrics['cohesion'] == pytest.approx(1.0)


def test_summary_with_catalog():
    class Catalog:
        def get(self, item_id):
            return type('Item', (), {'categories': ['tech'] if item_id == 1 else ['sports']})()

    model = ClusteringModel([
        Cluster(0, np.array([1.0, 0.0]), [1], 0.9),
        Cluster(1, np.array([0.0, 1.0]), [2, 3], 0.8),
    ])
    summary = model.summary(Catalog())
    assert summary[0] == {'cluster_id': 0, 'size': 1, 'cohesion': 0.9, 'top_categories': ['tech']}
    assert summary[1]['size'] == 2


def test_evaluate_clustering():
    item_ids, matrix = _two_groups()
    model = ClusteringModel.build(item_ids, matrix, k=2)

    metrics = evaluate_clustering(model, item_ids, matrix)

    assert metrics['num_items'] == 6
    assert metrics['num_clusters'] == 2
    assert metrics['min_cluster_size'] == metrics['max_cluster_size'] == 3
    assert metrics['cohesion'] > 0.9
    assert metrics['silhouette'] > 0.5


def test_evaluate_single_cluster_has_no_silhouette():
    item_ids, matrix = _two_groups()
    model = ClusteringModel.build(item_ids, matrix, k=1)
    assert evaluate_clustering(model, item_ids, matrix)['silhouette'] is None
