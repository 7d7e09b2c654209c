"""
Tests for the hybrid scorer and the MMR diversity reranker.

Run: pytest service/recommender/test_scoring.py
"""

from datetime import timedelta

import numpy as np
import pytest
import scipy.sparse as sp

from recsys.personalization.config import EngineConfig
from recsys.personalization.errors import EngineError
from recsys.personalization.store import ContentCatalog, ContentItem, ModelSnapshot, utcnow
from service.recommender.rerank import DiversityReranker, intra_list_diversity
from service.recommender.scoring import (
    HybridScorer,
    ScoredItem,
    ScoringContext,
    cosine,
    explain,
    reference_vector,
)


def _snapshot(**kwargs):
    values = dict(
        version=1,
        model_id='test',
        dimension=3,
        item_ids=(1, 2, 3),
        matrix=np.array([
            [1.0, 0.0, 0.0],
            [0.0, 1.0, 0.0],
            [0.7, 0.7, 0.0],
        ]),
    )
    values.update(kwargs)
    return ModelSnapshot(**values)


# ============================================================================
# Vector Helpers
# ============================================================================

def test_cosine_and_reference_vector():
    a = np.array([1.0, 0.0])
    b = np.array([0.0, 2.0])
    assert cosine(a, a * 3) == pytest.approx(1.0)
    assert cosine(a, b) == 0.0
    assert cosine(a, np.zeros(2)) == 0.0
    assert cosine(None, a) == 0.0

    blend = reference_vector(a, b)
    assert blend.tolist() == pytest.approx([0.5, 0.5])
    assert reference_vector(np.zeros(2), b).tolist() == [0.0, 1.0]
    assert reference_vector(None, None) is None


# ============================================================================
# Signals
# ============================================================================

def test_content_algorithm_ranks_closest_vector_first():
    snapshot = _snapshot()
    scorer = HybridScorer()

    ranked = scorer.rank([1, 2, 3], np.array([1.0, 0.0, 0.0]), ScoringContext(snapshot, 'content'))

    assert [s.item_id for s in ranked] == [1, 3, 2]
    assert ranked[0].score == pytest.approx(1.0)
    assert ranked[-1].score == 0.0
    assert all(0.0 <= s.score <= 1.0 for s in ranked)


def test_neutral_profile_scores_zero_content():
    scorer = HybridScorer()
    context = ScoringContext(_snapshot(), 'content')
    assert scorer.score(np.array([1.0, 0.0, 0.0]), None, context, item_id=1) == 0.0


def test_recency_signal_halves_per_half_life():
    now = utcnow()
    config = EngineConfig(recency_half_life_days=10.0)
    catalog = ContentCatalog([
        ContentItem(1, 'fresh', published_at=now),
        ContentItem(2, 'older', published_at=now - timedelta(days=10)),
    ])
    context = ScoringContext(_snapshot(), 'hybrid', catalog=catalog, now=now)
    scorer = HybridScorer(config)

    assert scorer.recency_signal(1, context) == pytest.approx(1.0)
    assert scorer.recency_signal(2, context) == pytest.approx(0.5)
    # No catalog entry and no vector time
    assert scorer.recency_signal(3, context) == 0.0


def test_popularity_signal_and_negative_feedback():
    snapshot = _snapshot(popularity={1: 9.0, 2: 1.0})
    scorer = HybridScorer()

    context = ScoringContext(snapshot, 'popularity', negative_feedback={})
    assert scorer.popularity_signal(1, context) == pytest.approx(1.0)
    assert 0.0 < scorer.popularity_signal(2, context) < 1.0
    assert scorer.popularity_signal(3, context) == 0.0

    penalized = ScoringContext(snapshot, 'popularity', negative_feedback={1: 2})
    assert scorer.popularity_signal(1, penalized) == pytest.approx(0.8)


def test_collaborative_signal_uses_history():
    co = sp.csr_matrix(np.array([
        [0.0, 0.9, 0.1],
        [0.9, 0.0, 0.0],
        [0.1, 0.0, 0.0],
    ]))
    snapshot = _snapshot(collaborative=co, collaborative_index={1: 0, 2: 1, 3: 2})
    scorer = HybridScorer()

    context = ScoringContext(snapshot, 'collaborative', history_ids=[1])
    assert scorer.collaborative_signal(2, context) == pytest.approx(0.9)
    assert scorer.collaborative_signal(3, context) == pytest.approx(0.1)
    # The item itself is not part of its own evidence
    assert scorer.collaborative_signal(1, context) == 0.0
    assert scorer.collaborative_signal(2, ScoringContext(snapshot, 'collaborative')) == 0.0


def test_hybrid_breakdown_uses_configured_weights():
    now = utcnow()
    catalog = ContentCatalog([ContentItem(1, 'a', published_at=now)])
    snapshot = _snapshot(popularity={1: 4.0})
    context = ScoringContext(snapshot, 'hybrid', catalog=catalog, negative_feedback={}, now=now)

    total, components = HybridScorer().score_breakdown(
        snapshot.vector(1), np.array([1.0, 0.0, 0.0]), context, item_id=1
    )

    assert components['content'] == pytest.approx(0.40)
    assert components['collaborative'] == 0.0
    assert components['recency'] == pytest.approx(0.15)
    assert components['popularity'] == pytest.approx(0.15)
    assert total == pytest.approx(0.70)


def test_ties_break_on_popularity_then_id():
    snapshot = ModelSnapshot(
        version=1, model_id='t', dimension=2, item_ids=(5, 3, 4),
        matrix=np.array([[1.0, 0.0], [1.0, 0.0], [1.0, 0.0]]),
        popularity={4: 2.0},
    )
    ranked = HybridScorer().rank([5, 3, 4], np.array([1.0, 0.0]), ScoringContext(snapshot, 'content'))
    assert [s.item_id for s in ranked] == [4, 3, 5]


def test_unknown_algorithm_and_missing_vectors():
    scorer = HybridScorer()
    with pytest.raises(EngineError):
        scorer.rank([1], None, ScoringContext(_snapshot(), 'random'))
    ranked = scorer.rank([1, 99], np.array([1.0, 0.0, 0.0]), ScoringContext(_snapshot(), 'content'))
    assert [s.item_id for s in ranked] == [1]


def test_explain_names_dominant_signal():
    item = ScoredItem(1, 0.5, components={'content': 0.3, 'popularity': 0.2})
    explanation = explain(item)
    assert explanation['primary_signal'] == 'content'
    assert explanation['signals'] == {'content': 0.3, 'popularity': 0.2}
    assert 'primary_signal' not in explain(ScoredItem(2, 0.0, components={'content': 0.0}))


# ============================================================================
# Diversity Reranking
# ============================================================================

VECTORS = {
    1: np.array([1.0, 0.0]),
    2: np.array([1.0, 0.05]),
    3: np.array([0.0, 1.0]),
    4: np.array([0.1, 1.0]),
}


def _scored():
    return [
        ScoredItem(3, 0.5),
        ScoredItem(1, 0.9),
        ScoredItem(2, 0.85),
        ScoredItem(4, 0.4),
    ]


def test_zero_diversity_is_score_order():
    result = DiversityReranker().rerank(_scored(), 0.0, 3, VECTORS.get)
    assert [s.item_id for s in result.items] == [1, 2, 3]
    assert result.num_candidates == 4


def test_diversity_promotes_dissimilar_items():
    result = DiversityReranker().rerank(_scored(), 0.5, 2, VECTORS.get)
    assert [s.item_id for s in result.items] == [1, 3]

    plain = DiversityReranker().rerank(_scored(), 0.0, 2, VECTORS.get)
    assert result.diversity_score > plain.diversity_score


def test_rerank_never_exceeds_limit_or_duplicates():
    result = DiversityReranker().rerank(_scored(), 1.0, 10, VECTORS.get)
    ids = [s.item_id for s in result.items]
    assert sorted(ids) == [1, 2, 3, 4]
    assert len(set(ids)) == len(ids)


def test_rerank_validates_parameters():
    reranker = DiversityReranker()
    with pytest.raises(EngineError):
        reranker.rerank(_scored(), 1.5, 3, VECTORS.get)
    with pytest.raises(EngineError):
        reranker.rerank(_scored(), 0.3, 0, VECTORS.get)


def test_intra_list_diversity():
    assert intra_list_diversity([1, 3], VECTORS.get) == pytest.approx(1.0)
    assert intra_list_diversity([1, 1], VECTORS.get) == pytest.approx(0.0)
    assert intra_list_diversity([1], VECTORS.get) == 1.0
