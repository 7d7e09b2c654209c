"""
End-to-end tests of RecommendationEngine: recommendations, interactions,
profiles, content ingestion, training, A/B tests and metrics.

Run: pytest service/recommender/test_engine.py
"""

import threading

import numpy as np
import pytest

from recsys.personalization.config import EngineConfig
from recsys.personalization.errors import EngineError, ErrorKind
from recsys.personalization.store import ContentVector
from service.recommender import RecommendationEngine, SessionClient

TOPICS = {
    'tech': ['python', 'programming', 'software', 'database', 'cloud', 'linux'],
    'sports': ['football', 'tennis', 'league', 'marathon', 'cycling', 'olympics'],
}


def _config(**overrides):
    values = dict(
        dimension=64,
        min_corpus={
            'full': {'content_vectors': 4, 'interaction_events': 1},
            'incremental': {'content_vectors': 1, 'interaction_events': 0},
            'clustering': {'content_vectors': 2, 'interaction_events': 0},
        },
    )
    values.update(overrides)
    return EngineConfig(**values)


def _engine_with_content(**overrides):
    engine = RecommendationEngine(_config(**overrides))
    item_id = 1
    for topic, words in TOPICS.items():
        for word in words:
            engine.ingest_content({
                'id': item_id,
                'title': f"{word} weekly",
                'body': f"news about {word} and {topic}",
                'categories': [topic],
                'tags': [word],
            })
            item_id += 1
    return engine


@pytest.fixture
def engine():
    engine = _engine_with_content()
    yield engine
    engine.close()


# ============================================================================
# Recommendations
# ============================================================================

def test_profile_similarity_ranks_matching_item_first():
    engine = RecommendationEngine(EngineConfig(dimension=3))
    engine.feature_store.put_content_vector(ContentVector(1, np.array([1.0, 0.0, 0.0])))
    engine.feature_store.put_content_vector(ContentVector(2, np.array([0.0, 1.0, 0.0])))
    profile = engine.feature_store.get_or_create_profile('s')
    profile.vector = np.array([1.0, 0.0, 0.0])
    engine.feature_store.put_profile(profile)

    result = engine.recommend('s', algorithm='content', diversity_boost=0.0)

    assert [item.id for item in result.items] == [1, 2]
    assert result.items[0].score == pytest.approx(1.0)
    assert result.model_version == engine.feature_store.current().version
    engine.close()


def test_recommend_respects_limit_exclusions_and_current_item(engine):
    result = engine.recommend('guest_1', current_item=1, limit=4, exclude_items=[2, 3])

    ids = [item.id for item in result.items]
    assert len(ids) == 4
    assert not {1, 2, 3} & set(ids)
    assert len(set(ids)) == len(ids)
    assert all(0.0 <= item.score <= 1.0 for item in result.items)
    assert result.algorithm == 'hybrid'
    assert result.diversity_boost == engine.config.diversity_boost


def test_recommend_with_explanations(engine):
    result = engine.recommend('guest_1', limit=3, explain_results=True)
    body = result.to_dict()
    assert body['count'] == 3
    assert all('explanation' in item for item in body['items'])


def test_recommend_on_empty_engine_has_no_candidates():
    engine = RecommendationEngine(_config())
    with pytest.raises(EngineError) as exc:
        engine.recommend('guest_1')
    assert exc.value.kind is ErrorKind.RECOMMENDATION
    assert exc.value.http_status == 404
    engine.close()


@pytest.mark.parametrize("kwargs", [
    {'limit': 0},
    {'limit': 1000},
    {'algorithm': 'random'},
    {'diversity_boost': 2.0},
    {'current_item': -1},
    {'exclude_items': ['a']},
])
def test_recommend_rejects_bad_parameters(engine, kwargs):
    with pytest.raises(EngineError) as exc:
        engine.recommend('guest_1', **kwargs)
    assert exc.value.kind is ErrorKind.VALIDATION


def test_recommend_rejects_blank_session(engine):
    with pytest.raises(EngineError):
        engine.recommend('  ')


def test_not_interested_feedback_excludes_item(engine):
    first = engine.recommend('guest_1', limit=1, diversity_boost=0.0).items[0].id
    engine.submit_feedback(first, 'not_interested', session_id='guest_1')

    ids = [item.id for item in engine.recommend('guest_1', limit=12).items]
    assert first not in ids


# ============================================================================
# Interactions & Profiles
# ============================================================================

def test_log_interaction_updates_profile(engine):
    ack = engine.log_interaction('guest_1', 1, 'like')

    assert ack.success
    assert ack.profile_updated
    assert ack.weight == 0.8
    assert not engine.feature_store.get_profile('guest_1').is_neutral


def test_log_interaction_never_raises(engine):
    ack = engine.log_interaction('guest_1', 1, 'poke')
    assert ack.success is False
    assert ack.error['kind'] == 'validation'

    ack = engine.log_interaction('guest_1', 'seven', 'like')
    assert ack.success is False

    ack = engine.log_interaction('guest_1', 1, 'dwell', metadata=['seconds', 90])
    assert ack.success is False
    assert ack.error['context']['field'] == 'metadata'

    # Unknown item: event kept, profile update reported
    ack = engine.log_interaction('guest_1', 999, 'like')
    assert ack.success is True
    assert ack.profile_updated is False
    assert ack.error['kind'] == 'profile_update'
    assert engine.interactions.count() == 1


def test_concurrent_interactions_on_one_session(engine):
    threads = [
        threading.Thread(target=engine.log_interaction, args=('guest_1', 1 + i % 6, 'view'))
        for i in range(50)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    insights = engine.get_insights('guest_1')
    assert insights['interaction_count'] == 50
    assert insights['profile_updates'] == 50


def test_concurrent_profile_learning_follows_log_order(engine):
    threads = [
        threading.Thread(
            target=engine.log_interaction,
            args=('guest_1', 1 + i % 12, 'like' if i % 3 else 'dislike'),
        )
        for i in range(40)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    snapshot = engine.feature_store.current()
    expected = np.zeros(snapshot.dimension)
    for event in reversed(engine.interactions.history('guest_1')):
        item = snapshot.vector(event.item_id)
        direction = item if event.weight > 0 else -item
        alpha = engine.profiles.alpha(event.weight)
        expected = (1.0 - alpha) * expected + alpha * direction

    profile = engine.feature_store.get_profile('guest_1')
    assert profile.interaction_count == 40
    assert profile.vector == pytest.approx(expected, abs=1e-6)


BOT_METADATA = {
    'user_agent': 'python-requests/2.31',
    'mouse_movements': 0,
    'time_spent_seconds': 2,
    'scroll_percentage': 150,
    'viewport_width': 50,
}


def test_blocked_interaction_is_logged_without_learning(engine):
    ack = engine.log_interaction('bot_1', 1, 'like', metadata=BOT_METADATA)

    assert ack.success is True
    assert ack.profile_updated is False
    assert ack.weight == 0.0
    assert ack.anomaly['handling'] == 'blocked'
    assert ack.anomaly['risk_level'] == 'critical'

    event = engine.interactions.history('bot_1')[0]
    assert event.metadata['is_anomalous'] is True
    assert event.metadata['user_agent'] == 'python-requests/2.31'
    assert engine.feature_store.get_or_create_profile('bot_1').is_neutral
    assert engine.get_insights('bot_1')['profile_updates'] == 0


def test_suspicious_interaction_is_damped(engine):
    clean = engine.log_interaction('guest_1', 1, 'like', metadata={'user_agent': 'Mozilla/5.0'})
    damped = engine.log_interaction('guest_2', 1, 'like', metadata={'user_agent': 'curl/8.4', 'mouse_movements': 0})

    assert clean.anomaly is None
    assert damped.anomaly['handling'] == 'damped'
    assert damped.weight == pytest.approx(clean.weight * engine.config.anomaly_damping)
    assert damped.profile_updated is True


def test_anomaly_detection_can_be_disabled():
    engine = RecommendationEngine(_config(anomaly_detection_enabled=False))
    engine.feature_store.put_content_vector(ContentVector(1, np.array([1.0] + [0.0] * 63)))

    ack = engine.log_interaction('bot_1', 1, 'like', metadata=BOT_METADATA)
    assert ack.anomaly is None
    assert ack.weight == 0.8
    assert ack.profile_updated is True
    assert engine.get_anomalies()['anomalies_found'] == 0
    engine.close()


def test_get_anomalies(engine):
    engine.log_interaction('guest_1', 2, 'view')
    engine.log_interaction('bot_1', 1, 'like', metadata=BOT_METADATA)
    engine.log_interaction('bot_1', 3, 'view')

    report = engine.get_anomalies()
    assert report['total_checked'] == 3
    assert report['anomalies_found'] == 1
    assert report['anomaly_rate'] == pytest.approx(0.3333)
    flagged = report['anomalies'][0]
    assert (flagged['session_id'], flagged['item_id']) == ('bot_1', 1)
    assert flagged['anomaly_score'] >= engine.config.anomaly_block_threshold

    assert engine.get_anomalies('guest_1')['anomalies_found'] == 0
    assert engine.get_anomalies('bot_1')['total_checked'] == 2
    assert engine.get_anomalies(limit=1)['anomalies_found'] == 1

    with pytest.raises(EngineError):
        engine.get_anomalies(limit=0)


def test_insights_and_history(engine):
    engine.log_interaction('guest_1', 1, 'like')
    engine.log_interaction('guest_1', 7, 'view')

    insights = engine.get_insights('guest_1')
    assert insights['interaction_types'] == {'like': 1, 'view': 1}
    assert insights['top_categories'][0] in ('tech', 'sports')
    assert insights['profile_strength'] > 0

    history = engine.get_history('guest_1', limit=5)
    assert [h['item_id'] for h in history] == [7, 1]
    assert history[0]['item']['categories'] == ['sports']


def test_update_profile_preferences_steer_recommendations():
    engine = _engine_with_content(dimension=1024)
    response = engine.update_profile('guest_2', {'sports': 1.0})
    assert response['explicit_preferences'] == {'sports': 1.0}

    result = engine.recommend('guest_2', algorithm='content', diversity_boost=0.0, limit=3)
    assert all(item.id > 6 for item in result.items)

    with pytest.raises(EngineError):
        engine.update_profile('guest_2', ['sports'])
    engine.close()


def test_session_client(engine):
    client = engine.client('guest_9')
    assert isinstance(client, SessionClient)
    assert client.log_interaction(2, 'share').success
    assert client.history()[0]['item_id'] == 2
    assert client.recommend(limit=2).count == 2
    assert SessionClient.new(engine).session_id.startswith('guest_')


# ============================================================================
# Content & Caches
# ============================================================================

def test_ingest_content_is_servable_immediately(engine):
    response = engine.ingest_content({'id': 50, 'title': 'rust programming', 'categories': ['tech']})

    assert response['created'] is True
    assert 50 in engine.feature_store.current()
    assert 50 in engine.feature_store.stale_items()

    again = engine.ingest_content({'id': 50, 'title': 'rust programming, 2nd edition'})
    assert again['created'] is False
    assert again['model_version'] > response['model_version']


def test_ingest_content_validates(engine):
    with pytest.raises(EngineError):
        engine.ingest_content({'title': 'no id'})
    with pytest.raises(EngineError):
        engine.ingest_content({'id': 51, 'published_at': 'yesterday'})


def test_content_change_evicts_cached_lists(engine):
    engine.recommend('guest_1', limit=3)
    assert engine.cache.candidate_cache.size() > 0

    engine.notify_content_changed(1, 'updated')

    assert all(key[0] != 'global' for key in engine.cache.candidate_cache._cache)
    with pytest.raises(EngineError):
        engine.notify_content_changed(1, 'deleted')


# ============================================================================
# Training & Operator Surface
# ============================================================================

def test_sync_training_publishes_model(engine):
    engine.log_interaction('guest_1', 1, 'like')
    engine.log_interaction('guest_2', 1, 'like')
    engine.log_interaction('guest_2', 2, 'like')

    job_id = engine.train(mode='full', run_async=False, clear_cache=True, k=2)

    job = engine.get_job(job_id)
    assert job['status'] == 'completed'
    assert engine.health()['status'] == 'healthy'
    assert engine.health()['last_trained_at'] is not None

    analysis = engine.get_clustering_analysis()
    assert analysis['num_clusters'] == 2
    assert sum(c['size'] for c in analysis['clusters']) == 12
    assert 'silhouette' in analysis['quality']

    result = engine.recommend('guest_2', algorithm='collaborative', limit=3)
    assert result.model_version == job['model_version']


def test_retrain_clustering_and_jobs(engine):
    engine.log_interaction('guest_1', 1, 'like')
    engine.train(run_async=False)

    job_id = engine.retrain_clustering(k=3, run_async=False)

    assert engine.get_job(job_id)['status'] == 'completed'
    assert engine.get_clustering_analysis()['num_clusters'] == 3
    assert engine.cancel_job(job_id) is False
    with pytest.raises(EngineError):
        engine.get_job('missing')
    with pytest.raises(EngineError):
        engine.train(mode='clustering')


def test_untrained_engine_reports_degraded(engine):
    health = engine.health()
    assert health['status'] == 'degraded'
    assert health['num_items'] == 12
    assert engine.get_clustering_analysis()['num_clusters'] == 0


def test_metrics(engine):
    engine.recommend('guest_1', limit=2)
    engine.log_interaction('guest_1', 1, 'like')
    engine.submit_feedback(3, 'helpful')
    with pytest.raises(EngineError):
        engine.recommend('guest_1', limit=0)

    metrics = engine.get_metrics('1h')

    assert metrics['interactions']['total'] == 1
    assert metrics['interactions']['by_type'] == {'like': 1}
    assert metrics['requests']['total'] == 2
    assert metrics['requests']['error_rate'] == pytest.approx(0.5)
    assert metrics['feedback'] == {'helpful': 1}
    assert metrics['model']['num_items'] == 12

    with pytest.raises(EngineError):
        engine.get_metrics('1y')


# ============================================================================
# A/B Testing
# ============================================================================

def test_ab_test_variant_config_fills_unset_parameters(engine):
    engine.create_ab_test({
        'name': 'content_only',
        'variants': [{'name': 'only', 'config': {'algorithm': 'content', 'diversity_boost': 0.0}}],
    })

    result = engine.recommend('guest_1', limit=2)
    assert result.algorithm == 'content'
    assert result.diversity_boost == 0.0
    assert result.experiments == {'content_only': 'only'}

    # Explicit parameters win
    assert engine.recommend('guest_1', limit=2, algorithm='popularity').algorithm == 'popularity'

    engine.log_interaction('guest_1', result.items[0].id, 'recommendation_click')
    stats = engine.get_ab_test_results('content_only')['variants']['only']
    assert stats['impressions'] == 2
    assert stats['clicks'] == 1

    assert engine.stop_ab_test('content_only') is True
    assert engine.recommend('guest_1', limit=2).experiments == {}


def test_metrics_persisted_to_sqlite(tmp_path):
    engine = _engine_with_content(metrics_dir=str(tmp_path))
    engine.recommend('guest_1', limit=2)
    engine.log_interaction('guest_1', 1, 'like')
    job_id = engine.train(run_async=False)

    persisted = engine.get_metrics('1h')['requests']['persisted']
    assert persisted['total_requests'] == 1
    assert persisted['error_count'] == 0
    assert engine.training.metrics_db.get_job(job_id)['status'] == 'completed'
    assert (tmp_path / 'service_metrics.db').exists()
    engine.close()
