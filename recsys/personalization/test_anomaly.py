"""
Tests for interaction anomaly detection.

Run: pytest recsys/personalization/test_anomaly.py
"""

from datetime import timedelta

import pytest

from recsys.personalization.anomaly import AnomalyDetector, AnomalyReport, time_spent
from recsys.personalization.config import EngineConfig
from recsys.personalization.store import InteractionEvent, InteractionStore, utcnow


def _event(session_id, item_id, seconds_ago, type='view', **metadata):
    return InteractionEvent(
        session_id=session_id, item_id=item_id, type=type, weight=0.1,
        metadata=metadata, timestamp=utcnow() - timedelta(seconds=seconds_ago),
    )


def _kinds(report):
    return {a['type'] for a in report.anomalies}


@pytest.fixture
def store():
    return InteractionStore()


@pytest.fixture
def detector(store):
    return AnomalyDetector(store, EngineConfig())


def test_ordinary_interaction_is_clean(detector):
    report = detector.inspect('guest_1', 3, 'view', {
        'time_spent_seconds': 45, 'scroll_percentage': 60,
        'viewport_width': 1280, 'viewport_height': 800, 'user_agent': 'Mozilla/5.0',
    })
    assert not report.has_anomalies
    assert report.score == 0
    assert report.risk_level == 'none'
    assert detector.handling(report) == 'accepted'


def test_time_spent_reads_known_keys():
    assert time_spent({'time_spent': 12}) == 12.0
    assert time_spent({'dwell_seconds': 5, 'seconds': 9}) == 9.0
    assert time_spent({'time_spent_seconds': True}) is None
    assert time_spent({}) is None


# ============================================================================
# Checks
# ============================================================================

def test_speed(store, detector):
    for i in range(31):
        store.append(_event('fast', i, seconds_ago=30 - i * 0.5))

    report = detector.inspect('fast', 99, 'view')
    assert 'speed' in _kinds(report)
    speed = next(a for a in report.anomalies if a['type'] == 'speed')
    assert speed['details']['interactions_per_minute'] == 32

    assert 'speed' not in _kinds(detector.inspect('someone_else', 99, 'view'))


def test_bot_pattern_needs_two_indicators(detector):
    single = detector.inspect('b', 1, 'view', {'user_agent': 'curl/8.4'})
    assert 'bot_pattern' not in _kinds(single)

    report = detector.inspect('b', 1, 'view', {'user_agent': 'curl/8.4', 'mouse_movements': 0})
    bot = next(a for a in report.anomalies if a['type'] == 'bot_pattern')
    assert bot['severity'] == 30
    assert bot['details']['indicators'] == 2


def test_bot_pattern_metronomic_timing(store, detector):
    for i in range(1, 6):
        store.append(_event('metronome', i, seconds_ago=10 * i))

    report = detector.inspect('metronome', 7, 'view', {'user_agent': 'python-requests/2.31'})
    bot = next(a for a in report.anomalies if a['type'] == 'bot_pattern')
    assert 'metronomic interaction timing' in bot['details']['reasons']


def test_impossible_engagement(detector):
    too_long = detector.inspect('e', 1, 'dwell', {'time_spent_seconds': 9000})
    assert 'impossible_engagement' in _kinds(too_long)

    bad_scroll = detector.inspect('e', 1, 'view', {'scroll_percentage': 140})
    assert 'impossible_engagement' in _kinds(bad_scroll)

    inconsistent = detector.inspect('e', 1, 'view', {'engagement_score': 95, 'time_spent_seconds': 3})
    issues = next(a for a in inconsistent.anomalies if a['type'] == 'impossible_engagement')['details']['issues']
    assert issues == ['engagement inconsistent with time spent']


def test_repetitive_same_item(store, detector):
    for i in range(6):
        store.append(_event('loop', 5, seconds_ago=100 * (i + 1), type=['view', 'like'][i % 2]))

    report = detector.inspect('loop', 5, 'view')
    repetitive = next(a for a in report.anomalies if a['type'] == 'repetitive')
    assert repetitive['details']['max_item_repetition'] == 7

    for i in range(4):
        store.append(_event('calm', 5, seconds_ago=100 * (i + 1), type=['view', 'like'][i % 2]))
    assert 'repetitive' not in _kinds(detector.inspect('calm', 5, 'share'))


def test_repetitive_ignores_old_events(store, detector):
    for i in range(8):
        store.append(_event('old', 5, seconds_ago=7200 + i))
    assert 'repetitive' not in _kinds(detector.inspect('old', 5, 'view'))


def test_statistical_outlier(store, detector):
    for i in range(20):
        store.append(_event(f'reader_{i}', i, seconds_ago=3600, time_spent_seconds=28 + 4 * (i % 2)))

    assert 'statistical_outlier' not in _kinds(detector.inspect('r', 1, 'dwell', {'time_spent_seconds': 31}))

    report = detector.inspect('r', 1, 'dwell', {'time_spent_seconds': 300})
    outlier = next(a for a in report.anomalies if a['type'] == 'statistical_outlier')
    assert outlier['details']['mean'] == pytest.approx(30.0)
    assert outlier['details']['z_score'] > 3


def test_statistical_outlier_needs_samples(store, detector):
    for i in range(5):
        store.append(_event('few', i, seconds_ago=60, time_spent_seconds=30))
    assert detector.time_spent_stats() is None
    assert 'statistical_outlier' not in _kinds(detector.inspect('r', 1, 'dwell', {'time_spent_seconds': 3000}))


def test_device(detector):
    assert 'device' in _kinds(detector.inspect('d', 1, 'view', {'viewport_width': 100}))
    assert 'device' in _kinds(detector.inspect('d', 1, 'view', {'device_type': 'mobile', 'viewport_width': 1920}))
    assert 'device' in _kinds(detector.inspect('d', 1, 'view', {'referrer': 'http://casino.example/'}))
    assert 'device' not in _kinds(detector.inspect('d', 1, 'view', {'device_type': 'mobile', 'viewport_width': 390}))


# ============================================================================
# Scoring
# ============================================================================

def _report(*severities):
    return AnomalyReport(anomalies=[{'type': f't{i}', 'severity': s} for i, s in enumerate(severities)])


@pytest.mark.parametrize('severities,level,action', [
    ((10,), 'low', 'log_only'),
    ((30,), 'medium', 'monitor_closely'),
    ((30, 25), 'high', 'flag_for_review'),
    ((30, 25, 20), 'critical', 'block_and_review'),
])
def test_risk_levels(severities, level, action):
    report = _report(*severities)
    assert report.risk_level == level
    assert report.recommended_action == action


def test_score_is_capped():
    assert _report(60, 30, 25).score == 100


def test_handling_follows_thresholds(store):
    detector = AnomalyDetector(store, EngineConfig(anomaly_damp_threshold=20, anomaly_block_threshold=50))
    assert detector.handling(_report(10)) == 'accepted'
    assert detector.handling(_report(20)) == 'damped'
    assert detector.handling(_report(30, 20)) == 'blocked'
    assert detector.handling(AnomalyReport()) == 'accepted'


def test_report_to_dict():
    data = _report(30).to_dict()
    assert data['has_anomalies'] is True
    assert data['anomaly_score'] == 30
    assert data['risk_level'] == 'medium'
    assert len(data['anomalies']) == 1
