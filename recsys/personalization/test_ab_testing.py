"""
Tests for A/B test definition, assignment and results.

Run: pytest recsys/personalization/test_ab_testing.py
"""

import pytest

from recsys.personalization.errors import EngineError
from recsys.personalization.experiments import ABTestManager, assign_variant


def _manager_with_test(weights=(1.0, 1.0), name='ranking'):
    manager = ABTestManager()
    manager.create_test({
        'name': name,
        'description': 'hybrid vs content',
        'variants': [
            {'name': 'control', 'weight': weights[0], 'config': {'algorithm': 'hybrid'}},
            {'name': 'treatment', 'weight': weights[1], 'config': {'algorithm': 'content'}},
        ],
    })
    return manager


def test_create_test_defaults_to_equal_weights():
    manager = ABTestManager()
    test = manager.create_test({'name': 'layout', 'variants': ['a', 'b', 'c']})

    assert [v.weight for v in test.variants] == [1.0, 1.0, 1.0]
    assert test.control.name == 'a'
    assert test.status == 'active'
    assert manager.get_test('layout') is test


@pytest.mark.parametrize("definition", [
    {'name': '', 'variants': ['a']},
    {'name': 'x', 'variants': []},
    {'name': 'x', 'variants': [{'name': 'a', 'weight': -1}]},
    {'name': 'x', 'variants': [{'name': 'a', 'weight': 0}, {'name': 'b', 'weight': 0}]},
    {'name': 'x', 'variants': ['a', 'a']},
    {'name': 'x', 'variants': [{'name': 'a', 'weight': float('nan')}]},
])
def test_create_test_rejects_bad_definitions(definition):
    with pytest.raises(EngineError) as exc:
        ABTestManager().create_test(definition)
    assert exc.value.kind.value == 'validation'


def test_duplicate_and_unknown_names():
    manager = _manager_with_test()
    with pytest.raises(EngineError):
        _ = manager.create_test({'name': 'ranking', 'variants': ['a']})
    with pytest.raises(EngineError):
        manager.get_test('missing')


def test_assignment_is_deterministic():
    manager = _manager_with_test()
    first = [manager.assign(f'guest_{i}', 'ranking') for i in range(50)]
    second = [manager.assign(f'guest_{i}', 'ranking') for i in range(50)]
    assert first == second
    assert set(first) == {'control', 'treatment'}


def test_assignment_follows_weights():
    manager = _manager_with_test(weights=(1.0, 3.0))
    test = manager.get_test('ranking')
    share = sum(assign_variant(f'session-{i}', test).name == 'treatment' for i in range(4000)) / 4000
    assert 0.7 < share < 0.8


def test_zero_weight_variant_never_assigned():
    manager = _manager_with_test(weights=(0.0, 1.0))
    assert {manager.assign(f's{i}', 'ranking') for i in range(200)} == {'treatment'}


def test_stopped_test_serves_control():
    manager = _manager_with_test(weights=(0.0, 1.0))
    assert manager.stop_test('ranking') is True
    assert manager.stop_test('ranking') is False
    assert manager.assign('anyone', 'ranking') == 'control'
    assert manager.active_tests() == []
    assert manager.get_test('ranking').stopped_at is not None


def test_results_with_significance_and_lift():
    manager = _manager_with_test()
    manager.record_outcome('ranking', 'control', 'impression', 100)
    manager.record_outcome('ranking', 'control', 'click', 10)
    manager.record_outcome('ranking', 'treatment', 'impression', 100)
    manager.record_outcome('ranking', 'treatment', 'recommendation_click', 30)
    manager.record_outcome('ranking', 'treatment', 'like', 6)
    manager.record_outcome('ranking', 'treatment', 'engagement', 0.8)
    manager.record_outcome('ranking', 'treatment', 'engagement', 0.4)

    results = manager.results('ranking')
    control = results['variants']['control']
    treatment = results['variants']['treatment']

    assert results['control'] == 'control'
    assert control['ctr'] == pytest.approx(0.1)
    assert treatment['ctr'] == pytest.approx(0.3)
    assert treatment['conversion_rate'] == pytest.approx(0.2)
    assert treatment['avg_engagement'] == pytest.approx(0.6)
    assert treatment['lift'] == pytest.approx(200.0)
    assert control['statistical_significance'] is None
    significance = treatment['statistical_significance']
    assert significance['is_significant'] is True
    assert significance['p_value'] < 0.05


def test_results_without_data_have_no_significance():
    manager = _manager_with_test()
    results = manager.results('ranking')
    assert results['variants']['treatment']['statistical_significance'] is None
    assert results['variants']['treatment']['lift'] is None


def test_record_outcome_unknown_variant():
    manager = _manager_with_test()
    with pytest.raises(EngineError):
        manager.record_outcome('ranking', 'ghost', 'click')
