"""
A/B Test Manager.

Deterministic variant assignment and per-variant outcome aggregation.

Assignment hashes ``"{test.name}:{session_id}"`` with SHA-256 to a point in
[0, total_weight) and walks the cumulative allocation weights. It needs no
stored assignment state and gives the same variant across calls and
process restarts. A stopped test always serves its first variant (the
control).

Results compare every variant to the control: CTR lift and a chi-square
test (scipy.stats.chi2_contingency) on clicks vs. non-clicks.

Example:
    >>> manager = ABTestManager()
    >>> manager.create_test({'name': 'diversity', 'variants': [
    ...     {'name': 'control', 'weight': 50, 'config': {'diversity_boost': 0.3}},
    ...     {'name': 'more_diverse', 'weight': 50, 'config': {'diversity_boost': 0.6}}]})
    >>> manager.assign('guest_1', 'diversity')
"""

from typing import Any, Dict, List, Mapping, Optional, Union
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
import hashlib
import logging
import math
import threading
import uuid

from scipy.stats import chi2_contingency

from ..errors import EngineError
from ..store.catalog import utcnow
from ..validation import validate_parameter

logger = logging.getLogger(__name__)

ACTIVE = 'active'
STOPPED = 'stopped'
SIGNIFICANCE_LEVEL = 0.05

# Outcome name -> aggregated counter
METRIC_ALIASES = {
    'impression': 'impressions',
    'impressions': 'impressions',
    'click': 'clicks',
    'clicks': 'clicks',
    'recommendation_click': 'clicks',
    'conversion': 'conversions',
    'conversions': 'conversions',
    'like': 'conversions',
    'share': 'conversions',
    'comment': 'conversions',
    'bookmark': 'conversions',
}


@dataclass
class Variant:
    name: str
    weight: float
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ABTest:
    """An experiment definition and its collected metrics."""
    name: str
    variants: List[Variant]
    description: str = ''
    test_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: str = ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    stopped_at: Optional[datetime] = None
    metrics: Dict[str, Dict[str, float]] = field(default_factory=dict)

    @property
    def total_weight(self) -> float:
        return sum(v.weight for v in self.variants)

    @property
    def control(self) -> Variant:
        return self.variants[0]

    def variant(self, name: str) -> Optional[Variant]:
        for v in self.variants:
            if v.name == name:
                return v
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'test_id': self.test_id,
            'name': self.name,
            'description': self.description,
            'status': self.status,
            'variants': [
                {'name': v.name, 'weight': v.weight, 'config': dict(v.config)} for v in self.variants
            ],
            'created_at': self.created_at.isoformat(),
            'stopped_at': self.stopped_at.isoformat() if self.stopped_at else None,
        }


def assign_variant(session_id: str, test: ABTest) -> Variant:
    """Pure deterministic assignment."""
    if test.status != ACTIVE:
        return test.control
    digest = hashlib.sha256(f"{test.name}:{session_id}".encode('utf-8')).digest()
    fraction = int.from_bytes(digest[:8], 'big') / float(1 << 64)
    point = fraction * test.total_weight

    cumulative = 0.0
    for variant in test.variants:
        cumulative += variant.weight
        if point < cumulative:
            return variant
    # Float rounding at the upper edge
    return [v for v in test.variants if v.weight > 0][-1]


class ABTestManager:
    """Registry of experiments plus thread-safe outcome recording."""

    def __init__(self):
        self._tests: Dict[str, ABTest] = {}
        self._lock = threading.Lock()

    # ========================================================================
    # Definition
    # ========================================================================

    def create_test(self, definition: Mapping[str, Any]) -> ABTest:
        """
        Create an experiment.

        Args:
            definition: {'name', 'description'?, 'variants': [{'name', 'weight'?, 'config'?}]}
                Variants without a weight share the traffic equally.

        Raises:
            EngineError: (validation) bad name, duplicate test, bad variants
                or weights that do not sum to a positive total
        """
        name = validate_parameter(
            'name', definition.get('name'),
            lambda n: isinstance(n, str) and n.strip() != '', 'a non-empty string'
        )
        raw_variants = validate_parameter(
            'variants', definition.get('variants'),
            lambda vs: isinstance(vs, (list, tuple)) and len(vs) >= 1, 'a non-empty list of variants'
        )

        variants: List[Variant] = []
        for raw in raw_variants:
            if isinstance(raw, str):
                raw = {'name': raw}
            variant_name = validate_parameter(
                'variants.name', raw.get('name') if isinstance(raw, Mapping) else None,
                lambda n: isinstance(n, str) and n.strip() != '', 'a non-empty variant name'
            )
            weight = raw.get('weight', 1.0)
            validate_parameter(
                f'variants.{variant_name}.weight', weight,
                lambda w: isinstance(w, (int, float)) and not isinstance(w, bool) and math.isfinite(w) and w >= 0,
                'a finite non-negative number'
            )
            variants.append(Variant(variant_name, float(weight), dict(raw.get('config') or {})))

        names = [v.name for v in variants]
        validate_parameter('variants', names, lambda ns: len(set(ns)) == len(ns), 'unique variant names')
        total = sum(v.weight for v in variants)
        validate_parameter('variants.weight', total, lambda t: t > 0, 'weights summing to a positive total')

        test = ABTest(
            name=name,
            variants=variants,
            description=str(definition.get('description') or ''),
            metrics={v.name: defaultdict(float) for v in variants},
        )
        with self._lock:
            if name in self._tests:
                raise EngineError.invalid_parameter('name', name, 'a name not used by another test')
            self._tests[name] = test

        logger.info(f"Created A/B test '{name}' with variants {names}")
        return test

    def get_test(self, name: str) -> ABTest:
        test = self._tests.get(name)
        if test is None:
            raise EngineError.invalid_parameter('test', name, 'an existing A/B test name')
        return test

    def list_tests(self, status: Optional[str] = None) -> List[ABTest]:
        with self._lock:
            tests = list(self._tests.values())
        if status is not None:
            tests = [t for t in tests if t.status == status]
        return sorted(tests, key=lambda t: t.created_at)

    def active_tests(self) -> List[ABTest]:
        return self.list_tests(ACTIVE)

    def stop_test(self, name: str) -> bool:
        """Stop a test. Returns False if it was already stopped."""
        test = self.get_test(name)
        with self._lock:
            if test.status == STOPPED:
                return False
            test.status = STOPPED
            test.stopped_at = utcnow()
        logger.info(f"Stopped A/B test '{name}'")
        return True

    # ========================================================================
    # Assignment & Outcomes
    # ========================================================================

    def assign(self, session_id: str, test: Union[str, ABTest]) -> str:
        if isinstance(test, str):
            test = self.get_test(test)
        return assign_variant(session_id, test).name

    def record_outcome(
        self,
        test: Union[str, ABTest],
        variant: str,
        metric: str,
        value: float = 1.0
    ) -> None:
        """Add ``value`` to the variant's aggregate for ``metric``."""
        if isinstance(test, str):
            test = self.get_test(test)
        if test.variant(variant) is None:
            raise EngineError.invalid_parameter('variant', variant, f"a variant of test '{test.name}'")

        with self._lock:
            aggregate = test.metrics[variant]
            if metric == 'engagement':
                aggregate['engagement_sum'] += value
                aggregate['engagement_count'] += 1
            else:
                aggregate[METRIC_ALIASES.get(metric, metric)] += value

    # ========================================================================
    # Results
    # ========================================================================

    def results(self, test: Union[str, ABTest]) -> Dict[str, Any]:
        """Per-variant aggregates plus significance and lift versus control."""
        if isinstance(test, str):
            test = self.get_test(test)
        with self._lock:
            raw = {name: dict(values) for name, values in test.metrics.items()}

        variants: Dict[str, Dict[str, Any]] = {}
        for v in test.variants:
            m = raw.get(v.name, {})
            impressions = int(m.get('impressions', 0))
            clicks = int(m.get('clicks', 0))
            conversions = int(m.get('conversions', 0))
            engagement_count = m.get('engagement_count', 0)
            variants[v.name] = {
                'weight': v.weight,
                'impressions': impressions,
                'clicks': clicks,
                'conversions': conversions,
                'ctr': clicks / impressions if impressions > 0 else 0.0,
                'conversion_rate': conversions / clicks if clicks > 0 else 0.0,
                'avg_engagement': m.get('engagement_sum', 0.0) / engagement_count if engagement_count else 0.0,
                'metrics': {
                    k: val for k, val in m.items()
                    if k not in ('impressions', 'clicks', 'conversions', 'engagement_sum', 'engagement_count')
                },
                'statistical_significance': None,
                'lift': None,
            }

        control = variants[test.control.name]
        for v in test.variants[1:]:
            stats = variants[v.name]
            stats['statistical_significance'] = _chi_square(
                control['clicks'], control['impressions'], stats['clicks'], stats['impressions']
            )
            if control['ctr'] > 0:
                stats['lift'] = round((stats['ctr'] - control['ctr']) / control['ctr'] * 100, 2)

        return {
            'test_id': test.test_id,
            'name': test.name,
            'status': test.status,
            'control': test.control.name,
            'variants': variants,
        }


def _chi_square(c1: int, n1: int, c2: int, n2: int) -> Optional[Dict[str, Any]]:
    """Chi-square test of two click-through proportions (None if undefined)."""
    if n1 <= 0 or n2 <= 0 or c1 > n1 or c2 > n2:
        return None
    table = [[c1, n1 - c1], [c2, n2 - c2]]
    if c1 + c2 == 0 or (n1 - c1) + (n2 - c2) == 0:
        return None
    chi2, p_value, _, _ = chi2_contingency(table, correction=False)
    return {
        'chi_square': float(chi2),
        'p_value': float(p_value),
        'is_significant': bool(p_value < SIGNIFICANCE_LEVEL),
    }
