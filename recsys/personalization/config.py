"""
Engine Configuration.

``EngineConfig`` holds every tunable of the personalization engine. The
defaults are empirical (e.g. diversity_boost = 0.3); they are starting
points, not semantics. Values can be loaded from the ``personalization:``
section of a YAML file and overridden by environment variables.

Environment:
    RECSYS_CONFIG: Path to the YAML config file
    RECSYS_DIMENSION: Content/profile vector dimensionality
    RECSYS_METRICS_DIR: Directory for the SQLite metrics databases

Example:
    >>> from recsys.personalization.config import load_config
    >>> config = load_config('config/personalization.yaml')
    >>> config.weights['hybrid']
"""

from typing import Any, Dict, Optional
from dataclasses import dataclass, field, fields
from pathlib import Path
import logging
import os

import yaml

from .errors import EngineError

logger = logging.getLogger(__name__)

SIGNALS = ('content', 'collaborative', 'recency', 'popularity')


def _default_weights() -> Dict[str, Dict[str, float]]:
    return {
        'content': {'content': 1.0},
        'collaborative': {'collaborative': 1.0},
        'popularity': {'popularity': 1.0},
        'hybrid': {
            'content': 0.40,        # PRIMARY - profile similarity
            'collaborative': 0.30,  # SECONDARY - co-interaction signal
            'recency': 0.15,
            'popularity': 0.15,
        },
    }


def _default_interaction_weights() -> Dict[str, float]:
    return {
        'view': 0.1,
        'click': 0.2,
        'recommendation_click': 0.3,
        'dwell': 0.5,
        'like': 0.8,
        'share': 0.9,
        'bookmark': 0.9,
        'comment': 1.0,
        'dislike': -0.8,
    }


def _default_min_corpus() -> Dict[str, Dict[str, int]]:
    return {
        'full': {'content_vectors': 10, 'interaction_events': 20},
        'incremental': {'content_vectors': 1, 'interaction_events': 0},
        'clustering': {'content_vectors': 2, 'interaction_events': 0},
    }


@dataclass
class EngineConfig:
    """Configuration for RecommendationEngine and its components."""

    # Vector space
    dimension: int = 128

    # Request defaults
    default_algorithm: str = 'hybrid'
    diversity_boost: float = 0.3
    default_limit: int = 10
    max_limit: int = 100
    candidate_multiplier: int = 3

    # Scoring
    weights: Dict[str, Dict[str, float]] = field(default_factory=_default_weights)
    recency_half_life_days: float = 14.0
    collaborative_history_size: int = 20
    negative_feedback_penalty: float = 0.1
    preference_weight: float = 0.5

    # Online profile learning
    learning_rate: float = 0.6
    min_alpha: float = 0.05
    max_alpha: float = 0.9
    max_event_weight: float = 2.0
    dwell_boost_seconds: float = 60.0
    dwell_boost_factor: float = 1.5
    profile_half_life_days: float = 30.0
    interaction_weights: Dict[str, float] = field(default_factory=_default_interaction_weights)

    # Anomaly detection (score 0-100 per event)
    anomaly_detection_enabled: bool = True
    anomaly_block_threshold: float = 70.0
    anomaly_damp_threshold: float = 30.0
    anomaly_damping: float = 0.5

    # Training
    min_corpus: Dict[str, Dict[str, int]] = field(default_factory=_default_min_corpus)
    default_k: Optional[int] = None
    training_timeout_seconds: float = 3600.0
    training_batch_size: int = 100
    random_state: int = 42
    snapshot_history: int = 5

    # Caches
    candidate_cache_size: int = 10000
    candidate_cache_ttl_seconds: float = 1800.0
    feature_cache_size: int = 50000
    feature_cache_ttl_seconds: float = 3600.0

    # Metrics persistence (None = in-memory only)
    metrics_dir: Optional[str] = None

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Check weight sets and numeric bounds."""
        if not isinstance(self.dimension, int) or self.dimension <= 0:
            raise EngineError.invalid_parameter('dimension', self.dimension, 'a positive integer')

        for algorithm, weights in self.weights.items():
            unknown = set(weights) - set(SIGNALS)
            if unknown:
                raise EngineError.invalid_parameter(
                    f'weights.{algorithm}', sorted(unknown), f"signals among {', '.join(SIGNALS)}"
                )
            if any(w < 0 for w in weights.values()):
                raise EngineError.invalid_parameter(
                    f'weights.{algorithm}', weights, 'non-negative weights'
                )
            total = sum(weights.values())
            if abs(total - 1.0) > 1e-6:
                raise EngineError.invalid_parameter(
                    f'weights.{algorithm}', total, 'weights summing to 1'
                )

        if self.default_algorithm not in self.weights:
            raise EngineError.invalid_parameter(
                'default_algorithm', self.default_algorithm, f"one of {', '.join(self.weights)}"
            )
        if not 0.0 <= self.diversity_boost <= 1.0:
            raise EngineError.invalid_parameter('diversity_boost', self.diversity_boost, 'a number in [0, 1]')
        if not 0.0 < self.min_alpha <= self.max_alpha < 1.0:
            raise EngineError.invalid_parameter(
                'alpha bounds', (self.min_alpha, self.max_alpha), '0 < min_alpha <= max_alpha < 1'
            )
        if self.candidate_multiplier < 1:
            raise EngineError.invalid_parameter('candidate_multiplier', self.candidate_multiplier, 'an integer >= 1')
        if self.recency_half_life_days <= 0 or self.profile_half_life_days <= 0:
            raise EngineError.invalid_parameter(
                'half_life_days', (self.recency_half_life_days, self.profile_half_life_days), 'positive values'
            )
        if not 0 <= self.anomaly_damp_threshold <= self.anomaly_block_threshold:
            raise EngineError.invalid_parameter(
                'anomaly thresholds', (self.anomaly_damp_threshold, self.anomaly_block_threshold),
                '0 <= anomaly_damp_threshold <= anomaly_block_threshold'
            )
        if not 0.0 <= self.anomaly_damping <= 1.0:
            raise EngineError.invalid_parameter('anomaly_damping', self.anomaly_damping, 'a number in [0, 1]')

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


# ============================================================================
# Loading
# ============================================================================

def load_config(config_path: Optional[str] = None) -> EngineConfig:
    """
    Load engine configuration.

    Args:
        config_path: YAML file path (default: $RECSYS_CONFIG, else defaults)

    Returns:
        EngineConfig with YAML values and environment overrides applied
    """
    config_path = config_path or os.getenv('RECSYS_CONFIG')
    values: Dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
            values = dict(data.get('personalization', data) or {})
            logger.info(f"Loaded personalization config from {path}")
        else:
            logger.warning(f"Config file {path} not found, using defaults")

    known = {f.name for f in fields(EngineConfig)}
    unknown = set(values) - known
    if unknown:
        logger.warning(f"Ignoring unknown config keys: {sorted(unknown)}")
    values = {k: v for k, v in values.items() if k in known}

    # Merge partial dict sections with defaults
    defaults = EngineConfig()
    for key in ('weights', 'interaction_weights', 'min_corpus'):
        if key in values:
            merged = dict(getattr(defaults, key))
            merged.update(values[key] or {})
            values[key] = merged

    if os.getenv('RECSYS_DIMENSION'):
        values['dimension'] = int(os.environ['RECSYS_DIMENSION'])
    if os.getenv('RECSYS_METRICS_DIR'):
        values['metrics_dir'] = os.environ['RECSYS_METRICS_DIR']

    return EngineConfig(**values)
