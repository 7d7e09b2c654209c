"""
Interaction Anomaly Detection.

Scores every logged interaction for signs of automated or implausible
traffic before it reaches online profile learning. Each check adds its
severity to a score capped at 100:

    speed                 > 30 events of the session within 60s        30
    bot_pattern           >= 2 bot indicators (user agent, instant full
                          scroll, metronomic timing, no mouse movement) 15 each
    impossible_engagement time spent outside [0, 7200]s, scroll outside
                          [0, 100], high engagement with < 10s spent   25
    repetitive            last hour: one item > 5 times or one type
                          > 10 times among the last 20 events           20
    statistical_outlier   time spent |z| > 3 against the last 7 days   15
    device                implausible viewport, mobile with a desktop
                          viewport, spam referrer                       10

The engine blocks (no profile update) or damps (scaled weight) events by
score; see ``EngineConfig.anomaly_*``.

Example:
    >>> detector = AnomalyDetector(interactions, config)
    >>> report = detector.inspect('guest_1', 7, 'view', {'time_spent_seconds': 3})
    >>> report.risk_level, detector.handling(report)
"""

from typing import Any, Dict, List, Mapping, Optional
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
import threading
import time

import numpy as np

from .config import EngineConfig
from .store import InteractionStore, ensure_utc, utcnow

logger = logging.getLogger(__name__)

TIME_SPENT_KEYS = ('time_spent_seconds', 'time_spent', 'seconds', 'dwell_seconds')

SUSPICIOUS_USER_AGENTS = (
    'bot', 'crawler', 'spider', 'scraper', 'curl', 'wget',
    'python-requests', 'java/', 'go-http-client',
)
SUSPICIOUS_REFERRERS = ('spam', 'casino', 'porn', 'viagra')

SPEED_WINDOW_SECONDS = 60
SPEED_MAX_EVENTS = 30
REGULARITY_WINDOW_SECONDS = 600
REGULARITY_MIN_EVENTS = 5
REGULARITY_MAX_STD_SECONDS = 1.0
REPETITION_WINDOW_SECONDS = 3600
REPETITION_SAMPLE = 20
REPETITION_MIN_EVENTS = 5
REPETITION_MAX_ITEM = 5
REPETITION_MAX_TYPE = 10
MAX_TIME_SPENT_SECONDS = 7200
OUTLIER_WINDOW_DAYS = 7
OUTLIER_MIN_SAMPLES = 10
OUTLIER_Z = 3.0
STATS_TTL_SECONDS = 300


def _number(metadata: Mapping[str, Any], key: str) -> Optional[float]:
    value = metadata.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def time_spent(metadata: Mapping[str, Any]) -> Optional[float]:
    """Seconds spent on the item, from the first recognized metadata key."""
    for key in TIME_SPENT_KEYS:
        value = _number(metadata, key)
        if value is not None:
            return value
    return None


@dataclass
class AnomalyReport:
    """Outcome of inspecting one interaction."""
    anomalies: List[Dict[str, Any]] = field(default_factory=list)
    checked_at: datetime = field(default_factory=utcnow)

    @property
    def score(self) -> float:
        return float(min(sum(a['severity'] for a in self.anomalies), 100))

    @property
    def has_anomalies(self) -> bool:
        return bool(self.anomalies)

    @property
    def risk_level(self) -> str:
        score = self.score
        if score >= 70:
            return 'critical'
        if score >= 50:
            return 'high'
        if score >= 30:
            return 'medium'
        if score >= 10:
            return 'low'
        return 'none'

    @property
    def recommended_action(self) -> str:
        return {
            'critical': 'block_and_review',
            'high': 'flag_for_review',
            'medium': 'monitor_closely',
            'low': 'log_only',
            'none': 'none',
        }[self.risk_level]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'has_anomalies': self.has_anomalies,
            'anomaly_score': self.score,
            'risk_level': self.risk_level,
            'recommended_action': self.recommended_action,
            'anomalies': [dict(a) for a in self.anomalies],
            'checked_at': self.checked_at.isoformat(),
        }


class AnomalyDetector:
    """
    Heuristic and statistical checks over a session's recent activity.

    Args:
        interactions: Interaction log the session history is read from
        config: Engine configuration (block/damp thresholds)
    """

    def __init__(self, interactions: InteractionStore, config: Optional[EngineConfig] = None):
        self.interactions = interactions
        self.config = config or EngineConfig()
        self._stats: Optional[Dict[str, float]] = None
        self._stats_at = 0.0
        self._stats_lock = threading.Lock()

    def inspect(
        self,
        session_id: str,
        item_id: int,
        interaction_type: str,
        metadata: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> AnomalyReport:
        """Score an interaction that is about to be logged."""
        metadata = metadata or {}
        now = ensure_utc(now) or utcnow()
        recent = [
            e for e in self.interactions.history(session_id)
            if e.timestamp > now - timedelta(seconds=REPETITION_WINDOW_SECONDS)
        ]

        checks = (
            self._speed(recent, now),
            self._bot_pattern(metadata, recent, now),
            self._impossible_engagement(metadata),
            self._repetitive(recent, item_id, interaction_type),
            self._statistical_outlier(metadata, now),
            self._device(metadata),
        )
        report = AnomalyReport(anomalies=[c for c in checks if c is not None], checked_at=now)
        if report.has_anomalies:
            kinds = ', '.join(a['type'] for a in report.anomalies)
            logger.warning(
                f"Anomalous interaction from {session_id} on item {item_id}: "
                f"score={report.score:.0f} ({kinds})"
            )
        return report

    def handling(self, report: AnomalyReport) -> str:
        """'blocked', 'damped' or 'accepted' for the profile update."""
        if report.score >= self.config.anomaly_block_threshold and report.has_anomalies:
            return 'blocked'
        if report.score >= self.config.anomaly_damp_threshold and report.has_anomalies:
            return 'damped'
        return 'accepted'

    # ========================================================================
    # Checks
    # ========================================================================

    def _speed(self, recent, now: datetime) -> Optional[Dict[str, Any]]:
        cutoff = now - timedelta(seconds=SPEED_WINDOW_SECONDS)
        count = sum(1 for e in recent if e.timestamp > cutoff) + 1
        if count <= SPEED_MAX_EVENTS:
            return None
        return {
            'type': 'speed',
            'severity': 30,
            'description': 'Unusually high interaction rate',
            'details': {'interactions_per_minute': count, 'threshold': SPEED_MAX_EVENTS},
        }

    def _bot_pattern(self, metadata: Mapping[str, Any], recent, now: datetime) -> Optional[Dict[str, Any]]:
        reasons = []

        user_agent = str(metadata.get('user_agent') or '').lower()
        if any(pattern in user_agent for pattern in SUSPICIOUS_USER_AGENTS):
            reasons.append('suspicious user agent')

        spent = time_spent(metadata)
        scroll = _number(metadata, 'scroll_percentage')
        if spent is not None and scroll is not None and spent < 5 and scroll > 80:
            reasons.append('full scroll in under 5 seconds')

        cutoff = now - timedelta(seconds=REGULARITY_WINDOW_SECONDS)
        stamps = sorted(e.timestamp.timestamp() for e in recent if e.timestamp > cutoff)
        stamps.append(now.timestamp())
        if len(stamps) >= REGULARITY_MIN_EVENTS:
            intervals = np.diff(np.asarray(stamps, dtype=np.float64))
            if float(np.std(intervals)) < REGULARITY_MAX_STD_SECONDS:
                reasons.append('metronomic interaction timing')

        if metadata.get('mouse_movements') == 0:
            reasons.append('no mouse movement')

        if len(reasons) < 2:
            return None
        return {
            'type': 'bot_pattern',
            'severity': 15 * len(reasons),
            'description': 'Bot-like behaviour',
            'details': {'indicators': len(reasons), 'reasons': reasons},
        }

    def _impossible_engagement(self, metadata: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        spent = time_spent(metadata)
        scroll = _number(metadata, 'scroll_percentage')
        engagement = _number(metadata, 'engagement_score')
        issues = []

        if spent is not None and not 0 <= spent <= MAX_TIME_SPENT_SECONDS:
            issues.append('time spent out of range')
        if scroll is not None and not 0 <= scroll <= 100:
            issues.append('invalid scroll percentage')
        if engagement is not None and engagement > 80 and (spent or 0) < 10:
            issues.append('engagement inconsistent with time spent')

        if not issues:
            return None
        return {
            'type': 'impossible_engagement',
            'severity': 25,
            'description': 'Impossible or inconsistent engagement metrics',
            'details': {
                'issues': issues,
                'time_spent': spent,
                'scroll_percentage': scroll,
                'engagement_score': engagement,
            },
        }

    def _repetitive(self, recent, item_id: int, interaction_type: str) -> Optional[Dict[str, Any]]:
        sample = recent[:REPETITION_SAMPLE - 1]
        if len(sample) + 1 < REPETITION_MIN_EVENTS:
            return None
        items = Counter(e.item_id for e in sample)
        items[item_id] += 1
        types = Counter(e.type for e in sample)
        types[interaction_type] += 1
        max_item = max(items.values())
        max_type = max(types.values())

        if max_item <= REPETITION_MAX_ITEM and max_type <= REPETITION_MAX_TYPE:
            return None
        return {
            'type': 'repetitive',
            'severity': 20,
            'description': 'Excessively repetitive behaviour',
            'details': {
                'max_item_repetition': max_item,
                'max_type_repetition': max_type,
                'total_interactions': len(sample) + 1,
            },
        }

    def _statistical_outlier(self, metadata: Mapping[str, Any], now: datetime) -> Optional[Dict[str, Any]]:
        spent = time_spent(metadata)
        if spent is None:
            return None
        stats = self.time_spent_stats(now)
        if stats is None:
            return None

        z_score = abs(spent - stats['mean']) / max(stats['std'], 1.0)
        if z_score <= OUTLIER_Z:
            return None
        return {
            'type': 'statistical_outlier',
            'severity': 15,
            'description': 'Time spent is a statistical outlier',
            'details': {
                'z_score': round(z_score, 2),
                'value': spent,
                'mean': round(stats['mean'], 2),
                'std_dev': round(stats['std'], 2),
            },
        }

    def _device(self, metadata: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        width = _number(metadata, 'viewport_width')
        height = _number(metadata, 'viewport_height')
        issues = []

        if width is not None and not 320 <= width <= 7680:
            issues.append('unusual viewport width')
        if height is not None and not 240 <= height <= 4320:
            issues.append('unusual viewport height')
        if metadata.get('device_type') == 'mobile' and width is not None and width > 1024:
            issues.append('device type inconsistent with viewport')
        referrer = str(metadata.get('referrer') or '').lower()
        if any(domain in referrer for domain in SUSPICIOUS_REFERRERS):
            issues.append('suspicious referrer')

        if not issues:
            return None
        return {
            'type': 'device',
            'severity': 10,
            'description': 'Suspicious device information',
            'details': {'issues': issues},
        }

    # ========================================================================
    # Statistics
    # ========================================================================

    def time_spent_stats(self, now: Optional[datetime] = None) -> Optional[Dict[str, float]]:
        """Mean/std/median time spent over the last 7 days (cached briefly)."""
        with self._stats_lock:
            if self._stats is not None and time.monotonic() - self._stats_at < STATS_TTL_SECONDS:
                return self._stats

            since = (now or utcnow()) - timedelta(days=OUTLIER_WINDOW_DAYS)
            values = [time_spent(e.metadata) for e in self.interactions.events_since(since)]
            values = np.asarray([v for v in values if v is not None], dtype=np.float64)
            if values.size < OUTLIER_MIN_SAMPLES:
                return None

            self._stats = {
                'mean': float(values.mean()),
                'std': float(values.std()),
                'median': float(np.median(values)),
                'samples': int(values.size),
            }
            self._stats_at = time.monotonic()
            return self._stats
