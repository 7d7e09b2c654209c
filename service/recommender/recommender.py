"""
Recommendation Engine for the Serving Layer.

``RecommendationEngine`` wires every component (stores, candidate
generator, scorer, reranker, profile updater, training orchestrator, A/B
manager, caches and the content event bus) into one explicit object and
implements the public operations. There is no module-level engine: the
API builds one in its lifespan handler, tests build their own.

Request path:
    validate -> pin snapshot -> candidates -> hybrid score -> MMR rerank

Interaction path (never raises):
    validate -> anomaly check -> log event -> profile update -> A/B outcomes -> ack

Example:
    >>> from service.recommender import RecommendationEngine
    >>> engine = RecommendationEngine()
    >>> engine.ingest_content({'id': 1, 'title': 'Intro to Python', 'categories': ['tech']})
    >>> result = engine.recommend('guest_1', limit=10)
"""

from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union
from collections import Counter, deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
import time

import numpy as np
import pandas as pd

from recsys.personalization.anomaly import AnomalyDetector
from recsys.personalization.config import EngineConfig
from recsys.personalization.errors import EngineError
from recsys.personalization.events import ContentEvent, ContentEventBus
from recsys.personalization.experiments import ABTestManager
from recsys.personalization.features import ContentVectorizer
from recsys.personalization.logging_utils import ServiceMetricsDB, get_service_db, get_training_db
from recsys.personalization.store import (
    ContentCatalog,
    ContentItem,
    ContentVector,
    FeatureStore,
    FeedbackRecord,
    InteractionEvent,
    InteractionStore,
    UserProfile,
    utcnow,
)
from recsys.personalization.training import TrainingJob, TrainingOrchestrator
from recsys.personalization.validation import (
    TRAINING_MODES,
    validate_algorithm,
    validate_diversity_boost,
    validate_feedback_type,
    validate_interaction_type,
    validate_item_id,
    validate_k,
    validate_limit,
    validate_mode,
    validate_parameter,
    validate_session_id,
)

from .cache import CacheInvalidator, CacheManager
from .candidates import CandidateGenerator
from .profile import ProfileUpdater, resolve_weight
from .rerank import DiversityReranker
from .scoring import HybridScorer, ScoringContext, explain, reference_vector, unit

logger = logging.getLogger(__name__)

TIME_RANGES = {
    '1h': timedelta(hours=1),
    '24h': timedelta(hours=24),
    '7d': timedelta(days=7),
    '30d': timedelta(days=30),
}

# Interaction types recorded as A/B "engagement"
ENGAGEMENT_TYPES = ('like', 'share', 'comment', 'bookmark', 'dwell', 'click', 'recommendation_click')


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class RecommendedItem:
    id: int
    score: float
    explanation: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'id': self.id, 'score': round(self.score, 6)}
        if self.explanation is not None:
            data['explanation'] = self.explanation
        return data


@dataclass
class RecommendationResult:
    """Result of a recommendation request."""
    session_id: str
    items: List[RecommendedItem]
    algorithm: str
    diversity_boost: float
    model_version: int
    latency_ms: float
    diversity_score: float = 1.0
    num_candidates: int = 0
    experiments: Dict[str, str] = field(default_factory=dict)

    @property
    def count(self) -> int:
        return len(self.items)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'items': [item.to_dict() for item in self.items],
            'count': self.count,
            'algorithm': self.algorithm,
            'diversity_boost': self.diversity_boost,
            'model_version': self.model_version,
            'latency_ms': round(self.latency_ms, 3),
            'diversity_score': round(self.diversity_score, 4),
            'num_candidates': self.num_candidates,
            'experiments': dict(self.experiments),
        }


@dataclass
class InteractionAck:
    """Receipt of an interaction log call."""
    success: bool
    event_id: Optional[str] = None
    profile_updated: bool = False
    weight: Optional[float] = None
    error: Optional[Dict[str, Any]] = None
    anomaly: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'event_id': self.event_id,
            'profile_updated': self.profile_updated,
            'weight': self.weight,
            'error': self.error,
            'anomaly': self.anomaly,
        }


# ============================================================================
# RecommendationEngine
# ============================================================================

class RecommendationEngine:
    """
    Content personalization engine.

    Args:
        config: Engine configuration (defaults if None)
        catalog: Content catalog (new empty one if None)
        interactions: Interaction store (new empty one if None)
        feature_store: Feature store (new empty one if None)
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        catalog: Optional[ContentCatalog] = None,
        interactions: Optional[InteractionStore] = None,
        feature_store: Optional[FeatureStore] = None
    ):
        self.config = config or EngineConfig()
        self.catalog = catalog or ContentCatalog()
        self.interactions = interactions or InteractionStore()
        self.feature_store = feature_store or FeatureStore(self.config.dimension, self.config.snapshot_history)
        self.vectorizer = ContentVectorizer(self.config.dimension)

        self.cache = CacheManager(self.config)
        self.events = ContentEventBus()
        self.invalidator = CacheInvalidator(self.cache, self.feature_store)
        self.events.subscribe(self.invalidator.handle_event)

        self.candidates = CandidateGenerator(self.cache, self.catalog)
        self.scorer = HybridScorer(self.config)
        self.reranker = DiversityReranker()
        self.profiles = ProfileUpdater(self.feature_store, self.config)
        self.experiments = ABTestManager()
        self.anomalies = AnomalyDetector(self.interactions, self.config)

        self.service_db: Optional[ServiceMetricsDB] = None
        training_db = None
        if self.config.metrics_dir:
            self.service_db = get_service_db(self.config.metrics_dir)
            training_db = get_training_db(self.config.metrics_dir)

        self.training = TrainingOrchestrator(
            self.feature_store, self.catalog, self.interactions, self.vectorizer,
            self.config, metrics_db=training_db
        )
        self.training.add_publish_listener(self._on_model_published)

        self._requests: deque = deque(maxlen=10000)
        self._profile_update_failures = 0
        self._started_at = utcnow()

    def close(self) -> None:
        self.training.shutdown(wait=False)

    def client(self, session_id: str) -> 'SessionClient':
        from .client import SessionClient
        return SessionClient(self, session_id)

    # ========================================================================
    # Helpers
    # ========================================================================

    def _reference_vector(self, profile: UserProfile) -> Optional[np.ndarray]:
        """Profile direction plus the explicit-preference overlay."""
        base = unit(profile.vector)
        overlay = None
        if profile.explicit_preferences:
            key = ('overlay', profile.dimension, tuple(sorted(profile.explicit_preferences.items())))
            overlay = self.cache.get_feature(
                key, lambda: self.vectorizer.vectorize_terms(profile.explicit_preferences)
            )
            if overlay.shape[0] != profile.dimension or not np.any(overlay):
                overlay = None
        if base is None and overlay is None:
            return None
        combined = np.zeros(profile.dimension)
        if base is not None:
            combined += base
        if overlay is not None:
            combined += self.config.preference_weight * overlay
        return combined

    def _on_model_published(self, snapshot: Any, job: TrainingJob) -> None:
        if job.options.get('clear_cache'):
            self.cache.clear_all()

    def _log_request(self, record: Dict[str, Any]) -> None:
        self._requests.append(record)
        if self.service_db is not None:
            try:
                self.service_db.log_request(
                    session_id=record['session_id'],
                    algorithm=record['algorithm'],
                    requested=record['limit'],
                    latency_ms=record['latency_ms'],
                    num_recommendations=record['count'],
                    diversity_boost=record['diversity_boost'],
                    intra_list_diversity=record.get('diversity_score'),
                    error=record.get('error'),
                    model_version=record.get('model_version'),
                )
            except Exception as e:
                logger.warning(f"Failed to persist request metrics: {e}")

    # ========================================================================
    # Recommendations
    # ========================================================================

    def recommend(
        self,
        session_id: str,
        current_item: Optional[int] = None,
        limit: Optional[int] = None,
        algorithm: Optional[str] = None,
        diversity_boost: Optional[float] = None,
        explain_results: bool = False,
        exclude_items: Sequence[int] = (),
        user_id: Optional[int] = None
    ) -> RecommendationResult:
        """
        Personalized recommendations for one session.

        Args:
            session_id: Caller-supplied session identifier
            current_item: Item being viewed (optional)
            limit: Number of items (default config.default_limit)
            algorithm: content | collaborative | popularity | hybrid
            diversity_boost: 0 (pure relevance) .. 1 (maximum spread)
            explain_results: Attach a signal breakdown to each item
            exclude_items: Item ids never to return

        Raises:
            EngineError: validation (bad parameters) or recommendation
                (NO_CANDIDATES)
        """
        start_time = time.perf_counter()
        record: Dict[str, Any] = {
            'timestamp': utcnow(), 'session_id': session_id, 'algorithm': algorithm,
            'diversity_boost': diversity_boost, 'limit': limit, 'count': 0,
        }
        try:
            result = self._recommend(
                session_id, current_item, limit, algorithm, diversity_boost,
                explain_results, exclude_items, user_id, record
            )
        except EngineError as e:
            record['error'] = e.code
            record['latency_ms'] = (time.perf_counter() - start_time) * 1000
            self._log_request(record)
            raise

        result.latency_ms = (time.perf_counter() - start_time) * 1000
        record.update({
            'latency_ms': result.latency_ms,
            'count': result.count,
            'diversity_score': result.diversity_score,
            'model_version': result.model_version,
        })
        self._log_request(record)
        return result

    def _recommend(
        self,
        session_id: str,
        current_item: Optional[int],
        limit: Optional[int],
        algorithm: Optional[str],
        diversity_boost: Optional[float],
        explain_results: bool,
        exclude_items: Sequence[int],
        user_id: Optional[int],
        record: Dict[str, Any]
    ) -> RecommendationResult:
        validate_session_id(session_id)
        if current_item is not None:
            validate_item_id(current_item, field='current_item')
        validate_parameter(
            'exclude_items', exclude_items,
            lambda xs: all(isinstance(x, int) and not isinstance(x, bool) for x in xs),
            'a list of item ids'
        )

        # Variant configs fill parameters the caller left unset
        assignments: Dict[str, str] = {}
        for test in self.experiments.active_tests():
            variant = self.experiments.assign(session_id, test)
            assignments[test.name] = variant
            overrides = test.variant(variant).config
            if algorithm is None and 'algorithm' in overrides:
                algorithm = overrides['algorithm']
            if diversity_boost is None and 'diversity_boost' in overrides:
                diversity_boost = overrides['diversity_boost']

        algorithm = self.config.default_algorithm if algorithm is None else algorithm
        diversity_boost = self.config.diversity_boost if diversity_boost is None else diversity_boost
        limit = self.config.default_limit if limit is None else limit
        validate_algorithm(algorithm, self.config.weights.keys())
        validate_diversity_boost(diversity_boost)
        validate_limit(limit, self.config.max_limit)
        record.update({'algorithm': algorithm, 'diversity_boost': diversity_boost, 'limit': limit})

        # One snapshot for the whole request
        snapshot = self.feature_store.current()
        profile = self.feature_store.get_or_create_profile(session_id, user_id=user_id)
        profile_reference = self._reference_vector(profile) if profile.dimension == snapshot.dimension else None
        current_vector = snapshot.vector(current_item) if current_item is not None else None

        locating = current_vector if current_vector is not None and np.any(current_vector) else profile_reference
        exclude = set(exclude_items) | self.interactions.not_interested(session_id)

        candidate_ids = self.candidates.generate(
            snapshot, locating, current_item=current_item, exclude=exclude,
            limit_hint=limit * self.config.candidate_multiplier, session_id=session_id
        )

        context = ScoringContext(
            snapshot=snapshot,
            algorithm=algorithm,
            history_ids=self.interactions.positive_history(session_id, self.config.collaborative_history_size),
            catalog=self.catalog,
            negative_feedback=self.interactions.negative_feedback_counts(),
        )
        scored = self.scorer.rank(candidate_ids, reference_vector(profile_reference, current_vector), context)
        reranked = self.reranker.rerank(scored, diversity_boost, limit, snapshot.vector)

        for test_name, variant in assignments.items():
            self.experiments.record_outcome(test_name, variant, 'impression')

        items = [
            RecommendedItem(s.item_id, s.score, explain(s) if explain_results else None)
            for s in reranked.items
        ]
        return RecommendationResult(
            session_id=session_id,
            items=items,
            algorithm=algorithm,
            diversity_boost=float(diversity_boost),
            model_version=snapshot.version,
            latency_ms=0.0,
            diversity_score=reranked.diversity_score,
            num_candidates=reranked.num_candidates,
            experiments=assignments,
        )

    # ========================================================================
    # Interactions & Profiles
    # ========================================================================

    def log_interaction(
        self,
        session_id: str,
        item_id: int,
        interaction_type: str,
        weight: Optional[float] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        user_id: Optional[int] = None
    ) -> InteractionAck:
        """
        Record an interaction and update the session profile.

        Never raises: invalid input yields ``success=False`` with the error
        body, and a failed profile update still acknowledges the event.
        """
        try:
            validate_session_id(session_id)
            validate_item_id(item_id)
            validate_interaction_type(interaction_type)
            validate_parameter(
                'metadata', metadata,
                lambda m: m is None or isinstance(m, Mapping), 'a mapping of event attributes'
            )
            effective = resolve_weight(interaction_type, weight, metadata, self.config)
        except EngineError as e:
            logger.info(f"Rejected interaction from {session_id!r}: {e.message}")
            return InteractionAck(success=False, error=e.to_response())

        # Check, log and learn under the session lock so profiles learn in log order
        with self.profiles.locks.hold(session_id):
            ack = self._record_interaction(
                session_id, item_id, interaction_type, effective, dict(metadata or {}), user_id
            )
        if not ack.success or (ack.anomaly or {}).get('handling') == 'blocked':
            return ack

        try:
            for test in self.experiments.active_tests():
                variant = self.experiments.assign(session_id, test)
                self.experiments.record_outcome(test, variant, interaction_type)
                if interaction_type in ENGAGEMENT_TYPES:
                    self.experiments.record_outcome(test, variant, 'engagement', ack.weight)
        except Exception as e:
            logger.error(f"Failed to record A/B outcome for {session_id}: {e}", exc_info=True)

        return ack

    def _record_interaction(
        self,
        session_id: str,
        item_id: int,
        interaction_type: str,
        effective: float,
        attributes: Dict[str, Any],
        user_id: Optional[int]
    ) -> InteractionAck:
        handling = 'accepted'
        if self.config.anomaly_detection_enabled:
            try:
                report = self.anomalies.inspect(session_id, item_id, interaction_type, attributes)
                handling = self.anomalies.handling(report)
                if report.has_anomalies:
                    attributes['is_anomalous'] = True
                    attributes['anomaly_detection'] = {**report.to_dict(), 'handling': handling}
            except Exception as e:
                logger.error(f"Anomaly detection failed for {session_id}: {e}", exc_info=True)
        if handling == 'blocked':
            effective = 0.0
        elif handling == 'damped':
            effective *= self.config.anomaly_damping

        event = InteractionEvent(
            session_id=session_id,
            item_id=item_id,
            type=interaction_type,
            weight=effective,
            metadata=attributes,
            user_id=user_id,
        )
        try:
            self.interactions.append(event)
        except Exception as e:
            logger.error(f"Failed to store interaction for {session_id}: {e}", exc_info=True)
            return InteractionAck(success=False, error={'error': 'interaction not stored', 'error_code': 'STORE_FAILED'})

        ack = InteractionAck(
            success=True, event_id=event.event_id, weight=effective,
            anomaly=event.metadata.get('anomaly_detection'),
        )
        if handling == 'blocked':
            # Kept in the log for review; no learning from it
            return ack

        try:
            self.profiles.update(session_id, event, held=True)
            ack.profile_updated = True
        except EngineError as e:
            self._profile_update_failures += 1
            logger.error(f"Profile update failed [{e.code}]: {e.message} | context={e.context}")
            ack.error = e.to_response()
        except Exception as e:
            self._profile_update_failures += 1
            logger.error(f"Unexpected profile update failure for {session_id}: {e}", exc_info=True)

        return ack

    def get_insights(self, session_id: str) -> Dict[str, Any]:
        """Summary of what the engine has learned about a session."""
        validate_session_id(session_id)
        snapshot = self.feature_store.current()
        profile = self.feature_store.get_or_create_profile(session_id)
        history = self.interactions.history(session_id)

        categories: Counter = Counter()
        for event in history:
            item = self.catalog.get(event.item_id)
            if item is not None and event.weight > 0:
                categories.update(item.categories)

        cluster_id = None
        reference = self._reference_vector(profile)
        if snapshot.clustering is not None and reference is not None and profile.dimension == snapshot.dimension:
            cluster_id = snapshot.clustering.assign(reference)

        return {
            'session_id': session_id,
            'user_id': profile.user_id,
            'interaction_count': len(history),
            'profile_updates': profile.interaction_count,
            'interaction_types': dict(Counter(e.type for e in history)),
            'top_categories': [name for name, _ in categories.most_common(5)],
            'explicit_preferences': dict(profile.explicit_preferences),
            'profile_strength': float(np.linalg.norm(profile.vector)),
            'nearest_cluster': cluster_id,
            'created_at': profile.created_at.isoformat(),
            'last_updated': profile.last_updated.isoformat(),
            'model_version': snapshot.version,
        }

    def update_profile(self, session_id: str, explicit_preferences: Mapping[str, float]) -> Dict[str, Any]:
        validate_session_id(session_id)
        validate_parameter(
            'explicit_preferences', explicit_preferences,
            lambda p: isinstance(p, Mapping), 'a mapping of term -> weight'
        )
        profile = self.profiles.set_preferences(session_id, explicit_preferences)
        return {
            'success': True,
            'session_id': session_id,
            'explicit_preferences': dict(profile.explicit_preferences),
        }

    def get_history(self, session_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Past interactions, most recent first."""
        validate_session_id(session_id)
        validate_limit(limit, self.config.max_limit)
        history = []
        for event in self.interactions.history(session_id, limit):
            entry = event.to_dict()
            item = self.catalog.get(event.item_id)
            if item is not None:
                entry['item'] = {'id': item.item_id, 'title': item.title, 'categories': list(item.categories)}
            history.append(entry)
        return history

    def get_anomalies(self, session_id: Optional[str] = None, limit: int = 100) -> Dict[str, Any]:
        """Recently flagged interactions, most recent first, optionally for one session."""
        if session_id is not None:
            validate_session_id(session_id)
        validate_limit(limit, self.config.max_limit)

        if session_id is not None:
            checked = self.interactions.history(session_id)
        else:
            checked = sorted(self.interactions.events(), key=lambda e: e.timestamp, reverse=True)
        flagged = [e for e in checked if e.metadata.get('is_anomalous')]

        return {
            'session_id': session_id,
            'total_checked': len(checked),
            'anomalies_found': len(flagged),
            'anomaly_rate': round(len(flagged) / len(checked), 4) if checked else 0.0,
            'anomalies': [
                {
                    'event_id': e.event_id,
                    'session_id': e.session_id,
                    'item_id': e.item_id,
                    'type': e.type,
                    'weight': e.weight,
                    'timestamp': e.timestamp.isoformat(),
                    **e.metadata['anomaly_detection'],
                }
                for e in flagged[:limit]
            ],
        }

    def submit_feedback(
        self,
        item_id: int,
        feedback_type: str,
        metadata: Optional[Mapping[str, Any]] = None,
        session_id: Optional[str] = None
    ) -> Dict[str, Any]:
        validate_item_id(item_id)
        validate_feedback_type(feedback_type)
        if session_id is not None:
            validate_session_id(session_id)
        record = self.interactions.record_feedback(FeedbackRecord(
            item_id=item_id, feedback_type=feedback_type,
            session_id=session_id, metadata=dict(metadata or {})
        ))
        logger.info(f"Feedback '{feedback_type}' on item {item_id}")
        return {'success': True, 'item_id': item_id, 'feedback_type': feedback_type,
                'negative': record.is_negative}

    # ========================================================================
    # Content
    # ========================================================================

    def ingest_content(self, item: Union[ContentItem, Mapping[str, Any]]) -> Dict[str, Any]:
        """
        Upsert a content item, vectorize it immediately (servable before the
        next training pass) and publish a content-mutation event.
        """
        if not isinstance(item, ContentItem):
            item = _content_item_from_mapping(item)
        validate_item_id(item.item_id, field='id')

        is_new = self.catalog.upsert(item)
        snapshot = self.feature_store.put_content_vector(
            ContentVector(item_id=item.item_id, values=self.vectorizer.vectorize(item))
        )
        self.notify_content_changed(item.item_id, 'created' if is_new else 'updated')
        return {'success': True, 'item_id': item.item_id, 'created': is_new, 'model_version': snapshot.version}

    def notify_content_changed(self, item_id: int, kind: str = 'updated') -> int:
        """Content-mutation notification: stale mark plus cache eviction."""
        validate_item_id(item_id)
        validate_parameter('kind', kind, lambda k: k in ('created', 'updated'), "'created' or 'updated'")
        return self.events.publish(ContentEvent(item_id=item_id, kind=kind))

    def clear_caches(self) -> int:
        return self.invalidator.clear_all()

    # ========================================================================
    # Operator Surface
    # ========================================================================

    def train(
        self,
        mode: str = 'full',
        batch_size: Optional[int] = None,
        run_async: bool = True,
        clear_cache: bool = False,
        notify: Optional[Callable[[TrainingJob], None]] = None,
        k: Optional[int] = None,
        timeout_seconds: Optional[float] = None
    ) -> str:
        """Start a training job. Returns its id (see ``get_job``)."""
        validate_mode(mode, TRAINING_MODES)
        job = self.training.submit(
            mode=mode, run_async=run_async, batch_size=batch_size, k=k,
            clear_cache=clear_cache, notify=notify, timeout_seconds=timeout_seconds
        )
        return job.job_id

    def retrain_clustering(self, k: Optional[int] = None, run_async: bool = True) -> str:
        validate_k(k)
        return self.training.submit(mode='clustering', run_async=run_async, k=k).job_id

    def get_job(self, job_id: str) -> Dict[str, Any]:
        job = self.training.get_job(job_id)
        if job is None:
            raise EngineError.invalid_parameter('job_id', job_id, 'an existing training job id')
        return job.to_dict()

    def job_future(self, job_id: str) -> Future:
        """Completion future of a training job, for callers that wait without blocking."""
        future = self.training.future(job_id)
        if future is None:
            raise EngineError.invalid_parameter('job_id', job_id, 'an existing training job id')
        return future

    def cancel_job(self, job_id: str) -> bool:
        if self.training.get_job(job_id) is None:
            raise EngineError.invalid_parameter('job_id', job_id, 'an existing training job id')
        return self.training.cancel(job_id)

    def get_metrics(self, time_range: str = '24h') -> Dict[str, Any]:
        """Aggregate engine statistics over ``time_range`` (1h, 24h, 7d, 30d)."""
        validate_parameter('time_range', time_range, lambda t: t in TIME_RANGES, "one of 1h, 24h, 7d, 30d")
        since = utcnow() - TIME_RANGES[time_range]

        frame = self.interactions.to_frame(since)
        interactions = {
            'total': int(len(frame)),
            'unique_sessions': int(frame['session_id'].nunique()) if len(frame) else 0,
            'unique_items': int(frame['item_id'].nunique()) if len(frame) else 0,
            'by_type': {k: int(v) for k, v in frame['type'].value_counts().items()} if len(frame) else {},
            'avg_weight': float(frame['weight'].mean()) if len(frame) else 0.0,
        }

        requests = pd.DataFrame([r for r in list(self._requests) if r['timestamp'] > since])
        if len(requests):
            errors = requests['error'] if 'error' in requests else pd.Series([None] * len(requests))
            request_stats = {
                'total': int(len(requests)),
                'avg_latency_ms': float(requests['latency_ms'].mean()),
                'p95_latency_ms': float(requests['latency_ms'].quantile(0.95)),
                'error_rate': float(errors.notna().mean()),
                'avg_items': float(requests['count'].mean()),
                'by_algorithm': {k: int(v) for k, v in requests['algorithm'].value_counts().items()},
            }
            if 'diversity_score' in requests:
                request_stats['avg_diversity'] = float(requests['diversity_score'].dropna().mean()) \
                    if requests['diversity_score'].notna().any() else None
        else:
            request_stats = {'total': 0}

        feedback = Counter(r.feedback_type for r in self.interactions.feedback(since))
        jobs = Counter(j.status.value for j in self.training.jobs())
        snapshot = self.feature_store.current()

        if self.service_db is not None:
            minutes = int(TIME_RANGES[time_range].total_seconds() // 60)
            request_stats['persisted'] = self.service_db.get_request_stats(minutes)

        return {
            'time_range': time_range,
            'since': since.isoformat(),
            'interactions': interactions,
            'requests': request_stats,
            'feedback': dict(feedback),
            'profiles': self.feature_store.profile_count(),
            'profile_update_failures': self._profile_update_failures,
            'model': {
                'version': snapshot.version,
                'model_id': snapshot.model_id,
                'num_items': len(snapshot),
                'stale_items': len(self.feature_store.stale_items()),
            },
            'training_jobs': dict(jobs),
            'cache': self.cache.get_stats(),
        }

    def get_clustering_analysis(self) -> Dict[str, Any]:
        snapshot = self.feature_store.current()
        clustering = snapshot.clustering
        quality = {}
        job = self.training.get_job(snapshot.model_id)
        if job is not None:
            quality = dict(job.quality_metrics)
        if clustering is None:
            return {'model_version': snapshot.version, 'num_clusters': 0, 'metric': None,
                    'clusters': [], 'quality': quality}
        return {
            'model_version': snapshot.version,
            'num_clusters': clustering.k,
            'metric': clustering.metric,
            'clusters': clustering.summary(self.catalog),
            'quality': quality,
        }

    def create_ab_test(self, definition: Mapping[str, Any]) -> str:
        return self.experiments.create_test(definition).test_id

    def get_ab_test_results(self, name: str) -> Dict[str, Any]:
        return self.experiments.results(name)

    def stop_ab_test(self, name: str) -> bool:
        return self.experiments.stop_test(name)

    def health(self) -> Dict[str, Any]:
        snapshot = self.feature_store.current()
        last_trained = self.training.last_success_at
        running = [j.job_id for j in self.training.jobs() if not j.is_terminal]
        return {
            'status': 'healthy' if snapshot.trained else 'degraded',
            'model_version': snapshot.version,
            'model_id': snapshot.model_id,
            'last_trained_at': last_trained.isoformat() if last_trained else None,
            'num_items': len(snapshot),
            'num_profiles': self.feature_store.profile_count(),
            'training_in_progress': running,
            'uptime_seconds': (utcnow() - self._started_at).total_seconds(),
        }


def _content_item_from_mapping(data: Mapping[str, Any]) -> ContentItem:
    item_id = data.get('id', data.get('item_id'))
    validate_item_id(item_id, field='id')
    kwargs: Dict[str, Any] = {
        'item_id': item_id,
        'title': str(data.get('title') or ''),
        'body': str(data.get('body') or data.get('content') or ''),
        'categories': list(data.get('categories') or []),
        'tags': list(data.get('tags') or []),
        'author': data.get('author'),
    }
    for key in ('published_at', 'updated_at'):
        value = data.get(key)
        if isinstance(value, str):
            try:
                value = datetime.fromisoformat(value)
            except ValueError as e:
                raise EngineError.invalid_parameter(key, value, 'an ISO 8601 timestamp') from e
        if value is not None:
            kwargs[key] = value
    return ContentItem(**kwargs)
