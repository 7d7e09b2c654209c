"""
Training Orchestrator.

Runs (re)training jobs through the state machine

    idle -> validating -> training -> evaluating -> completed
                 \\            \\             \\
                  +------------+-------------+--> failed

- validating: minimum corpus per data type for the mode
- training: vectorize content in batches (full: everything, incremental:
  only items touched since the last successful job), fit the clustering,
  compute popularity and item-item co-interaction statistics
- evaluating: clustering quality metrics (never blocks completion)
- completed: publish the new snapshot with one swap in the FeatureStore;
  content edited while the job ran keeps its fresher vector and stays stale

Cancellation and timeout are cooperative: they are checked between batches
and right before publication, so an aborted job never publishes and the
previously published model stays in place.

Jobs run on a dedicated single-worker executor, never on a serving thread;
synchronous callers wait on the job future.

Example:
    >>> orchestrator = TrainingOrchestrator(store, catalog, interactions, vectorizer, config)
    >>> job = orchestrator.submit(mode='full', run_async=False)
    >>> job.status
    <JobStatus.COMPLETED: 'completed'>
"""

from typing import Any, Callable, Dict, List, Optional, Sequence, Set
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import logging
import threading
import time

import numpy as np
import scipy.sparse as sp
from sklearn.metrics.pairwise import cosine_similarity

from ..clustering import ClusteringModel, default_k
from ..config import EngineConfig
from ..errors import EngineError, ErrorKind
from ..features import ContentVectorizer
from ..logging_utils import TrainingMetricsDB, format_metrics, format_params, generate_run_id
from ..store import ContentCatalog, FeatureStore, InteractionStore, ModelSnapshot, utcnow
from ..validation import validate_k, validate_mode, validate_parameter
from .evaluation import evaluate_clustering

logger = logging.getLogger(__name__)

ALL_MODES = ('full', 'incremental', 'clustering')


class JobStatus(str, Enum):
    IDLE = 'idle'
    VALIDATING = 'validating'
    TRAINING = 'training'
    EVALUATING = 'evaluating'
    COMPLETED = 'completed'
    FAILED = 'failed'


ALLOWED_TRANSITIONS = {
    JobStatus.IDLE: {JobStatus.VALIDATING},
    JobStatus.VALIDATING: {JobStatus.TRAINING, JobStatus.FAILED},
    JobStatus.TRAINING: {JobStatus.EVALUATING, JobStatus.FAILED},
    JobStatus.EVALUATING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


@dataclass
class TrainingJob:
    """One (re)training run and its audit trail."""
    job_id: str
    mode: str
    options: Dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.IDLE
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    data_metrics: Dict[str, Any] = field(default_factory=dict)
    quality_metrics: Dict[str, Any] = field(default_factory=dict)
    model_version: Optional[int] = None
    error: Optional[Dict[str, Any]] = None
    transitions: List[Dict[str, str]] = field(default_factory=list)
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    def transition(self, target: JobStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise EngineError.invalid_transition(self.job_id, self.status.value, target.value)
        now = utcnow()
        self.transitions.append({'from': self.status.value, 'to': target.value, 'at': now.isoformat()})
        self.status = target
        if target is JobStatus.VALIDATING:
            self.started_at = now
        if self.is_terminal:
            self.finished_at = now

    def fail(self, error: EngineError) -> None:
        self.error = error.to_response()
        if not self.is_terminal:
            self.transition(JobStatus.FAILED)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'mode': self.mode,
            'status': self.status.value,
            'options': {k: v for k, v in self.options.items() if k != 'notify'},
            'created_at': self.created_at.isoformat(),
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration_seconds': self.duration_seconds,
            'data_metrics': dict(self.data_metrics),
            'quality_metrics': dict(self.quality_metrics),
            'model_version': self.model_version,
            'error': self.error,
            'transitions': list(self.transitions),
        }


PublishListener = Callable[[ModelSnapshot, TrainingJob], None]


class TrainingOrchestrator:
    """
    Creates, runs and tracks training jobs.

    Args:
        feature_store: Store the new snapshot is published to
        catalog: Content corpus
        interactions: Interaction corpus
        vectorizer: Content -> vector mapping
        config: Engine configuration
        metrics_db: Optional SQLite audit trail
    """

    def __init__(
        self,
        feature_store: FeatureStore,
        catalog: ContentCatalog,
        interactions: InteractionStore,
        vectorizer: ContentVectorizer,
        config: Optional[EngineConfig] = None,
        metrics_db: Optional[TrainingMetricsDB] = None
    ):
        self.store = feature_store
        self.catalog = catalog
        self.interactions = interactions
        self.vectorizer = vectorizer
        self.config = config or EngineConfig()
        self.metrics_db = metrics_db

        self._jobs: Dict[str, TrainingJob] = {}
        self._futures: Dict[str, Future] = {}
        self._jobs_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='training')
        self._listeners: List[PublishListener] = []
        self.last_success_at: Optional[datetime] = None

    def add_publish_listener(self, listener: PublishListener) -> None:
        self._listeners.append(listener)

    # ========================================================================
    # Job Management
    # ========================================================================

    def create_job(
        self,
        mode: str = 'full',
        batch_size: Optional[int] = None,
        k: Optional[int] = None,
        clear_cache: bool = False,
        notify: Optional[Callable[[TrainingJob], None]] = None,
        timeout_seconds: Optional[float] = None
    ) -> TrainingJob:
        """Validate options and register a new idle job."""
        validate_mode(mode, ALL_MODES)
        batch_size = batch_size if batch_size is not None else self.config.training_batch_size
        validate_parameter(
            'batch_size', batch_size,
            lambda b: isinstance(b, int) and not isinstance(b, bool) and b > 0,
            'a positive integer'
        )
        validate_k(k)
        timeout = timeout_seconds if timeout_seconds is not None else self.config.training_timeout_seconds

        job = TrainingJob(
            job_id=generate_run_id(mode),
            mode=mode,
            options={
                'batch_size': batch_size,
                'k': k,
                'clear_cache': bool(clear_cache),
                'timeout_seconds': timeout,
                'notify': notify,
            }
        )
        with self._jobs_lock:
            self._jobs[job.job_id] = job
        return job

    def submit(self, mode: str = 'full', run_async: bool = True, **options: Any) -> TrainingJob:
        """
        Create a job and run it on the training executor.

        With ``run_async=False`` the caller blocks until the job is terminal;
        the job still runs on the training thread.
        """
        job = self.create_job(mode=mode, **options)
        future = self._executor.submit(self.run, job)
        with self._jobs_lock:
            self._futures[job.job_id] = future
        if not run_async:
            future.result()
        return job

    def future(self, job_id: str) -> Optional[Future]:
        """Completion future of a submitted job (resolves to the job)."""
        return self._futures.get(job_id)

    def get_job(self, job_id: str) -> Optional[TrainingJob]:
        return self._jobs.get(job_id)

    def jobs(self) -> List[TrainingJob]:
        with self._jobs_lock:
            return sorted(self._jobs.values(), key=lambda j: j.created_at)

    def cancel(self, job_id: str) -> bool:
        """Request cancellation. Returns False for unknown or finished jobs."""
        job = self._jobs.get(job_id)
        if job is None or job.is_terminal:
            return False
        job.cancel_event.set()
        logger.info(f"Cancellation requested for job {job_id}")
        return True

    def shutdown(self, wait: bool = True) -> None:
        for job in self.jobs():
            if not job.is_terminal:
                job.cancel_event.set()
        self._executor.shutdown(wait=wait)

    # ========================================================================
    # Job Execution
    # ========================================================================

    def run(self, job: TrainingJob) -> TrainingJob:
        """
        Drive an idle job through the state machine.

        Job failures are recorded on the job, not raised. Running a job
        that already left ``idle`` raises an invalid-transition error.
        """
        if job.status is not JobStatus.IDLE:
            raise EngineError.invalid_transition(job.job_id, job.status.value, JobStatus.VALIDATING.value)
        deadline = time.monotonic() + float(job.options.get('timeout_seconds') or 0)
        t_start = time.time()
        if self.metrics_db is not None:
            self.metrics_db.log_training_start(job.job_id, job.mode, job.to_dict()['options'])

        try:
            job.transition(JobStatus.VALIDATING)
            options = {k: v for k, v in job.options.items() if k != 'notify'}
            logger.info(f"Job {job.job_id} started: mode={job.mode}, {format_params(options)}")
            self._check_abort(job, deadline)
            snapshot = self.store.current()
            touched = self._validate(job, snapshot)

            job.transition(JobStatus.TRAINING)
            new_snapshot, processed = self._train(job, snapshot, touched, deadline)

            job.transition(JobStatus.EVALUATING)
            try:
                if new_snapshot.clustering is not None:
                    job.quality_metrics = evaluate_clustering(
                        new_snapshot.clustering, new_snapshot.item_ids, new_snapshot.matrix
                    )
            except Exception as e:
                logger.warning(f"Job {job.job_id}: evaluation failed: {e}")
                job.quality_metrics = {'evaluation_error': str(e)}

            self._check_abort(job, deadline)
            # Content edited after the job read its inputs keeps its fresher
            # vector and its stale mark for the next incremental pass
            published = self.store.publish(new_snapshot, newer_than=job.started_at)
            self.store.clear_stale(processed, marked_before=job.started_at)
            job.model_version = published.version
            job.transition(JobStatus.COMPLETED)
            if job.mode != 'clustering':
                self.last_success_at = job.started_at

            logger.info(
                f"Job {job.job_id} completed: model v{published.version} | "
                f"{format_metrics(job.quality_metrics)}"
            )
            if self.metrics_db is not None:
                self.metrics_db.log_training_complete(
                    job.job_id, job.quality_metrics, job.data_metrics,
                    model_version=published.version,
                    training_time_seconds=time.time() - t_start
                )

            for listener in self._listeners:
                self._safe_call(listener, published, job)

        except EngineError as e:
            self._record_failure(job, e)
        except Exception as e:
            self._record_failure(job, EngineError(
                ErrorKind.TRAINING, f"Training job {job.job_id} failed: {e}",
                code='TRAINING_FAILED', context={'job_id': job.job_id}, cause=e
            ))

        notify = job.options.get('notify')
        if notify is not None:
            self._safe_call(notify, job)
        return job

    def _record_failure(self, job: TrainingJob, error: EngineError) -> None:
        job.fail(error)
        logger.error(f"Job {job.job_id} failed [{error.code}]: {error.message}")
        if self.metrics_db is not None:
            status = 'timed_out' if error.code == 'TRAINING_TIMEOUT' else (
                'cancelled' if error.code == 'TRAINING_CANCELLED' else 'failed'
            )
            self.metrics_db.log_training_failed(job.job_id, status, error.message)

    def _check_abort(self, job: TrainingJob, deadline: float) -> None:
        if job.cancel_event.is_set():
            raise EngineError.training_aborted(job.job_id, 'cancelled')
        if time.monotonic() >= deadline:
            raise EngineError.training_aborted(job.job_id, 'timeout')

    @staticmethod
    def _safe_call(callback: Callable, *args: Any) -> None:
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Training callback failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Validating
    # ------------------------------------------------------------------

    def _touched_items(self, snapshot: ModelSnapshot) -> Set[int]:
        """Items changed since the last successful job or never vectorized."""
        touched = {item.item_id for item in self.catalog.updated_since(self.last_success_at)}
        touched |= self.store.stale_items()
        touched |= {item.item_id for item in self.catalog.items() if item.item_id not in snapshot}
        return {i for i in touched if i in self.catalog}

    def _validate(self, job: TrainingJob, snapshot: ModelSnapshot) -> Set[int]:
        minimums = dict(self.config.min_corpus.get(job.mode, {}))
        touched: Set[int] = set()

        if job.mode == 'full':
            content_count = len(self.catalog)
        elif job.mode == 'incremental':
            touched = self._touched_items(snapshot)
            content_count = len(set(snapshot.item_ids) | touched)
        else:
            content_count = len(snapshot)
            k = job.options.get('k') or self.config.default_k
            minimums['content_vectors'] = max(minimums.get('content_vectors', 2), k or 2, 2)

        job.data_metrics = {
            'content_vectors': content_count,
            'interaction_events': self.interactions.count(),
            'sessions': self.interactions.session_count(),
            'touched_items': len(touched),
            'base_model_version': snapshot.version,
        }

        if job.mode != 'full' and not snapshot.trained:
            raise EngineError.insufficient_data('published_model', 1, 0, mode=job.mode)

        for data_type in ('content_vectors', 'interaction_events'):
            required = int(minimums.get(data_type, 0))
            actual = job.data_metrics[data_type]
            if actual < required:
                raise EngineError.insufficient_data(data_type, required, actual, mode=job.mode)

        logger.info(f"Job {job.job_id} validated: {job.data_metrics}")
        return touched

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def _vectorize_batches(
        self,
        job: TrainingJob,
        item_ids: Sequence[int],
        deadline: float
    ) -> Dict[int, np.ndarray]:
        batch_size = job.options['batch_size']
        vectors: Dict[int, np.ndarray] = {}
        for start in range(0, len(item_ids), batch_size):
            self._check_abort(job, deadline)
            batch = [self.catalog.get(i) for i in item_ids[start:start + batch_size]]
            matrix = self.vectorizer.vectorize_many(batch)
            for item, row in zip(batch, matrix):
                vectors[item.item_id] = row
        return vectors

    def _train(
        self,
        job: TrainingJob,
        snapshot: ModelSnapshot,
        touched: Set[int],
        deadline: float
    ) -> tuple:
        now = utcnow()

        if job.mode == 'full':
            item_ids = [item.item_id for item in self.catalog.items()]
            vectors = self._vectorize_batches(job, item_ids, deadline)
            processed = set(item_ids)
            computed_at = {i: now for i in item_ids}
        elif job.mode == 'incremental':
            ordered = sorted(touched)
            fresh = self._vectorize_batches(job, ordered, deadline)
            vectors = {i: snapshot.vector(i) for i in snapshot.item_ids}
            vectors.update(fresh)
            item_ids = sorted(vectors)
            processed = set(ordered)
            computed_at = dict(snapshot.computed_at)
            computed_at.update({i: now for i in ordered})
        else:
            item_ids = list(snapshot.item_ids)
            vectors = {i: snapshot.vector(i) for i in item_ids}
            processed = set()
            computed_at = dict(snapshot.computed_at)

        matrix = np.vstack([vectors[i] for i in item_ids]) if item_ids else np.zeros((0, self.vectorizer.dimension))
        self._check_abort(job, deadline)

        k = job.options.get('k') or self.config.default_k or default_k(len(item_ids))
        clustering = ClusteringModel.build(item_ids, matrix, k=k, random_state=self.config.random_state)
        self._check_abort(job, deadline)

        if job.mode == 'clustering':
            popularity = snapshot.popularity
            negative = snapshot.negative_feedback
            collaborative, collaborative_index = snapshot.collaborative, snapshot.collaborative_index
        else:
            index = {item_id: row for row, item_id in enumerate(item_ids)}
            weighted = self.interactions.weighted_popularity()
            popularity = {i: weighted[i] for i in item_ids if i in weighted}
            negative = self.interactions.negative_feedback_counts()
            collaborative = self._co_interaction_similarity(index)
            collaborative_index = index

        job.data_metrics['vectorized_items'] = len(processed)
        job.data_metrics['num_clusters'] = clustering.k

        new_snapshot = ModelSnapshot(
            version=self.store.next_version(),
            model_id=job.job_id,
            dimension=self.vectorizer.dimension,
            item_ids=tuple(item_ids),
            matrix=matrix,
            computed_at=computed_at,
            clustering=clustering,
            popularity=popularity,
            negative_feedback=negative,
            collaborative=collaborative,
            collaborative_index=collaborative_index,
            trained=True,
        )
        return new_snapshot, processed

    def _co_interaction_similarity(self, index: Dict[int, int]) -> sp.csr_matrix:
        """Item-item cosine over the binary session x item matrix (zero diagonal)."""
        session_items, _ = self.interactions.session_item_matrix(index)
        if session_items.shape[0] == 0:
            return sp.csr_matrix((len(index), len(index)))
        similarity = cosine_similarity(session_items.T.tocsr(), dense_output=False)
        similarity = sp.csr_matrix(similarity)
        similarity.setdiag(0.0)
        similarity.eliminate_zeros()
        return similarity
