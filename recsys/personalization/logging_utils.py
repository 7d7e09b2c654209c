"""
Logging Utilities for Personalization Training and Service.

This module provides structured logging for:
- Training jobs (full, incremental, clustering)
- Service requests
- Metrics tracking to SQLite

Example:
    >>> from recsys.personalization.logging_utils import setup_service_logger, TrainingMetricsDB
    >>> logger = setup_service_logger("scheduler")
    >>> db = TrainingMetricsDB('logs/training_metrics.db')
    >>> db.log_training_start('full_20251125_103000', 'full', params)
"""

import logging
import sqlite3
import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Any
from contextlib import contextmanager
import threading

# ============================================================================
# Constants
# ============================================================================

DEFAULT_LOG_DIR = "logs"
SERVICE_LOG_DIR = "logs/service"
TRAINING_DB_NAME = "training_metrics.db"
SERVICE_DB_NAME = "service_metrics.db"

LOG_FORMAT = '%(asctime)s | %(levelname)s | %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# SQLite datetime('now') compatible
DB_TIME_FORMAT = '%Y-%m-%d %H:%M:%S'


def _db_now() -> str:
    return datetime.now(timezone.utc).strftime(DB_TIME_FORMAT)


# ============================================================================
# Logger Setup
# ============================================================================

def setup_service_logger(
    name: str = 'personalization',
    log_dir: str = SERVICE_LOG_DIR,
    console: bool = True
) -> logging.Logger:
    """
    Setup logger for the recommendation service (info log, error log and
    console).
    """
    Path(log_dir).mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(f'service.{name}')
    logger.setLevel(logging.DEBUG)
    logger.handlers = []

    fh = logging.FileHandler(Path(log_dir) / f'{name}.log', encoding='utf-8')
    fh.setLevel(logging.INFO)
    fh.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
    logger.addHandler(fh)

    eh = logging.FileHandler(Path(log_dir) / 'error.log', encoding='utf-8')
    eh.setLevel(logging.ERROR)
    eh.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
    logger.addHandler(eh)

    if console:
        ch = logging.StreamHandler()
        ch.setLevel(logging.INFO)
        ch.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        logger.addHandler(ch)

    return logger


# ============================================================================
# Format Helpers
# ============================================================================

def format_params(params: Dict[str, Any]) -> str:
    items = []
    for k, v in params.items():
        if isinstance(v, float):
            items.append(f"{k}={v:.4g}")
        else:
            items.append(f"{k}={v}")
    return ", ".join(items)


def format_metrics(metrics: Dict[str, Any]) -> str:
    items = []
    for k, v in metrics.items():
        if isinstance(v, float):
            items.append(f"{k}={v:.4f}")
        elif v is not None:
            items.append(f"{k}={v}")
    return ", ".join(items)


class _SQLiteDB:
    """Shared connection handling for the metrics databases."""

    def __init__(self, db_path: str):
        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()
        self._create_tables()

    @contextmanager
    def _get_connection(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _create_tables(self):
        raise NotImplementedError


# ============================================================================
# Training Metrics Database
# ============================================================================

class TrainingMetricsDB(_SQLiteDB):
    """
    SQLite audit trail of training jobs.

    Tables:
    - training_jobs: One row per job

    Example:
        >>> db = TrainingMetricsDB('logs/training_metrics.db')
        >>> db.log_training_start('full_001', 'full', {'k': 8})
        >>> db.log_training_complete('full_001', {'cohesion': 0.41}, model_version=3)
    """

    def _create_tables(self):
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS training_jobs (
                    job_id TEXT PRIMARY KEY,
                    mode TEXT,
                    started_at TIMESTAMP,
                    completed_at TIMESTAMP,
                    status TEXT,

                    -- Options (JSON)
                    params TEXT,

                    -- Metrics (JSON)
                    data_metrics TEXT,
                    quality_metrics TEXT,

                    model_version INTEGER,
                    training_time_seconds REAL,
                    error TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_training_started
                ON training_jobs(started_at)
            """)
            conn.commit()

    def log_training_start(self, job_id: str, mode: str, params: Dict[str, Any]):
        with self._write_lock, self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO training_jobs
                (job_id, mode, started_at, status, params)
                VALUES (?, ?, ?, ?, ?)
            """, (job_id, mode, _db_now(), 'running', json.dumps(params, default=str)))
            conn.commit()

    def log_training_complete(
        self,
        job_id: str,
        quality_metrics: Dict[str, Any],
        data_metrics: Optional[Dict[str, Any]] = None,
        model_version: Optional[int] = None,
        training_time_seconds: Optional[float] = None
    ):
        with self._write_lock, self._get_connection() as conn:
            conn.execute("""
                UPDATE training_jobs
                SET completed_at = ?,
                    status = 'completed',
                    quality_metrics = ?,
                    data_metrics = ?,
                    model_version = ?,
                    training_time_seconds = ?
                WHERE job_id = ?
            """, (
                _db_now(),
                json.dumps(quality_metrics, default=str),
                json.dumps(data_metrics or {}, default=str),
                model_version,
                training_time_seconds,
                job_id
            ))
            conn.commit()

    def log_training_failed(self, job_id: str, status: str, error_message: str):
        """Record a terminal failure ('failed', 'cancelled' or 'timed_out')."""
        with self._write_lock, self._get_connection() as conn:
            conn.execute("""
                UPDATE training_jobs
                SET completed_at = ?,
                    status = ?,
                    error = ?
                WHERE job_id = ?
            """, (_db_now(), status, error_message, job_id))
            conn.commit()

    def get_job(self, job_id: str) -> Optional[Dict]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM training_jobs WHERE job_id = ?", (job_id,)
            ).fetchone()
            return dict(row) if row else None

    def get_recent_jobs(self, mode: Optional[str] = None, limit: int = 10) -> List[Dict]:
        with self._get_connection() as conn:
            if mode:
                rows = conn.execute("""
                    SELECT * FROM training_jobs
                    WHERE mode = ?
                    ORDER BY started_at DESC
                    LIMIT ?
                """, (mode, limit)).fetchall()
            else:
                rows = conn.execute("""
                    SELECT * FROM training_jobs
                    ORDER BY started_at DESC
                    LIMIT ?
                """, (limit,)).fetchall()
            return [dict(row) for row in rows]


# ============================================================================
# Service Metrics Database
# ============================================================================

class ServiceMetricsDB(_SQLiteDB):
    """
    SQLite request log of the recommendation service.

    Example:
        >>> db = ServiceMetricsDB('logs/service_metrics.db')
        >>> db.log_request('guest_1', 'hybrid', 10, latency_ms=12.5, num_recommendations=10)
    """

    def _create_tables(self):
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS requests (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TIMESTAMP,
                    session_id TEXT,
                    algorithm TEXT,
                    requested INTEGER,

                    latency_ms REAL,
                    num_recommendations INT,
                    diversity_boost REAL,
                    intra_list_diversity REAL,

                    error TEXT,
                    model_version INTEGER
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_requests_timestamp
                ON requests(timestamp)
            """)
            conn.commit()

    def log_request(
        self,
        session_id: str,
        algorithm: str,
        requested: int,
        latency_ms: float,
        num_recommendations: int,
        diversity_boost: Optional[float] = None,
        intra_list_diversity: Optional[float] = None,
        error: Optional[str] = None,
        model_version: Optional[int] = None
    ):
        with self._write_lock, self._get_connection() as conn:
            conn.execute("""
                INSERT INTO requests
                (timestamp, session_id, algorithm, requested, latency_ms,
                 num_recommendations, diversity_boost, intra_list_diversity,
                 error, model_version)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                _db_now(), session_id, algorithm, requested, latency_ms,
                num_recommendations, diversity_boost, intra_list_diversity,
                error, model_version
            ))
            conn.commit()

    def get_request_stats(self, minutes: int = 60) -> Dict:
        with self._get_connection() as conn:
            stats = conn.execute("""
                SELECT
                    COUNT(*) as total_requests,
                    AVG(latency_ms) as avg_latency,
                    MIN(latency_ms) as min_latency,
                    MAX(latency_ms) as max_latency,
                    AVG(intra_list_diversity) as avg_diversity,
                    SUM(CASE WHEN error IS NOT NULL THEN 1 ELSE 0 END) as error_count
                FROM requests
                WHERE timestamp > datetime('now', ?)
            """, (f'-{int(minutes)} minutes',)).fetchone()
            return dict(stats) if stats else {}


# ============================================================================
# Convenience Functions
# ============================================================================

def get_training_db(metrics_dir: str = DEFAULT_LOG_DIR) -> TrainingMetricsDB:
    return TrainingMetricsDB(str(Path(metrics_dir) / TRAINING_DB_NAME))


def get_service_db(metrics_dir: str = DEFAULT_LOG_DIR) -> ServiceMetricsDB:
    return ServiceMetricsDB(str(Path(metrics_dir) / SERVICE_DB_NAME))


def generate_run_id(mode: str) -> str:
    """
    Generate unique job ID.

    Returns:
        Job ID like 'full_20251125_103000_1a2b3c'
    """
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    return f"{mode}_{timestamp}_{uuid.uuid4().hex[:6]}"
