"""
Training: job state machine, orchestrator and clustering evaluation.
"""

from .orchestrator import ALL_MODES, JobStatus, TrainingJob, TrainingOrchestrator
from .evaluation import evaluate_clustering

__all__ = [
    'ALL_MODES',
    'JobStatus',
    'TrainingJob',
    'TrainingOrchestrator',
    'evaluate_clustering',
]
