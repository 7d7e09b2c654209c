"""
Content Personalization Engine core.

Submodules:
    errors: EngineError and ErrorKind
    validation: Vector, score and parameter guards
    config: EngineConfig and YAML loading
    store: Content catalog, interaction log and versioned feature store
    features: Content vectorizer
    clustering: KMeans clustering model
    training: Training job state machine and orchestrator
    experiments: A/B testing
    anomaly: Interaction anomaly detection
    events: Content-mutation event bus
    logging_utils: Loggers and SQLite metrics databases
"""

from .errors import EngineError, ErrorKind
from .config import EngineConfig, load_config

__all__ = ['EngineError', 'ErrorKind', 'EngineConfig', 'load_config']
