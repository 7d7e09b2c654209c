"""
Recommender Service Package.

This package provides the serving path of the personalization engine.

Main components:
- RecommendationEngine: Wires every component and implements the public operations
- SessionClient: Client bound to one caller-supplied session id
- CandidateGenerator: Cluster lookup plus popularity/recency widening
- HybridScorer: Content, collaborative, recency and popularity signals
- DiversityReranker: MMR diversity reranking
- ProfileUpdater: Online EMA profile learning with per-session locks
- CacheManager / CacheInvalidator: LRU caches and content-event eviction

Example:
    >>> from service.recommender import RecommendationEngine
    >>> engine = RecommendationEngine()
    >>> result = engine.recommend('guest_1', limit=10)
"""

from .cache import CacheInvalidator, CacheManager, LRUCache
from .candidates import CandidateGenerator
from .scoring import HybridScorer, ScoredItem, ScoringContext
from .rerank import DiversityReranker, RerankedResult, intra_list_diversity
from .profile import KeyedLocks, ProfileUpdater, resolve_weight
from .recommender import InteractionAck, RecommendationEngine, RecommendationResult, RecommendedItem
from .client import SessionClient

__all__ = [
    # Core
    'RecommendationEngine',
    'RecommendationResult',
    'RecommendedItem',
    'InteractionAck',
    'SessionClient',

    # Pipeline
    'CandidateGenerator',
    'HybridScorer',
    'ScoredItem',
    'ScoringContext',
    'DiversityReranker',
    'RerankedResult',
    'intra_list_diversity',

    # Profiles
    'ProfileUpdater',
    'KeyedLocks',
    'resolve_weight',

    # Caching
    'CacheManager',
    'CacheInvalidator',
    'LRUCache',
]
