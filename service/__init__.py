"""
Personalization Service Package.

This package provides the serving layer of the content personalization
engine.

Components:
- api: FastAPI application with REST endpoints
- recommender: Engine, serving pipeline and session client

Usage:
    # Start the service
    uvicorn service.api:app --host 0.0.0.0 --port 8000

    # Or programmatically
    from service.recommender import RecommendationEngine

    engine = RecommendationEngine()
    result = engine.recommend('guest_1', limit=10)
"""

from service.recommender import (
    RecommendationEngine,
    RecommendationResult,
    SessionClient,
)

__all__ = [
    'RecommendationEngine',
    'RecommendationResult',
    'SessionClient',
]

__version__ = "1.0.0"
