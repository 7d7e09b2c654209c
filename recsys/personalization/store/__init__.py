"""
Storage layer: content catalog, interaction log and versioned feature store.
"""

from .catalog import ContentCatalog, ContentItem, ensure_utc, utcnow
from .interactions import FeedbackRecord, InteractionEvent, InteractionStore
from .feature_store import ContentVector, FeatureStore, ModelSnapshot, UserProfile

__all__ = [
    'ContentCatalog',
    'ContentItem',
    'ContentVector',
    'FeatureStore',
    'FeedbackRecord',
    'InteractionEvent',
    'InteractionStore',
    'ModelSnapshot',
    'UserProfile',
    'ensure_utc',
    'utcnow',
]
