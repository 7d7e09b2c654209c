"""
Session Client.

A client object bound to one session id, supplied by the caller (cookie,
header, authenticated user) or generated explicitly with ``new()``. There
is no process-wide client or hidden session state.

Example:
    >>> client = SessionClient(engine, session_id='guest_4f1c')
    >>> client.log_interaction(42, 'like')
    >>> client.recommend(limit=5)
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence, TYPE_CHECKING
import uuid

from recsys.personalization.validation import validate_session_id

if TYPE_CHECKING:
    from .recommender import InteractionAck, RecommendationEngine, RecommendationResult


class SessionClient:

    def __init__(self, engine: 'RecommendationEngine', session_id: str, user_id: Optional[int] = None):
        self.engine = engine
        self.session_id = validate_session_id(session_id)
        self.user_id = user_id

    @classmethod
    def new(cls, engine: 'RecommendationEngine', prefix: str = 'guest') -> 'SessionClient':
        """Client with a freshly generated guest session id."""
        return cls(engine, f"{prefix}_{uuid.uuid4().hex}")

    def recommend(
        self,
        current_item: Optional[int] = None,
        limit: Optional[int] = None,
        algorithm: Optional[str] = None,
        diversity_boost: Optional[float] = None,
        explain: bool = False,
        exclude_items: Sequence[int] = ()
    ) -> 'RecommendationResult':
        return self.engine.recommend(
            self.session_id,
            current_item=current_item,
            limit=limit,
            algorithm=algorithm,
            diversity_boost=diversity_boost,
            explain_results=explain,
            exclude_items=exclude_items,
            user_id=self.user_id,
        )

    def log_interaction(
        self,
        item_id: int,
        interaction_type: str,
        weight: Optional[float] = None,
        metadata: Optional[Mapping[str, Any]] = None
    ) -> 'InteractionAck':
        return self.engine.log_interaction(
            self.session_id, item_id, interaction_type,
            weight=weight, metadata=metadata, user_id=self.user_id
        )

    def insights(self) -> Dict[str, Any]:
        return self.engine.get_insights(self.session_id)

    def update_preferences(self, explicit_preferences: Mapping[str, float]) -> Dict[str, Any]:
        return self.engine.update_profile(self.session_id, explicit_preferences)

    def history(self, limit: int = 20) -> List[Dict[str, Any]]:
        return self.engine.get_history(self.session_id, limit)

    def feedback(
        self,
        item_id: int,
        feedback_type: str,
        metadata: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, Any]:
        return self.engine.submit_feedback(item_id, feedback_type, metadata, session_id=self.session_id)

    def __repr__(self) -> str:
        return f"SessionClient(session_id={self.session_id!r})"
