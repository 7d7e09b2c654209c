"""
Feature Store.

Holds content vectors, user profiles and the published model. The model is
an arena of immutable ``ModelSnapshot`` versions: readers pin one snapshot
per request, and training (or a single content upsert) publishes a new
version with one reference swap under a lock. A request therefore never
observes a half-published model.

Profiles live beside the snapshots and are reset to a neutral vector when
the published dimensionality changes, so a profile never mixes dimensions
with the model it is scored against.

Example:
    >>> store = FeatureStore(dimension=128)
    >>> store.put_content_vector(ContentVector(item_id=1, values=v))
    >>> snapshot = store.current()
    >>> snapshot.vector(1)
"""

from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
import logging
import threading

import numpy as np
import scipy.sparse as sp

from ..errors import EngineError
from ..validation import validate_vector
from .catalog import utcnow

logger = logging.getLogger(__name__)


# ============================================================================
# Entities
# ============================================================================

@dataclass
class ContentVector:
    """Dense feature vector of one content item."""
    item_id: int
    values: np.ndarray
    version: int = 0
    computed_at: datetime = field(default_factory=utcnow)

    @property
    def dimension(self) -> int:
        return int(self.values.shape[0])


@dataclass
class UserProfile:
    """Learned interest vector of one session."""
    session_id: str
    vector: np.ndarray
    explicit_preferences: Dict[str, float] = field(default_factory=dict)
    last_updated: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    interaction_count: int = 0
    model_version: int = 0
    user_id: Optional[int] = None

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])

    @property
    def is_neutral(self) -> bool:
        return not np.any(self.vector)

    def copy(self) -> 'UserProfile':
        return replace(
            self,
            vector=self.vector.copy(),
            explicit_preferences=dict(self.explicit_preferences)
        )


@dataclass(frozen=True, eq=False)
class ModelSnapshot:
    """
    One immutable published model version.

    Attributes:
        version: Monotonic version number
        model_id: Identifier of the training job that produced it
        dimension: Vector dimensionality shared by every vector
        item_ids: Item ids, row order of ``matrix``
        matrix: Read-only (n_items, dimension) content vectors
        computed_at: item_id -> vector computation time
        clustering: ClusteringModel or None
        popularity: item_id -> weighted interaction count
        negative_feedback: item_id -> negative feedback count
        collaborative: Item-item cosine (csr) over ``collaborative_index``
        collaborative_index: item_id -> row/col of ``collaborative``
        trained: True once produced by a training job
    """
    version: int
    model_id: str
    dimension: int
    item_ids: Tuple[int, ...] = ()
    matrix: np.ndarray = None
    computed_at: Dict[int, datetime] = field(default_factory=dict)
    clustering: Any = None
    popularity: Dict[int, float] = field(default_factory=dict)
    negative_feedback: Dict[int, int] = field(default_factory=dict)
    collaborative: Optional[sp.csr_matrix] = None
    collaborative_index: Dict[int, int] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    trained: bool = False

    def __post_init__(self):
        matrix = self.matrix
        if matrix is None:
            matrix = np.zeros((0, self.dimension), dtype=np.float64)
        matrix = np.array(matrix, dtype=np.float64, copy=True)
        if matrix.ndim != 2 or matrix.shape[1] != self.dimension:
            raise EngineError.invalid_dimension('snapshot.matrix', self.dimension, matrix.shape[-1])
        if matrix.shape[0] != len(self.item_ids):
            raise EngineError.invalid_parameter(
                'snapshot.item_ids', len(self.item_ids), f'{matrix.shape[0]} ids (one per row)'
            )
        matrix.setflags(write=False)
        object.__setattr__(self, 'matrix', matrix)
        object.__setattr__(self, 'item_ids', tuple(int(i) for i in self.item_ids))
        object.__setattr__(self, '_index', {item_id: row for row, item_id in enumerate(self.item_ids)})

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def __contains__(self, item_id: int) -> bool:
        return item_id in self._index

    def __len__(self) -> int:
        return len(self.item_ids)

    def row(self, item_id: int) -> Optional[int]:
        return self._index.get(item_id)

    def vector(self, item_id: int) -> Optional[np.ndarray]:
        row = self._index.get(item_id)
        return None if row is None else self.matrix[row]

    def vectors(self, item_ids: Iterable[int]) -> np.ndarray:
        rows = [self._index[i] for i in item_ids]
        return self.matrix[rows] if rows else np.zeros((0, self.dimension))

    def content_vector(self, item_id: int) -> Optional[ContentVector]:
        row = self._index.get(item_id)
        if row is None:
            return None
        return ContentVector(
            item_id=item_id,
            values=self.matrix[row],
            version=self.version,
            computed_at=self.computed_at.get(item_id, self.created_at)
        )

    @property
    def max_popularity(self) -> float:
        return max(self.popularity.values(), default=0.0)

    def popularity_order(self) -> List[int]:
        """Item ids by popularity desc, ties by lower id."""
        return sorted(
            (i for i in self.item_ids if self.popularity.get(i, 0.0) > 0),
            key=lambda i: (-self.popularity[i], i)
        )

    # ------------------------------------------------------------------
    # Copy-on-write
    # ------------------------------------------------------------------

    def with_vector(self, cv: ContentVector, version: int) -> 'ModelSnapshot':
        """New snapshot with one vector inserted or replaced."""
        matrix = np.array(self.matrix, copy=True)
        item_ids = list(self.item_ids)
        row = self._index.get(cv.item_id)
        if row is None:
            matrix = np.vstack([matrix, cv.values[np.newaxis, :]])
            item_ids.append(cv.item_id)
        else:
            matrix[row] = cv.values
        computed_at = dict(self.computed_at)
        computed_at[cv.item_id] = cv.computed_at
        return replace(
            self, version=version, item_ids=tuple(item_ids), matrix=matrix,
            computed_at=computed_at, created_at=utcnow()
        )


def _computed_after(snapshot: ModelSnapshot, item_id: int, moment: Optional[datetime]) -> bool:
    computed_at = snapshot.computed_at.get(item_id)
    return moment is not None and computed_at is not None and computed_at > moment


# ============================================================================
# Feature Store
# ============================================================================

class FeatureStore:
    """
    Versioned vector store plus profile store.

    Args:
        dimension: Dimensionality of the initial (empty) model
        history: Number of past snapshots retained for audit
    """

    def __init__(self, dimension: int, history: int = 5):
        self._lock = threading.Lock()
        self._current = ModelSnapshot(version=0, model_id='empty', dimension=dimension)
        self._versions = deque([self._current], maxlen=max(history, 1))
        self._profiles: Dict[str, UserProfile] = {}
        self._profile_lock = threading.Lock()
        self._stale: Dict[int, datetime] = {}

    # ========================================================================
    # Snapshots
    # ========================================================================

    def current(self) -> ModelSnapshot:
        """Latest published snapshot (callers pin it for a whole request)."""
        return self._current

    @property
    def dimension(self) -> int:
        return self._current.dimension

    def next_version(self) -> int:
        return self._current.version + 1

    def publish(
        self,
        snapshot: ModelSnapshot,
        carry_over: bool = True,
        newer_than: Optional[datetime] = None
    ) -> ModelSnapshot:
        """
        Atomically make ``snapshot`` the current model.

        The snapshot is re-versioned above the current one. With
        ``carry_over``, vectors published after the snapshot was built (and
        sharing its dimension) are kept so freshly ingested content stays
        servable. Vectors computed after ``newer_than`` (the moment the
        snapshot's inputs were read) also replace the snapshot's own.
        """
        with self._lock:
            previous = self._current
            version = previous.version + 1
            if carry_over and previous.dimension == snapshot.dimension:
                carried = [
                    i for i in previous.item_ids
                    if i not in snapshot or _computed_after(previous, i, newer_than)
                ]
                for item_id in carried:
                    snapshot = snapshot.with_vector(previous.content_vector(item_id), snapshot.version)
            snapshot = replace(snapshot, version=version)
            self._current = snapshot
            self._versions.append(snapshot)

        if previous.dimension != snapshot.dimension:
            logger.info(
                f"Dimension changed {previous.dimension} -> {snapshot.dimension}, "
                f"profiles will be reset on next access"
            )
        logger.info(f"Published model v{snapshot.version} ({snapshot.model_id}): {len(snapshot)} items")
        return snapshot

    def versions(self) -> List[Dict[str, Any]]:
        """Audit view of retained snapshots (oldest first)."""
        return [
            {
                'version': s.version,
                'model_id': s.model_id,
                'dimension': s.dimension,
                'num_items': len(s),
                'trained': s.trained,
                'created_at': s.created_at.isoformat(),
            }
            for s in list(self._versions)
        ]

    # ========================================================================
    # Content Vectors
    # ========================================================================

    def get_content_vector(self, item_id: int) -> Optional[ContentVector]:
        return self._current.content_vector(item_id)

    def put_content_vector(self, cv: ContentVector) -> ModelSnapshot:
        """Insert/replace one vector via copy-on-write and publish."""
        with self._lock:
            current = self._current
            values = validate_vector(cv.values, current.dimension, field='content_vector')
            cv = replace(cv, values=values, version=current.version + 1)
            snapshot = current.with_vector(cv, current.version + 1)
            self._current = snapshot
            self._versions.append(snapshot)
        return snapshot

    # ========================================================================
    # Profiles
    # ========================================================================

    def get_or_create_profile(self, session_id: str, user_id: Optional[int] = None) -> UserProfile:
        """
        Return a copy of the session profile, creating a neutral one if
        missing or resetting it if its dimensionality is outdated.
        """
        snapshot = self._current
        with self._profile_lock:
            profile = self._profiles.get(session_id)
            if profile is None:
                profile = UserProfile(
                    session_id=session_id,
                    vector=np.zeros(snapshot.dimension),
                    model_version=snapshot.version,
                    user_id=user_id
                )
                self._profiles[session_id] = profile
            elif profile.dimension != snapshot.dimension:
                logger.info(f"Resetting profile {session_id}: dimension {profile.dimension} -> {snapshot.dimension}")
                profile = replace(
                    profile,
                    vector=np.zeros(snapshot.dimension),
                    interaction_count=0,
                    model_version=snapshot.version,
                    last_updated=utcnow()
                )
                self._profiles[session_id] = profile
            if user_id is not None and profile.user_id is None:
                profile.user_id = user_id
            return profile.copy()

    def get_profile(self, session_id: str) -> Optional[UserProfile]:
        with self._profile_lock:
            profile = self._profiles.get(session_id)
            return None if profile is None else profile.copy()

    def put_profile(self, profile: UserProfile) -> UserProfile:
        """Store a profile (last write wins)."""
        validate_vector(profile.vector, self._current.dimension, field='profile.vector')
        with self._profile_lock:
            self._profiles[profile.session_id] = profile.copy()
        return profile

    def profile_count(self) -> int:
        return len(self._profiles)

    # ========================================================================
    # Stale Tracking
    # ========================================================================

    def mark_stale(self, item_id: int) -> None:
        with self._lock:
            self._stale[item_id] = utcnow()

    def stale_items(self) -> Set[int]:
        with self._lock:
            return set(self._stale)

    def clear_stale(self, item_ids: Iterable[int], marked_before: Optional[datetime] = None) -> None:
        """Drop stale marks; with ``marked_before`` marks set later survive."""
        with self._lock:
            for item_id in item_ids:
                marked = self._stale.get(item_id)
                if marked is not None and (marked_before is None or marked < marked_before):
                    del self._stale[item_id]
