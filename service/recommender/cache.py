"""
Cache Manager and Cache Invalidator.

LRU caches (with TTL and hit/miss statistics) for the serving path:
- candidate cache: per-cluster member lists and global fallback lists
  (popularity / recency order), keyed by snapshot version
- feature cache: derived per-item and per-overlay vectors

The CacheInvalidator subscribes to content-mutation events. On an event
it marks the item stale for the next training pass and evicts every cached
entry that could serve outdated data for it.

Usage:
    from service.recommender.cache import CacheManager, CacheInvalidator
    cache = CacheManager(config)
    invalidator = CacheInvalidator(cache, feature_store)
    bus.subscribe(invalidator.handle_event)
"""

from typing import Any, Callable, Dict, List, Optional, Tuple
from collections import OrderedDict
import threading
import logging
import time

from recsys.personalization.config import EngineConfig
from recsys.personalization.events import ContentEvent

logger = logging.getLogger(__name__)

# Candidate cache key kinds
CLUSTER = 'cluster'
GLOBAL = 'global'


# ============================================================================
# LRU Cache Implementation
# ============================================================================

class LRUCache:
    """
    Thread-safe LRU cache with TTL support.

    Features:
    - O(1) get/put operations
    - Optional TTL for entries
    - Max size enforcement
    - Predicate eviction
    - Hit/miss statistics
    """

    def __init__(
        self,
        max_size: int = 10000,
        ttl_seconds: Optional[float] = None,
        name: str = "cache"
    ):
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.name = name

        self._cache: 'OrderedDict[Any, Tuple[Any, float]]' = OrderedDict()
        self._lock = threading.Lock()

        # Statistics
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: Any) -> Optional[Any]:
        """Cached value, or None if missing or expired."""
        with self._lock:
            if key not in self._cache:
                self.misses += 1
                return None

            value, timestamp = self._cache[key]

            if self.ttl_seconds is not None and time.time() - timestamp > self.ttl_seconds:
                del self._cache[key]
                self.misses += 1
                return None

            self._cache.move_to_end(key)
            self.hits += 1
            return value

    def put(self, key: Any, value: Any) -> None:
        with self._lock:
            self._cache[key] = (value, time.time())
            self._cache.move_to_end(key)

            while len(self._cache) > self.max_size:
                self._cache.popitem(last=False)
                self.evictions += 1

    def get_or_compute(self, key: Any, compute: Callable[[], Any]) -> Any:
        value = self.get(key)
        if value is None:
            value = compute()
            self.put(key, value)
        return value

    def delete(self, key: Any) -> bool:
        with self._lock:
            if key in self._cache:
                del self._cache[key]
                return True
            return False

    def delete_where(self, predicate: Callable[[Any, Any], bool]) -> int:
        """Remove entries for which ``predicate(key, value)`` holds."""
        with self._lock:
            doomed = [k for k, (v, _) in self._cache.items() if predicate(k, v)]
            for key in doomed:
                del self._cache[key]
            return len(doomed)

    def clear(self) -> int:
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            return count

    def size(self) -> int:
        return len(self._cache)

    def stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        hit_rate = self.hits / total if total > 0 else 0

        return {
            'name': self.name,
            'size': len(self._cache),
            'max_size': self.max_size,
            'hits': self.hits,
            'misses': self.misses,
            'hit_rate': hit_rate,
            'evictions': self.evictions
        }


# ============================================================================
# Cache Manager
# ============================================================================

class CacheManager:
    """
    Serving caches of one engine.

    Candidate keys:
        ('cluster', snapshot_version, cluster_id) -> member ids
        ('global', snapshot_version, 'popularity' | 'recency') -> item ids
    Feature keys:
        ('vector', snapshot_version, item_id) -> vector
        ('overlay', snapshot_version, preferences) -> vector
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        config = config or EngineConfig()
        self.candidate_cache = LRUCache(
            max_size=config.candidate_cache_size,
            ttl_seconds=config.candidate_cache_ttl_seconds,
            name='candidates'
        )
        self.feature_cache = LRUCache(
            max_size=config.feature_cache_size,
            ttl_seconds=config.feature_cache_ttl_seconds,
            name='features'
        )

    def get_cluster_members(self, version: int, cluster_id: int, compute: Callable[[], List[int]]) -> List[int]:
        return self.candidate_cache.get_or_compute((CLUSTER, version, cluster_id), compute)

    def get_global_list(self, version: int, kind: str, compute: Callable[[], List[int]]) -> List[int]:
        return self.candidate_cache.get_or_compute((GLOBAL, version, kind), compute)

    def get_feature(self, key: Tuple, compute: Callable[[], Any]) -> Any:
        return self.feature_cache.get_or_compute(key, compute)

    def clear_all(self) -> int:
        count = self.candidate_cache.clear() + self.feature_cache.clear()
        logger.info(f"All caches cleared ({count} entries)")
        return count

    def get_stats(self) -> Dict[str, Any]:
        return {
            'candidates': self.candidate_cache.stats(),
            'features': self.feature_cache.stats(),
        }


# ============================================================================
# Cache Invalidator
# ============================================================================

class CacheInvalidator:
    """
    Evicts cached data affected by a content change.

    Args:
        cache: CacheManager to evict from
        feature_store: FeatureStore whose stale set records changed items
    """

    def __init__(self, cache: CacheManager, feature_store: Any = None):
        self.cache = cache
        self.feature_store = feature_store
        self.total_evictions = 0

    def invalidate(self, item_id: int) -> int:
        """
        Evict candidate lists containing the item, all global fallback lists
        and cached feature entries for the item.

        Idempotent: a repeated call for the same item evicts nothing more.

        Returns:
            Number of evicted entries
        """
        evicted = self.cache.candidate_cache.delete_where(
            lambda key, members: key[0] == GLOBAL or item_id in members
        )
        evicted += self.cache.feature_cache.delete_where(
            lambda key, _: key[0] == 'vector' and key[2] == item_id
        )
        self.total_evictions += evicted
        if evicted:
            logger.debug(f"Invalidated {evicted} cache entries for item {item_id}")
        return evicted

    def handle_event(self, event: ContentEvent) -> int:
        """ContentEventBus subscriber: mark stale, then evict."""
        if self.feature_store is not None:
            self.feature_store.mark_stale(event.item_id)
        return self.invalidate(event.item_id)

    def clear_all(self) -> int:
        return self.cache.clear_all()
