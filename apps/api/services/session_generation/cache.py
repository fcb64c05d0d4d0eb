"""
Generated Session Cache

Holds every completed GeneratedSession under its id for a bounded TTL.

Layers:
1. Redis when a client is available (shared across workers)
2. Local in-process map otherwise, expiring on the injected clock. Every
   write sweeps expired entries and the map is capped at max_local_entries,
   oldest write evicted first.

Usage:
    cache = SessionCacheService(redis, clock=clock)

    # Publish a completed session
    cache.set_generated_session(session)

    # Look it up later
    session = cache.get_generated_session(session_id)
"""

import heapq
import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from core.cache import cache_key
from core.clock import Clock, SystemClock
from core.config import settings

from .schemas import GeneratedSession

logger = logging.getLogger(__name__)


class SessionCacheService:
    """
    TTL cache for generated sessions.
    """

    def __init__(self, redis=None, clock: Optional[Clock] = None, ttl: Optional[int] = None,
                 max_local_entries: Optional[int] = None):
        """
        Initialize cache service.

        Args:
            redis: Redis client (optional, uses in-memory if not provided)
            clock: Time source for local expiry
            ttl: Seconds a session stays cached (defaults to settings)
            max_local_entries: Cap on the in-memory map (defaults to settings)
        """
        self.redis = redis
        self.clock = clock or SystemClock()
        self.ttl = ttl if ttl is not None else settings.CACHE_TTL_GENERATED_SESSION
        self.max_local_entries = max_local_entries or settings.CACHE_MAX_LOCAL_SESSIONS
        self._lock = threading.Lock()
        self._local_cache: Dict[str, Any] = {}
        self._local_expiry: Dict[str, Optional[datetime]] = {}
        self._expiry_heap: List[Tuple[datetime, str]] = []

    # ========== Generated Sessions ==========

    def get_generated_session(self, session_id: str) -> Optional[GeneratedSession]:
        data = self._get(cache_key("session", "generated", session_id))
        if data is None:
            return None
        return GeneratedSession.model_validate(data)

    def set_generated_session(self, session: GeneratedSession):
        key = cache_key("session", "generated", session.id)
        self._set(key, session.to_dict(), self.ttl)

    def invalidate_generated_session(self, session_id: str):
        self._delete(cache_key("session", "generated", session_id))

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        if self.redis:
            info = self.redis.info()
            return {
                "type": "redis",
                "connected": True,
                "used_memory": info.get("used_memory_human", "unknown"),
                "keys": self.redis.dbsize(),
            }
        with self._lock:
            self._sweep(self.clock.now())
            return {
                "type": "local",
                "keys": len(self._local_cache),
            }

    # ========== Internal Methods ==========

    def _get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        if self.redis:
            try:
                value = self.redis.get(key)
                if value:
                    return json.loads(value)
            except Exception as e:
                logger.warning(f"Cache get error for {key}: {e}")
            return None

        with self._lock:
            if key in self._local_cache:
                expiry = self._local_expiry.get(key)
                if expiry is None or expiry > self.clock.now():
                    return self._local_cache[key]
                self._drop(key)
        return None

    def _set(self, key: str, value: Any, ttl: Optional[int]):
        """Set value in cache."""
        if self.redis:
            try:
                serialized = json.dumps(value, default=str)
                if ttl:
                    self.redis.setex(key, ttl, serialized)
                else:
                    self.redis.set(key, serialized)
            except Exception as e:
                logger.warning(f"Cache set error for {key}: {e}")
            return

        with self._lock:
            now = self.clock.now()
            self._sweep(now)
            expiry = now + timedelta(seconds=ttl) if ttl else None
            # Re-insert so dict order stays write order for eviction
            self._local_cache.pop(key, None)
            self._local_cache[key] = value
            self._local_expiry[key] = expiry
            if expiry is not None:
                heapq.heappush(self._expiry_heap, (expiry, key))
            while len(self._local_cache) > self.max_local_entries:
                self._drop(next(iter(self._local_cache)))
            if len(self._expiry_heap) > 2 * self.max_local_entries:
                self._expiry_heap = [(e, k) for k, e in self._local_expiry.items() if e is not None]
                heapq.heapify(self._expiry_heap)

    def _delete(self, key: str):
        """Delete value from cache."""
        if self.redis:
            try:
                self.redis.delete(key)
            except Exception as e:
                logger.warning(f"Cache delete error for {key}: {e}")
            return

        with self._lock:
            self._drop(key)

    def _drop(self, key: str):
        self._local_cache.pop(key, None)
        self._local_expiry.pop(key, None)

    def _sweep(self, now: datetime):
        """Drop expired entries. Heap items whose key was rewritten or deleted are skipped."""
        heap = self._expiry_heap
        while heap and heap[0][0] <= now:
            expiry, key = heapq.heappop(heap)
            if self._local_expiry.get(key) == expiry:
                self._drop(key)
