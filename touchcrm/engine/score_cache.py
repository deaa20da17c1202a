"""
Score Cache - TTL and capacity bounded in-memory cache, one instance per score type.

Keys are "{user_id}:{contact_id}". An entry is a hit only while
  - it is younger than the TTL, and
  - (marker-keyed caches) the contact's engagement marker still equals the
    marker captured when the entry was stored.
Stale entries are evicted on read. When the cache grows past capacity the
oldest 20% by insertion time are dropped in one batch.
"""

import logging
import math
import threading
import time
from typing import Any, Callable, Dict, Optional

from touchcrm.models import CacheEntry

logger = logging.getLogger(__name__)

EVICT_FRACTION = 0.2


def cache_key(user_id: str, contact_id: str) -> str:
    return f"{user_id}:{contact_id}"


class ScoreCache:

    def __init__(self, name: str, ttl_seconds: float = 300, max_entries: int = 500,
                 use_marker: bool = False, clock: Callable[[], float] = time.time):
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.use_marker = use_marker
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        # Guards dict iteration during eviction against the background worker
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._entries)

    def __contains__(self, key: str):
        return key in self._entries

    def get(self, user_id: str, contact_id: str, marker: Optional[str] = None) -> Optional[Any]:
        """Cached value, or None on a miss (absent, expired, or engagement marker changed)."""
        key = cache_key(user_id, contact_id)
        entry = self._entries.get(key)
        if entry is None:
            return None

        age = self._clock() - entry.cached_at
        if age >= self.ttl_seconds:
            logger.debug(f"{self.name} cache: {key} expired after {age:.0f}s")
            self._drop(key, entry)
            return None
        if self.use_marker and entry.marker != marker:
            logger.debug(f"{self.name} cache: {key} engagement marker changed")
            self._drop(key, entry)
            return None
        return entry.value

    def set(self, user_id: str, contact_id: str, value: Any, marker: Optional[str] = None):
        key = cache_key(user_id, contact_id)
        with self._lock:
            self._entries[key] = CacheEntry(value=value, cached_at=self._clock(), marker=marker)
            if len(self._entries) > self.max_entries:
                self._evict_oldest()

    def invalidate(self, user_id: str, contact_id: str) -> bool:
        with self._lock:
            return self._entries.pop(cache_key(user_id, contact_id), None) is not None

    def invalidate_user(self, user_id: str) -> int:
        prefix = f"{user_id}:"
        with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for k in keys:
                del self._entries[k]
        if keys:
            logger.debug(f"{self.name} cache: invalidated {len(keys)} entries for user {user_id}")
        return len(keys)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            entries = list(self._entries.values())
        expired = sum(1 for e in entries if now - e.cached_at >= self.ttl_seconds)
        return {
            'name': self.name,
            'total_entries': len(entries),
            'valid_entries': len(entries) - expired,
            'expired_entries': expired,
            'max_entries': self.max_entries,
            'ttl_minutes': self.ttl_seconds / 60,
        }

    # -------------------------------------------------------------------------

    def _drop(self, key: str, entry: CacheEntry):
        # Only remove the entry we looked at; a concurrent set() may have replaced it
        with self._lock:
            if self._entries.get(key) is entry:
                del self._entries[key]

    def _evict_oldest(self):
        """Caller holds the lock."""
        count = max(1, math.floor(len(self._entries) * EVICT_FRACTION))
        oldest = sorted(self._entries.items(), key=lambda kv: kv[1].cached_at)[:count]
        for key, _ in oldest:
            del self._entries[key]
        logger.debug(f"{self.name} cache: evicted {count} oldest entries, {len(self._entries)} left")
