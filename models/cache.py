"""
Bounded in-memory cache with TTL expiry and least-recently-used eviction.
"""

from __future__ import annotations

import logging
import math
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Generic, Hashable, Optional, TypeVar

from models.errors import ConfigError

logger = logging.getLogger(__name__)

V = TypeVar("V")


@dataclass(slots=True)
class CacheEntry(Generic[V]):
    value: V
    created_at: float
    last_accessed_at: float


class BoundedTTLCache(Generic[V]):
    """
    Thread-safe cache holding at most `capacity` entries for `ttl_seconds`.

    Reads refresh `last_accessed_at` and move the entry to the most recently used
    end. Writes evict expired entries first, then the least recently used ones,
    until the store is back within capacity.
    """

    def __init__(
        self,
        capacity: int,
        ttl_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not isinstance(capacity, int) or capacity < 1:
            raise ConfigError(f"Cache capacity must be a positive integer, got {capacity!r}")
        if not math.isfinite(ttl_seconds) or ttl_seconds <= 0:
            raise ConfigError(f"Cache TTL must be positive, got {ttl_seconds!r}")
        self.capacity = capacity
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._entries: "OrderedDict[Hashable, CacheEntry[V]]" = OrderedDict()
        self._lock = Lock()

    def get(self, key: Hashable) -> Optional[V]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._expired(entry, now):
                del self._entries[key]
                return None
            entry.last_accessed_at = now
            self._entries.move_to_end(key)
            return entry.value

    def set(self, key: Hashable, value: V) -> None:
        now = self._clock()
        with self._lock:
            self._entries[key] = CacheEntry(value=value, created_at=now, last_accessed_at=now)
            self._entries.move_to_end(key)
            if len(self._entries) > self.capacity:
                self._purge_locked(now)
            while len(self._entries) > self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted least recently used cache entry %s", evicted)

    def pop(self, key: Hashable) -> Optional[V]:
        with self._lock:
            entry = self._entries.pop(key, None)
        return entry.value if entry else None

    def purge_expired(self) -> int:
        """Drop every entry past its TTL and return how many were removed."""
        now = self._clock()
        with self._lock:
            removed = self._purge_locked(now)
        if removed:
            logger.debug("Purged %d expired cache entries", removed)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def entry(self, key: Hashable) -> Optional[CacheEntry[V]]:
        """Return a copy of the raw entry without touching recency."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            return CacheEntry(entry.value, entry.created_at, entry.last_accessed_at)

    def snapshot(self) -> Dict[Hashable, V]:
        with self._lock:
            return {key: entry.value for key, entry in self._entries.items()}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _expired(self, entry: CacheEntry[V], now: float) -> bool:
        return now - entry.created_at >= self.ttl_seconds

    def _purge_locked(self, now: float) -> int:
        stale = [key for key, entry in self._entries.items() if self._expired(entry, now)]
        for key in stale:
            del self._entries[key]
        return len(stale)
