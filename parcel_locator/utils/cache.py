"""
Thread-safe in-memory caches with TTL management.

Geocoding results and Street View metadata are cached so that repeated
requests on the same zone do not hit Google again.
"""

import time
import logging
import hashlib
import threading
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

from parcel_locator.core.metrics import (
    cache_hits, cache_misses, cache_operations, cache_size, cache_hit_rate
)

logger = logging.getLogger(__name__)

class TTLCache:
    """Thread-safe cache where each entry expires ``ttl_seconds`` after being stored."""

    def __init__(self, cache_type: str, ttl_seconds: int = 3600, max_entries: int = 2000,
                 clock: Callable[[], float] = time.time):
        self.cache_type = cache_type
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._cache: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.RLock()
        self._hit_count = 0
        self._miss_count = 0

        logger.info(f"TTLCache '{cache_type}' initialized with TTL={ttl_seconds}s")

    @staticmethod
    def _get_cache_key(key: Hashable) -> str:
        normalized = str(key).lower().strip()
        return hashlib.md5(normalized.encode()).hexdigest()

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            cache_key = self._get_cache_key(key)
            entry = self._cache.get(cache_key)

            if entry is not None:
                value, timestamp = entry
                if self._clock() - timestamp < self.ttl_seconds:
                    self._hit_count += 1
                    cache_hits.labels(cache_type=self.cache_type).inc()
                    cache_operations.labels(cache_type=self.cache_type, operation='get_hit').inc()
                    return value

                del self._cache[cache_key]
                cache_operations.labels(cache_type=self.cache_type, operation='evict_expired').inc()

            self._miss_count += 1
            cache_misses.labels(cache_type=self.cache_type).inc()
            cache_operations.labels(cache_type=self.cache_type, operation='get_miss').inc()
            return default

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._cache[self._get_cache_key(key)] = (value, self._clock())
            cache_operations.labels(cache_type=self.cache_type, operation='set').inc()

            if len(self._cache) > self.max_entries:
                self._evict_oldest(max(1, self.max_entries // 5))
            cache_size.labels(cache_type=self.cache_type).set(len(self._cache))

    def clear(self) -> None:
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            cache_size.labels(cache_type=self.cache_type).set(0)
            logger.info(f"Cleared {count} '{self.cache_type}' cache entries")

    def _evict_oldest(self, count: int) -> None:
        sorted_entries = sorted(self._cache.items(), key=lambda x: x[1][1])
        for key, _ in sorted_entries[:count]:
            del self._cache[key]
        logger.debug(f"Evicted {count} oldest '{self.cache_type}' cache entries")

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hit_count + self._miss_count
            return {
                "hits": self._hit_count,
                "misses": self._miss_count,
                "hit_rate": (self._hit_count / total * 100) if total else 0,
                "cache_size": len(self._cache),
                "ttl_seconds": self.ttl_seconds,
            }

    def update_metrics(self) -> None:
        stats = self.get_stats()
        cache_size.labels(cache_type=self.cache_type).set(stats['cache_size'])
        cache_hit_rate.labels(cache_type=self.cache_type).set(stats['hit_rate'])


_caches: Dict[str, TTLCache] = {}
_caches_lock = threading.Lock()


def get_cache(cache_type: str, ttl_seconds: Optional[int] = None) -> TTLCache:
    """Shared cache instance for a cache type."""
    with _caches_lock:
        if cache_type not in _caches:
            from parcel_locator.config import config
            _caches[cache_type] = TTLCache(cache_type, ttl_seconds or config.GEOCODE_CACHE_TTL)
        return _caches[cache_type]


def update_cache_metrics() -> None:
    """Push hit rate and size of every shared cache to Prometheus."""
    with _caches_lock:
        caches = list(_caches.values())
    for cache in caches:
        cache.update_metrics()
