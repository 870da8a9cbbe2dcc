"""In-memory freshness cache for market data."""
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


def _now_ms() -> float:
    return time.time() * 1000


@dataclass
class CachedData(Generic[T]):
    """Cache entry with the time it was stored (epoch ms)."""
    data: T
    timestamp: float


class DataCache(Generic[T]):
    """
    Time-bounded key/value cache.

    Entries are never swept in the background. Freshness is evaluated on every
    read and stale entries stay in place until overwritten or cleared.
    """

    def __init__(self, freshness_ms: float = 500, name: str = "cache"):
        """
        Initialize data cache.

        Args:
            freshness_ms: Maximum age in milliseconds for an entry to be served
            name: Cache name for logging
        """
        self.freshness_ms = freshness_ms
        self.name = name
        self._cache: Dict[str, CachedData[T]] = {}

        # Statistics
        self._hits = 0
        self._misses = 0

        logger.info(f"Initialized {name} cache with freshness={freshness_ms}ms")

    def set(self, key: str, data: T) -> None:
        """
        Store data under key, replacing any previous entry.

        Args:
            key: Cache key
            data: Value to cache
        """
        self._cache[key] = CachedData(data=data, timestamp=_now_ms())

    def get(self, key: str) -> Optional[T]:
        """
        Get data if it is still fresh.

        Args:
            key: Cache key

        Returns:
            Cached value, or None when missing or stale
        """
        cached = self._cache.get(key)
        if cached is None:
            self._misses += 1
            return None

        if _now_ms() - cached.timestamp > self.freshness_ms:
            self._misses += 1
            logger.debug(f"{self.name}: stale entry for {key}")
            return None

        self._hits += 1
        return cached.data

    def get_with_age(self, key: str) -> Optional[Tuple[T, float]]:
        """
        Get data together with its age, ignoring freshness.

        Args:
            key: Cache key

        Returns:
            (data, age_ms) tuple, or None when the key was never set
        """
        cached = self._cache.get(key)
        if cached is None:
            return None
        return cached.data, _now_ms() - cached.timestamp

    def has(self, key: str) -> bool:
        """Check for a fresh entry without touching statistics."""
        cached = self._cache.get(key)
        if cached is None:
            return False
        return _now_ms() - cached.timestamp <= self.freshness_ms

    def clear(self) -> None:
        """Remove all entries."""
        count = len(self._cache)
        self._cache.clear()
        logger.info(f"{self.name}: cleared {count} entries")

    def size(self) -> int:
        """Number of stored entries, fresh or stale."""
        return len(self._cache)

    def get_stats(self) -> Dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dictionary with cache statistics
        """
        total_requests = self._hits + self._misses
        hit_rate = (self._hits / total_requests * 100) if total_requests > 0 else 0.0

        return {
            'name': self.name,
            'size': len(self._cache),
            'freshness_ms': self.freshness_ms,
            'hits': self._hits,
            'misses': self._misses,
            'hit_rate': hit_rate,
        }
