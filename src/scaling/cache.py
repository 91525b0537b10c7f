"""
Cache backends for RiftSettle.

Explicit cache components with TTL and eviction, injected into the
price oracle and the chain client's signature-status lookups instead of
process-lifetime module state:
- LocalCache: In-memory cache with an injectable clock (testable expiry)
- RedisCache: Shared cache using Redis for multi-instance deployments

Usage:
    from scaling import get_cache

    cache = get_cache()
    cache.set("price:SOL", {"price": "182.4"}, ttl=120)
    value = cache.get("price:SOL")
"""

import json
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

Clock = Callable[[], float]


@dataclass
class CacheEntry:
    """A cache entry with value and expiration."""
    value: Any
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        """Check if entry has expired at ``now``."""
        if self.expires_at is None:
            return False
        return now >= self.expires_at


class Cache(ABC):
    """
    Abstract base class for cache backends.

    All cache implementations must provide get/set/delete operations
    with optional TTL support.
    """

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a value from the cache.

        Args:
            key: Cache key
            default: Value to return if key not found

        Returns:
            Cached value or default
        """
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl: float | None = None) -> bool:
        """
        Set a value in the cache.

        Args:
            key: Cache key
            value: Value to cache (must be JSON-serializable)
            ttl: Time-to-live in seconds (None = no expiration)

        Returns:
            True if successful
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if a key exists in the cache."""
        pass

    def get_many(self, keys: list[str]) -> dict[str, Any]:
        """Get multiple values; missing keys are omitted."""
        return {k: v for k, v in ((k, self.get(k)) for k in keys) if v is not None}

    def clear(self) -> None:
        """Clear all cached values."""
        pass

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        return {}


class LocalCache(Cache):
    """
    In-memory cache for single-instance deployments.

    Thread-safe. Entries expire by TTL against the injected clock; when
    full, expired entries are purged first and then the oldest insertions
    are evicted (FIFO).
    """

    def __init__(self, max_size: int = 10000, clock: Clock | None = None):
        """
        Initialize local cache.

        Args:
            max_size: Maximum number of entries
            clock: Returns the current time in seconds (default: time.time)
        """
        self._cache: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._max_size = max_size
        self._clock = clock or time.time
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _purge_expired(self, now: float) -> None:
        expired = [k for k, v in self._cache.items() if v.is_expired(now)]
        for key in expired:
            self._cache.pop(key, None)

    def _evict_if_needed(self) -> None:
        """Make room for one more entry."""
        if len(self._cache) < self._max_size:
            return

        self._purge_expired(self._clock())

        while len(self._cache) >= self._max_size:
            oldest = next(iter(self._cache))
            del self._cache[oldest]
            self._evictions += 1

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value from the cache."""
        with self._lock:
            entry = self._cache.get(key)

            if entry is None:
                self._misses += 1
                return default

            if entry.is_expired(self._clock()):
                del self._cache[key]
                self._misses += 1
                return default

            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> bool:
        """Set a value in the cache."""
        with self._lock:
            if key in self._cache:
                del self._cache[key]
            else:
                self._evict_if_needed()

            expires_at = None
            if ttl is not None:
                expires_at = self._clock() + ttl

            self._cache[key] = CacheEntry(value=value, expires_at=expires_at)
            return True

    def delete(self, key: str) -> bool:
        """Delete a value from the cache."""
        with self._lock:
            return self._cache.pop(key, None) is not None

    def exists(self, key: str) -> bool:
        """Check if a key exists."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                del self._cache[key]
                return False
            return True

    def clear(self) -> None:
        """Clear all cached values."""
        with self._lock:
            self._cache.clear()

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            total = self._hits + self._misses
            return {
                "type": "LocalCache",
                "size": len(self._cache),
                "max_size": self._max_size,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": self._hits / total if total > 0 else 0,
            }


class RedisCache(Cache):
    """
    Distributed cache using Redis.

    Provides a shared cache across multiple API instances. Expiry is
    enforced by Redis itself.
    """

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "riftsettle:cache:",
        default_ttl: float = 3600.0,
    ):
        """
        Initialize Redis cache.

        Args:
            redis_url: Redis connection URL
            key_prefix: Prefix for cache keys
            default_ttl: Default TTL for entries without explicit TTL
        """
        import redis

        self._redis = redis.from_url(redis_url)
        self._key_prefix = key_prefix
        self._default_ttl = default_ttl

    def _key(self, key: str) -> str:
        """Get Redis key with prefix."""
        return f"{self._key_prefix}{key}"

    def _deserialize(self, data: bytes | str | None) -> Any:
        if data is None:
            return None
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        return json.loads(data)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value from Redis."""
        data = self._redis.get(self._key(key))
        if data is None:
            return default
        try:
            return self._deserialize(data)
        except (json.JSONDecodeError, TypeError):
            return default

    def set(self, key: str, value: Any, ttl: float | None = None) -> bool:
        """Set a value in Redis."""
        try:
            data = json.dumps(value, default=str)
        except (TypeError, ValueError):
            return False

        if ttl is None:
            ttl = self._default_ttl

        if ttl:
            # Redis needs whole milliseconds
            self._redis.set(self._key(key), data, px=max(1, int(ttl * 1000)))
        else:
            self._redis.set(self._key(key), data)
        return True

    def delete(self, key: str) -> bool:
        """Delete a value from Redis."""
        return self._redis.delete(self._key(key)) > 0

    def exists(self, key: str) -> bool:
        """Check if a key exists in Redis."""
        return self._redis.exists(self._key(key)) > 0

    def get_many(self, keys: list[str]) -> dict[str, Any]:
        """Get multiple values from Redis (optimized with MGET)."""
        if not keys:
            return {}

        values = self._redis.mget([self._key(k) for k in keys])

        result = {}
        for key, value in zip(keys, values):
            if value is not None:
                try:
                    result[key] = self._deserialize(value)
                except (json.JSONDecodeError, TypeError):
                    continue
        return result

    def clear(self) -> None:
        """Clear all cached values with our prefix."""
        cursor = 0
        while True:
            cursor, keys = self._redis.scan(cursor, match=f"{self._key_prefix}*", count=100)
            if keys:
                self._redis.delete(*keys)
            if cursor == 0:
                break

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        info = self._redis.info("stats")
        return {
            "type": "RedisCache",
            "hits": info.get("keyspace_hits", 0),
            "misses": info.get("keyspace_misses", 0),
            "connected": self._redis.ping(),
        }
