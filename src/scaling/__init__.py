"""
Coordination and caching infrastructure for RiftSettle.

This package provides the components shared by every API instance:
- Named locks serializing claims and treasury spends
- Cache abstraction with explicit TTLs (prices, signature statuses)

Usage:
    from scaling import get_lock_manager, get_cache

    lock_manager = get_lock_manager()
    with lock_manager.lock(f"claims:{wallet}", timeout=30):
        process_claim()

    cache = get_cache()
    cache.set("price:SOL", {"price": "182.4"}, ttl=120)
"""

import os
from typing import TYPE_CHECKING

from scaling.cache import Cache, LocalCache
from scaling.locking import LocalLockManager, LockManager

if TYPE_CHECKING:
    from scaling.cache import RedisCache
    from scaling.locking import RedisLockManager

__all__ = [
    "LockManager",
    "LocalLockManager",
    "Cache",
    "LocalCache",
    "get_lock_manager",
    "get_cache",
    "reset_scaling",
]

# Singleton instances
_lock_manager: LockManager | None = None
_cache: Cache | None = None


def get_lock_manager() -> LockManager:
    """
    Get the configured lock manager.

    Uses Redis for distributed locking if REDIS_URL is set,
    otherwise local threading locks.
    """
    global _lock_manager
    if _lock_manager is None:
        redis_url = os.getenv("REDIS_URL")
        if redis_url:
            from scaling.locking import RedisLockManager

            _lock_manager = RedisLockManager(redis_url)
        else:
            _lock_manager = LocalLockManager()
    return _lock_manager


def get_cache() -> Cache:
    """
    Get the configured cache backend.

    Uses Redis if REDIS_URL is set, otherwise a local in-memory cache.
    """
    global _cache
    if _cache is None:
        redis_url = os.getenv("REDIS_URL")
        if redis_url:
            from scaling.cache import RedisCache

            _cache = RedisCache(redis_url)
        else:
            _cache = LocalCache()
    return _cache


def reset_scaling() -> None:
    """Drop the singletons (useful for testing)."""
    global _lock_manager, _cache
    _lock_manager = None
    _cache = None
