"""
Tests for RiftSettle locking and caching (src/scaling).

Tests:
- LocalLockManager reentrancy, contention and timeouts
- RedisLockManager against a mocked client
- LocalCache TTL expiry and eviction
- RedisCache serialization against a mocked client
- Singleton selection from REDIS_URL
"""

import json
import os
import sys
import threading
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import scaling
from scaling import LocalCache, LocalLockManager, get_cache, get_lock_manager, reset_scaling


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture(autouse=True)
def _reset_singletons(monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)
    reset_scaling()
    yield
    reset_scaling()


class TestLocalLockManager:
    """Tests for thread-based named locks."""

    def test_acquire_and_release(self):
        manager = LocalLockManager()
        assert manager.acquire("claims:w1") is True
        assert manager.is_locked("claims:w1") is True

        info = manager.get_info("claims:w1")
        assert info.ttl == 60.0
        assert info.expires_at == pytest.approx(info.acquired_at + 60.0)

        assert manager.release("claims:w1") is True
        assert manager.is_locked("claims:w1") is False

    def test_reentrant_for_holder(self):
        manager = LocalLockManager()
        with manager.lock("treasury:t"):
            with manager.lock("treasury:t", timeout=0):
                assert manager.get_info("treasury:t").depth == 2
            assert manager.is_locked("treasury:t") is True
        assert manager.is_locked("treasury:t") is False

    def test_release_unheld(self):
        assert LocalLockManager().release("nothing") is False

    def test_other_thread_times_out(self):
        manager = LocalLockManager()
        held = threading.Event()
        done = threading.Event()

        def holder():
            with manager.lock("claims:w1"):
                held.set()
                done.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(5)
        try:
            with pytest.raises(TimeoutError, match="claims:w1"):
                with manager.lock("claims:w1", timeout=0.05):
                    pass
            assert manager.acquire("claims:w1", timeout=0) is False
        finally:
            done.set()
            thread.join()

        assert manager.acquire("claims:w1", timeout=1) is True
        manager.release("claims:w1")

    def test_get_all_locks(self):
        manager = LocalLockManager()
        manager.acquire("a")
        manager.acquire("b")
        assert sorted(info.name for info in manager.get_all_locks()) == ["a", "b"]

    def test_lock_released_on_error(self):
        manager = LocalLockManager()
        with pytest.raises(ValueError):
            with manager.lock("claims:w1"):
                raise ValueError("boom")
        assert manager.is_locked("claims:w1") is False


class TestRedisLockManager:
    """Tests for distributed locks with a mocked Redis client."""

    @pytest.fixture
    def redis_client(self):
        with patch("redis.from_url") as from_url:
            client = MagicMock()
            from_url.return_value = client
            yield client

    @pytest.fixture
    def manager(self, redis_client):
        from scaling.locking import RedisLockManager

        return RedisLockManager("redis://localhost:6379/0")

    def test_acquire_sets_nx_with_ttl(self, manager, redis_client):
        redis_client.set.return_value = True

        assert manager.acquire("claims:w1", ttl=120) is True

        args, kwargs = redis_client.set.call_args
        assert args[0] == "riftsettle:lock:claims:w1"
        assert kwargs == {"nx": True, "px": 120_000}

    def test_acquire_times_out(self, manager, redis_client):
        redis_client.set.return_value = None
        assert manager.acquire("claims:w1", timeout=0) is False

    def test_release_only_own_lock(self, manager, redis_client):
        assert manager.release("claims:w1") is False
        redis_client.eval.assert_not_called()

        redis_client.set.return_value = True
        redis_client.eval.return_value = 1
        manager.acquire("claims:w1")

        assert manager.release("claims:w1") is True
        script, numkeys, key, value = redis_client.eval.call_args[0]
        assert script == manager.RELEASE_SCRIPT
        assert key == "riftsettle:lock:claims:w1"

    def test_get_info(self, manager, redis_client):
        redis_client.get.return_value = b"abc-123:140000:1700000000.5"
        redis_client.ttl.return_value = 42

        info = manager.get_info("claims:w1")

        assert info.holder_id == "abc-123:140000"
        assert info.acquired_at == 1700000000.5
        assert info.ttl == 42.0

    def test_get_info_missing(self, manager, redis_client):
        redis_client.get.return_value = None
        assert manager.get_info("claims:w1") is None


class TestLocalCache:
    """Tests for the in-memory cache."""

    def test_set_get(self):
        cache = LocalCache()
        cache.set("k", {"price": "1"})
        assert cache.get("k") == {"price": "1"}
        assert cache.get("missing", "d") == "d"

    def test_ttl_expiry(self):
        clock = FakeClock()
        cache = LocalCache(clock=clock)
        cache.set("k", 1, ttl=10)

        clock.now += 9
        assert cache.exists("k") is True
        clock.now += 1
        assert cache.get("k") is None
        assert cache.exists("k") is False

    def test_no_ttl_never_expires(self):
        clock = FakeClock()
        cache = LocalCache(clock=clock)
        cache.set("k", 1)
        clock.now += 10**9
        assert cache.get("k") == 1

    def test_evicts_oldest_when_full(self):
        cache = LocalCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)

        assert cache.get("a") is None
        assert cache.get_many(["a", "b", "c"]) == {"b": 2, "c": 3}
        assert cache.get_stats()["evictions"] == 1

    def test_expired_entries_purged_before_eviction(self):
        clock = FakeClock()
        cache = LocalCache(max_size=2, clock=clock)
        cache.set("short", 1, ttl=1)
        cache.set("long", 2)
        clock.now += 5
        cache.set("new", 3)

        assert cache.get("long") == 2
        assert cache.get_stats()["evictions"] == 0

    def test_overwrite_refreshes_position(self):
        cache = LocalCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        cache.set("c", 3)

        assert cache.get("a") == 10
        assert cache.get("b") is None

    def test_delete_and_clear(self):
        cache = LocalCache()
        cache.set("a", 1)
        assert cache.delete("a") is True
        assert cache.delete("a") is False
        cache.set("b", 2)
        cache.clear()
        assert cache.get_stats()["size"] == 0

    def test_stats(self):
        cache = LocalCache()
        cache.set("a", 1)
        cache.get("a")
        cache.get("b")
        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5


class TestRedisCache:
    """Tests for the Redis cache with a mocked client."""

    @pytest.fixture
    def redis_client(self):
        with patch("redis.from_url") as from_url:
            client = MagicMock()
            from_url.return_value = client
            yield client

    @pytest.fixture
    def cache(self, redis_client):
        from scaling.cache import RedisCache

        return RedisCache("redis://localhost:6379/0", default_ttl=60.0)

    def test_set_serializes_with_ttl(self, cache, redis_client):
        assert cache.set("price:SOL", {"price": "150"}, ttl=0.0001) is True
        redis_client.set.assert_called_once_with(
            "riftsettle:cache:price:SOL", json.dumps({"price": "150"}), px=1
        )

    def test_default_ttl(self, cache, redis_client):
        cache.set("k", 1)
        assert redis_client.set.call_args[1] == {"px": 60_000}

    def test_get_deserializes(self, cache, redis_client):
        redis_client.get.return_value = b'{"price": "150"}'
        assert cache.get("price:SOL") == {"price": "150"}

    def test_get_corrupt_returns_default(self, cache, redis_client):
        redis_client.get.return_value = b"{oops"
        assert cache.get("k", "fallback") == "fallback"

    def test_get_many(self, cache, redis_client):
        redis_client.mget.return_value = [b"1", None, b"{bad"]
        assert cache.get_many(["a", "b", "c"]) == {"a": 1}

    def test_clear_scans_prefix(self, cache, redis_client):
        redis_client.scan.side_effect = [(5, [b"riftsettle:cache:a"]), (0, [])]
        cache.clear()
        redis_client.delete.assert_called_once_with(b"riftsettle:cache:a")


class TestSingletons:
    """Tests for REDIS_URL-driven selection."""

    def test_local_without_redis(self):
        assert isinstance(get_lock_manager(), LocalLockManager)
        assert isinstance(get_cache(), LocalCache)
        assert get_cache() is get_cache()

    def test_redis_when_configured(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
        with patch("redis.from_url") as from_url:
            from_url.return_value = MagicMock()
            manager = get_lock_manager()
            cache = get_cache()

        assert type(manager).__name__ == "RedisLockManager"
        assert type(cache).__name__ == "RedisCache"
        from_url.assert_called_with("redis://cache:6379/0")

    def test_reset(self):
        first = get_lock_manager()
        scaling.reset_scaling()
        assert get_lock_manager() is not first
