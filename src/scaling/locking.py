"""
Named locks for RiftSettle.

Claims and distribution runs mutate the same ledger rows and spend from
the same treasury account, so both take named locks before touching them:
- LocalLockManager: Thread-based locks for single-instance deployments
- RedisLockManager: Distributed locks using Redis for multi-instance

Lock names used by the settlement core:
    claims:{wallet}         one claim at a time per wallet
    treasury:{address}      one spender at a time per treasury account

Acquire order is always claims before treasury.

Usage:
    from scaling import get_lock_manager

    lock_manager = get_lock_manager()

    with lock_manager.lock(f"treasury:{address}", timeout=30):
        run_distribution()
"""

import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass


@dataclass
class LockInfo:
    """Information about a held lock."""

    name: str
    holder_id: str
    acquired_at: float
    ttl: float | None = None
    expires_at: float | None = None
    depth: int = 1


class LockManager(ABC):
    """
    Abstract base class for lock managers.

    All lock managers must implement acquire/release/is_locked.
    """

    @abstractmethod
    def acquire(
        self,
        name: str,
        timeout: float = 30.0,
        ttl: float = 60.0,
    ) -> bool:
        """
        Acquire a named lock.

        Args:
            name: Lock identifier
            timeout: Maximum time to wait for lock (seconds, 0 = try once)
            ttl: Lock time-to-live (auto-release after this time)

        Returns:
            True if lock acquired, False if timeout
        """
        pass

    @abstractmethod
    def release(self, name: str) -> bool:
        """
        Release a named lock.

        Returns:
            True if lock was held and released, False otherwise
        """
        pass

    @abstractmethod
    def is_locked(self, name: str) -> bool:
        """Check if a lock is currently held."""
        pass

    @contextmanager
    def lock(self, name: str, timeout: float = 30.0, ttl: float = 60.0):
        """
        Context manager for acquiring a lock.

        Raises:
            TimeoutError: If lock cannot be acquired within timeout
        """
        if not self.acquire(name, timeout=timeout, ttl=ttl):
            raise TimeoutError(f"Could not acquire lock '{name}' within {timeout}s")
        try:
            yield
        finally:
            self.release(name)

    def get_info(self, name: str) -> LockInfo | None:
        """Get information about a lock (if held)."""
        return None


class LocalLockManager(LockManager):
    """
    Thread-based lock manager for single-instance deployments.

    Locks are reentrant for the holding thread; other threads wait up to
    ``timeout``. TTLs are recorded for inspection only.
    """

    def __init__(self):
        self._locks: dict[str, threading.RLock] = {}
        self._lock_info: dict[str, LockInfo] = {}
        self._meta_lock = threading.Lock()
        self._instance_id = str(uuid.uuid4())[:8]

    def _get_lock(self, name: str) -> threading.RLock:
        """Get or create a lock by name."""
        with self._meta_lock:
            if name not in self._locks:
                self._locks[name] = threading.RLock()
            return self._locks[name]

    def acquire(
        self,
        name: str,
        timeout: float = 30.0,
        ttl: float = 60.0,
    ) -> bool:
        """Acquire a named lock."""
        lock = self._get_lock(name)
        if timeout <= 0:
            acquired = lock.acquire(blocking=False)
        else:
            acquired = lock.acquire(timeout=timeout)

        if acquired:
            with self._meta_lock:
                info = self._lock_info.get(name)
                if info is not None:
                    info.depth += 1
                else:
                    now = time.time()
                    self._lock_info[name] = LockInfo(
                        name=name,
                        holder_id=f"{self._instance_id}:{threading.current_thread().name}",
                        acquired_at=now,
                        ttl=ttl,
                        expires_at=now + ttl if ttl else None,
                    )

        return acquired

    def release(self, name: str) -> bool:
        """Release a named lock."""
        lock = self._get_lock(name)
        try:
            lock.release()
        except RuntimeError:
            # Lock not held by this thread
            return False

        with self._meta_lock:
            info = self._lock_info.get(name)
            if info is not None:
                info.depth -= 1
                if info.depth <= 0:
                    del self._lock_info[name]
        return True

    def is_locked(self, name: str) -> bool:
        """Check if a lock is currently held."""
        return name in self._lock_info

    def get_info(self, name: str) -> LockInfo | None:
        """Get information about a lock."""
        return self._lock_info.get(name)

    def get_all_locks(self) -> list[LockInfo]:
        """Get information about all held locks."""
        return list(self._lock_info.values())


class RedisLockManager(LockManager):
    """
    Distributed lock manager using Redis.

    SET NX PX for acquire, compare-and-delete Lua script for release, so a
    crashed holder frees the lock after its TTL.
    """

    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "riftsettle:lock:",
    ):
        """
        Initialize Redis lock manager.

        Args:
            redis_url: Redis connection URL
            key_prefix: Prefix for lock keys in Redis
        """
        import redis

        self._redis = redis.from_url(redis_url)
        self._key_prefix = key_prefix
        self._instance_id = str(uuid.uuid4())
        self._held_locks: dict[str, str] = {}  # name -> lock_value
        self._held_lock = threading.Lock()

    def _key(self, name: str) -> str:
        """Get Redis key for a lock."""
        return f"{self._key_prefix}{name}"

    def acquire(
        self,
        name: str,
        timeout: float = 30.0,
        ttl: float = 60.0,
    ) -> bool:
        """Acquire a distributed lock."""
        key = self._key(name)
        lock_value = f"{self._instance_id}:{threading.get_ident()}:{time.time()}"
        ttl_ms = int(ttl * 1000)

        deadline = time.time() + timeout
        retry_delay = 0.1

        while True:
            if self._redis.set(key, lock_value, nx=True, px=ttl_ms):
                with self._held_lock:
                    self._held_locks[name] = lock_value
                return True

            if time.time() >= deadline:
                return False

            time.sleep(retry_delay)
            retry_delay = min(retry_delay * 1.5, 1.0)

    def release(self, name: str) -> bool:
        """Release a distributed lock (only if we still hold it)."""
        with self._held_lock:
            lock_value = self._held_locks.get(name)

        if not lock_value:
            return False

        result = self._redis.eval(self.RELEASE_SCRIPT, 1, self._key(name), lock_value)
        with self._held_lock:
            self._held_locks.pop(name, None)
        return bool(result)

    def is_locked(self, name: str) -> bool:
        """Check if a lock is currently held."""
        return self._redis.exists(self._key(name)) > 0

    def get_info(self, name: str) -> LockInfo | None:
        """Get information about a lock."""
        key = self._key(name)
        value = self._redis.get(key)
        if not value:
            return None

        ttl = self._redis.ttl(key)
        raw = value.decode() if isinstance(value, bytes) else str(value)
        holder_id, _, acquired_str = raw.rpartition(":")
        try:
            acquired_at = float(acquired_str)
        except ValueError:
            holder_id, acquired_at = raw, 0.0

        return LockInfo(
            name=name,
            holder_id=holder_id,
            acquired_at=acquired_at,
            ttl=float(ttl) if ttl > 0 else None,
        )
