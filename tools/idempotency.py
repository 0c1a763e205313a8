import os
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import redis
from loguru import logger

from engine.errors import PipelineError
from engine.models import DedupeKey


def connect_redis(redis_url: Optional[str] = None) -> Optional[redis.Redis]:
    """Return a live Redis client, or None when Redis is unreachable."""
    url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379")
    try:
        client = redis.from_url(url)
        # Test connection
        client.ping()
        logger.info("Redis connection established successfully")
        return client
    except (redis.RedisError, ValueError) as e:
        logger.error(f"Redis connection failed: {e}")
        return None


class Idem:
    """Redis-based idempotency checker so a replayed lead event is processed once."""

    def __init__(self, redis_url: Optional[str] = None, use_redis: bool = True):
        self.r = connect_redis(redis_url) if use_redis else None
        # Fallback to in-memory storage (single process only)
        self._memory_keys: Dict[str, int] = {}
        self._memory_lock = threading.Lock()

    def check_and_set(self, key: str, ttl: int = 3600) -> bool:
        """
        Check if key exists and set it if it doesn't.

        Args:
            key: Unique identifier for the lead event
            ttl: Time to live in seconds (default: 1 hour)

        Returns:
            True if key was set (new event), False if already seen
        """
        if not key:
            logger.warning("Empty key provided to idempotency check")
            return False

        if self.r:
            try:
                result = self.r.set(name=f"idem:{key}", value=int(time.time()), ex=ttl, nx=True)
                return result is True
            except redis.RedisError as e:
                logger.error(f"Idempotency check failed, falling back to memory: {e}")

        with self._memory_lock:
            if key in self._memory_keys:
                return False
            self._memory_keys[key] = int(time.time())
            return True

    def get_processing_time(self, key: str) -> int:
        """Get when the event was first seen (for debugging)."""
        try:
            if self.r:
                timestamp = self.r.get(f"idem:{key}")
                return int(timestamp) if timestamp else 0
        except redis.RedisError as e:
            logger.error(f"Failed to get processing time: {e}")
            return 0
        return self._memory_keys.get(key, 0)

    def clear_key(self, key: str) -> bool:
        """Forget a key so a failed event can be retried."""
        try:
            if self.r:
                return bool(self.r.delete(f"idem:{key}"))
        except redis.RedisError as e:
            logger.error(f"Failed to clear key: {e}")
            return False
        with self._memory_lock:
            self._memory_keys.pop(key, None)
        return True

    def close(self) -> None:
        if self.r:
            self.r.close()


class IdentityLock:
    """
    Per-identity serialization point for the dedupe match-then-write step.

    Uses Redis locks when a client is supplied so separate workers serialize
    on the same identity; otherwise falls back to in-process re-entrant
    locks. Keys are always acquired in sorted order.
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None, timeout: int = 10, blocking_timeout: float = 5):
        self.r = redis_client
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self._guard = threading.Lock()
        self._local: Dict[str, List] = {}

    @staticmethod
    def lock_name(key: DedupeKey) -> str:
        return f"lock:lead:{key.team_id}:{key.kind}:{key.value}"

    @contextmanager
    def hold(self, keys: Iterable[DedupeKey]) -> Iterator[List[str]]:
        names = sorted({self.lock_name(key) for key in keys})
        acquired: List[Tuple[str, object]] = []
        try:
            for name in names:
                acquired.append((name, self._acquire(name)))
            yield names
        finally:
            for name, handle in reversed(acquired):
                self._release(name, handle)

    def _acquire(self, name: str):
        if self.r:
            try:
                lock = self.r.lock(name, timeout=self.timeout, blocking_timeout=self.blocking_timeout)
                if not lock.acquire():
                    raise PipelineError(f"Timed out waiting for identity lock {name}")
                return lock
            except redis.RedisError as e:
                logger.error(f"Redis lock failed for {name}, using local lock: {e}")

        with self._guard:
            entry = self._local.setdefault(name, [threading.RLock(), 0])
            entry[1] += 1
        entry[0].acquire()
        return None

    def _release(self, name: str, handle) -> None:
        if handle is not None:
            try:
                handle.release()
            except redis.exceptions.LockError as e:
                logger.warning(f"Identity lock {name} expired before release: {e}")
            return

        with self._guard:
            entry = self._local[name]
            entry[0].release()
            entry[1] -= 1
            if entry[1] == 0:
                del self._local[name]

    def close(self) -> None:
        with self._guard:
            self._local.clear()
