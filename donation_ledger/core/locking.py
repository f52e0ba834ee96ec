"""
Keyed mutual exclusion for confirmations.

Two confirmations for the same transaction code run one after the other;
confirmations for different codes never wait on each other. The local backend
covers a single process, the Redis backend covers several API workers.
"""
import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Dict, Optional, Protocol

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError

from donation_ledger.config import Settings, get_settings
from donation_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class LockUnavailableError(Exception):
    """Raised when a keyed lock cannot be acquired in time."""

    pass


class KeyedLock(Protocol):
    """Interface for per-key critical sections."""

    def hold(self, key: str) -> AsyncContextManager[None]:
        """Async context manager holding the lock for key."""
        ...


class LocalKeyedLock:
    """In-process keyed lock built on asyncio.Lock."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        start = time.monotonic()
        try:
            async with lock:
                metrics.record_confirmation_lock("acquired", time.monotonic() - start)
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                # Last user of the key; drop it so the map does not grow forever
                del self._waiters[key]
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


class RedisKeyedLock:
    """Cross-process keyed lock using Redis."""

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.redis_client = redis_client

    def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock_key = f"donation:confirm:lock:{key}"
        lock = self._ensure_redis().lock(
            lock_key,
            timeout=self.settings.redis_lock_timeout,
            blocking_timeout=self.settings.redis_lock_blocking_timeout,
        )
        start = time.monotonic()
        acquired = await lock.acquire()
        if not acquired:
            metrics.record_confirmation_lock("timeout")
            logger.warning("confirmation_lock_acquisition_failed", lock_key=lock_key)
            raise LockUnavailableError(f"Could not acquire lock {lock_key}")

        metrics.record_confirmation_lock("acquired", time.monotonic() - start)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                # Lock expired while held; the database guards still apply
                logger.warning("confirmation_lock_release_failed", lock_key=lock_key, error=str(e))

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()


def build_lock(settings: Optional[Settings] = None) -> KeyedLock:
    """Create the keyed lock configured for this deployment."""
    settings = settings or get_settings()
    if settings.lock_backend == "redis":
        return RedisKeyedLock(settings=settings)
    return LocalKeyedLock()
