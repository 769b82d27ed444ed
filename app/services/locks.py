"""
Keyed Locks
===========

Per-key mutual exclusion for lifecycle transitions and reconciliation
runs. Distinct keys never contend with each other.

``KeyedLock`` serializes coroutines inside one process.
``RedisKeyedLock`` extends the guarantee across processes.
"""

import asyncio
import weakref
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncIterator, Protocol

from redis.asyncio import Redis

from app.services.cache import CacheKeys


class EntityLock(Protocol):
    def hold(self, key: str) -> AbstractAsyncContextManager[None]: ...


class KeyedLock:
    """In-process lock registry; unused locks are garbage collected."""

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._lock_for(key)
        async with lock:
            yield

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


class RedisKeyedLock:
    """
    Redis-backed lock registry.

    Args:
        client: Redis client
        timeout: Seconds after which a crashed holder's lock expires
        blocking_timeout: Seconds to wait for the lock before giving up
    """

    def __init__(self, client: Redis, timeout: float = 300, blocking_timeout: float = 60):
        self.client = client
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self.client.lock(
            CacheKeys.lock(key),
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
        )
        async with lock:
            yield
