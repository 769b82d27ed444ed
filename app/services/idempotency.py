"""
Idempotency Guard
=================

Admits each lifecycle event at most once per natural key
``(platform, source_token, kind, platform_notification_id)``.

Admission is a single atomic check-and-insert against a key store:
``SET key 1 NX EX ttl`` on Redis, a set insert in memory. There is no
separate "exists" check that a concurrent delivery could slip past.
"""

import logging
from enum import Enum
from typing import Protocol

from redis.asyncio import Redis

from app.schemas.notification import LifecycleEvent
from app.services.cache import CacheKeys

logger = logging.getLogger(__name__)


class AdmissionResult(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE_IGNORED = "duplicate_ignored"


class KeyStore(Protocol):
    async def add_if_absent(self, key: str) -> bool:
        """Atomically insert ``key``; False if it was already present."""
        ...

    async def discard(self, key: str) -> None: ...


class InMemoryKeyStore:
    def __init__(self) -> None:
        self._keys: set[str] = set()

    async def add_if_absent(self, key: str) -> bool:
        if key in self._keys:
            return False
        self._keys.add(key)
        return True

    async def discard(self, key: str) -> None:
        self._keys.discard(key)

    def __contains__(self, key: str) -> bool:
        return key in self._keys


class RedisKeyStore:
    """
    Redis key store with expiring keys.

    Redis errors propagate: an event is never admitted when the store
    cannot confirm the key was absent.
    """

    def __init__(self, client: Redis, ttl_seconds: int):
        self.client = client
        self.ttl_seconds = ttl_seconds

    async def add_if_absent(self, key: str) -> bool:
        result = await self.client.set(
            CacheKeys.idempotency(key),
            "1",
            nx=True,
            ex=self.ttl_seconds,
        )
        return bool(result)

    async def discard(self, key: str) -> None:
        await self.client.delete(CacheKeys.idempotency(key))


class IdempotencyGuard:
    """Deduplicates lifecycle events before any state mutation."""

    def __init__(self, store: KeyStore):
        self.store = store

    async def admit(self, event: LifecycleEvent) -> AdmissionResult:
        key = event.dedup_key
        if await self.store.add_if_absent(key):
            return AdmissionResult.ACCEPTED

        logger.info(
            "Duplicate lifecycle event ignored: platform=%s kind=%s notification=%s",
            event.platform.value,
            event.kind.value,
            event.platform_notification_id,
        )
        return AdmissionResult.DUPLICATE_IGNORED

    async def release(self, event: LifecycleEvent) -> None:
        """
        Forget an admitted key.

        Used when processing fails after admission so that the platform's
        re-delivery is admitted again instead of being dropped.
        """
        await self.store.discard(event.dedup_key)
        logger.info("Released idempotency key for notification %s", event.platform_notification_id)
