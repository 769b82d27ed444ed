"""
Idempotency and Lock Tests
==========================

Event admission against the in-memory and Redis key stores, and the
keyed lock registries.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.models.event import EventKind
from app.services.idempotency import (
    AdmissionResult,
    IdempotencyGuard,
    InMemoryKeyStore,
    RedisKeyStore,
)
from app.services.locks import KeyedLock, RedisKeyedLock
from tests.factories import make_event


class TestInMemoryGuard:
    """Admission with the in-memory key store."""

    @pytest.mark.asyncio
    async def test_first_delivery_accepted(self):
        store = InMemoryKeyStore()
        guard = IdempotencyGuard(store)
        event = make_event(EventKind.RENEWAL)

        assert await guard.admit(event) == AdmissionResult.ACCEPTED
        assert event.dedup_key in store

    @pytest.mark.asyncio
    async def test_redelivery_ignored(self):
        """Same platform, token, kind and notification id is a duplicate."""
        guard = IdempotencyGuard(InMemoryKeyStore())
        first = make_event(EventKind.RENEWAL)
        again = make_event(EventKind.RENEWAL)

        await guard.admit(first)
        assert first.id != again.id
        assert await guard.admit(again) == AdmissionResult.DUPLICATE_IGNORED

    @pytest.mark.asyncio
    async def test_distinct_keys_admitted(self):
        guard = IdempotencyGuard(InMemoryKeyStore())

        results = [
            await guard.admit(make_event(EventKind.RENEWAL)),
            await guard.admit(make_event(EventKind.CANCELLATION)),
            await guard.admit(make_event(EventKind.RENEWAL, notification_id="n-2")),
            await guard.admit(make_event(EventKind.RENEWAL, token="token-2")),
        ]
        assert results == [AdmissionResult.ACCEPTED] * 4

    @pytest.mark.asyncio
    async def test_release_readmits(self):
        guard = IdempotencyGuard(InMemoryKeyStore())
        event = make_event(EventKind.PURCHASE)

        await guard.admit(event)
        await guard.release(event)

        assert await guard.admit(event) == AdmissionResult.ACCEPTED

    @pytest.mark.asyncio
    async def test_concurrent_admission_single_winner(self):
        guard = IdempotencyGuard(InMemoryKeyStore())
        event = make_event(EventKind.PURCHASE)

        results = await asyncio.gather(*[guard.admit(event) for _ in range(10)])

        assert results.count(AdmissionResult.ACCEPTED) == 1
        assert results.count(AdmissionResult.DUPLICATE_IGNORED) == 9


class TestRedisKeyStore:
    """Admission with SET NX EX."""

    @pytest.mark.asyncio
    async def test_set_nx_with_ttl(self):
        client = AsyncMock()
        client.set.return_value = True
        event = make_event(EventKind.RENEWAL)

        result = await IdempotencyGuard(RedisKeyStore(client, 3600)).admit(event)

        assert result == AdmissionResult.ACCEPTED
        client.set.assert_awaited_once_with(
            f"idem:lifecycle:{event.dedup_key}", "1", nx=True, ex=3600
        )

    @pytest.mark.asyncio
    async def test_existing_key_is_duplicate(self):
        """SET NX returns None when the key already exists."""
        client = AsyncMock()
        client.set.return_value = None

        result = await IdempotencyGuard(RedisKeyStore(client, 60)).admit(make_event(EventKind.RENEWAL))

        assert result == AdmissionResult.DUPLICATE_IGNORED

    @pytest.mark.asyncio
    async def test_release_deletes_key(self):
        client = AsyncMock()
        event = make_event(EventKind.RENEWAL)

        await IdempotencyGuard(RedisKeyStore(client, 60)).release(event)

        client.delete.assert_awaited_once_with(f"idem:lifecycle:{event.dedup_key}")

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self):
        """An unreachable store never admits the event."""
        client = AsyncMock()
        client.set.side_effect = RedisConnectionError("down")

        with pytest.raises(RedisConnectionError):
            await IdempotencyGuard(RedisKeyStore(client, 60)).admit(make_event(EventKind.RENEWAL))


class TestKeyedLock:
    """Per-key serialization."""

    @pytest.mark.asyncio
    async def test_same_key_serialized(self):
        locks = KeyedLock()
        order = []

        async def worker(name: str):
            async with locks.hold("subscription:token-1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_distinct_keys_do_not_contend(self):
        locks = KeyedLock()

        async with locks.hold("a"):
            assert locks.locked("a")
            assert not locks.locked("b")
            async with locks.hold("b"):
                assert locks.locked("b")


class TestRedisKeyedLock:
    @pytest.mark.asyncio
    async def test_uses_namespaced_redis_lock(self):
        client = MagicMock()

        async with RedisKeyedLock(client, timeout=30, blocking_timeout=5).hold("recon:2026-03-09"):
            pass

        client.lock.assert_called_once_with("lock:recon:2026-03-09", timeout=30, blocking_timeout=5)
        client.lock.return_value.__aenter__.assert_awaited_once()
        client.lock.return_value.__aexit__.assert_awaited_once()
