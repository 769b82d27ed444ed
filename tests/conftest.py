"""
Shared Fixtures
===============

In-memory service wiring and an HTTP client over the ASGI app.
"""

from dataclasses import dataclass

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.dependencies import (
    build_lifecycle_service,
    build_reconciliation_service,
    get_ingestion_service,
    get_reconciliation_service,
)
from app.main import app
from app.models.event import Platform
from app.repositories.memory import (
    InMemoryLifecycleEventRepository,
    InMemoryPaymentRepository,
    InMemoryReconciliationResultRepository,
    InMemoryRefundRepository,
    InMemorySubscriptionRepository,
)
from app.services.idempotency import IdempotencyGuard, InMemoryKeyStore
from app.services.ingestion import NotificationIngestionService
from app.services.locks import KeyedLock
from app.services.normalizer import NotificationNormalizer
from app.services.reconciliation import ReconciliationService
from app.services.verifier import JoseSignatureVerifier
from tests.factories import SECRET, FakeAdapter, fixed_clock


@dataclass
class Wiring:
    subscriptions: InMemorySubscriptionRepository
    payments: InMemoryPaymentRepository
    refunds: InMemoryRefundRepository
    events: InMemoryLifecycleEventRepository
    results: InMemoryReconciliationResultRepository
    keys: InMemoryKeyStore
    adapters: dict[Platform, FakeAdapter]
    ingestion: NotificationIngestionService
    reconciliation: ReconciliationService


@pytest.fixture
def wiring() -> Wiring:
    """Production builders over in-memory stores and fake adapters."""
    subscriptions = InMemorySubscriptionRepository()
    payments = InMemoryPaymentRepository()
    refunds = InMemoryRefundRepository()
    events = InMemoryLifecycleEventRepository()
    results = InMemoryReconciliationResultRepository()
    keys = InMemoryKeyStore()
    adapters = {
        Platform.GOOGLE_PLAY: FakeAdapter(Platform.GOOGLE_PLAY),
        Platform.APP_STORE: FakeAdapter(Platform.APP_STORE),
    }
    locks = KeyedLock()

    normalizer = NotificationNormalizer(
        JoseSignatureVerifier(SECRET, ["HS256"]),
        google_play_package_name="com.example.app",
        app_store_bundle_id="com.example.app",
    )
    ingestion = NotificationIngestionService(
        normalizer=normalizer,
        guard=IdempotencyGuard(keys),
        events=events,
        lifecycle=build_lifecycle_service(subscriptions, payments, adapters, locks, clock=fixed_clock),
        clock=fixed_clock,
    )
    reconciliation = build_reconciliation_service(
        results, payments, refunds, adapters, KeyedLock(), clock=fixed_clock
    )

    return Wiring(
        subscriptions=subscriptions,
        payments=payments,
        refunds=refunds,
        events=events,
        results=results,
        keys=keys,
        adapters=adapters,
        ingestion=ingestion,
        reconciliation=reconciliation,
    )


@pytest_asyncio.fixture
async def client(wiring: Wiring):
    """HTTP client with the service dependencies swapped for in-memory ones."""
    app.dependency_overrides[get_ingestion_service] = lambda: wiring.ingestion
    app.dependency_overrides[get_reconciliation_service] = lambda: wiring.reconciliation

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
