"""
Common Dependencies
===================

Shared dependencies and service builders used by the API routes and the
scheduled job runners.
"""

import logging
from datetime import datetime
from functools import lru_cache
from typing import Annotated, Callable

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings
from app.db.session import get_db
from app.models.event import Platform
from app.repositories.base import (
    PaymentRepository,
    ReconciliationResultRepository,
    RefundRepository,
    SubscriptionRepository,
)
from app.repositories.sql import (
    SqlLifecycleEventRepository,
    SqlPaymentRepository,
    SqlReconciliationResultRepository,
    SqlRefundRepository,
    SqlSubscriptionRepository,
)
from app.services.aggregator import DailyAggregator
from app.services.cache import get_redis
from app.services.discrepancies import AutoResolver, DiscrepancyAnalyzer
from app.services.idempotency import IdempotencyGuard, RedisKeyStore
from app.services.ingestion import NotificationIngestionService
from app.services.locks import EntityLock, KeyedLock, RedisKeyedLock
from app.services.matcher import MatchingPolicy, ReconciliationMatcher
from app.services.normalizer import NotificationNormalizer
from app.services.payments import PaymentService
from app.services.platforms import PlatformAdapter, build_platform_adapters
from app.services.reconciliation import ReconciliationService, StatusThresholds
from app.services.scheduled_jobs import ScheduledJobService
from app.services.subscription_lifecycle import SubscriptionLifecycleService
from app.services.verifier import JoseSignatureVerifier, SignatureVerifier
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)

# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]

# Per-entity locks are process-local; cross-process writers are caught by
# the optimistic version columns.
_entity_locks = KeyedLock()


# =============================================================================
# Process-wide collaborators
# =============================================================================

@lru_cache
def get_verifier() -> SignatureVerifier:
    if not settings.APP_STORE_SIGNING_KEY:
        logger.warning("APP_STORE_SIGNING_KEY not set; App Store notifications will be rejected")
    return JoseSignatureVerifier(settings.APP_STORE_SIGNING_KEY, settings.app_store_algorithms_list)


@lru_cache
def get_platform_adapters() -> dict[Platform, PlatformAdapter]:
    return build_platform_adapters(settings, get_verifier())


@lru_cache
def get_normalizer() -> NotificationNormalizer:
    return NotificationNormalizer(
        get_verifier(),
        google_play_package_name=settings.GOOGLE_PLAY_PACKAGE_NAME,
        app_store_bundle_id=settings.APP_STORE_BUNDLE_ID,
    )


def get_entity_locks() -> EntityLock:
    return _entity_locks


# =============================================================================
# Service builders
# =============================================================================

def build_lifecycle_service(
    subscriptions: SubscriptionRepository,
    payments: PaymentRepository,
    adapters: dict[Platform, PlatformAdapter],
    locks: EntityLock,
    clock: Callable[[], datetime] = utc_now,
) -> SubscriptionLifecycleService:
    payment_service = PaymentService(payments, adapters, locks, clock=clock)
    return SubscriptionLifecycleService(
        subscriptions,
        payment_service,
        payments,
        adapters,
        locks,
        clock=clock,
    )


def build_reconciliation_service(
    results: ReconciliationResultRepository,
    payments: PaymentRepository,
    refunds: RefundRepository,
    adapters: dict[Platform, PlatformAdapter],
    run_locks: EntityLock,
    config: Settings = settings,
    clock: Callable[[], datetime] = utc_now,
) -> ReconciliationService:
    """Reconciliation service with every policy threshold taken from ``config``."""
    policy = MatchingPolicy.from_settings(config)
    return ReconciliationService(
        results=results,
        payments=payments,
        refunds=refunds,
        adapters=adapters,
        matcher=ReconciliationMatcher(policy),
        analyzer=DiscrepancyAnalyzer(safe_confidence=policy.safe_confidence, clock=clock),
        resolver=AutoResolver.from_settings(config, clock=clock),
        aggregator=DailyAggregator(share_places=config.REPORT_SHARE_DECIMAL_PLACES, clock=clock),
        thresholds=StatusThresholds.from_settings(config),
        locks=run_locks,
        clock=clock,
    )


async def build_ingestion_service(db: AsyncSession) -> NotificationIngestionService:
    client = await get_redis()
    adapters = get_platform_adapters()
    lifecycle = build_lifecycle_service(
        SqlSubscriptionRepository(db),
        SqlPaymentRepository(db),
        adapters,
        get_entity_locks(),
    )
    return NotificationIngestionService(
        normalizer=get_normalizer(),
        guard=IdempotencyGuard(RedisKeyStore(client, settings.IDEMPOTENCY_TTL_SECONDS)),
        events=SqlLifecycleEventRepository(db),
        lifecycle=lifecycle,
        commit=db.commit,
    )


async def build_sql_reconciliation_service(db: AsyncSession) -> ReconciliationService:
    client = await get_redis()
    return build_reconciliation_service(
        SqlReconciliationResultRepository(db),
        SqlPaymentRepository(db),
        SqlRefundRepository(db),
        get_platform_adapters(),
        RedisKeyedLock(client),
    )


async def build_scheduled_job_service(db: AsyncSession) -> ScheduledJobService:
    ingestion = await build_ingestion_service(db)
    return ScheduledJobService(
        reconciliation=await build_sql_reconciliation_service(db),
        subscriptions=SqlSubscriptionRepository(db),
        lifecycle=ingestion.lifecycle,
        events=ingestion.events,
        ingestion=ingestion,
    )


# =============================================================================
# FastAPI dependencies
# =============================================================================

async def get_ingestion_service(db: DBSession) -> NotificationIngestionService:
    return await build_ingestion_service(db)


async def get_reconciliation_service(db: DBSession) -> ReconciliationService:
    return await build_sql_reconciliation_service(db)


IngestionServiceDep = Annotated[NotificationIngestionService, Depends(get_ingestion_service)]
ReconciliationServiceDep = Annotated[ReconciliationService, Depends(get_reconciliation_service)]
