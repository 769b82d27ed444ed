"""
Scheduled Jobs
==============

Background tasks triggered by an external scheduler:
- Daily reconciliation for every platform
- Subscription expiration sweep
- Reprocessing of stored events that never finished
"""

import logging
from datetime import date, datetime
from typing import Callable, Optional

from app.models.event import EventKind, Platform
from app.models.subscription import SubscriptionStatus
from app.repositories.base import LifecycleEventRepository, SubscriptionRepository
from app.schemas.notification import LifecycleEvent
from app.services.ingestion import NotificationIngestionService
from app.services.reconciliation import ReconciliationService
from app.services.subscription_lifecycle import SubscriptionLifecycleService
from app.utils.helpers import utc_now, yesterday

logger = logging.getLogger(__name__)


class ScheduledJobService:
    """Service for scheduled background jobs."""

    def __init__(
        self,
        reconciliation: ReconciliationService,
        subscriptions: SubscriptionRepository,
        lifecycle: SubscriptionLifecycleService,
        events: LifecycleEventRepository,
        ingestion: NotificationIngestionService,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.reconciliation = reconciliation
        self.subscriptions = subscriptions
        self.lifecycle = lifecycle
        self.events = events
        self.ingestion = ingestion
        self.clock = clock

    async def run_daily_reconciliation(self, target_date: Optional[date] = None) -> dict:
        """
        Reconcile every platform for one day, then build the daily report.

        Run daily at 02:00 UTC for the previous day. Pass ``target_date`` to
        re-run a missed or disputed day; each run stores a new version.

        Returns:
            Summary with per-platform status and the overall status
        """
        now = self.clock()
        run_date = target_date or yesterday(now)

        platforms: dict[str, Optional[str]] = {}
        errors = []

        for platform in Platform:
            try:
                result = await self.reconciliation.run(run_date, platform)
                platforms[platform.value] = result.status.value
                errors.extend(
                    {"platform": platform.value, "error": error} for error in result.errors
                )
            except Exception as e:
                logger.exception(
                    "Reconciliation crashed: date=%s platform=%s", run_date, platform.value
                )
                platforms[platform.value] = None
                errors.append({"platform": platform.value, "error": str(e)})

        report = await self.reconciliation.build_daily_report(run_date)

        return {
            "job": "run_daily_reconciliation",
            "date": run_date.isoformat(),
            "platforms": platforms,
            "overall_status": report.overall_status.value,
            "errors": errors,
            "run_at": now.isoformat(),
        }

    async def check_expired_subscriptions(self) -> dict:
        """
        Expire active or canceled subscriptions whose expiry has passed.

        Covers platforms that never deliver an expiration notification.
        Run hourly.

        Returns:
            Summary of processed subscriptions
        """
        now = self.clock()
        processed = 0
        errors = []

        for status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED):
            for subscription in await self.subscriptions.find_by_status(status):
                if subscription.expiry_at >= now:
                    continue
                event = LifecycleEvent(
                    entity_id=subscription.purchase_token,
                    kind=EventKind.EXPIRATION,
                    platform=subscription.platform,
                    source_token=subscription.purchase_token,
                    platform_notification_id=f"expiry-sweep:{now.date().isoformat()}",
                    payload={"reason": "expiry_sweep"},
                    occurred_at=now,
                    received_at=now,
                )
                try:
                    outcome = await self.lifecycle.apply(event)
                    if outcome.changed:
                        processed += 1
                except Exception as e:
                    logger.exception("Expiry sweep failed for %s", subscription.subscription_id)
                    errors.append({
                        "subscription_id": str(subscription.subscription_id),
                        "error": str(e),
                    })

        return {
            "job": "check_expired_subscriptions",
            "processed": processed,
            "errors": errors,
            "run_at": now.isoformat(),
        }

    async def retry_unprocessed_events(self, limit: int = 100) -> dict:
        """
        Apply stored lifecycle events that have no processing outcome.

        Run every 15 minutes.

        Returns:
            Summary of reprocessed events
        """
        now = self.clock()
        processed = 0
        errors = []

        for record in await self.events.find_unprocessed(limit):
            try:
                await self.ingestion.reprocess(record)
                processed += 1
            except Exception as e:
                logger.exception("Reprocessing failed for event %s", record.event_id)
                errors.append({
                    "event_id": str(record.event_id),
                    "error": str(e),
                })

        return {
            "job": "retry_unprocessed_events",
            "processed": processed,
            "errors": errors,
            "run_at": now.isoformat(),
        }


# Job runner functions (can be called from scheduler like APScheduler or Celery)

async def run_reconciliation_job(target_date: Optional[date] = None) -> dict:
    """Run daily reconciliation."""
    from app.dependencies import build_scheduled_job_service
    from app.db.session import session_scope

    async with session_scope() as db:
        service = await build_scheduled_job_service(db)
        return await service.run_daily_reconciliation(target_date)


async def run_expiration_check() -> dict:
    """Run subscription expiration sweep."""
    from app.dependencies import build_scheduled_job_service
    from app.db.session import session_scope

    async with session_scope() as db:
        service = await build_scheduled_job_service(db)
        return await service.check_expired_subscriptions()


async def run_event_retry(limit: int = 100) -> dict:
    """Run reprocessing of unfinished lifecycle events."""
    from app.dependencies import build_scheduled_job_service
    from app.db.session import session_scope

    async with session_scope() as db:
        service = await build_scheduled_job_service(db)
        return await service.retry_unprocessed_events(limit)
