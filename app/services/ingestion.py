"""
Notification Ingestion
======================

Webhook-facing pipeline: normalize -> admit -> persist -> apply.

Outcomes:
- malformed or unverifiable payloads are logged and reported as
  ``rejected`` (the platform still gets a success acknowledgement)
- duplicates are reported as ``duplicate``
- lifecycle rejections (invalid transitions, unusable event data) are
  stored on the event record and reported as ``accepted``
- collaborator failures release the idempotency key and propagate, so the
  platform's re-delivery is admitted again

With a ``commit`` callback the unit of work is committed while the key is
still held; a failed commit releases the key like any other failure.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional
import uuid

from pydantic import BaseModel

from app.core.errors import InvalidTransition, ParseError, ValidationError
from app.models.event import EventKind, EventOutcome, LifecycleEventRecord
from app.repositories.base import LifecycleEventRepository
from app.schemas.notification import LifecycleEvent, NotificationEnvelope
from app.services.idempotency import AdmissionResult, IdempotencyGuard
from app.services.normalizer import NotificationNormalizer
from app.services.subscription_lifecycle import SubscriptionLifecycleService
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)


class IngestionStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


class IngestionResult(BaseModel):
    status: IngestionStatus
    event_id: Optional[uuid.UUID] = None
    kind: Optional[EventKind] = None
    outcome: Optional[EventOutcome] = None
    detail: Optional[str] = None


class NotificationIngestionService:
    """Turns raw platform notifications into applied lifecycle changes."""

    def __init__(
        self,
        normalizer: NotificationNormalizer,
        guard: IdempotencyGuard,
        events: LifecycleEventRepository,
        lifecycle: SubscriptionLifecycleService,
        clock: Callable[[], datetime] = utc_now,
        commit: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.normalizer = normalizer
        self.guard = guard
        self.events = events
        self.lifecycle = lifecycle
        self.clock = clock
        self.commit = commit

    async def ingest(self, envelope: NotificationEnvelope) -> IngestionResult:
        try:
            event = self.normalizer.normalize(envelope)
        except ParseError as exc:
            logger.warning(
                "Rejected %s notification: %s",
                envelope.platform.value,
                exc.message,
            )
            return IngestionResult(status=IngestionStatus.REJECTED, detail=exc.message)

        if await self.guard.admit(event) == AdmissionResult.DUPLICATE_IGNORED:
            return IngestionResult(status=IngestionStatus.DUPLICATE, kind=event.kind)

        try:
            record = self._to_record(event)
            if not await self.events.insert_if_absent(record):
                # Key store entry expired but the event was already stored
                logger.info("Lifecycle event %s already stored", event.dedup_key)
                return IngestionResult(status=IngestionStatus.DUPLICATE, kind=event.kind)

            outcome, detail = await self._apply(event, record.event_id)
            record.mark_processed(self.clock(), outcome, detail)
            await self.events.save(record)
            if self.commit is not None:
                await self.commit()
        except Exception:
            await self.guard.release(event)
            raise

        return IngestionResult(
            status=IngestionStatus.ACCEPTED,
            event_id=record.event_id,
            kind=event.kind,
            outcome=outcome,
            detail=detail,
        )

    async def reprocess(self, record: LifecycleEventRecord) -> EventOutcome:
        """Apply a stored event that never finished processing."""
        event = LifecycleEvent(
            id=record.event_id,
            entity_id=record.entity_id,
            kind=record.kind,
            platform=record.platform,
            source_token=record.source_token,
            platform_notification_id=record.platform_notification_id,
            payload=record.payload or {},
            occurred_at=record.occurred_at,
            received_at=record.received_at,
        )
        outcome, detail = await self._apply(event, record.event_id)
        record.mark_processed(self.clock(), outcome, detail)
        await self.events.save(record)
        return outcome

    async def _apply(
        self,
        event: LifecycleEvent,
        event_id: uuid.UUID,
    ) -> tuple[EventOutcome, Optional[str]]:
        try:
            result = await self.lifecycle.apply(event, event_id)
        except (InvalidTransition, ValidationError) as exc:
            logger.warning(
                "Lifecycle event %s rejected: %s",
                event.platform_notification_id,
                exc.message,
            )
            return EventOutcome.REJECTED, exc.message

        if result.changed:
            return EventOutcome.APPLIED, result.detail
        return EventOutcome.IGNORED, result.detail

    @staticmethod
    def _to_record(event: LifecycleEvent) -> LifecycleEventRecord:
        return LifecycleEventRecord(
            event_id=event.id,
            dedup_key=event.dedup_key,
            entity_id=event.entity_id,
            kind=event.kind,
            platform=event.platform,
            source_token=event.source_token,
            platform_notification_id=event.platform_notification_id,
            payload=event.payload,
            occurred_at=event.occurred_at,
            received_at=event.received_at,
            processed_at=None,
            outcome=None,
            outcome_detail=None,
        )
