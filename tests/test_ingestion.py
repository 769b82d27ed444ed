"""
Notification Ingestion Tests
============================

The normalize -> admit -> persist -> apply pipeline.
"""

from unittest.mock import AsyncMock, patch

import pytest

from app.models.event import EventKind, EventOutcome, Platform
from app.models.subscription import SubscriptionStatus
from app.schemas.notification import NotificationEnvelope
from app.services.ingestion import IngestionStatus
from tests.factories import (
    NOW,
    app_store_body,
    app_store_transaction,
    google_play_envelope,
    make_event,
    purchase_payload,
)


def _purchase_notification(token: str = "token-1", notification_type: int = 4) -> dict:
    return {
        "subscriptionNotification": {
            "version": "1.0",
            "notificationType": notification_type,
            "purchaseToken": token,
            "subscriptionId": "premium_monthly",
        }
    }


class TestIngest:
    """Webhook payloads through to lifecycle outcomes."""

    @pytest.mark.asyncio
    async def test_app_store_purchase_applied(self, wiring):
        body = app_store_body("SUBSCRIBED", subtype="INITIAL_BUY", transaction=app_store_transaction())
        envelope = NotificationEnvelope(platform=Platform.APP_STORE, raw_payload=body, received_at=NOW)

        result = await wiring.ingestion.ingest(envelope)

        assert result.status == IngestionStatus.ACCEPTED
        assert result.kind == EventKind.PURCHASE
        assert result.outcome == EventOutcome.APPLIED
        subscription = await wiring.subscriptions.find_by_natural_key("1000000001")
        assert subscription.status == SubscriptionStatus.ACTIVE
        stored = await wiring.events.find_by_id(result.event_id)
        assert stored.processed_at == NOW
        assert stored.outcome == EventOutcome.APPLIED

    @pytest.mark.asyncio
    async def test_redelivery_is_duplicate(self, wiring):
        body = app_store_body("SUBSCRIBED", transaction=app_store_transaction())
        envelope = NotificationEnvelope(platform=Platform.APP_STORE, raw_payload=body, received_at=NOW)

        await wiring.ingestion.ingest(envelope)
        again = await wiring.ingestion.ingest(envelope)

        assert again.status == IngestionStatus.DUPLICATE
        assert len(wiring.subscriptions.history) == 1

    @pytest.mark.asyncio
    async def test_stored_event_without_key_is_duplicate(self, wiring):
        """An expired key store entry still cannot re-apply a stored event."""
        body = app_store_body("SUBSCRIBED", transaction=app_store_transaction())
        envelope = NotificationEnvelope(platform=Platform.APP_STORE, raw_payload=body, received_at=NOW)
        first = await wiring.ingestion.ingest(envelope)
        stored = await wiring.events.find_by_id(first.event_id)
        await wiring.keys.discard(stored.dedup_key)

        again = await wiring.ingestion.ingest(envelope)

        assert again.status == IngestionStatus.DUPLICATE

    @pytest.mark.asyncio
    async def test_malformed_payload_rejected(self, wiring):
        envelope = NotificationEnvelope(
            platform=Platform.GOOGLE_PLAY, raw_payload=b"{not json", received_at=NOW
        )

        result = await wiring.ingestion.ingest(envelope)

        assert result.status == IngestionStatus.REJECTED
        assert result.event_id is None
        assert await wiring.events.find_unprocessed() == []

    @pytest.mark.asyncio
    async def test_untrusted_signature_rejected(self, wiring):
        body = app_store_body("SUBSCRIBED", transaction=app_store_transaction(), key="attacker-key")
        envelope = NotificationEnvelope(platform=Platform.APP_STORE, raw_payload=body, received_at=NOW)

        result = await wiring.ingestion.ingest(envelope)

        assert result.status == IngestionStatus.REJECTED
        assert await wiring.subscriptions.find_by_natural_key("1000000001") is None

    @pytest.mark.asyncio
    async def test_lifecycle_rejection_recorded_on_event(self, wiring):
        """Google Play purchases without a verifiable snapshot are stored as rejected."""
        result = await wiring.ingestion.ingest(google_play_envelope(_purchase_notification()))

        assert result.status == IngestionStatus.ACCEPTED
        assert result.outcome == EventOutcome.REJECTED
        stored = await wiring.events.find_by_id(result.event_id)
        assert stored.outcome == EventOutcome.REJECTED
        assert stored.outcome_detail

    @pytest.mark.asyncio
    async def test_unmapped_type_ignored(self, wiring):
        result = await wiring.ingestion.ingest(
            google_play_envelope(_purchase_notification(notification_type=8))
        )

        assert result.status == IngestionStatus.ACCEPTED
        assert result.kind == EventKind.UNKNOWN
        assert result.outcome == EventOutcome.IGNORED

    @pytest.mark.asyncio
    async def test_failure_releases_key(self, wiring):
        """A crash after admission lets the platform's retry through."""
        envelope = google_play_envelope(_purchase_notification())

        with patch.object(
            wiring.ingestion.lifecycle, "apply", AsyncMock(side_effect=RuntimeError("store down"))
        ):
            with pytest.raises(RuntimeError):
                await wiring.ingestion.ingest(envelope)

        event = wiring.ingestion.normalizer.normalize(envelope)
        assert event.dedup_key not in wiring.keys

    @pytest.mark.asyncio
    async def test_failed_commit_releases_key(self, wiring):
        """A rolled-back event must not leave its key behind."""
        envelope = google_play_envelope(_purchase_notification())
        wiring.ingestion.commit = AsyncMock(side_effect=RuntimeError("connection reset"))

        with pytest.raises(RuntimeError):
            await wiring.ingestion.ingest(envelope)

        event = wiring.ingestion.normalizer.normalize(envelope)
        assert event.dedup_key not in wiring.keys

    @pytest.mark.asyncio
    async def test_commit_happens_while_key_is_held(self, wiring):
        envelope = google_play_envelope(_purchase_notification())
        event = wiring.ingestion.normalizer.normalize(envelope)
        held = []

        async def commit():
            held.append(event.dedup_key in wiring.keys)

        wiring.ingestion.commit = commit

        result = await wiring.ingestion.ingest(envelope)

        assert result.status == IngestionStatus.ACCEPTED
        assert held == [True]


class TestReprocess:
    @pytest.mark.asyncio
    async def test_reprocess_applies_stored_event(self, wiring):
        event = make_event(EventKind.PURCHASE, payload=purchase_payload())
        record = wiring.ingestion._to_record(event)
        await wiring.events.insert_if_absent(record)

        outcome = await wiring.ingestion.reprocess(record)

        assert outcome == EventOutcome.APPLIED
        assert record.processed_at == NOW
        subscription = await wiring.subscriptions.find_by_natural_key("token-1")
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert await wiring.events.find_unprocessed() == []
