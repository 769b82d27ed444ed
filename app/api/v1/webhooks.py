"""
Webhooks API Endpoints
======================

Receives subscription notifications pushed by the platforms.

Google Play:
    Real-Time Developer Notifications delivered by a Pub/Sub push
    subscription. When GOOGLE_PLAY_WEBHOOK_TOKEN is set, the push endpoint
    must be configured with a matching ``?token=`` query parameter.

App Store:
    Server Notifications v2. The body carries a ``signedPayload`` JWS that
    is verified during normalization.

Both endpoints acknowledge malformed and duplicate notifications with 200
so the platform stops re-delivering them. A failure while applying an
accepted notification propagates as a 5xx so the platform retries.
"""

import hmac
import logging

from fastapi import APIRouter, Query, Request

from app.config import settings
from app.core.errors import AuthorizationError, ErrorCodes
from app.dependencies import IngestionServiceDep
from app.models.event import Platform
from app.schemas.notification import NotificationEnvelope
from app.services.ingestion import NotificationIngestionService
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)

router = APIRouter()


def _check_push_token(token: str) -> None:
    expected = settings.GOOGLE_PLAY_WEBHOOK_TOKEN
    if not expected:
        return
    if not hmac.compare_digest(token.encode(), expected.encode()):
        logger.warning("Google Play push rejected: invalid token")
        raise AuthorizationError(
            message="Invalid push token",
            code=ErrorCodes.NOTIF_UNAUTHORIZED,
        )


async def _receive(
    request: Request,
    platform: Platform,
    service: NotificationIngestionService,
) -> dict:
    envelope = NotificationEnvelope(
        platform=platform,
        raw_payload=await request.body(),
        received_at=utc_now(),
    )
    result = await service.ingest(envelope)
    logger.info(
        "%s notification %s: kind=%s outcome=%s",
        platform.value,
        result.status.value,
        result.kind.value if result.kind else None,
        result.outcome.value if result.outcome else None,
    )
    return {
        "received": True,
        "status": result.status.value,
        "event_id": str(result.event_id) if result.event_id else None,
    }


@router.post("/google-play")
async def google_play_webhook(
    request: Request,
    service: IngestionServiceDep,
    token: str = Query(default=""),
):
    """Handle a Google Play Real-Time Developer Notification."""
    _check_push_token(token)
    return await _receive(request, Platform.GOOGLE_PLAY, service)


@router.post("/app-store")
async def app_store_webhook(
    request: Request,
    service: IngestionServiceDep,
):
    """Handle an App Store Server Notification v2."""
    return await _receive(request, Platform.APP_STORE, service)
