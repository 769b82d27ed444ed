"""
Notification Normalizer
=======================

Turns platform push payloads into canonical ``LifecycleEvent``s.

Google Play:
    Pub/Sub push envelope whose ``message.data`` is base64-encoded JSON.
App Store:
    ``{"signedPayload": <JWS>}`` whose claims carry further JWS tokens
    for the transaction and renewal info. Every token goes through the
    injected ``SignatureVerifier``.

Notification types with no lifecycle meaning map to ``EventKind.UNKNOWN``
instead of failing, so ingestion never stalls on a new platform type.
Normalization has no side effects.
"""

import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from app.core.errors import ErrorCodes, ParseError
from app.models.event import EventKind, Platform
from app.schemas.notification import (
    AppStoreNotificationPayload,
    AppStoreNotificationType,
    AppStoreRenewalInfo,
    AppStoreTransactionInfo,
    GooglePlayDeveloperNotification,
    GooglePlaySubscriptionType,
    LifecycleEvent,
    NotificationEnvelope,
    PubSubPushEnvelope,
)
from app.services.verifier import SignatureVerificationError, SignatureVerifier

logger = logging.getLogger(__name__)

# Pause reason marking a billing hold rather than a user-initiated pause
BILLING_HOLD = "billing_hold"

GOOGLE_PLAY_SUBSCRIPTION_KINDS: dict[int, EventKind] = {
    GooglePlaySubscriptionType.RECOVERED: EventKind.RESUME,
    GooglePlaySubscriptionType.RENEWED: EventKind.RENEWAL,
    GooglePlaySubscriptionType.CANCELED: EventKind.CANCELLATION,
    GooglePlaySubscriptionType.PURCHASED: EventKind.PURCHASE,
    GooglePlaySubscriptionType.ON_HOLD: EventKind.PAUSE,
    GooglePlaySubscriptionType.IN_GRACE_PERIOD: EventKind.GRACE_PERIOD_START,
    GooglePlaySubscriptionType.RESTARTED: EventKind.RESUME,
    GooglePlaySubscriptionType.PAUSED: EventKind.PAUSE,
    GooglePlaySubscriptionType.REVOKED: EventKind.CANCELLATION,
    GooglePlaySubscriptionType.EXPIRED: EventKind.EXPIRATION,
}

# oneTimeProductNotification.notificationType
GOOGLE_PLAY_ONE_TIME_PURCHASED = 1

APP_STORE_KINDS: dict[str, EventKind] = {
    AppStoreNotificationType.SUBSCRIBED: EventKind.PURCHASE,
    AppStoreNotificationType.DID_RENEW: EventKind.RENEWAL,
    AppStoreNotificationType.EXPIRED: EventKind.EXPIRATION,
    AppStoreNotificationType.GRACE_PERIOD_EXPIRED: EventKind.GRACE_PERIOD_END,
    AppStoreNotificationType.REFUND: EventKind.REFUND,
    AppStoreNotificationType.REVOKE: EventKind.CANCELLATION,
}


def _from_millis(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _load_json(raw: Any) -> Any:
    if isinstance(raw, dict):
        return raw
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return json.loads(raw)
    except (TypeError, ValueError, UnicodeDecodeError) as exc:
        raise ParseError(f"Payload is not valid JSON: {exc}") from exc


def _validate(model, data: Any, what: str):
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ParseError(f"Invalid {what}: {exc.errors()[0].get('msg', 'validation error')}") from exc


class NotificationNormalizer:
    """
    Stateless converter from raw envelopes to ``LifecycleEvent``.

    Args:
        verifier: Trust anchor for App Store JWS tokens
        google_play_package_name: Reject RTDNs for other packages when set
        app_store_bundle_id: Reject notifications for other bundles when set
    """

    def __init__(
        self,
        verifier: SignatureVerifier,
        google_play_package_name: str = "",
        app_store_bundle_id: str = "",
    ):
        self.verifier = verifier
        self.google_play_package_name = google_play_package_name
        self.app_store_bundle_id = app_store_bundle_id

    def normalize(self, envelope: NotificationEnvelope) -> LifecycleEvent:
        """
        Parse a raw envelope.

        Raises:
            ParseError: Payload malformed, unsigned or signed by an untrusted key
        """
        if envelope.platform == Platform.GOOGLE_PLAY:
            return self._normalize_google_play(envelope)
        if envelope.platform == Platform.APP_STORE:
            return self._normalize_app_store(envelope)
        raise ParseError(f"Unsupported platform: {envelope.platform}")

    # -------------------------------------------------------------------------
    # Google Play
    # -------------------------------------------------------------------------

    def _normalize_google_play(self, envelope: NotificationEnvelope) -> LifecycleEvent:
        push = _validate(PubSubPushEnvelope, _load_json(envelope.raw_payload), "Pub/Sub envelope")

        try:
            decoded = base64.b64decode(push.message.data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ParseError("message.data is not valid base64") from exc

        rtdn = _validate(GooglePlayDeveloperNotification, _load_json(decoded), "developer notification")

        if self.google_play_package_name and rtdn.package_name != self.google_play_package_name:
            raise ParseError(f"Unexpected package name: {rtdn.package_name}")

        occurred_at = _from_millis(rtdn.event_time_millis)
        payload: dict[str, Any] = {"package_name": rtdn.package_name}

        if rtdn.subscription_notification is not None:
            sub = rtdn.subscription_notification
            kind = GOOGLE_PLAY_SUBSCRIPTION_KINDS.get(sub.notification_type, EventKind.UNKNOWN)
            token = sub.purchase_token
            payload["notification_type"] = sub.notification_type
            payload["product_ref"] = sub.subscription_id
            if sub.notification_type == GooglePlaySubscriptionType.ON_HOLD:
                payload["pause_reason"] = BILLING_HOLD
        elif rtdn.one_time_product_notification is not None:
            otp = rtdn.one_time_product_notification
            kind = (
                EventKind.PURCHASE
                if otp.notification_type == GOOGLE_PLAY_ONE_TIME_PURCHASED
                else EventKind.UNKNOWN
            )
            token = otp.purchase_token
            payload["notification_type"] = otp.notification_type
            payload["product_ref"] = otp.sku
            payload["one_time"] = True
        elif rtdn.voided_purchase_notification is not None:
            voided = rtdn.voided_purchase_notification
            kind = EventKind.REFUND
            token = voided.purchase_token
            payload["order_ref"] = voided.order_id
            payload["transaction_ref"] = voided.order_id
            payload["refund_type"] = voided.refund_type
        elif rtdn.test_notification is not None:
            kind = EventKind.UNKNOWN
            token = "test"
            payload["test"] = True
        else:
            raise ParseError("Developer notification carries no notification body")

        event = LifecycleEvent(
            entity_id=token,
            kind=kind,
            platform=Platform.GOOGLE_PLAY,
            source_token=token,
            platform_notification_id=push.message.message_id,
            payload=payload,
            occurred_at=occurred_at,
            received_at=envelope.received_at,
        )
        logger.debug("Normalized Google Play notification %s as %s", event.platform_notification_id, kind.value)
        return event

    # -------------------------------------------------------------------------
    # App Store
    # -------------------------------------------------------------------------

    def _verify(self, token: Optional[str], what: str) -> dict[str, Any]:
        if not token:
            raise ParseError(f"Missing {what}", code=ErrorCodes.NOTIF_SIGNATURE_INVALID)
        try:
            return self.verifier.verify(token)
        except SignatureVerificationError as exc:
            raise ParseError(
                f"Unverifiable {what}: {exc}",
                code=ErrorCodes.NOTIF_SIGNATURE_INVALID,
            ) from exc

    def _normalize_app_store(self, envelope: NotificationEnvelope) -> LifecycleEvent:
        body = _load_json(envelope.raw_payload)
        if not isinstance(body, dict):
            raise ParseError("App Store notification body must be a JSON object")

        claims = self._verify(body.get("signedPayload"), "signedPayload")
        notification = _validate(AppStoreNotificationPayload, claims, "App Store notification")
        data = notification.data

        if (
            self.app_store_bundle_id
            and data is not None
            and data.bundle_id
            and data.bundle_id != self.app_store_bundle_id
        ):
            raise ParseError(f"Unexpected bundle id: {data.bundle_id}")

        occurred_at = _from_millis(notification.signed_date)

        if notification.notification_type == AppStoreNotificationType.TEST:
            return LifecycleEvent(
                entity_id="test",
                kind=EventKind.UNKNOWN,
                platform=Platform.APP_STORE,
                source_token="test",
                platform_notification_id=notification.notification_uuid,
                payload={"test": True},
                occurred_at=occurred_at,
                received_at=envelope.received_at,
            )

        if data is None:
            raise ParseError("App Store notification has no data")

        transaction = _validate(
            AppStoreTransactionInfo,
            self._verify(data.signed_transaction_info, "signedTransactionInfo"),
            "transaction info",
        )
        renewal: Optional[AppStoreRenewalInfo] = None
        if data.signed_renewal_info:
            renewal = _validate(
                AppStoreRenewalInfo,
                self._verify(data.signed_renewal_info, "signedRenewalInfo"),
                "renewal info",
            )

        kind = self._app_store_kind(notification.notification_type, notification.subtype)

        payload: dict[str, Any] = {
            "notification_type": notification.notification_type,
            "subtype": notification.subtype,
            "environment": data.environment,
            "transaction_ref": transaction.transaction_id,
            "original_transaction_ref": transaction.original_transaction_id,
            "product_ref": transaction.product_id,
            "purchase_at": _iso(_from_millis(transaction.purchase_date)),
            "expires_at": _iso(_from_millis(transaction.expires_date)),
            "owner_ref": transaction.app_account_token,
        }
        if transaction.price is not None:
            payload["amount"] = str(Decimal(transaction.price) / Decimal(1000))
            payload["currency"] = transaction.currency
        if renewal is not None:
            payload["auto_renew"] = renewal.auto_renew_status == 1
            payload["grace_period_expires_at"] = _iso(_from_millis(renewal.grace_period_expires_date))
        if kind == EventKind.PAUSE:
            payload["pause_reason"] = BILLING_HOLD

        return LifecycleEvent(
            entity_id=transaction.original_transaction_id,
            kind=kind,
            platform=Platform.APP_STORE,
            source_token=transaction.original_transaction_id,
            platform_notification_id=notification.notification_uuid,
            payload=payload,
            occurred_at=occurred_at,
            received_at=envelope.received_at,
        )

    @staticmethod
    def _app_store_kind(notification_type: str, subtype: Optional[str]) -> EventKind:
        if notification_type == AppStoreNotificationType.DID_FAIL_TO_RENEW:
            return EventKind.GRACE_PERIOD_START if subtype == "GRACE_PERIOD" else EventKind.PAUSE
        if notification_type == AppStoreNotificationType.DID_CHANGE_RENEWAL_STATUS:
            return EventKind.CANCELLATION if subtype == "AUTO_RENEW_DISABLED" else EventKind.UNKNOWN
        return APP_STORE_KINDS.get(notification_type, EventKind.UNKNOWN)
