"""
Notification Schemas
====================

Inbound platform notification payloads and the canonical lifecycle event
they are normalized into.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union
import uuid

from pydantic import BaseModel, ConfigDict, Field

from app.models.event import EventKind, Platform


# ─── Inbound envelope ────────────────────────────────────────────────────────


class NotificationEnvelope(BaseModel):
    """Raw notification exactly as received from a platform."""

    platform: Platform
    raw_payload: Union[dict[str, Any], str, bytes]
    received_at: datetime


# ─── Google Play RTDN ────────────────────────────────────────────────────────


class GooglePlaySubscriptionType(int, Enum):
    """``subscriptionNotification.notificationType`` codes."""

    RECOVERED = 1
    RENEWED = 2
    CANCELED = 3
    PURCHASED = 4
    ON_HOLD = 5
    IN_GRACE_PERIOD = 6
    RESTARTED = 7
    PRICE_CHANGE_CONFIRMED = 8
    DEFERRED = 9
    PAUSED = 10
    PAUSE_SCHEDULE_CHANGED = 11
    REVOKED = 12
    EXPIRED = 13


class PubSubMessage(BaseModel):
    """Pub/Sub push ``message`` object."""

    model_config = ConfigDict(populate_by_name=True)

    data: str
    message_id: str = Field(alias="messageId")
    publish_time: Optional[str] = Field(default=None, alias="publishTime")
    attributes: dict[str, str] = Field(default_factory=dict)


class PubSubPushEnvelope(BaseModel):
    """Pub/Sub push request body."""

    message: PubSubMessage
    subscription: Optional[str] = None


class GooglePlaySubscriptionNotification(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: Optional[str] = None
    notification_type: int = Field(alias="notificationType")
    purchase_token: str = Field(alias="purchaseToken", min_length=1)
    subscription_id: Optional[str] = Field(default=None, alias="subscriptionId")


class GooglePlayOneTimeProductNotification(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: Optional[str] = None
    notification_type: int = Field(alias="notificationType")
    purchase_token: str = Field(alias="purchaseToken", min_length=1)
    sku: Optional[str] = None


class GooglePlayVoidedPurchaseNotification(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    purchase_token: str = Field(alias="purchaseToken", min_length=1)
    order_id: Optional[str] = Field(default=None, alias="orderId")
    product_type: Optional[int] = Field(default=None, alias="productType")
    refund_type: Optional[int] = Field(default=None, alias="refundType")


class GooglePlayDeveloperNotification(BaseModel):
    """Decoded ``message.data`` of a Real-Time Developer Notification."""

    model_config = ConfigDict(populate_by_name=True)

    version: Optional[str] = None
    package_name: str = Field(alias="packageName")
    event_time_millis: int = Field(alias="eventTimeMillis")
    subscription_notification: Optional[GooglePlaySubscriptionNotification] = Field(
        default=None, alias="subscriptionNotification"
    )
    one_time_product_notification: Optional[GooglePlayOneTimeProductNotification] = Field(
        default=None, alias="oneTimeProductNotification"
    )
    voided_purchase_notification: Optional[GooglePlayVoidedPurchaseNotification] = Field(
        default=None, alias="voidedPurchaseNotification"
    )
    test_notification: Optional[dict[str, Any]] = Field(
        default=None, alias="testNotification"
    )


# ─── App Store Server Notifications v2 ───────────────────────────────────────


class AppStoreNotificationType(str, Enum):
    """App Store notification types this service maps to lifecycle events."""

    SUBSCRIBED = "SUBSCRIBED"
    DID_RENEW = "DID_RENEW"
    EXPIRED = "EXPIRED"
    DID_FAIL_TO_RENEW = "DID_FAIL_TO_RENEW"
    GRACE_PERIOD_EXPIRED = "GRACE_PERIOD_EXPIRED"
    REFUND = "REFUND"
    REVOKE = "REVOKE"
    DID_CHANGE_RENEWAL_STATUS = "DID_CHANGE_RENEWAL_STATUS"
    TEST = "TEST"


class AppStoreNotificationData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    bundle_id: Optional[str] = Field(default=None, alias="bundleId")
    environment: Optional[str] = None
    signed_transaction_info: Optional[str] = Field(default=None, alias="signedTransactionInfo")
    signed_renewal_info: Optional[str] = Field(default=None, alias="signedRenewalInfo")


class AppStoreNotificationPayload(BaseModel):
    """Verified claims of ``signedPayload``."""

    model_config = ConfigDict(populate_by_name=True)

    notification_type: str = Field(alias="notificationType")
    subtype: Optional[str] = None
    notification_uuid: str = Field(alias="notificationUUID", min_length=1)
    signed_date: int = Field(alias="signedDate")
    version: Optional[str] = None
    data: Optional[AppStoreNotificationData] = None


class AppStoreTransactionInfo(BaseModel):
    """Verified claims of ``signedTransactionInfo``."""

    model_config = ConfigDict(populate_by_name=True)

    original_transaction_id: str = Field(alias="originalTransactionId", min_length=1)
    transaction_id: str = Field(alias="transactionId", min_length=1)
    product_id: str = Field(alias="productId")
    purchase_date: Optional[int] = Field(default=None, alias="purchaseDate")
    expires_date: Optional[int] = Field(default=None, alias="expiresDate")
    revocation_date: Optional[int] = Field(default=None, alias="revocationDate")
    price: Optional[int] = Field(default=None, description="Price in milli-units")
    currency: Optional[str] = None
    type: Optional[str] = None
    app_account_token: Optional[str] = Field(default=None, alias="appAccountToken")


class AppStoreRenewalInfo(BaseModel):
    """Verified claims of ``signedRenewalInfo``."""

    model_config = ConfigDict(populate_by_name=True)

    auto_renew_status: Optional[int] = Field(default=None, alias="autoRenewStatus")
    grace_period_expires_date: Optional[int] = Field(
        default=None, alias="gracePeriodExpiresDate"
    )


# ─── Canonical event ─────────────────────────────────────────────────────────


class LifecycleEvent(BaseModel):
    """
    Canonical, platform-independent lifecycle event.

    Immutable once created. The natural dedup key is
    ``(platform, source_token, kind, platform_notification_id)``.
    """

    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    entity_id: str = Field(description="Subscription or payment reference")
    kind: EventKind
    platform: Platform
    source_token: str
    platform_notification_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime
    received_at: Optional[datetime] = None

    @property
    def dedup_key(self) -> str:
        return ":".join((
            self.platform.value,
            self.source_token,
            self.kind.value,
            self.platform_notification_id,
        ))
