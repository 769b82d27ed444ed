"""
Subscription Lifecycle Service
==============================

Applies admitted lifecycle events to subscriptions.

Each event resolves to a target status; the move is validated against
``SUBSCRIPTION_TRANSITIONS`` before any field changes. Work for one
purchase token is serialized through the entity lock.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping, Optional
import uuid

from app.core.errors import ValidationError
from app.core.transitions import SUBSCRIPTION_TRANSITIONS
from app.models.event import EventKind, Platform
from app.models.subscription import Subscription, SubscriptionHistory, SubscriptionStatus
from app.repositories.base import PaymentRepository, SubscriptionRepository
from app.schemas.notification import LifecycleEvent
from app.services.locks import EntityLock, KeyedLock
from app.services.normalizer import BILLING_HOLD
from app.services.payments import PaymentService
from app.services.platforms import PlatformAdapter, SubscriptionSnapshot
from app.utils.helpers import parse_datetime, utc_now

logger = logging.getLogger(__name__)


@dataclass
class LifecycleOutcome:
    """Result of applying one event."""

    changed: bool
    subscription: Optional[Subscription] = None
    previous_status: Optional[SubscriptionStatus] = None
    new_status: Optional[SubscriptionStatus] = None
    detail: Optional[str] = None


class SubscriptionLifecycleService:
    """
    Event-driven subscription state machine.

    Args:
        subscriptions: Subscription repository
        payments: Payment service used for charges and refunds
        payment_repository: Payment lookups by transaction ref
        adapters: Platform adapters, used to verify subscriptions
        locks: Per-entity lock registry
        clock: Source of "now"
    """

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        payments: PaymentService,
        payment_repository: PaymentRepository,
        adapters: Mapping[Platform, PlatformAdapter],
        locks: Optional[EntityLock] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.subscriptions = subscriptions
        self.payments = payments
        self.payment_repository = payment_repository
        self.adapters = adapters
        self.locks = locks or KeyedLock()
        self.clock = clock

    async def apply(
        self,
        event: LifecycleEvent,
        event_id: Optional[uuid.UUID] = None,
    ) -> LifecycleOutcome:
        """
        Apply ``event`` to the subscription identified by its source token.

        Raises:
            InvalidTransition: Event requests a move the table forbids
            ValidationError: Event data cannot produce a valid subscription
        """
        if event.kind == EventKind.UNKNOWN:
            return LifecycleOutcome(changed=False, detail="unmapped notification type")

        async with self.locks.hold(f"subscription:{event.source_token}"):
            subscription = await self.subscriptions.find_by_natural_key(event.source_token)

            if subscription is None:
                if event.kind in (EventKind.PURCHASE, EventKind.RENEWAL, EventKind.RESUME):
                    return await self._create(event, event_id)
                if event.kind == EventKind.REFUND:
                    await self._refund_payment(event)
                logger.warning(
                    "%s for unknown subscription %s ignored",
                    event.kind.value,
                    event.source_token,
                )
                return LifecycleOutcome(changed=False, detail="unknown subscription")

            return await self._dispatch(subscription, event, event_id)

    # -------------------------------------------------------------------------
    # Event rules
    # -------------------------------------------------------------------------

    async def _dispatch(
        self,
        subscription: Subscription,
        event: LifecycleEvent,
        event_id: Optional[uuid.UUID],
    ) -> LifecycleOutcome:
        kind = event.kind
        payload = event.payload

        if kind in (EventKind.PURCHASE, EventKind.RENEWAL):
            snapshot = await self._snapshot(payload.get("product_ref") or subscription.plan_ref, event)
            expiry = self._expiry_from(payload, snapshot) or subscription.expiry_at
            outcome = await self._move(
                subscription,
                SubscriptionStatus.ACTIVE,
                event,
                event_id,
                expiry_at=expiry,
                auto_renew=payload.get("auto_renew", snapshot.auto_renew if snapshot else True),
            )
            await self._record_charge(outcome.subscription or subscription, event, snapshot)
            return outcome

        if kind == EventKind.CANCELLATION:
            return await self._move(
                subscription,
                SubscriptionStatus.CANCELED,
                event,
                event_id,
                auto_renew=False,
                canceled_at=self.clock(),
            )

        if kind in (EventKind.EXPIRATION, EventKind.GRACE_PERIOD_END):
            return await self._move(subscription, SubscriptionStatus.EXPIRED, event, event_id)

        if kind == EventKind.GRACE_PERIOD_START:
            return await self._move(
                subscription, SubscriptionStatus.IN_GRACE_PERIOD, event, event_id
            )

        if kind == EventKind.PAUSE:
            target = (
                SubscriptionStatus.ON_HOLD
                if payload.get("pause_reason") == BILLING_HOLD
                else SubscriptionStatus.PAUSED
            )
            return await self._move(subscription, target, event, event_id)

        if kind == EventKind.RESUME:
            expiry = parse_datetime(payload.get("expires_at"))
            if expiry is None:
                snapshot = await self._snapshot(subscription.plan_ref, event)
                expiry = snapshot.expiry_at if snapshot else None
            return await self._move(
                subscription,
                SubscriptionStatus.ACTIVE,
                event,
                event_id,
                expiry_at=expiry or subscription.expiry_at,
            )

        if kind == EventKind.REFUND:
            await self._refund_payment(event)
            if subscription.status in (SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELED):
                return LifecycleOutcome(
                    changed=False,
                    subscription=subscription,
                    previous_status=subscription.status,
                    new_status=subscription.status,
                    detail="subscription already ended",
                )
            return await self._move(
                subscription,
                SubscriptionStatus.CANCELED,
                event,
                event_id,
                auto_renew=False,
                canceled_at=self.clock(),
            )

        return LifecycleOutcome(changed=False, subscription=subscription)

    async def _move(
        self,
        subscription: Subscription,
        target: SubscriptionStatus,
        event: LifecycleEvent,
        event_id: Optional[uuid.UUID],
        expiry_at: Optional[datetime] = None,
        **changes,
    ) -> LifecycleOutcome:
        """Validate, then apply a status change and its field updates."""
        previous = subscription.status
        expiry = expiry_at or subscription.expiry_at

        # Active requires a future expiry
        if target == SubscriptionStatus.ACTIVE and expiry <= self.clock():
            target = SubscriptionStatus.EXPIRED

        expiry_changed = expiry != subscription.expiry_at
        if target == previous:
            if not expiry_changed:
                return LifecycleOutcome(
                    changed=False,
                    subscription=subscription,
                    previous_status=previous,
                    new_status=previous,
                    detail=f"already {previous.value}",
                )
        else:
            SUBSCRIPTION_TRANSITIONS.ensure(previous, target)

        if expiry <= subscription.start_at:
            raise ValidationError("Subscription expiry must be after its start", field="expiry_at")

        subscription.status = target
        subscription.expiry_at = expiry
        for name, value in changes.items():
            setattr(subscription, name, value)
        if target == SubscriptionStatus.ACTIVE:
            subscription.canceled_at = None

        saved = await self.subscriptions.save(subscription)
        await self._add_history(saved, event, event_id, previous)
        logger.info(
            "Subscription %s: %s -> %s (%s)",
            saved.purchase_token,
            previous.value,
            target.value,
            event.kind.value,
        )
        return LifecycleOutcome(
            changed=True,
            subscription=saved,
            previous_status=previous,
            new_status=target,
        )

    async def _create(
        self,
        event: LifecycleEvent,
        event_id: Optional[uuid.UUID],
    ) -> LifecycleOutcome:
        payload = event.payload
        product_ref = payload.get("product_ref")
        snapshot = await self._snapshot(product_ref, event)
        if snapshot is None and not payload.get("expires_at"):
            raise ValidationError(
                f"Subscription {event.source_token} could not be verified",
                field="purchase_token",
            )

        expiry = self._expiry_from(payload, snapshot)
        if expiry is None:
            raise ValidationError("Subscription has no expiry", field="expiry_at")
        start = (
            parse_datetime(payload.get("purchase_at"))
            or (snapshot.start_at if snapshot else None)
            or event.occurred_at
        )
        if expiry <= start:
            raise ValidationError("Subscription expiry must be after its start", field="expiry_at")

        status = SubscriptionStatus.ACTIVE if expiry > self.clock() else SubscriptionStatus.EXPIRED
        subscription = Subscription(
            subscription_id=uuid.uuid4(),
            owner_id=payload.get("owner_ref") or (snapshot.owner_ref if snapshot else None),
            plan_ref=product_ref or (snapshot.product_ref if snapshot else ""),
            platform=event.platform,
            purchase_token=event.source_token,
            status=status,
            start_at=start,
            expiry_at=expiry,
            auto_renew=payload.get("auto_renew", snapshot.auto_renew if snapshot else True),
            canceled_at=None,
        )
        stored = await self.subscriptions.add_if_absent(subscription)
        if stored is not subscription:
            # Created concurrently by another process
            return await self._dispatch(stored, event, event_id)

        await self._add_history(stored, event, event_id, None)
        logger.info(
            "Subscription created: platform=%s token=%s status=%s",
            stored.platform.value,
            stored.purchase_token,
            status.value,
        )
        await self._record_charge(stored, event, snapshot)
        return LifecycleOutcome(
            changed=True,
            subscription=stored,
            previous_status=None,
            new_status=status,
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _snapshot(
        self,
        product_ref: Optional[str],
        event: LifecycleEvent,
    ) -> Optional[SubscriptionSnapshot]:
        """Platform snapshot, fetched only when the event carries no expiry."""
        if event.payload.get("expires_at"):
            return None
        adapter = self.adapters.get(event.platform)
        if adapter is None:
            return None

        result = await adapter.verify_subscription(product_ref or "", event.source_token)
        if not result.valid:
            logger.warning("Subscription %s failed verification", event.source_token)
            return None
        return result.snapshot

    @staticmethod
    def _expiry_from(
        payload: dict[str, Any],
        snapshot: Optional[SubscriptionSnapshot],
    ) -> Optional[datetime]:
        expiry = parse_datetime(payload.get("expires_at"))
        if expiry is None and snapshot is not None:
            expiry = snapshot.expiry_at
        return expiry

    async def _add_history(
        self,
        subscription: Subscription,
        event: LifecycleEvent,
        event_id: Optional[uuid.UUID],
        previous: Optional[SubscriptionStatus],
    ) -> None:
        await self.subscriptions.add_history(
            SubscriptionHistory(
                history_id=uuid.uuid4(),
                subscription_id=subscription.subscription_id,
                event_id=event_id,
                event_kind=event.kind,
                previous_status=previous,
                new_status=subscription.status,
                expiry_at=subscription.expiry_at,
                event_data=event.payload,
                created_at=self.clock(),
            )
        )

    async def _record_charge(
        self,
        subscription: Subscription,
        event: LifecycleEvent,
        snapshot: Optional[SubscriptionSnapshot],
    ) -> None:
        """Record and acknowledge the charge behind a purchase or renewal."""
        payload = event.payload
        transaction_ref = payload.get("transaction_ref") or (
            snapshot.transaction_ref if snapshot else None
        )
        raw_amount = payload.get("amount")
        if raw_amount is None and snapshot is not None:
            raw_amount = snapshot.amount
        currency = payload.get("currency") or (snapshot.currency if snapshot else None)
        if not transaction_ref or raw_amount is None or not currency:
            return

        try:
            amount = Decimal(str(raw_amount))
        except InvalidOperation:
            logger.warning("Unparseable amount %r on %s", raw_amount, event.platform_notification_id)
            return

        payment = await self.payments.record_payment(
            platform=subscription.platform,
            transaction_ref=transaction_ref,
            product_ref=subscription.plan_ref,
            amount=amount,
            currency=currency,
            payment_at=event.occurred_at,
            subscription_id=subscription.subscription_id,
            order_ref=payload.get("order_ref") or transaction_ref,
            is_renewal=event.kind in (EventKind.RENEWAL, EventKind.RESUME),
        )
        await self.payments.acknowledge(payment.payment_id, subscription.purchase_token)

    async def _refund_payment(self, event: LifecycleEvent) -> None:
        transaction_ref = event.payload.get("transaction_ref")
        if not transaction_ref:
            return
        payment = await self.payment_repository.find_by_natural_key(transaction_ref)
        if payment is None:
            logger.warning("Refund for unknown transaction %s", transaction_ref)
            return
        if payment.refunded_amount >= payment.amount:
            return
        await self.payments.mark_refunded(payment.payment_id)
