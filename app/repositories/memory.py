"""
In-Memory Repositories
======================

Dictionary-backed repository implementations for tests and single-process
tools.

Each method body runs without awaiting, so a check and the insert that
follows it happen within one event-loop step and are atomic per key.
"""

from datetime import date, datetime
from typing import Optional, Sequence
import uuid

from app.models.event import LifecycleEventRecord, Platform
from app.models.payment import Payment, PaymentStatus
from app.models.reconciliation import ReconciliationStatus
from app.models.refund import RefundStatus, RefundTransaction
from app.models.subscription import Subscription, SubscriptionHistory, SubscriptionStatus
from app.schemas.reconciliation import ReconciliationResult


class InMemorySubscriptionRepository:
    def __init__(self) -> None:
        self._by_id: dict[uuid.UUID, Subscription] = {}
        self._by_token: dict[str, uuid.UUID] = {}
        self.history: list[SubscriptionHistory] = []

    async def save(self, subscription: Subscription) -> Subscription:
        if subscription.subscription_id is None:
            subscription.subscription_id = uuid.uuid4()
        self._by_id[subscription.subscription_id] = subscription
        self._by_token[subscription.purchase_token] = subscription.subscription_id
        return subscription

    async def add_if_absent(self, subscription: Subscription) -> Subscription:
        existing_id = self._by_token.get(subscription.purchase_token)
        if existing_id is not None:
            return self._by_id[existing_id]
        return await self.save(subscription)

    async def find_by_id(self, subscription_id: uuid.UUID) -> Optional[Subscription]:
        return self._by_id.get(subscription_id)

    async def find_by_natural_key(self, purchase_token: str) -> Optional[Subscription]:
        subscription_id = self._by_token.get(purchase_token)
        return self._by_id.get(subscription_id) if subscription_id else None

    async def find_by_status(self, status: SubscriptionStatus) -> Sequence[Subscription]:
        return [s for s in self._by_id.values() if s.status == status]

    async def find_by_date_range(self, start: datetime, end: datetime) -> Sequence[Subscription]:
        return [s for s in self._by_id.values() if start <= s.expiry_at < end]

    async def add_history(self, entry: SubscriptionHistory) -> None:
        self.history.append(entry)


class InMemoryPaymentRepository:
    def __init__(self) -> None:
        self._by_id: dict[uuid.UUID, Payment] = {}
        self._by_ref: dict[str, uuid.UUID] = {}

    async def save(self, payment: Payment) -> Payment:
        if payment.payment_id is None:
            payment.payment_id = uuid.uuid4()
        self._by_id[payment.payment_id] = payment
        self._by_ref[payment.transaction_ref] = payment.payment_id
        return payment

    async def add_if_absent(self, payment: Payment) -> Payment:
        existing_id = self._by_ref.get(payment.transaction_ref)
        if existing_id is not None:
            return self._by_id[existing_id]
        return await self.save(payment)

    async def find_by_id(self, payment_id: uuid.UUID) -> Optional[Payment]:
        return self._by_id.get(payment_id)

    async def find_by_natural_key(self, transaction_ref: str) -> Optional[Payment]:
        payment_id = self._by_ref.get(transaction_ref)
        return self._by_id.get(payment_id) if payment_id else None

    async def find_by_status(self, status: PaymentStatus) -> Sequence[Payment]:
        return [p for p in self._by_id.values() if p.status == status]

    async def find_by_date_range(
        self, platform: Platform, start: datetime, end: datetime
    ) -> Sequence[Payment]:
        return sorted(
            (
                p for p in self._by_id.values()
                if p.platform == platform and start <= p.payment_at < end
            ),
            key=lambda p: p.payment_at,
        )


class InMemoryRefundRepository:
    def __init__(self) -> None:
        self._by_id: dict[uuid.UUID, RefundTransaction] = {}

    async def save(self, refund: RefundTransaction) -> RefundTransaction:
        if refund.refund_id is None:
            refund.refund_id = uuid.uuid4()
        self._by_id[refund.refund_id] = refund
        return refund

    async def find_by_id(self, refund_id: uuid.UUID) -> Optional[RefundTransaction]:
        return self._by_id.get(refund_id)

    async def find_by_natural_key(self, platform_refund_ref: str) -> Optional[RefundTransaction]:
        for refund in self._by_id.values():
            if refund.platform_refund_ref == platform_refund_ref:
                return refund
        return None

    async def find_by_status(self, status: RefundStatus) -> Sequence[RefundTransaction]:
        return [r for r in self._by_id.values() if r.status == status]

    async def find_by_payment_id(self, payment_id: uuid.UUID) -> Sequence[RefundTransaction]:
        return [r for r in self._by_id.values() if r.payment_id == payment_id]

    async def find_by_date_range(
        self, platform: Platform, start: datetime, end: datetime
    ) -> Sequence[RefundTransaction]:
        return [
            r for r in self._by_id.values()
            if r.platform == platform
            and r.completed_at is not None
            and start <= r.completed_at < end
        ]


class InMemoryLifecycleEventRepository:
    def __init__(self) -> None:
        self._by_id: dict[uuid.UUID, LifecycleEventRecord] = {}
        self._by_key: dict[str, uuid.UUID] = {}

    async def insert_if_absent(self, record: LifecycleEventRecord) -> bool:
        if record.dedup_key in self._by_key:
            return False
        if record.event_id is None:
            record.event_id = uuid.uuid4()
        self._by_key[record.dedup_key] = record.event_id
        self._by_id[record.event_id] = record
        return True

    async def save(self, record: LifecycleEventRecord) -> LifecycleEventRecord:
        self._by_id[record.event_id] = record
        self._by_key[record.dedup_key] = record.event_id
        return record

    async def find_by_id(self, event_id: uuid.UUID) -> Optional[LifecycleEventRecord]:
        return self._by_id.get(event_id)

    async def find_by_natural_key(self, dedup_key: str) -> Optional[LifecycleEventRecord]:
        event_id = self._by_key.get(dedup_key)
        return self._by_id.get(event_id) if event_id else None

    async def find_unprocessed(self, limit: int = 100) -> Sequence[LifecycleEventRecord]:
        pending = [r for r in self._by_id.values() if r.processed_at is None]
        return sorted(pending, key=lambda r: r.occurred_at)[:limit]

    async def find_by_date_range(
        self, platform: Platform, start: datetime, end: datetime
    ) -> Sequence[LifecycleEventRecord]:
        return [
            r for r in self._by_id.values()
            if r.platform == platform and start <= r.occurred_at < end
        ]


class InMemoryReconciliationResultRepository:
    def __init__(self) -> None:
        self._versions: dict[tuple[date, Platform], list[ReconciliationResult]] = {}

    async def append(self, result: ReconciliationResult) -> ReconciliationResult:
        versions = self._versions.setdefault((result.result_date, result.platform), [])
        stored = result.model_copy(update={"version": len(versions) + 1})
        versions.append(stored)
        return stored

    async def find_latest(
        self, result_date: date, platform: Platform
    ) -> Optional[ReconciliationResult]:
        versions = self._versions.get((result_date, platform))
        return versions[-1] if versions else None

    async def find_by_natural_key(
        self, result_date: date, platform: Platform, version: int
    ) -> Optional[ReconciliationResult]:
        for result in self._versions.get((result_date, platform), []):
            if result.version == version:
                return result
        return None

    async def find_by_status(
        self, status: ReconciliationStatus
    ) -> Sequence[ReconciliationResult]:
        return [
            versions[-1] for versions in self._versions.values()
            if versions[-1].status == status
        ]

    async def find_by_date_range(
        self, start: date, end: date, platform: Optional[Platform] = None
    ) -> Sequence[ReconciliationResult]:
        latest = [
            versions[-1]
            for (result_date, result_platform), versions in self._versions.items()
            if start <= result_date <= end
            and (platform is None or result_platform == platform)
        ]
        return sorted(latest, key=lambda r: (r.result_date, r.platform.value))
