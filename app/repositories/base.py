"""
Repository Contracts
====================

Storage-agnostic access contracts used by the lifecycle and
reconciliation services.

Every ``add_if_absent`` / ``insert_if_absent`` / ``append`` operation is
atomic per natural key: two concurrent callers for the same key see
exactly one insert.
"""

from datetime import date, datetime
from typing import Optional, Protocol, Sequence
import uuid

from app.models.event import LifecycleEventRecord, Platform
from app.models.payment import Payment, PaymentStatus
from app.models.reconciliation import ReconciliationStatus
from app.models.refund import RefundStatus, RefundTransaction
from app.models.subscription import Subscription, SubscriptionHistory, SubscriptionStatus
from app.schemas.reconciliation import ReconciliationResult


class SubscriptionRepository(Protocol):
    async def save(self, subscription: Subscription) -> Subscription: ...

    async def add_if_absent(self, subscription: Subscription) -> Subscription:
        """Insert unless the purchase token exists; return the stored row."""
        ...

    async def find_by_id(self, subscription_id: uuid.UUID) -> Optional[Subscription]: ...

    async def find_by_natural_key(self, purchase_token: str) -> Optional[Subscription]: ...

    async def find_by_status(self, status: SubscriptionStatus) -> Sequence[Subscription]: ...

    async def find_by_date_range(self, start: datetime, end: datetime) -> Sequence[Subscription]:
        """Subscriptions whose expiry falls in ``[start, end)``."""
        ...

    async def add_history(self, entry: SubscriptionHistory) -> None: ...


class PaymentRepository(Protocol):
    async def save(self, payment: Payment) -> Payment: ...

    async def add_if_absent(self, payment: Payment) -> Payment:
        """Insert unless the transaction ref exists; return the stored row."""
        ...

    async def find_by_id(self, payment_id: uuid.UUID) -> Optional[Payment]: ...

    async def find_by_natural_key(self, transaction_ref: str) -> Optional[Payment]: ...

    async def find_by_status(self, status: PaymentStatus) -> Sequence[Payment]: ...

    async def find_by_date_range(
        self, platform: Platform, start: datetime, end: datetime
    ) -> Sequence[Payment]:
        """Payments made on ``platform`` in ``[start, end)``."""
        ...


class RefundRepository(Protocol):
    async def save(self, refund: RefundTransaction) -> RefundTransaction: ...

    async def find_by_id(self, refund_id: uuid.UUID) -> Optional[RefundTransaction]: ...

    async def find_by_natural_key(self, platform_refund_ref: str) -> Optional[RefundTransaction]: ...

    async def find_by_status(self, status: RefundStatus) -> Sequence[RefundTransaction]: ...

    async def find_by_payment_id(self, payment_id: uuid.UUID) -> Sequence[RefundTransaction]: ...

    async def find_by_date_range(
        self, platform: Platform, start: datetime, end: datetime
    ) -> Sequence[RefundTransaction]:
        """Refunds completed on ``platform`` in ``[start, end)``."""
        ...


class LifecycleEventRepository(Protocol):
    async def insert_if_absent(self, record: LifecycleEventRecord) -> bool:
        """Insert the record; False when its dedup key already exists."""
        ...

    async def save(self, record: LifecycleEventRecord) -> LifecycleEventRecord: ...

    async def find_by_id(self, event_id: uuid.UUID) -> Optional[LifecycleEventRecord]: ...

    async def find_by_natural_key(self, dedup_key: str) -> Optional[LifecycleEventRecord]: ...

    async def find_unprocessed(self, limit: int = 100) -> Sequence[LifecycleEventRecord]: ...

    async def find_by_date_range(
        self, platform: Platform, start: datetime, end: datetime
    ) -> Sequence[LifecycleEventRecord]: ...


class ReconciliationResultRepository(Protocol):
    async def append(self, result: ReconciliationResult) -> ReconciliationResult:
        """Store a new version for ``(result_date, platform)`` and return it."""
        ...

    async def find_latest(
        self, result_date: date, platform: Platform
    ) -> Optional[ReconciliationResult]: ...

    async def find_by_natural_key(
        self, result_date: date, platform: Platform, version: int
    ) -> Optional[ReconciliationResult]: ...

    async def find_by_status(
        self, status: ReconciliationStatus
    ) -> Sequence[ReconciliationResult]: ...

    async def find_by_date_range(
        self, start: date, end: date, platform: Optional[Platform] = None
    ) -> Sequence[ReconciliationResult]:
        """Latest version per (date, platform) for dates in ``[start, end]``."""
        ...
