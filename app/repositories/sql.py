"""
SQLAlchemy Repositories
=======================

Repository implementations backed by an ``AsyncSession``.

Natural-key inserts run inside a savepoint and rely on the table's
unique constraint, so a concurrent insert of the same key surfaces as an
``IntegrityError`` that is turned into "already present".
"""

import logging
from datetime import date, datetime
from typing import Optional, Sequence
import uuid

from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConflictError, ErrorCodes
from app.models.event import LifecycleEventRecord, Platform
from app.models.payment import Payment, PaymentStatus
from app.models.reconciliation import ReconciliationResultRecord, ReconciliationStatus
from app.models.refund import RefundStatus, RefundTransaction
from app.models.subscription import Subscription, SubscriptionHistory, SubscriptionStatus
from app.schemas.reconciliation import ReconciliationResult

logger = logging.getLogger(__name__)


async def _insert_in_savepoint(db: AsyncSession, entity) -> bool:
    """Add and flush ``entity``; False if a unique constraint rejected it."""
    try:
        async with db.begin_nested():
            db.add(entity)
            await db.flush()
    except IntegrityError:
        logger.debug("Natural key already present for %r", entity)
        return False
    return True


class SqlSubscriptionRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def save(self, subscription: Subscription) -> Subscription:
        self.db.add(subscription)
        await self.db.flush()
        return subscription

    async def add_if_absent(self, subscription: Subscription) -> Subscription:
        if await _insert_in_savepoint(self.db, subscription):
            return subscription
        existing = await self.find_by_natural_key(subscription.purchase_token)
        if existing is None:
            raise ConflictError(
                ErrorCodes.CONFLICT,
                "Subscription insert conflicted but no row holds its purchase token",
            )
        return existing

    async def find_by_id(self, subscription_id: uuid.UUID) -> Optional[Subscription]:
        return await self.db.get(Subscription, subscription_id)

    async def find_by_natural_key(self, purchase_token: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.purchase_token == purchase_token)
        )
        return result.scalar_one_or_none()

    async def find_by_status(self, status: SubscriptionStatus) -> Sequence[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.status == status)
        )
        return result.scalars().all()

    async def find_by_date_range(self, start: datetime, end: datetime) -> Sequence[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(
                and_(Subscription.expiry_at >= start, Subscription.expiry_at < end)
            )
        )
        return result.scalars().all()

    async def add_history(self, entry: SubscriptionHistory) -> None:
        self.db.add(entry)


class SqlPaymentRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def save(self, payment: Payment) -> Payment:
        self.db.add(payment)
        await self.db.flush()
        return payment

    async def add_if_absent(self, payment: Payment) -> Payment:
        if await _insert_in_savepoint(self.db, payment):
            return payment
        existing = await self.find_by_natural_key(payment.transaction_ref)
        if existing is None:
            raise ConflictError(
                ErrorCodes.CONFLICT,
                "Payment insert conflicted but no row holds its transaction ref",
                transaction_ref=payment.transaction_ref,
            )
        return existing

    async def find_by_id(self, payment_id: uuid.UUID) -> Optional[Payment]:
        return await self.db.get(Payment, payment_id)

    async def find_by_natural_key(self, transaction_ref: str) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment).where(Payment.transaction_ref == transaction_ref)
        )
        return result.scalar_one_or_none()

    async def find_by_status(self, status: PaymentStatus) -> Sequence[Payment]:
        result = await self.db.execute(select(Payment).where(Payment.status == status))
        return result.scalars().all()

    async def find_by_date_range(
        self, platform: Platform, start: datetime, end: datetime
    ) -> Sequence[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(
                and_(
                    Payment.platform == platform,
                    Payment.payment_at >= start,
                    Payment.payment_at < end,
                )
            )
            .order_by(Payment.payment_at)
        )
        return result.scalars().all()


class SqlRefundRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def save(self, refund: RefundTransaction) -> RefundTransaction:
        self.db.add(refund)
        await self.db.flush()
        return refund

    async def find_by_id(self, refund_id: uuid.UUID) -> Optional[RefundTransaction]:
        return await self.db.get(RefundTransaction, refund_id)

    async def find_by_natural_key(self, platform_refund_ref: str) -> Optional[RefundTransaction]:
        result = await self.db.execute(
            select(RefundTransaction).where(
                RefundTransaction.platform_refund_ref == platform_refund_ref
            )
        )
        return result.scalar_one_or_none()

    async def find_by_status(self, status: RefundStatus) -> Sequence[RefundTransaction]:
        result = await self.db.execute(
            select(RefundTransaction).where(RefundTransaction.status == status)
        )
        return result.scalars().all()

    async def find_by_payment_id(self, payment_id: uuid.UUID) -> Sequence[RefundTransaction]:
        result = await self.db.execute(
            select(RefundTransaction).where(RefundTransaction.payment_id == payment_id)
        )
        return result.scalars().all()

    async def find_by_date_range(
        self, platform: Platform, start: datetime, end: datetime
    ) -> Sequence[RefundTransaction]:
        result = await self.db.execute(
            select(RefundTransaction).where(
                and_(
                    RefundTransaction.platform == platform,
                    RefundTransaction.completed_at >= start,
                    RefundTransaction.completed_at < end,
                )
            )
        )
        return result.scalars().all()


class SqlLifecycleEventRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def insert_if_absent(self, record: LifecycleEventRecord) -> bool:
        return await _insert_in_savepoint(self.db, record)

    async def save(self, record: LifecycleEventRecord) -> LifecycleEventRecord:
        self.db.add(record)
        await self.db.flush()
        return record

    async def find_by_id(self, event_id: uuid.UUID) -> Optional[LifecycleEventRecord]:
        return await self.db.get(LifecycleEventRecord, event_id)

    async def find_by_natural_key(self, dedup_key: str) -> Optional[LifecycleEventRecord]:
        result = await self.db.execute(
            select(LifecycleEventRecord).where(LifecycleEventRecord.dedup_key == dedup_key)
        )
        return result.scalar_one_or_none()

    async def find_unprocessed(self, limit: int = 100) -> Sequence[LifecycleEventRecord]:
        result = await self.db.execute(
            select(LifecycleEventRecord)
            .where(LifecycleEventRecord.processed_at.is_(None))
            .order_by(LifecycleEventRecord.occurred_at)
            .limit(limit)
        )
        return result.scalars().all()

    async def find_by_date_range(
        self, platform: Platform, start: datetime, end: datetime
    ) -> Sequence[LifecycleEventRecord]:
        result = await self.db.execute(
            select(LifecycleEventRecord).where(
                and_(
                    LifecycleEventRecord.platform == platform,
                    LifecycleEventRecord.occurred_at >= start,
                    LifecycleEventRecord.occurred_at < end,
                )
            )
        )
        return result.scalars().all()


class SqlReconciliationResultRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(self, result: ReconciliationResult) -> ReconciliationResult:
        current = await self.db.scalar(
            select(func.max(ReconciliationResultRecord.version)).where(
                and_(
                    ReconciliationResultRecord.result_date == result.result_date,
                    ReconciliationResultRecord.platform == result.platform,
                )
            )
        )
        stored = result.model_copy(update={"version": (current or 0) + 1})
        self.db.add(
            ReconciliationResultRecord(
                result_id=stored.run_id,
                result_date=stored.result_date,
                platform=stored.platform,
                version=stored.version,
                status=stored.status,
                body=stored.model_dump(mode="json"),
            )
        )
        await self.db.flush()
        return stored

    async def find_latest(
        self, result_date: date, platform: Platform
    ) -> Optional[ReconciliationResult]:
        record = await self.db.scalar(
            select(ReconciliationResultRecord)
            .where(
                and_(
                    ReconciliationResultRecord.result_date == result_date,
                    ReconciliationResultRecord.platform == platform,
                )
            )
            .order_by(ReconciliationResultRecord.version.desc())
            .limit(1)
        )
        return ReconciliationResult.model_validate(record.body) if record else None

    async def find_by_natural_key(
        self, result_date: date, platform: Platform, version: int
    ) -> Optional[ReconciliationResult]:
        record = await self.db.scalar(
            select(ReconciliationResultRecord).where(
                and_(
                    ReconciliationResultRecord.result_date == result_date,
                    ReconciliationResultRecord.platform == platform,
                    ReconciliationResultRecord.version == version,
                )
            )
        )
        return ReconciliationResult.model_validate(record.body) if record else None

    async def find_by_status(
        self, status: ReconciliationStatus
    ) -> Sequence[ReconciliationResult]:
        latest = await self._latest_versions(select(ReconciliationResultRecord))
        return [r for r in latest if r.status == status]

    async def find_by_date_range(
        self, start: date, end: date, platform: Optional[Platform] = None
    ) -> Sequence[ReconciliationResult]:
        stmt = select(ReconciliationResultRecord).where(
            and_(
                ReconciliationResultRecord.result_date >= start,
                ReconciliationResultRecord.result_date <= end,
            )
        )
        if platform is not None:
            stmt = stmt.where(ReconciliationResultRecord.platform == platform)
        return await self._latest_versions(stmt)

    async def _latest_versions(self, stmt) -> list[ReconciliationResult]:
        result = await self.db.execute(stmt.order_by(ReconciliationResultRecord.version))
        latest: dict[tuple[date, Platform], ReconciliationResultRecord] = {}
        for record in result.scalars().all():
            latest[(record.result_date, record.platform)] = record
        return [
            ReconciliationResult.model_validate(record.body)
            for _, record in sorted(latest.items(), key=lambda item: (item[0][0], item[0][1].value))
        ]
