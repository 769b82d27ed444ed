"""
Payment Service
===============

Records platform charges and drives the payment state machine:
acknowledgement, refunds, disputes.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Mapping, Optional
import uuid

from app.core.errors import ErrorCodes, InvalidTransition, NotFoundError, ValidationError
from app.core.transitions import PAYMENT_TRANSITIONS
from app.models.event import Platform
from app.models.payment import Payment, PaymentStatus
from app.repositories.base import PaymentRepository
from app.services.locks import EntityLock, KeyedLock
from app.services.platforms import PlatformAdapter
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)


class PaymentService:
    """Service for payment lifecycle operations."""

    def __init__(
        self,
        payments: PaymentRepository,
        adapters: Mapping[Platform, PlatformAdapter],
        locks: Optional[EntityLock] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.payments = payments
        self.adapters = adapters
        self.locks = locks or KeyedLock()
        self.clock = clock

    async def _get(self, payment_id: uuid.UUID) -> Payment:
        payment = await self.payments.find_by_id(payment_id)
        if payment is None:
            raise NotFoundError(
                code=ErrorCodes.PAYMENT_NOT_FOUND,
                message=f"Payment {payment_id} not found",
            )
        return payment

    async def record_payment(
        self,
        *,
        platform: Platform,
        transaction_ref: str,
        product_ref: str,
        amount: Decimal,
        currency: str,
        payment_at: datetime,
        subscription_id: Optional[uuid.UUID] = None,
        order_ref: Optional[str] = None,
        status: PaymentStatus = PaymentStatus.SUCCESS,
        is_renewal: bool = False,
    ) -> Payment:
        """
        Record a charge. Idempotent on ``transaction_ref``.

        ``is_renewal`` marks automatic renewal charges so reconciliation can
        tell them from first purchases.

        Returns:
            The stored payment (the existing one if already recorded)
        """
        if amount is None or amount <= 0:
            raise ValidationError("Payment amount must be positive", field="amount")
        if status not in (PaymentStatus.PENDING, PaymentStatus.SUCCESS):
            raise ValidationError("New payments start as pending or success", field="status")

        payment = Payment(
            payment_id=uuid.uuid4(),
            subscription_id=subscription_id,
            platform=platform,
            order_ref=order_ref,
            transaction_ref=transaction_ref,
            product_ref=product_ref,
            amount=amount,
            currency=currency,
            status=status,
            payment_at=payment_at,
            is_renewal=is_renewal,
            acknowledged=False,
            refunded_amount=Decimal("0"),
        )
        stored = await self.payments.add_if_absent(payment)
        if stored is payment:
            logger.info(
                "Payment recorded: platform=%s transaction=%s amount=%s %s",
                platform.value,
                transaction_ref,
                amount,
                currency,
            )
        return stored

    async def transition(self, payment_id: uuid.UUID, target: PaymentStatus) -> Payment:
        """Move a payment to ``target`` (e.g. success, failed, disputed)."""
        async with self.locks.hold(f"payment:{payment_id}"):
            payment = await self._get(payment_id)
            PAYMENT_TRANSITIONS.ensure(payment.status, target)
            payment.status = target
            return await self.payments.save(payment)

    async def acknowledge(self, payment_id: uuid.UUID, purchase_token: str) -> Payment:
        """
        Confirm entitlement to the platform.

        Only successful payments can be acknowledged; acknowledging twice
        is a no-op.
        """
        async with self.locks.hold(f"payment:{payment_id}"):
            payment = await self._get(payment_id)
            if payment.status != PaymentStatus.SUCCESS:
                raise InvalidTransition("payment", payment.status.value, "acknowledged")
            if payment.acknowledged:
                return payment

            adapter = self.adapters[payment.platform]
            await adapter.acknowledge_payment(payment.product_ref, purchase_token)

            payment.acknowledged = True
            payment.acknowledged_at = self.clock()
            logger.info("Payment acknowledged: transaction=%s", payment.transaction_ref)
            return await self.payments.save(payment)

    async def mark_refunded(
        self,
        payment_id: uuid.UUID,
        amount: Optional[Decimal] = None,
    ) -> Payment:
        """
        Apply a completed refund to the payment.

        Args:
            payment_id: Payment to refund
            amount: Refunded amount; the full remaining amount when omitted

        Raises:
            InvalidTransition: Payment is not refundable in its current status
            ValidationError: Amount exceeds what remains refundable
        """
        async with self.locks.hold(f"payment:{payment_id}"):
            payment = await self._get(payment_id)
            remaining = payment.amount - (payment.refunded_amount or Decimal("0"))
            return await self._apply_refund(payment, remaining if amount is None else amount)

    async def settle_platform_refund(self, payment_id: uuid.UUID, amount: Decimal) -> Payment:
        """
        Record money the platform has already returned.

        The platform call cannot be undone, so the amount is capped at what
        remains refundable and a payment that is already fully refunded (by
        a voided purchase or a chargeback) is returned unchanged.
        """
        async with self.locks.hold(f"payment:{payment_id}"):
            payment = await self._get(payment_id)
            remaining = payment.amount - (payment.refunded_amount or Decimal("0"))
            if remaining <= 0:
                logger.info(
                    "Payment %s already fully refunded; platform refund of %s absorbed",
                    payment.transaction_ref,
                    amount,
                )
                return payment
            return await self._apply_refund(payment, min(amount, remaining))

    async def _apply_refund(self, payment: Payment, refund_amount: Decimal) -> Payment:
        already = payment.refunded_amount or Decimal("0")
        remaining = payment.amount - already
        total = already + refund_amount
        target = (
            PaymentStatus.REFUNDED
            if total >= payment.amount
            else PaymentStatus.PARTIALLY_REFUNDED
        )
        PAYMENT_TRANSITIONS.ensure(payment.status, target)
        if refund_amount <= 0 or refund_amount > remaining:
            raise ValidationError(
                f"Refund of {refund_amount} exceeds refundable {remaining}",
                field="amount",
                code=ErrorCodes.REFUND_AMOUNT_EXCEEDED,
            )

        payment.refunded_amount = total
        payment.status = target
        logger.info(
            "Payment %s: transaction=%s refunded=%s",
            target.value,
            payment.transaction_ref,
            total,
        )
        return await self.payments.save(payment)
