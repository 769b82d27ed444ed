"""
Refund Service
==============

Refund requests and their approval and processing workflow.

    Requested -> PendingApproval | Approved | Rejected | Cancelled
    PendingApproval -> Approved | Rejected | Cancelled
    Approved -> Processing | Failed | Cancelled
    Processing -> Completed | Failed

Every move goes through ``REFUND_TRANSITIONS`` first; a rejected move
leaves the refund untouched. Timestamps are never earlier than the ones
already on the refund.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Mapping, Optional
import uuid

from app.core.errors import (
    ConflictError,
    ErrorCodes,
    InvalidTransition,
    NotFoundError,
    PlatformServiceError,
    RefundProcessingError,
    ValidationError,
)
from app.core.transitions import REFUND_TRANSITIONS
from app.models.event import Platform
from app.models.payment import PaymentStatus
from app.models.refund import RefundReason, RefundStatus, RefundTransaction
from app.repositories.base import PaymentRepository, RefundRepository
from app.services.locks import EntityLock, KeyedLock
from app.services.payments import PaymentService
from app.services.platforms import PlatformAdapter, RefundResult
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)


class RefundService:
    """Service for refund operations."""

    def __init__(
        self,
        refunds: RefundRepository,
        payment_repository: PaymentRepository,
        payments: PaymentService,
        adapters: Mapping[Platform, PlatformAdapter],
        locks: Optional[EntityLock] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.refunds = refunds
        self.payment_repository = payment_repository
        self.payments = payments
        self.adapters = adapters
        self.locks = locks or KeyedLock()
        self.clock = clock

    def _now(self, *previous: Optional[datetime]) -> datetime:
        """Current time, never earlier than any of ``previous``."""
        return max([self.clock(), *[p for p in previous if p is not None]])

    async def _get(self, refund_id: uuid.UUID) -> RefundTransaction:
        refund = await self.refunds.find_by_id(refund_id)
        if refund is None:
            raise NotFoundError(
                code=ErrorCodes.REFUND_NOT_FOUND,
                message=f"Refund {refund_id} not found",
            )
        return refund

    # =========================================================================
    # Request
    # =========================================================================

    async def request_refund(
        self,
        payment_id: uuid.UUID,
        reason: RefundReason,
        amount: Optional[Decimal] = None,
        requested_by: Optional[str] = None,
    ) -> RefundTransaction:
        """
        Open a refund against a payment.

        Args:
            payment_id: Payment being refunded
            reason: Why the refund is requested
            amount: Refund amount; the full payment amount when omitted
            requested_by: Operator or system requesting the refund

        Returns:
            The refund, in Requested or PendingApproval

        Raises:
            InvalidTransition: Payment is not in Success
            ConflictError: Payment already has an active refund
            ValidationError: Amount is not positive or exceeds the payment
        """
        async with self.locks.hold(f"refund-payment:{payment_id}"):
            payment = await self.payment_repository.find_by_id(payment_id)
            if payment is None:
                raise NotFoundError(
                    code=ErrorCodes.PAYMENT_NOT_FOUND,
                    message=f"Payment {payment_id} not found",
                )
            if payment.status != PaymentStatus.SUCCESS:
                raise InvalidTransition("payment", payment.status.value, "refund_requested")

            existing = await self.refunds.find_by_payment_id(payment_id)
            if any(r.is_active for r in existing):
                raise ConflictError(
                    code=ErrorCodes.REFUND_ALREADY_ACTIVE,
                    message=f"Payment {payment_id} already has an active refund",
                )

            refund_amount = payment.amount if amount is None else amount
            if refund_amount <= 0 or refund_amount > payment.amount:
                raise ValidationError(
                    f"Refund amount must be in (0, {payment.amount}]",
                    field="amount",
                    code=ErrorCodes.REFUND_AMOUNT_EXCEEDED,
                )

            status = RefundStatus.REQUESTED
            if reason.requires_approval:
                REFUND_TRANSITIONS.ensure(status, RefundStatus.PENDING_APPROVAL)
                status = RefundStatus.PENDING_APPROVAL

            refund = RefundTransaction(
                refund_id=uuid.uuid4(),
                payment_id=payment.payment_id,
                platform=payment.platform,
                original_transaction_ref=payment.transaction_ref,
                platform_refund_ref=None,
                amount=refund_amount,
                currency=payment.currency,
                reason=reason,
                status=status,
                requested_by=requested_by,
                requested_at=self.clock(),
            )
            refund = await self.refunds.save(refund)

        logger.info(
            "Refund requested: refund=%s payment=%s amount=%s reason=%s status=%s",
            refund.refund_id,
            payment_id,
            refund_amount,
            reason.value,
            status.value,
        )
        return refund

    # =========================================================================
    # Review
    # =========================================================================

    async def _transition(
        self,
        refund_id: uuid.UUID,
        target: RefundStatus,
        **changes,
    ) -> RefundTransaction:
        async with self.locks.hold(f"refund:{refund_id}"):
            refund = await self._get(refund_id)
            REFUND_TRANSITIONS.ensure(refund.status, target)
            previous = refund.status
            refund.status = target
            for name, value in changes.items():
                setattr(refund, name, value)
            refund = await self.refunds.save(refund)

        logger.info("Refund %s: %s -> %s", refund_id, previous.value, target.value)
        return refund

    async def approve(self, refund_id: uuid.UUID, approved_by: str) -> RefundTransaction:
        return await self._transition(refund_id, RefundStatus.APPROVED, approved_by=approved_by)

    async def reject(self, refund_id: uuid.UUID, note: Optional[str] = None) -> RefundTransaction:
        return await self._transition(refund_id, RefundStatus.REJECTED, internal_note=note)

    async def cancel(self, refund_id: uuid.UUID) -> RefundTransaction:
        return await self._transition(refund_id, RefundStatus.CANCELLED)

    # =========================================================================
    # Processing
    # =========================================================================

    async def process(self, refund_id: uuid.UUID) -> RefundTransaction:
        """
        Send an approved refund to the platform.

        Returns:
            The completed refund

        Raises:
            InvalidTransition: Refund is not Approved
            RefundProcessingError: Platform refused or failed; ``retryable``
                tells batch retriers whether to try again
        """
        async with self.locks.hold(f"refund:{refund_id}"):
            refund = await self._get(refund_id)
            REFUND_TRANSITIONS.ensure(refund.status, RefundStatus.PROCESSING)
            refund.status = RefundStatus.PROCESSING
            refund.processed_at = self._now(refund.requested_at)
            refund = await self.refunds.save(refund)

            adapter = self.adapters[refund.platform]
            try:
                result = await adapter.process_refund(
                    refund.original_transaction_ref,
                    refund.amount,
                    refund.currency,
                )
            except PlatformServiceError as exc:
                result = RefundResult(success=False, error_message=exc.message, retryable=exc.retryable)

            if not result.success:
                REFUND_TRANSITIONS.ensure(refund.status, RefundStatus.FAILED)
                refund.status = RefundStatus.FAILED
                refund.failure_reason = result.error_message
                await self.refunds.save(refund)
                logger.error(
                    "Refund %s failed (retryable=%s): %s",
                    refund_id,
                    result.retryable,
                    result.error_message,
                )
                raise RefundProcessingError(
                    result.error_message or "Refund failed",
                    retryable=result.retryable,
                    refund_id=str(refund_id),
                )

            # Payment is updated before the refund is saved Completed
            await self.payments.settle_platform_refund(refund.payment_id, refund.amount)

            REFUND_TRANSITIONS.ensure(refund.status, RefundStatus.COMPLETED)
            refund.status = RefundStatus.COMPLETED
            refund.platform_refund_ref = result.platform_refund_ref
            refund.completed_at = self._now(refund.processed_at, refund.requested_at)
            refund = await self.refunds.save(refund)

        logger.info(
            "Refund completed: refund=%s platform_ref=%s amount=%s",
            refund_id,
            refund.platform_refund_ref,
            refund.amount,
        )
        return refund
