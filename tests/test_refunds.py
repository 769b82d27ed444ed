"""
Refund Service Tests
====================

Request, approval and processing of refunds against recorded payments.
"""

from decimal import Decimal

import pytest

from app.core.errors import (
    AlreadyFinalized,
    ConflictError,
    ErrorCodes,
    InvalidTransition,
    PlatformServiceError,
    RefundProcessingError,
    ValidationError,
)
from app.models.event import Platform
from app.models.payment import PaymentStatus
from app.models.refund import RefundReason, RefundStatus
from app.repositories.memory import InMemoryPaymentRepository, InMemoryRefundRepository
from app.services.locks import KeyedLock
from app.services.payments import PaymentService
from app.services.platforms import RefundResult
from app.services.refunds import RefundService
from tests.factories import NOW, FakeAdapter, fixed_clock


class RefundHarness:
    def __init__(self):
        self.adapter = FakeAdapter(Platform.GOOGLE_PLAY)
        self.payment_repository = InMemoryPaymentRepository()
        self.refund_repository = InMemoryRefundRepository()
        adapters = {Platform.GOOGLE_PLAY: self.adapter}
        locks = KeyedLock()
        self.payments = PaymentService(self.payment_repository, adapters, locks, clock=fixed_clock)
        self.refunds = RefundService(
            self.refund_repository,
            self.payment_repository,
            self.payments,
            adapters,
            locks,
            clock=fixed_clock,
        )

    async def payment(self, amount: str = "10.00"):
        return await self.payments.record_payment(
            platform=Platform.GOOGLE_PLAY,
            transaction_ref="GPA.1",
            product_ref="premium_monthly",
            amount=Decimal(amount),
            currency="USD",
            payment_at=NOW,
        )


@pytest.fixture
def harness() -> RefundHarness:
    return RefundHarness()


class TestRequest:
    """Opening refunds."""

    @pytest.mark.asyncio
    async def test_billing_error_needs_no_approval(self, harness):
        payment = await harness.payment()

        refund = await harness.refunds.request_refund(payment.payment_id, RefundReason.BILLING_ERROR)

        assert refund.status == RefundStatus.REQUESTED
        assert refund.amount == Decimal("10.00")
        assert refund.original_transaction_ref == "GPA.1"
        assert refund.requested_at == NOW

    @pytest.mark.asyncio
    async def test_customer_request_needs_approval(self, harness):
        payment = await harness.payment()

        refund = await harness.refunds.request_refund(
            payment.payment_id, RefundReason.CUSTOMER_REQUEST, requested_by="support-1"
        )

        assert refund.status == RefundStatus.PENDING_APPROVAL
        assert refund.requested_by == "support-1"

    @pytest.mark.asyncio
    async def test_second_active_refund_conflicts(self, harness):
        payment = await harness.payment()
        await harness.refunds.request_refund(payment.payment_id, RefundReason.BILLING_ERROR)

        with pytest.raises(ConflictError) as exc_info:
            await harness.refunds.request_refund(payment.payment_id, RefundReason.BILLING_ERROR)
        assert exc_info.value.code == ErrorCodes.REFUND_ALREADY_ACTIVE

    @pytest.mark.asyncio
    async def test_rejected_refund_allows_new_request(self, harness):
        payment = await harness.payment()
        first = await harness.refunds.request_refund(payment.payment_id, RefundReason.BILLING_ERROR)
        await harness.refunds.reject(first.refund_id, note="not eligible")

        second = await harness.refunds.request_refund(payment.payment_id, RefundReason.TECHNICAL_ISSUE)

        assert second.status == RefundStatus.REQUESTED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "10.01"])
    async def test_amount_out_of_range(self, harness, amount):
        payment = await harness.payment()

        with pytest.raises(ValidationError):
            await harness.refunds.request_refund(
                payment.payment_id, RefundReason.BILLING_ERROR, amount=Decimal(amount)
            )

    @pytest.mark.asyncio
    async def test_refunded_payment_cannot_be_refunded_again(self, harness):
        payment = await harness.payment()
        await harness.payments.mark_refunded(payment.payment_id)

        with pytest.raises(InvalidTransition):
            await harness.refunds.request_refund(payment.payment_id, RefundReason.BILLING_ERROR)


class TestReview:
    """Approval, rejection and cancellation."""

    @pytest.mark.asyncio
    async def test_approve(self, harness):
        payment = await harness.payment()
        refund = await harness.refunds.request_refund(payment.payment_id, RefundReason.CUSTOMER_REQUEST)

        approved = await harness.refunds.approve(refund.refund_id, approved_by="ops-lead")

        assert approved.status == RefundStatus.APPROVED
        assert approved.approved_by == "ops-lead"

    @pytest.mark.asyncio
    async def test_cancelled_refund_is_final(self, harness):
        payment = await harness.payment()
        refund = await harness.refunds.request_refund(payment.payment_id, RefundReason.BILLING_ERROR)
        await harness.refunds.cancel(refund.refund_id)

        with pytest.raises(AlreadyFinalized):
            await harness.refunds.approve(refund.refund_id, approved_by="ops-lead")

    @pytest.mark.asyncio
    async def test_process_requires_approval(self, harness):
        payment = await harness.payment()
        refund = await harness.refunds.request_refund(payment.payment_id, RefundReason.BILLING_ERROR)

        with pytest.raises(InvalidTransition):
            await harness.refunds.process(refund.refund_id)
        assert refund.status == RefundStatus.REQUESTED
        assert harness.adapter.refunded == []


class TestProcessing:
    """Sending approved refunds to the platform."""

    async def _approved(self, harness, amount=None):
        payment = await harness.payment()
        refund = await harness.refunds.request_refund(
            payment.payment_id, RefundReason.BILLING_ERROR, amount=amount
        )
        await harness.refunds.approve(refund.refund_id, approved_by="ops-lead")
        return payment, refund

    @pytest.mark.asyncio
    async def test_success_completes_and_refunds_payment(self, harness):
        payment, refund = await self._approved(harness)

        completed = await harness.refunds.process(refund.refund_id)

        assert completed.status == RefundStatus.COMPLETED
        assert completed.platform_refund_ref == "R-1"
        assert completed.processed_at == NOW
        assert completed.completed_at == NOW
        assert harness.adapter.refunded == [("GPA.1", Decimal("10.00"), "USD")]
        assert payment.status == PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_partial_refund(self, harness):
        payment, refund = await self._approved(harness, amount=Decimal("2.50"))

        await harness.refunds.process(refund.refund_id)

        assert payment.status == PaymentStatus.PARTIALLY_REFUNDED
        assert payment.refunded_amount == Decimal("2.50")

    @pytest.mark.asyncio
    async def test_platform_refusal_fails_refund(self, harness):
        harness.adapter.refund_result = RefundResult(
            success=False, error_message="order too old", retryable=False
        )
        payment, refund = await self._approved(harness)

        with pytest.raises(RefundProcessingError) as exc_info:
            await harness.refunds.process(refund.refund_id)

        assert exc_info.value.retryable is False
        assert refund.status == RefundStatus.FAILED
        assert refund.failure_reason == "order too old"
        assert payment.status == PaymentStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_platform_error_is_retryable(self, harness):
        payment, refund = await self._approved(harness)

        async def broken(*args):
            raise PlatformServiceError("google_play returned 503", upstream_status=503)

        harness.adapter.process_refund = broken

        with pytest.raises(RefundProcessingError) as exc_info:
            await harness.refunds.process(refund.refund_id)

        assert exc_info.value.retryable is True
        assert refund.status == RefundStatus.FAILED

    @pytest.mark.asyncio
    async def test_completed_refund_cannot_be_processed_again(self, harness):
        _, refund = await self._approved(harness)
        await harness.refunds.process(refund.refund_id)

        with pytest.raises(AlreadyFinalized):
            await harness.refunds.process(refund.refund_id)
        assert len(harness.adapter.refunded) == 1

    @pytest.mark.asyncio
    async def test_payment_refunded_meanwhile_still_completes(self, harness):
        """A voided purchase landing between approval and processing does not strand the refund."""
        payment, refund = await self._approved(harness)
        await harness.payments.mark_refunded(payment.payment_id)

        completed = await harness.refunds.process(refund.refund_id)

        assert completed.status == RefundStatus.COMPLETED
        assert completed.platform_refund_ref == "R-1"
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.refunded_amount == Decimal("10.00")
        assert len(harness.adapter.refunded) == 1

    @pytest.mark.asyncio
    async def test_platform_refund_capped_at_remaining(self, harness):
        payment, refund = await self._approved(harness, amount=Decimal("6.00"))
        await harness.payments.mark_refunded(payment.payment_id, Decimal("7.00"))

        completed = await harness.refunds.process(refund.refund_id)

        assert completed.status == RefundStatus.COMPLETED
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.refunded_amount == Decimal("10.00")
