"""
Payment Service Tests
=====================
"""

from decimal import Decimal
import uuid

import pytest

from app.core.errors import AlreadyFinalized, ErrorCodes, InvalidTransition, NotFoundError, ValidationError
from app.models.event import Platform
from app.models.payment import PaymentStatus
from app.repositories.memory import InMemoryPaymentRepository
from app.services.payments import PaymentService
from tests.factories import NOW, FakeAdapter, fixed_clock


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter(Platform.GOOGLE_PLAY)


@pytest.fixture
def service(adapter) -> PaymentService:
    return PaymentService(
        InMemoryPaymentRepository(),
        {Platform.GOOGLE_PLAY: adapter},
        clock=fixed_clock,
    )


async def _record(service: PaymentService, transaction_ref: str = "GPA.1", amount: str = "9.99", **kwargs):
    return await service.record_payment(
        platform=Platform.GOOGLE_PLAY,
        transaction_ref=transaction_ref,
        product_ref="premium_monthly",
        amount=Decimal(amount),
        currency="USD",
        payment_at=NOW,
        **kwargs,
    )


class TestRecordPayment:
    @pytest.mark.asyncio
    async def test_records_success(self, service):
        payment = await _record(service)

        assert payment.status == PaymentStatus.SUCCESS
        assert payment.refunded_amount == Decimal("0")
        assert not payment.acknowledged

    @pytest.mark.asyncio
    async def test_idempotent_on_transaction_ref(self, service):
        """A second record for the same transaction returns the first."""
        first = await _record(service)
        second = await _record(service, amount="19.99")

        assert second is first
        assert second.amount == Decimal("9.99")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-1.00"])
    async def test_non_positive_amount_rejected(self, service, amount):
        with pytest.raises(ValidationError):
            await _record(service, amount=amount)

    @pytest.mark.asyncio
    async def test_terminal_initial_status_rejected(self, service):
        with pytest.raises(ValidationError):
            await _record(service, status=PaymentStatus.REFUNDED)


class TestAcknowledge:
    @pytest.mark.asyncio
    async def test_acknowledges_once(self, service, adapter):
        payment = await _record(service)

        await service.acknowledge(payment.payment_id, "token-1")
        again = await service.acknowledge(payment.payment_id, "token-1")

        assert again.acknowledged
        assert again.acknowledged_at == NOW
        assert adapter.acknowledged == [("premium_monthly", "token-1")]

    @pytest.mark.asyncio
    async def test_pending_payment_cannot_be_acknowledged(self, service, adapter):
        payment = await _record(service, status=PaymentStatus.PENDING)

        with pytest.raises(InvalidTransition):
            await service.acknowledge(payment.payment_id, "token-1")
        assert adapter.acknowledged == []

    @pytest.mark.asyncio
    async def test_unknown_payment(self, service):
        with pytest.raises(NotFoundError) as exc_info:
            await service.acknowledge(uuid.uuid4(), "token-1")
        assert exc_info.value.code == ErrorCodes.PAYMENT_NOT_FOUND


class TestRefundAndDispute:
    @pytest.mark.asyncio
    async def test_partial_then_full_refund(self, service):
        payment = await _record(service, amount="10.00")

        partial = await service.mark_refunded(payment.payment_id, Decimal("4.00"))
        assert partial.status == PaymentStatus.PARTIALLY_REFUNDED
        assert partial.refunded_amount == Decimal("4.00")

        full = await service.mark_refunded(payment.payment_id)
        assert full.status == PaymentStatus.REFUNDED
        assert full.refunded_amount == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_refund_beyond_remaining_rejected(self, service):
        payment = await _record(service, amount="10.00")
        await service.mark_refunded(payment.payment_id, Decimal("8.00"))

        with pytest.raises(ValidationError) as exc_info:
            await service.mark_refunded(payment.payment_id, Decimal("3.50"))
        assert exc_info.value.code == ErrorCodes.REFUND_AMOUNT_EXCEEDED
        assert payment.status == PaymentStatus.PARTIALLY_REFUNDED
        assert payment.refunded_amount == Decimal("8.00")

    @pytest.mark.asyncio
    async def test_refunded_payment_is_final(self, service):
        payment = await _record(service)
        await service.mark_refunded(payment.payment_id)

        with pytest.raises(AlreadyFinalized):
            await service.mark_refunded(payment.payment_id)

    @pytest.mark.asyncio
    async def test_settled_platform_refund_on_refunded_payment_is_absorbed(self, service):
        payment = await _record(service, amount="10.00")
        await service.mark_refunded(payment.payment_id)

        settled = await service.settle_platform_refund(payment.payment_id, Decimal("10.00"))

        assert settled.status == PaymentStatus.REFUNDED
        assert settled.refunded_amount == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_settled_platform_refund_capped_at_remaining(self, service):
        payment = await _record(service, amount="10.00")
        await service.mark_refunded(payment.payment_id, Decimal("8.00"))

        settled = await service.settle_platform_refund(payment.payment_id, Decimal("5.00"))

        assert settled.status == PaymentStatus.REFUNDED
        assert settled.refunded_amount == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_pending_payment_cannot_be_refunded(self, service):
        payment = await _record(service, status=PaymentStatus.PENDING)

        with pytest.raises(InvalidTransition):
            await service.mark_refunded(payment.payment_id)
        assert payment.status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_dispute_and_resolution(self, service):
        payment = await _record(service)

        disputed = await service.transition(payment.payment_id, PaymentStatus.DISPUTED)
        assert disputed.status == PaymentStatus.DISPUTED

        restored = await service.transition(payment.payment_id, PaymentStatus.SUCCESS)
        assert restored.status == PaymentStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_failed_payment_is_final(self, service):
        payment = await _record(service, status=PaymentStatus.PENDING)
        await service.transition(payment.payment_id, PaymentStatus.FAILED)

        with pytest.raises(AlreadyFinalized):
            await service.transition(payment.payment_id, PaymentStatus.SUCCESS)
