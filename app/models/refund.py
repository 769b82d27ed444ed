"""
Refund Models
=============

Refund transactions and their reason codes.

Human-readable labels for reasons live in ``app.core.labels``.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
import uuid

from sqlalchemy import (
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin
from app.models.event import Platform


class RefundStatus(str, Enum):
    """Refund status values."""
    REQUESTED = "requested"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class RefundReason(str, Enum):
    """Why a refund was requested."""
    CUSTOMER_REQUEST = "customer_request"
    TECHNICAL_ISSUE = "technical_issue"
    BILLING_ERROR = "billing_error"
    FRAUD_PREVENTION = "fraud_prevention"
    SERVICE_UNAVAILABLE = "service_unavailable"
    REGULATORY_COMPLIANCE = "regulatory_compliance"
    DUPLICATE_PAYMENT = "duplicate_payment"
    UNAUTHORIZED_PURCHASE = "unauthorized_purchase"
    POLICY_VIOLATION = "policy_violation"

    @property
    def requires_approval(self) -> bool:
        return self in _APPROVAL_REQUIRED


_APPROVAL_REQUIRED = frozenset({
    RefundReason.CUSTOMER_REQUEST,
    RefundReason.FRAUD_PREVENTION,
    RefundReason.SERVICE_UNAVAILABLE,
    RefundReason.UNAUTHORIZED_PURCHASE,
    RefundReason.POLICY_VIOLATION,
})


# Active refunds block a second request against the same payment
ACTIVE_REFUND_STATUSES = frozenset({
    RefundStatus.REQUESTED,
    RefundStatus.PENDING_APPROVAL,
    RefundStatus.APPROVED,
    RefundStatus.PROCESSING,
})


class RefundTransaction(Base, TimestampMixin):
    """Refund against a single payment."""

    __tablename__ = "refund_transactions"

    refund_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    payment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("payments.payment_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    platform: Mapped[Platform] = mapped_column(
        SQLEnum(Platform),
        nullable=False,
    )
    original_transaction_ref: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    platform_refund_ref: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
    )
    reason: Mapped[RefundReason] = mapped_column(
        SQLEnum(RefundReason),
        nullable=False,
    )
    status: Mapped[RefundStatus] = mapped_column(
        SQLEnum(RefundStatus),
        default=RefundStatus.REQUESTED,
        nullable=False,
    )
    requested_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    approved_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    internal_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_refund_status", "status"),
        Index("idx_refund_platform_completed", "platform", "completed_at"),
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<RefundTransaction(refund_id={self.refund_id}, status={self.status})>"

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_REFUND_STATUSES
