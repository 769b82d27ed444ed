"""
Subscription Models
===================

SQLAlchemy models for store subscriptions and their audit trail.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
import uuid

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin
from app.models.event import EventKind, Platform


class SubscriptionStatus(str, Enum):
    """Subscription status values."""
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELED = "canceled"
    ON_HOLD = "on_hold"
    IN_GRACE_PERIOD = "in_grace_period"
    PAUSED = "paused"


class Subscription(Base, TimestampMixin):
    """
    Store subscription.

    One purchase token (Google Play) or original transaction id
    (App Store) maps to at most one row.
    """

    __tablename__ = "subscriptions"

    # Primary Key
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    owner_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    plan_ref: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    platform: Mapped[Platform] = mapped_column(
        SQLEnum(Platform),
        nullable=False,
    )
    purchase_token: Mapped[str] = mapped_column(
        String(512),
        unique=True,
        nullable=False,
    )

    status: Mapped[SubscriptionStatus] = mapped_column(
        SQLEnum(SubscriptionStatus),
        default=SubscriptionStatus.ACTIVE,
        nullable=False,
    )
    start_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    expiry_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    auto_renew: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    canceled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Optimistic concurrency counter
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    history: Mapped[list["SubscriptionHistory"]] = relationship(
        "SubscriptionHistory",
        back_populates="subscription",
        order_by="desc(SubscriptionHistory.created_at)",
    )

    __table_args__ = (
        Index("idx_subscription_status_expiry", "status", "expiry_at"),
        Index("idx_subscription_platform_status", "platform", "status"),
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Subscription(purchase_token={self.purchase_token}, status={self.status})>"

    @property
    def is_active(self) -> bool:
        """Entitlement is granted while active or in the grace period."""
        return self.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.IN_GRACE_PERIOD)


class SubscriptionHistory(Base):
    """
    Subscription history model.

    One row per applied transition, for audit.
    """

    __tablename__ = "subscription_history"

    history_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("subscriptions.subscription_id", ondelete="CASCADE"),
        nullable=False,
    )
    event_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )
    event_kind: Mapped[EventKind] = mapped_column(
        SQLEnum(EventKind),
        nullable=False,
    )
    previous_status: Mapped[Optional[SubscriptionStatus]] = mapped_column(
        SQLEnum(SubscriptionStatus),
        nullable=True,
    )
    new_status: Mapped[SubscriptionStatus] = mapped_column(
        SQLEnum(SubscriptionStatus),
        nullable=False,
    )
    expiry_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    event_data: Mapped[Optional[dict]] = mapped_column(
        JSONB,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    subscription: Mapped["Subscription"] = relationship(
        "Subscription",
        back_populates="history",
    )

    __table_args__ = (
        Index("idx_sub_history_subscription", "subscription_id", "created_at"),
        Index("idx_sub_history_event_kind", "event_kind", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<SubscriptionHistory(subscription_id={self.subscription_id}, event={self.event_kind})>"
