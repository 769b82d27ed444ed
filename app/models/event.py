"""
Lifecycle Event Models
======================

Persisted record of every admitted platform notification.

The canonical, immutable event lives in ``app.schemas.notification``;
this table stores it together with its dedup key and processing outcome.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
import uuid

from sqlalchemy import (
    DateTime,
    Enum as SQLEnum,
    Index,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class Platform(str, Enum):
    """Payment platform that emitted a notification or settlement."""
    GOOGLE_PLAY = "google_play"
    APP_STORE = "app_store"


class EventKind(str, Enum):
    """Canonical lifecycle event kinds."""
    PURCHASE = "purchase"
    RENEWAL = "renewal"
    CANCELLATION = "cancellation"
    REFUND = "refund"
    EXPIRATION = "expiration"
    GRACE_PERIOD_START = "grace_period_start"
    GRACE_PERIOD_END = "grace_period_end"
    PAUSE = "pause"
    RESUME = "resume"
    UNKNOWN = "unknown"


class EventOutcome(str, Enum):
    """What happened when an admitted event was processed."""
    APPLIED = "applied"
    IGNORED = "ignored"
    REJECTED = "rejected"


class LifecycleEventRecord(Base):
    """Admitted lifecycle event."""

    __tablename__ = "lifecycle_events"

    event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    dedup_key: Mapped[str] = mapped_column(
        String(512),
        unique=True,
        nullable=False,
    )
    entity_id: Mapped[str] = mapped_column(
        String(512),
        nullable=False,
        index=True,
    )
    kind: Mapped[EventKind] = mapped_column(
        SQLEnum(EventKind),
        nullable=False,
    )
    platform: Mapped[Platform] = mapped_column(
        SQLEnum(Platform),
        nullable=False,
    )
    source_token: Mapped[str] = mapped_column(
        String(512),
        nullable=False,
    )
    platform_notification_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    payload: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
    )
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    outcome: Mapped[Optional[EventOutcome]] = mapped_column(
        SQLEnum(EventOutcome),
        nullable=True,
    )
    outcome_detail: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
    )

    __table_args__ = (
        Index("idx_lifecycle_event_platform_occurred", "platform", "occurred_at"),
        Index("idx_lifecycle_event_kind", "kind", "occurred_at"),
    )

    def __repr__(self) -> str:
        return f"<LifecycleEventRecord(entity_id={self.entity_id}, kind={self.kind})>"

    def mark_processed(
        self,
        at: datetime,
        outcome: EventOutcome,
        detail: Optional[str] = None,
    ) -> None:
        """Set the processing outcome. Only allowed once."""
        if self.processed_at is not None:
            raise ValueError(f"event {self.event_id} already processed")
        self.processed_at = at
        self.outcome = outcome
        self.outcome_detail = detail[:500] if detail else None
