"""
Reconciliation Models
=====================

Write-once storage for reconciliation results.

Each run for a ``(result_date, platform)`` appends a new version; earlier
versions are never updated.
"""

from datetime import date, datetime
from enum import Enum
import uuid

from sqlalchemy import (
    Date,
    DateTime,
    Enum as SQLEnum,
    Index,
    Integer,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.models.event import Platform


class ReconciliationStatus(str, Enum):
    """Outcome of a reconciliation run."""
    MATCHED = "matched"
    PARTIAL_MATCH = "partial_match"
    MAJOR_DISCREPANCY = "major_discrepancy"
    FAILED = "failed"


class ReconciliationResultRecord(Base):
    """Stored reconciliation result version."""

    __tablename__ = "reconciliation_results"

    result_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    result_date: Mapped[date] = mapped_column(Date, nullable=False)
    platform: Mapped[Platform] = mapped_column(SQLEnum(Platform), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[ReconciliationStatus] = mapped_column(
        SQLEnum(ReconciliationStatus),
        nullable=False,
    )
    body: Mapped[dict] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("result_date", "platform", "version", name="uq_recon_result_version"),
        Index("idx_recon_result_platform_date", "platform", "result_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<ReconciliationResultRecord(date={self.result_date}, "
            f"platform={self.platform}, version={self.version})>"
        )
