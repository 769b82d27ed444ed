"""
Reconciliation Schemas
======================

Value objects produced by the daily reconciliation pipeline:
matches, discrepancies, per-platform results and the cross-platform
daily report. All of them are frozen once built.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field

from app.models.event import Platform
from app.models.reconciliation import ReconciliationStatus
from app.schemas.settlement import (
    SettlementEventKind,
    SettlementRecord,
    SettlementSummary,
    SkippedRow,
)


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ─── Internal side ───────────────────────────────────────────────────────────


class InternalRecordKind(str, Enum):
    """Event type of an internally recorded money movement."""

    PURCHASE = "purchase"
    RENEWAL = "renewal"
    REFUND = "refund"

    @property
    def is_refund(self) -> bool:
        return self == InternalRecordKind.REFUND


_SETTLEMENT_KINDS: dict[SettlementEventKind, InternalRecordKind] = {
    SettlementEventKind.PURCHASE: InternalRecordKind.PURCHASE,
    SettlementEventKind.RENEWAL: InternalRecordKind.RENEWAL,
    SettlementEventKind.REFUND: InternalRecordKind.REFUND,
    SettlementEventKind.CHARGEBACK: InternalRecordKind.REFUND,
}


def record_kind_for(event_kind: SettlementEventKind) -> Optional[InternalRecordKind]:
    """Internal event type a settlement row should match; None for adjustments."""
    return _SETTLEMENT_KINDS.get(event_kind)


class InternalRecord(_Frozen):
    """Internally recorded payment or refund, as seen by the matcher."""

    event_ref: str
    transaction_ref: Optional[str] = None
    original_transaction_ref: Optional[str] = None
    product_ref: str = ""
    amount: Decimal
    currency: str
    kind: InternalRecordKind = InternalRecordKind.PURCHASE
    occurred_at: datetime


# ─── Matching ────────────────────────────────────────────────────────────────


class MatchType(str, Enum):
    EXACT = "exact"
    PATTERN = "pattern"


class ReconciliationMatch(_Frozen):
    """A settlement row paired with an internal record."""

    settlement: SettlementRecord
    record: InternalRecord
    match_type: MatchType
    confidence: Optional[float] = Field(
        default=None,
        description="Only set for pattern matches",
    )

    @property
    def amount_delta(self) -> Decimal:
        return self.settlement.gross_amount - self.record.amount

    @property
    def event_types_agree(self) -> bool:
        return record_kind_for(self.settlement.event_kind) == self.record.kind


class MatchOutcome(_Frozen):
    """Matcher output. Every input lands in exactly one bucket."""

    matches: tuple[ReconciliationMatch, ...] = ()
    unmatched_settlements: tuple[SettlementRecord, ...] = ()
    unmatched_events: tuple[InternalRecord, ...] = ()
    adjustments: tuple[SettlementRecord, ...] = Field(
        default=(),
        description="Tax and fee adjustment rows; summarized, never matched",
    )
    duplicate_settlement_ids: frozenset[str] = frozenset()

    @property
    def matchable_settlement_count(self) -> int:
        return len(self.matches) + len(self.unmatched_settlements)


# ─── Discrepancies ───────────────────────────────────────────────────────────


class DiscrepancyKind(str, Enum):
    MISSING_INTERNAL_EVENT = "missing_internal_event"
    MISSING_SETTLEMENT_RECORD = "missing_settlement_record"
    AMOUNT_MISMATCH = "amount_mismatch"
    DUPLICATE_CANDIDATE = "duplicate_candidate"
    TIMING_MISMATCH = "timing_mismatch"
    EVENT_TYPE_MISMATCH = "event_type_mismatch"


class Discrepancy(_Frozen):
    settlement_ref: Optional[str] = None
    event_ref: Optional[str] = None
    kind: DiscrepancyKind
    amount_delta: Decimal = Decimal("0")
    detected_at: datetime
    confidence: Optional[float] = None
    reference_amount: Optional[Decimal] = Field(
        default=None,
        description="Amount the delta is measured against",
    )


class ResolutionMethod(str, Enum):
    ROUNDING_DIFFERENCE = "rounding_difference"
    DUPLICATE_SETTLEMENT_EXPORT = "duplicate_settlement_export"
    SETTLEMENT_TIMING_LAG = "settlement_timing_lag"


class ResolvedDiscrepancy(_Frozen):
    discrepancy: Discrepancy
    method: ResolutionMethod
    description: str
    resolved_at: datetime


class ResolutionOutcome(_Frozen):
    resolved: tuple[ResolvedDiscrepancy, ...] = ()
    unresolved: tuple[Discrepancy, ...] = ()


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SeverityAssessment(_Frozen):
    severity: Severity
    alert_required: bool
    unresolved_count: int
    unresolved_amount: Decimal
    reasons: tuple[str, ...] = ()


# ─── Results and reports ─────────────────────────────────────────────────────


class ReconciliationResult(_Frozen):
    """
    Finalized result of one reconciliation run for a (date, platform).

    Re-runs produce a new result with a higher ``version``.
    """

    run_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    version: int = 1
    result_date: date
    platform: Platform
    status: ReconciliationStatus
    matched: tuple[ReconciliationMatch, ...] = ()
    unmatched_settlements: tuple[SettlementRecord, ...] = ()
    unmatched_events: tuple[InternalRecord, ...] = ()
    discrepancies: tuple[Discrepancy, ...] = ()
    resolved: tuple[ResolvedDiscrepancy, ...] = ()
    unresolved: tuple[Discrepancy, ...] = ()
    skipped_rows: tuple[SkippedRow, ...] = ()
    settlement_summary: SettlementSummary
    match_rate: float = 0.0
    auto_resolution_rate: float = 1.0
    severity: Optional[SeverityAssessment] = None
    data_available: bool = True
    errors: tuple[str, ...] = ()
    processing_time_ms: int = 0
    created_at: datetime


class PlatformReportEntry(_Frozen):
    platform: Platform
    status: Optional[ReconciliationStatus] = None
    data_available: bool = True
    total_transactions: int = 0
    gross_amount: Decimal = Decimal("0")
    fee_amount: Decimal = Decimal("0")
    net_amount: Decimal = Decimal("0")
    revenue_share: Decimal = Decimal("0")
    match_rate: float = 0.0
    unresolved_count: int = 0


class DailyReport(_Frozen):
    """Cross-platform daily reconciliation report."""

    report_date: date
    overall_status: ReconciliationStatus
    platforms: tuple[PlatformReportEntry, ...] = ()
    total_transactions: int = 0
    gross_amount: Decimal = Decimal("0")
    fee_amount: Decimal = Decimal("0")
    net_amount: Decimal = Decimal("0")
    generated_at: datetime


class TrendDirection(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DEGRADING = "degrading"
    INSUFFICIENT_DATA = "insufficient_data"


class TrendReport(_Frozen):
    platform: Platform
    direction: TrendDirection
    recent_average: Optional[float] = None
    previous_average: Optional[float] = None
    runs_considered: int = 0
