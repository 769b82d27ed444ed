"""
Reconciliation Service
======================

Daily reconciliation entry point for one (date, platform):

    fetch rows -> collect -> load internal records -> match
    -> analyze -> auto-resolve -> status -> append result

Runs for the same (date, platform) never interleave. Each run appends a
new result version; earlier versions are never modified.
"""

import logging
import time
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict

from app.config import Settings
from app.core.errors import AuthorizationError, PlatformServiceError
from app.models.event import Platform
from app.models.payment import PaymentStatus
from app.models.reconciliation import ReconciliationStatus
from app.models.refund import RefundStatus
from app.repositories.base import (
    PaymentRepository,
    RefundRepository,
    ReconciliationResultRepository,
)
from app.schemas.reconciliation import (
    DailyReport,
    InternalRecord,
    InternalRecordKind,
    ReconciliationResult,
    TrendDirection,
    TrendReport,
)
from app.schemas.settlement import SettlementSummary
from app.services.aggregator import DailyAggregator
from app.services.discrepancies import AutoResolver, DiscrepancyAnalyzer, assess_severity
from app.services.locks import EntityLock, KeyedLock
from app.services.matcher import ReconciliationMatcher
from app.services.platforms import PlatformAdapter
from app.services.settlement import SettlementCollector
from app.utils.helpers import day_bounds, utc_now

logger = logging.getLogger(__name__)

# Payments in these states were charged and should appear in a settlement
SETTLED_PAYMENT_STATUSES = frozenset({
    PaymentStatus.SUCCESS,
    PaymentStatus.REFUNDED,
    PaymentStatus.PARTIALLY_REFUNDED,
    PaymentStatus.DISPUTED,
})

TREND_WINDOW = 3
TREND_THRESHOLD = 0.05


class StatusThresholds(BaseModel):
    """Bands for per-platform status and severity."""

    model_config = ConfigDict(frozen=True)

    partial_match_rate: float = 0.95
    partial_max_unresolved: int = 2
    major_match_rate: float = 0.80
    critical_amount: Decimal = Decimal("1000.00")
    critical_count: int = 10
    critical_match_rate: float = 0.85

    @classmethod
    def from_settings(cls, settings: Settings) -> "StatusThresholds":
        return cls(
            partial_match_rate=settings.RECON_PARTIAL_MATCH_RATE,
            partial_max_unresolved=settings.RECON_PARTIAL_MAX_UNRESOLVED,
            major_match_rate=settings.RECON_MAJOR_MATCH_RATE,
            critical_amount=settings.RECON_CRITICAL_AMOUNT,
            critical_count=settings.RECON_CRITICAL_COUNT,
            critical_match_rate=settings.RECON_CRITICAL_MATCH_RATE,
        )

    def status_for(self, match_rate: float, unresolved: int) -> ReconciliationStatus:
        if match_rate >= 1.0 and unresolved == 0:
            return ReconciliationStatus.MATCHED
        if match_rate >= self.partial_match_rate and unresolved <= self.partial_max_unresolved:
            return ReconciliationStatus.PARTIAL_MATCH
        if match_rate >= self.major_match_rate:
            return ReconciliationStatus.MAJOR_DISCREPANCY
        return ReconciliationStatus.FAILED


class ReconciliationService:
    """Runs and reports daily reconciliation."""

    def __init__(
        self,
        results: ReconciliationResultRepository,
        payments: PaymentRepository,
        refunds: RefundRepository,
        adapters: Mapping[Platform, PlatformAdapter],
        collector: Optional[SettlementCollector] = None,
        matcher: Optional[ReconciliationMatcher] = None,
        analyzer: Optional[DiscrepancyAnalyzer] = None,
        resolver: Optional[AutoResolver] = None,
        aggregator: Optional[DailyAggregator] = None,
        thresholds: Optional[StatusThresholds] = None,
        locks: Optional[EntityLock] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.results = results
        self.payments = payments
        self.refunds = refunds
        self.adapters = adapters
        self.collector = collector or SettlementCollector()
        self.matcher = matcher or ReconciliationMatcher()
        self.analyzer = analyzer or DiscrepancyAnalyzer(
            safe_confidence=self.matcher.policy.safe_confidence, clock=clock
        )
        self.resolver = resolver or AutoResolver(clock=clock)
        self.aggregator = aggregator or DailyAggregator(clock=clock)
        self.thresholds = thresholds or StatusThresholds()
        self.locks = locks or KeyedLock()
        self.clock = clock

    # =========================================================================
    # Run
    # =========================================================================

    async def run(
        self,
        result_date: date,
        platform: Platform,
        rows: Optional[Sequence[Any]] = None,
    ) -> ReconciliationResult:
        """
        Reconcile one platform for one day.

        Args:
            result_date: Settlement day
            platform: Platform to reconcile
            rows: Raw settlement rows; fetched from the platform when None

        Returns:
            The stored result, with its version
        """
        started = time.monotonic()

        async with self.locks.hold(f"recon:{result_date.isoformat()}:{platform.value}"):
            logger.info("Reconciliation started: date=%s platform=%s", result_date, platform.value)

            if rows is None:
                try:
                    rows = await self._fetch(result_date, platform)
                except (PlatformServiceError, AuthorizationError) as exc:
                    logger.error(
                        "Settlement fetch failed: date=%s platform=%s error=%s",
                        result_date,
                        platform.value,
                        exc.message,
                    )
                    return await self.results.append(
                        self._failed_result(result_date, platform, exc.message, started)
                    )

            collection = self.collector.collect(result_date, platform, rows)
            summary = self.collector.summarize(result_date, platform, collection.records)
            records = await self._internal_records(result_date, platform)

            outcome = self.matcher.match(collection.records, records)
            discrepancies = self.analyzer.analyze(outcome)
            resolution = self.resolver.resolve(discrepancies)

            largest_side = max(outcome.matchable_settlement_count, len(records))
            match_rate = len(outcome.matches) / largest_side if largest_side else 1.0
            unresolved = resolution.unresolved
            status = self.thresholds.status_for(match_rate, len(unresolved))

            result = ReconciliationResult(
                result_date=result_date,
                platform=platform,
                status=status,
                matched=outcome.matches,
                unmatched_settlements=outcome.unmatched_settlements,
                unmatched_events=outcome.unmatched_events,
                discrepancies=discrepancies,
                resolved=resolution.resolved,
                unresolved=unresolved,
                skipped_rows=collection.skipped,
                settlement_summary=summary,
                match_rate=round(match_rate, 4),
                auto_resolution_rate=(
                    round(len(resolution.resolved) / len(discrepancies), 4)
                    if discrepancies else 1.0
                ),
                severity=assess_severity(
                    unresolved,
                    match_rate,
                    critical_amount=self.thresholds.critical_amount,
                    critical_count=self.thresholds.critical_count,
                    critical_match_rate=self.thresholds.critical_match_rate,
                ),
                data_available=True,
                processing_time_ms=int((time.monotonic() - started) * 1000),
                created_at=self.clock(),
            )
            stored = await self.results.append(result)

        logger.info(
            "Reconciliation complete: date=%s platform=%s version=%d status=%s "
            "match_rate=%.4f unresolved=%d skipped=%d",
            result_date,
            platform.value,
            stored.version,
            stored.status.value,
            stored.match_rate,
            len(stored.unresolved),
            len(stored.skipped_rows),
        )
        if stored.severity is not None and stored.severity.alert_required:
            logger.warning(
                "Reconciliation needs attention: date=%s platform=%s severity=%s reasons=%s",
                result_date,
                platform.value,
                stored.severity.severity.value,
                "; ".join(stored.severity.reasons),
            )
        return stored

    async def _fetch(self, result_date: date, platform: Platform) -> list[dict[str, Any]]:
        adapter = self.adapters.get(platform)
        if adapter is None:
            raise PlatformServiceError(f"No adapter configured for {platform.value}")
        return await adapter.fetch_settlement(result_date, result_date)

    def _failed_result(
        self,
        result_date: date,
        platform: Platform,
        error: str,
        started: float,
    ) -> ReconciliationResult:
        return ReconciliationResult(
            result_date=result_date,
            platform=platform,
            status=ReconciliationStatus.FAILED,
            settlement_summary=SettlementSummary.placeholder(platform, result_date),
            match_rate=0.0,
            auto_resolution_rate=0.0,
            data_available=False,
            errors=(error,),
            processing_time_ms=int((time.monotonic() - started) * 1000),
            created_at=self.clock(),
        )

    async def _internal_records(
        self,
        result_date: date,
        platform: Platform,
    ) -> list[InternalRecord]:
        """Charges made and refunds completed on ``result_date``."""
        start, end = day_bounds(result_date)
        records: list[InternalRecord] = []

        for payment in await self.payments.find_by_date_range(platform, start, end):
            if payment.status not in SETTLED_PAYMENT_STATUSES:
                continue
            records.append(
                InternalRecord(
                    event_ref=str(payment.payment_id),
                    transaction_ref=payment.transaction_ref,
                    product_ref=payment.product_ref,
                    amount=payment.amount,
                    currency=payment.currency,
                    kind=(
                        InternalRecordKind.RENEWAL
                        if payment.is_renewal
                        else InternalRecordKind.PURCHASE
                    ),
                    occurred_at=payment.payment_at,
                )
            )

        for refund in await self.refunds.find_by_date_range(platform, start, end):
            if refund.status != RefundStatus.COMPLETED:
                continue
            payment = await self.payments.find_by_id(refund.payment_id)
            records.append(
                InternalRecord(
                    event_ref=str(refund.refund_id),
                    transaction_ref=refund.platform_refund_ref or refund.original_transaction_ref,
                    original_transaction_ref=refund.original_transaction_ref,
                    product_ref=payment.product_ref if payment is not None else "",
                    amount=-refund.amount,
                    currency=refund.currency,
                    kind=InternalRecordKind.REFUND,
                    occurred_at=refund.completed_at,
                )
            )

        return records

    # =========================================================================
    # Reporting
    # =========================================================================

    async def build_daily_report(self, report_date: date) -> DailyReport:
        results = []
        for platform in self.aggregator.platforms:
            latest = await self.results.find_latest(report_date, platform)
            if latest is not None:
                results.append(latest)
        return self.aggregator.build_report(report_date, results)

    async def trend(self, platform: Platform, days: int = 30) -> TrendReport:
        """
        Compare the average match rate of the latest runs with the ones
        before them.
        """
        end = self.clock().date()
        start = end - timedelta(days=days)
        results = await self.results.find_by_date_range(start, end, platform)
        rates = [
            r.match_rate
            for r in sorted(results, key=lambda r: r.result_date)
            if r.data_available
        ]

        if len(rates) < TREND_WINDOW * 2:
            return TrendReport(
                platform=platform,
                direction=TrendDirection.INSUFFICIENT_DATA,
                runs_considered=len(rates),
            )

        recent = rates[-TREND_WINDOW:]
        previous = rates[-TREND_WINDOW * 2:-TREND_WINDOW]
        recent_average = sum(recent) / TREND_WINDOW
        previous_average = sum(previous) / TREND_WINDOW
        change = recent_average - previous_average

        if change > TREND_THRESHOLD:
            direction = TrendDirection.IMPROVING
        elif change < -TREND_THRESHOLD:
            direction = TrendDirection.DEGRADING
        else:
            direction = TrendDirection.STABLE

        return TrendReport(
            platform=platform,
            direction=direction,
            recent_average=round(recent_average, 4),
            previous_average=round(previous_average, 4),
            runs_considered=len(rates),
        )
