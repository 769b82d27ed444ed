"""
Daily Aggregator
================

Folds per-platform reconciliation results into one cross-platform report.

Overall status precedence:
    all Matched -> Matched
    any Failed -> Failed
    any MajorDiscrepancy -> MajorDiscrepancy
    otherwise -> PartialMatch

Platforms without a result appear as zero-filled placeholders flagged
with ``data_available=False`` and take no part in the status. A run that
failed to fetch its data is also zero-filled, but its Failed status counts.
"""

import logging
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable, Optional, Sequence

from app.models.event import Platform
from app.models.reconciliation import ReconciliationStatus
from app.schemas.reconciliation import DailyReport, PlatformReportEntry, ReconciliationResult
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)


def overall_status(statuses: Iterable[ReconciliationStatus]) -> ReconciliationStatus:
    statuses = list(statuses)
    if not statuses:
        return ReconciliationStatus.FAILED
    if all(s == ReconciliationStatus.MATCHED for s in statuses):
        return ReconciliationStatus.MATCHED
    if ReconciliationStatus.FAILED in statuses:
        return ReconciliationStatus.FAILED
    if ReconciliationStatus.MAJOR_DISCREPANCY in statuses:
        return ReconciliationStatus.MAJOR_DISCREPANCY
    return ReconciliationStatus.PARTIAL_MATCH


def revenue_share(part: Decimal, total: Decimal, places: int = 2) -> Decimal:
    """Percentage of ``total`` held by ``part``, rounded half-up."""
    quantum = Decimal(1).scaleb(-places)
    if total == 0:
        return Decimal(0).quantize(quantum)
    return (part / total * 100).quantize(quantum, rounding=ROUND_HALF_UP)


class DailyAggregator:
    """Builds the cross-platform daily report."""

    def __init__(
        self,
        platforms: Sequence[Platform] = tuple(Platform),
        share_places: int = 2,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.platforms = tuple(platforms)
        self.share_places = share_places
        self.clock = clock

    def build_report(
        self,
        report_date: date,
        results: Iterable[ReconciliationResult],
    ) -> DailyReport:
        """
        Args:
            report_date: Day being reported
            results: Latest result per platform; missing platforms become
                placeholders

        Returns:
            DailyReport with totals, per-platform shares and overall status
        """
        by_platform: dict[Platform, Optional[ReconciliationResult]] = {
            p: None for p in self.platforms
        }
        for result in results:
            by_platform[result.platform] = result

        available = [
            r for r in by_platform.values()
            if r is not None and r.data_available
        ]
        total_gross = sum(
            (r.settlement_summary.gross_amount for r in available), Decimal("0")
        )

        entries = []
        for platform, result in by_platform.items():
            if result is None or not result.data_available:
                entries.append(
                    PlatformReportEntry(
                        platform=platform,
                        status=result.status if result is not None else None,
                        data_available=False,
                    )
                )
                continue

            summary = result.settlement_summary
            entries.append(
                PlatformReportEntry(
                    platform=platform,
                    status=result.status,
                    data_available=True,
                    total_transactions=summary.total_transactions,
                    gross_amount=summary.gross_amount,
                    fee_amount=summary.fee_amount,
                    net_amount=summary.net_amount,
                    revenue_share=revenue_share(summary.gross_amount, total_gross, self.share_places),
                    match_rate=result.match_rate,
                    unresolved_count=len(result.unresolved),
                )
            )

        reported = [r for r in by_platform.values() if r is not None]
        status = overall_status(r.status for r in reported)
        if not available:
            logger.warning("No reconciliation data for %s", report_date)

        return DailyReport(
            report_date=report_date,
            overall_status=status,
            platforms=tuple(entries),
            total_transactions=sum(e.total_transactions for e in entries),
            gross_amount=total_gross,
            fee_amount=sum((e.fee_amount for e in entries), Decimal("0")),
            net_amount=sum((e.net_amount for e in entries), Decimal("0")),
            generated_at=self.clock(),
        )
