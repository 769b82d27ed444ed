"""
Daily Aggregator Tests
======================
"""

from decimal import Decimal

import pytest

from app.models.event import Platform
from app.models.reconciliation import ReconciliationStatus
from app.schemas.reconciliation import ReconciliationResult
from app.schemas.settlement import SettlementSummary
from app.services.aggregator import DailyAggregator, overall_status, revenue_share
from tests.factories import DAY, NOW, fixed_clock

MATCHED = ReconciliationStatus.MATCHED
PARTIAL = ReconciliationStatus.PARTIAL_MATCH
MAJOR = ReconciliationStatus.MAJOR_DISCREPANCY
FAILED = ReconciliationStatus.FAILED


def _result(
    platform: Platform,
    status: ReconciliationStatus = MATCHED,
    gross: str = "0",
    transactions: int = 0,
    data_available: bool = True,
) -> ReconciliationResult:
    summary = SettlementSummary(
        platform=platform,
        settlement_date=DAY,
        total_transactions=transactions,
        gross_amount=Decimal(gross),
        fee_amount=Decimal(gross) * Decimal("0.15"),
        net_amount=Decimal(gross) * Decimal("0.85"),
        data_available=data_available,
    )
    return ReconciliationResult(
        result_date=DAY,
        platform=platform,
        status=status,
        settlement_summary=summary,
        match_rate=1.0 if data_available else 0.0,
        data_available=data_available,
        created_at=NOW,
    )


class TestOverallStatus:
    """Status precedence across platforms."""

    @pytest.mark.parametrize(
        "statuses,expected",
        [
            ([MATCHED, MATCHED], MATCHED),
            ([MATCHED, PARTIAL], PARTIAL),
            ([PARTIAL, MAJOR], MAJOR),
            ([MAJOR, FAILED], FAILED),
            ([MATCHED, FAILED], FAILED),
            ([MATCHED], MATCHED),
            ([], FAILED),
        ],
    )
    def test_precedence(self, statuses, expected):
        assert overall_status(statuses) == expected


class TestRevenueShare:
    def test_splits(self):
        assert revenue_share(Decimal("1"), Decimal("3")) == Decimal("33.33")
        assert revenue_share(Decimal("2"), Decimal("3")) == Decimal("66.67")

    def test_rounds_half_up(self):
        """0.125% rounds to 0.13, not to the even 0.12."""
        assert revenue_share(Decimal("0.00125"), Decimal("1")) == Decimal("0.13")
        assert revenue_share(Decimal("1"), Decimal("8"), places=0) == Decimal("13")

    def test_zero_total(self):
        assert revenue_share(Decimal("0"), Decimal("0")) == Decimal("0.00")


class TestBuildReport:
    @pytest.fixture
    def aggregator(self) -> DailyAggregator:
        return DailyAggregator(clock=fixed_clock)

    def test_totals_and_shares(self, aggregator):
        report = aggregator.build_report(
            DAY,
            [
                _result(Platform.GOOGLE_PLAY, gross="30.00", transactions=3),
                _result(Platform.APP_STORE, status=PARTIAL, gross="10.00", transactions=1),
            ],
        )

        assert report.overall_status == PARTIAL
        assert report.total_transactions == 4
        assert report.gross_amount == Decimal("40.00")
        shares = {e.platform: e.revenue_share for e in report.platforms}
        assert shares == {Platform.GOOGLE_PLAY: Decimal("75.00"), Platform.APP_STORE: Decimal("25.00")}
        assert report.generated_at == NOW

    def test_missing_platform_is_placeholder(self, aggregator):
        """A platform without a result does not drag the status down."""
        report = aggregator.build_report(DAY, [_result(Platform.GOOGLE_PLAY, gross="30.00")])

        entries = {e.platform: e for e in report.platforms}
        placeholder = entries[Platform.APP_STORE]
        assert report.overall_status == MATCHED
        assert placeholder.status is None
        assert not placeholder.data_available
        assert placeholder.gross_amount == Decimal("0")
        assert entries[Platform.GOOGLE_PLAY].revenue_share == Decimal("100.00")

    def test_failed_fetch_counts_in_status(self, aggregator):
        report = aggregator.build_report(
            DAY,
            [
                _result(Platform.GOOGLE_PLAY, gross="30.00"),
                _result(Platform.APP_STORE, status=FAILED, data_available=False),
            ],
        )

        entries = {e.platform: e for e in report.platforms}
        assert report.overall_status == FAILED
        assert entries[Platform.APP_STORE].status == FAILED
        assert not entries[Platform.APP_STORE].data_available
        assert entries[Platform.GOOGLE_PLAY].revenue_share == Decimal("100.00")

    def test_no_results(self, aggregator):
        report = aggregator.build_report(DAY, [])

        assert report.overall_status == FAILED
        assert len(report.platforms) == 2
        assert report.gross_amount == Decimal("0")
