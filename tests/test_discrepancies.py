"""
Discrepancy Analysis Tests
==========================

Classification, auto-resolution and severity of reconciliation residue.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import pytest

from app.core.labels import describe_discrepancy, describe_refund_reason, describe_resolution
from app.models.refund import RefundReason
from app.schemas.reconciliation import (
    Discrepancy,
    DiscrepancyKind,
    ResolutionMethod,
    Severity,
)
from app.services.discrepancies import AutoResolver, DiscrepancyAnalyzer, assess_severity
from app.services.matcher import ReconciliationMatcher
from tests.factories import NOW, fixed_clock, record, settlement


@pytest.fixture
def analyzer() -> DiscrepancyAnalyzer:
    return DiscrepancyAnalyzer(safe_confidence=0.9, clock=fixed_clock)


@pytest.fixture
def resolver() -> AutoResolver:
    return AutoResolver(clock=fixed_clock)


def _analyze(analyzer, settlements, records):
    return analyzer.analyze(ReconciliationMatcher().match(settlements, records))


def _discrepancy(kind: DiscrepancyKind, delta: str, reference: Optional[str] = None) -> Discrepancy:
    return Discrepancy(
        settlement_ref="s1",
        kind=kind,
        amount_delta=Decimal(delta),
        detected_at=NOW,
        reference_amount=Decimal(reference) if reference else None,
    )


class TestAnalyzer:
    """Matcher residue into discrepancies."""

    def test_clean_exact_match_has_none(self, analyzer):
        assert _analyze(analyzer, [settlement("s1", "GPA.1", "9.99")], [record("e1", "GPA.1", "9.99")]) == ()

    def test_amount_mismatch(self, analyzer):
        (found,) = _analyze(analyzer, [settlement("s1", "GPA.1", "10.49")], [record("e1", "GPA.1", "9.99")])

        assert found.kind == DiscrepancyKind.AMOUNT_MISMATCH
        assert found.amount_delta == Decimal("0.50")
        assert found.settlement_ref == "s1"
        assert found.event_ref == "e1"
        assert found.detected_at == NOW

    def test_low_confidence_pattern_is_timing_mismatch(self, analyzer):
        (found,) = _analyze(
            analyzer,
            [settlement("s1", "STL-1", "9.99")],
            [record("e1", "INT-1", "9.99", occurred_at=datetime(2026, 3, 8, 12, 0, tzinfo=timezone.utc))],
        )

        assert found.kind == DiscrepancyKind.TIMING_MISMATCH
        assert found.amount_delta == Decimal("0")
        assert found.confidence == pytest.approx(0.8)

    def test_missing_internal_event(self, analyzer):
        (found,) = _analyze(analyzer, [settlement("s1", "GPA.1", "9.99")], [])

        assert found.kind == DiscrepancyKind.MISSING_INTERNAL_EVENT
        assert found.amount_delta == Decimal("9.99")

    def test_missing_settlement_record(self, analyzer):
        (found,) = _analyze(analyzer, [], [record("e1", "GPA.1", "9.99")])

        assert found.kind == DiscrepancyKind.MISSING_SETTLEMENT_RECORD
        assert found.event_ref == "e1"
        assert found.amount_delta == Decimal("-9.99")

    def test_duplicate_candidate(self, analyzer):
        found = _analyze(
            analyzer,
            [settlement("s1", "GPA.1", "9.99"), settlement("s2", "GPA.1", "9.99")],
            [record("e1", "GPA.1", "9.99")],
        )

        assert [(d.settlement_ref, d.kind) for d in found] == [("s2", DiscrepancyKind.DUPLICATE_CANDIDATE)]

    def test_renewal_settled_against_purchase_is_event_type_mismatch(self, analyzer):
        (found,) = _analyze(
            analyzer,
            [settlement("s1", "GPA.1", "9.99", event_kind="renewal")],
            [record("e1", "GPA.1", "9.99")],
        )

        assert found.kind == DiscrepancyKind.EVENT_TYPE_MISMATCH
        assert found.settlement_ref == "s1"
        assert found.event_ref == "e1"
        assert found.amount_delta == Decimal("0")

    def test_event_type_and_amount_both_reported(self, analyzer):
        found = _analyze(
            analyzer,
            [settlement("s1", "GPA.1", "10.49", event_kind="renewal")],
            [record("e1", "GPA.1", "9.99")],
        )

        assert [d.kind for d in found] == [
            DiscrepancyKind.EVENT_TYPE_MISMATCH,
            DiscrepancyKind.AMOUNT_MISMATCH,
        ]

    def test_adjustment_rows_raise_nothing(self, analyzer):
        found = _analyze(
            analyzer,
            [
                settlement("tax", "GPA.1", "0.90", event_kind="tax_adjustment"),
                settlement("s1", "GPA.1", "9.99"),
            ],
            [record("e1", "GPA.1", "9.99")],
        )

        assert found == ()


class TestAutoResolver:
    """Deterministic resolution rules."""

    @pytest.mark.parametrize(
        "delta,reference,expected",
        [
            ("0.01", "9.99", True),
            ("-0.01", "9.99", True),
            ("0.02", "9.99", False),
            ("0.50", "1000.00", True),
            ("1.50", "1000.00", False),
            ("0.02", None, False),
        ],
    )
    def test_rounding_tolerance(self, resolver, delta, reference, expected):
        """Within 0.01 absolute or 0.1% of the reference amount."""
        reference_amount = Decimal(reference) if reference else None
        assert resolver.is_rounding_difference(Decimal(delta), reference_amount) is expected

    def test_resolves_by_rule(self, resolver):
        discrepancies = [
            _discrepancy(DiscrepancyKind.AMOUNT_MISMATCH, "0.01", "9.99"),
            _discrepancy(DiscrepancyKind.DUPLICATE_CANDIDATE, "9.99", "9.99"),
            _discrepancy(DiscrepancyKind.TIMING_MISMATCH, "0"),
            _discrepancy(DiscrepancyKind.AMOUNT_MISMATCH, "2.00", "9.99"),
            _discrepancy(DiscrepancyKind.MISSING_INTERNAL_EVENT, "9.99", "9.99"),
            _discrepancy(DiscrepancyKind.MISSING_SETTLEMENT_RECORD, "-9.99", "9.99"),
            _discrepancy(DiscrepancyKind.EVENT_TYPE_MISMATCH, "0", "9.99"),
        ]

        outcome = resolver.resolve(discrepancies)

        assert [r.method for r in outcome.resolved] == [
            ResolutionMethod.ROUNDING_DIFFERENCE,
            ResolutionMethod.DUPLICATE_SETTLEMENT_EXPORT,
            ResolutionMethod.SETTLEMENT_TIMING_LAG,
        ]
        assert [d.kind for d in outcome.unresolved] == [
            DiscrepancyKind.AMOUNT_MISMATCH,
            DiscrepancyKind.MISSING_INTERNAL_EVENT,
            DiscrepancyKind.MISSING_SETTLEMENT_RECORD,
            DiscrepancyKind.EVENT_TYPE_MISMATCH,
        ]

    def test_resolution_keeps_original(self, resolver):
        discrepancy = _discrepancy(DiscrepancyKind.TIMING_MISMATCH, "0")

        (resolved,) = resolver.resolve([discrepancy]).resolved

        assert resolved.discrepancy == discrepancy
        assert resolved.resolved_at == NOW
        assert resolved.description == describe_resolution(ResolutionMethod.SETTLEMENT_TIMING_LAG)


class TestSeverity:
    """Severity bands over unresolved discrepancies."""

    def test_low(self):
        assessment = assess_severity([_discrepancy(DiscrepancyKind.AMOUNT_MISMATCH, "2.00")], 0.99)

        assert assessment.severity == Severity.LOW
        assert not assessment.alert_required
        assert assessment.unresolved_amount == Decimal("2.00")

    def test_medium_on_count(self):
        unresolved = [_discrepancy(DiscrepancyKind.MISSING_INTERNAL_EVENT, "1.00")] * 10

        assessment = assess_severity(unresolved, 0.99)

        assert assessment.severity == Severity.MEDIUM
        assert not assessment.alert_required

    def test_high_on_match_rate(self):
        assessment = assess_severity([], 0.80)

        assert assessment.severity == Severity.HIGH
        assert assessment.alert_required

    def test_critical_on_amount(self):
        """Absolute deltas add up whatever their sign."""
        unresolved = [
            _discrepancy(DiscrepancyKind.MISSING_INTERNAL_EVENT, "600.00"),
            _discrepancy(DiscrepancyKind.MISSING_SETTLEMENT_RECORD, "-400.00"),
        ]

        assessment = assess_severity(unresolved, 0.5)

        assert assessment.severity == Severity.CRITICAL
        assert assessment.alert_required
        assert assessment.unresolved_amount == Decimal("1000.00")
        assert len(assessment.reasons) == 2


class TestLabels:
    def test_every_kind_has_a_label(self):
        for kind in DiscrepancyKind:
            assert describe_discrepancy(kind) != kind.value

    def test_every_refund_reason_has_a_label(self):
        assert describe_refund_reason(RefundReason.BILLING_ERROR) == "Billing error"
        for reason in RefundReason:
            assert describe_refund_reason(reason) != reason.value
