"""
Reconciliation Matcher Tests
============================

Exact and pattern matching of settlement rows against internal records.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from app.schemas.reconciliation import InternalRecordKind, MatchType
from app.services.matcher import MatchingPolicy, ReconciliationMatcher
from tests.factories import record, settlement


@pytest.fixture
def matcher() -> ReconciliationMatcher:
    return ReconciliationMatcher(MatchingPolicy())


def _buckets(outcome):
    """Every input id, by bucket."""
    return (
        sorted(m.settlement.id for m in outcome.matches),
        sorted(s.id for s in outcome.unmatched_settlements),
        sorted(r.event_ref for r in outcome.unmatched_events),
    )


class TestExactPhase:
    """Matching on transaction ref."""

    def test_same_ref_matches_exactly(self, matcher):
        outcome = matcher.match(
            [settlement("s1", "GPA.1", "9.99")],
            [record("e1", "GPA.1", "9.99")],
        )

        assert len(outcome.matches) == 1
        match = outcome.matches[0]
        assert match.match_type == MatchType.EXACT
        assert match.confidence is None
        assert match.amount_delta == Decimal("0")

    def test_exact_match_ignores_amount_difference(self, matcher):
        """A shared ref pairs the two sides whatever the amounts."""
        outcome = matcher.match(
            [settlement("s1", "GPA.1", "12.00")],
            [record("e1", "GPA.1", "9.99")],
        )

        assert outcome.matches[0].match_type == MatchType.EXACT
        assert outcome.matches[0].amount_delta == Decimal("2.01")

    def test_second_row_for_consumed_ref_is_duplicate(self, matcher):
        outcome = matcher.match(
            [settlement("s1", "GPA.1", "9.99"), settlement("s2", "GPA.1", "9.99")],
            [record("e1", "GPA.1", "9.99")],
        )

        assert [m.settlement.id for m in outcome.matches] == ["s1"]
        assert [s.id for s in outcome.unmatched_settlements] == ["s2"]
        assert outcome.duplicate_settlement_ids == frozenset({"s2"})

    def test_duplicate_never_pattern_matched(self, matcher):
        """A spare record that fits the duplicate row stays unmatched."""
        outcome = matcher.match(
            [settlement("s1", "GPA.1", "9.99"), settlement("s2", "GPA.1", "9.99")],
            [record("e1", "GPA.1", "9.99"), record("e2", None, "9.99")],
        )

        assert _buckets(outcome) == (["s1"], ["s2"], ["e2"])

    def test_charge_and_refund_with_same_ref_pair_separately(self, matcher):
        outcome = matcher.match(
            [
                settlement("s1", "GPA.1", "9.99"),
                settlement("s2", "GPA.1", "-9.99", event_kind="refund"),
            ],
            [
                record("e1", "GPA.1", "9.99"),
                record("r1", "GPA.1", "-9.99", kind=InternalRecordKind.REFUND),
            ],
        )

        pairs = {(m.settlement.id, m.record.event_ref) for m in outcome.matches}
        assert pairs == {("s1", "e1"), ("s2", "r1")}
        assert outcome.duplicate_settlement_ids == frozenset()

    def test_event_type_disagreement_still_pairs_on_ref(self, matcher):
        """The analyzer, not the matcher, reports a renewal settled against a purchase."""
        outcome = matcher.match(
            [settlement("s1", "GPA.1", "9.99", event_kind="renewal")],
            [record("e1", "GPA.1", "9.99")],
        )

        match = outcome.matches[0]
        assert match.match_type == MatchType.EXACT
        assert not match.event_types_agree

    def test_chargeback_pairs_with_refund_record(self, matcher):
        outcome = matcher.match(
            [settlement("s1", "GPA.1", "-9.99", event_kind="chargeback")],
            [record("r1", "GPA.1", "-9.99", kind=InternalRecordKind.REFUND)],
        )

        assert outcome.matches[0].event_types_agree


class TestPatternPhase:
    """Scoring of leftovers without a shared ref."""

    def test_same_day_same_amount_full_confidence(self, matcher):
        outcome = matcher.match(
            [settlement("s1", "STL-1", "9.99")],
            [record("e1", "INT-1", "9.99")],
        )

        match = outcome.matches[0]
        assert match.match_type == MatchType.PATTERN
        assert match.confidence == 1.0

    def test_one_day_apart_scores_lower(self, matcher):
        outcome = matcher.match(
            [settlement("s1", "STL-1", "9.99")],
            [record("e1", "INT-1", "9.99", occurred_at=datetime(2026, 3, 8, 23, 0, tzinfo=timezone.utc))],
        )

        assert outcome.matches[0].confidence == pytest.approx(0.8)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"amount": "10.10"},
            {"product_ref": "premium_yearly"},
            {"currency": "EUR"},
            {"occurred_at": datetime(2026, 3, 6, 12, 0, tzinfo=timezone.utc)},
            {"kind": InternalRecordKind.REFUND},
            {"kind": InternalRecordKind.RENEWAL},
        ],
    )
    def test_not_a_candidate(self, matcher, overrides):
        amount = overrides.pop("amount", "9.99")
        outcome = matcher.match([settlement("s1", "STL-1", "9.99")], [record("e1", "INT-1", amount, **overrides)])

        assert outcome.matches == ()
        assert _buckets(outcome) == ([], ["s1"], ["e1"])

    def test_best_confidence_wins(self, matcher):
        """The closer record takes the row; the other stays unmatched."""
        outcome = matcher.match(
            [settlement("s1", "STL-1", "9.99")],
            [
                record("far", "INT-1", "9.99", occurred_at=datetime(2026, 3, 8, 9, 0, tzinfo=timezone.utc)),
                record("near", "INT-2", "9.99"),
            ],
        )

        assert outcome.matches[0].record.event_ref == "near"
        assert [r.event_ref for r in outcome.unmatched_events] == ["far"]

    def test_ties_go_to_earliest_record(self, matcher):
        outcome = matcher.match(
            [settlement("s1", "STL-1", "9.99")],
            [
                record("later", "INT-1", "9.99", occurred_at=datetime(2026, 3, 9, 18, 0, tzinfo=timezone.utc)),
                record("earlier", "INT-2", "9.99", occurred_at=datetime(2026, 3, 9, 6, 0, tzinfo=timezone.utc)),
            ],
        )

        assert outcome.matches[0].record.event_ref == "earlier"

    def test_exact_takes_precedence_over_pattern(self, matcher):
        outcome = matcher.match(
            [settlement("s1", "GPA.1", "9.99")],
            [record("pattern", "INT-1", "9.99"), record("exact", "GPA.1", "9.98")],
        )

        assert outcome.matches[0].record.event_ref == "exact"
        assert outcome.matches[0].match_type == MatchType.EXACT

    def test_custom_policy(self):
        strict = ReconciliationMatcher(MatchingPolicy(min_confidence=0.95))

        outcome = strict.match(
            [settlement("s1", "STL-1", "9.99")],
            [record("e1", "INT-1", "9.99", occurred_at=datetime(2026, 3, 8, 12, 0, tzinfo=timezone.utc))],
        )

        assert outcome.matches == ()


class TestAdjustments:
    """Tax and fee adjustment rows are set aside, never matched."""

    def test_adjustment_sharing_ref_does_not_take_the_purchase(self, matcher):
        outcome = matcher.match(
            [
                settlement("tax", "GPA.1", "0.90", event_kind="tax_adjustment"),
                settlement("s1", "GPA.1", "9.99"),
            ],
            [record("e1", "GPA.1", "9.99")],
        )

        assert [(m.settlement.id, m.record.event_ref) for m in outcome.matches] == [("s1", "e1")]
        assert outcome.matches[0].amount_delta == Decimal("0")
        assert outcome.unmatched_settlements == ()
        assert outcome.duplicate_settlement_ids == frozenset()
        assert [s.id for s in outcome.adjustments] == ["tax"]
        assert outcome.matchable_settlement_count == 1

    def test_adjustment_never_pattern_matched(self, matcher):
        outcome = matcher.match(
            [settlement("fee", "STL-9", "9.99", event_kind="fee_adjustment")],
            [record("e1", "INT-1", "9.99")],
        )

        assert outcome.matches == ()
        assert _buckets(outcome) == ([], [], ["e1"])
        assert [s.id for s in outcome.adjustments] == ["fee"]


class TestCompleteness:
    def test_every_input_lands_in_one_bucket(self, matcher):
        settlements = [
            settlement("s1", "GPA.1", "9.99"),
            settlement("s2", "GPA.1", "9.99"),
            settlement("s3", "STL-3", "4.99", product_ref="coins"),
            settlement("s4", "STL-4", "19.99"),
            settlement("s5", "GPA.1", "-0.30", event_kind="fee_adjustment"),
        ]
        records = [
            record("e1", "GPA.1", "9.99"),
            record("e3", "INT-3", "4.99", product_ref="coins"),
            record("e5", "INT-5", "1.99"),
        ]

        outcome = matcher.match(settlements, records)
        matched, unmatched_settlements, unmatched_events = _buckets(outcome)

        adjustments = [s.id for s in outcome.adjustments]
        assert sorted(matched + unmatched_settlements + adjustments) == ["s1", "s2", "s3", "s4", "s5"]
        assert sorted([m.record.event_ref for m in outcome.matches] + unmatched_events) == ["e1", "e3", "e5"]
        assert unmatched_settlements == ["s2", "s4"]

    def test_empty_inputs(self, matcher):
        outcome = matcher.match([], [])

        assert outcome.matches == ()
        assert outcome.unmatched_settlements == ()
        assert outcome.unmatched_events == ()
        assert outcome.adjustments == ()
