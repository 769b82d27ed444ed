"""
Reconciliation Matcher
======================

Pairs settlement rows with internally recorded payments and refunds for
one (date, platform), in two phases:

1. Exact: same transaction ref and direction. Each row and each record is
   used at most once. A row whose ref was already consumed by another row
   is a duplicate and never reaches phase 2. Purchase and renewal are not
   told apart here; the analyzer flags pairs whose event types disagree.
2. Pattern: over what is left, candidate pairs with the same product,
   currency and event type whose amounts and dates fall within the policy
   tolerances are scored and accepted greedily, best confidence first.

Tax and fee adjustment rows carry no customer transaction and are set
aside before either phase.

Every input ends up in exactly one of matches, unmatched_settlements,
unmatched_events or adjustments.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from pydantic import BaseModel, ConfigDict

from app.config import Settings
from app.schemas.reconciliation import (
    InternalRecord,
    MatchOutcome,
    MatchType,
    ReconciliationMatch,
    record_kind_for,
)
from app.schemas.settlement import SettlementRecord

logger = logging.getLogger(__name__)


class MatchingPolicy(BaseModel):
    """Tolerances and weights for pattern matching."""

    model_config = ConfigDict(frozen=True)

    amount_tolerance: Decimal = Decimal("0.05")
    date_window_days: int = 1
    amount_weight: float = 0.6
    date_weight: float = 0.4
    min_confidence: float = 0.7
    safe_confidence: float = 0.9

    @classmethod
    def from_settings(cls, settings: Settings) -> "MatchingPolicy":
        return cls(
            amount_tolerance=settings.RECON_AMOUNT_TOLERANCE,
            date_window_days=settings.RECON_DATE_WINDOW_DAYS,
            amount_weight=settings.RECON_AMOUNT_WEIGHT,
            date_weight=settings.RECON_DATE_WEIGHT,
            min_confidence=settings.RECON_MIN_CONFIDENCE,
            safe_confidence=settings.RECON_SAFE_CONFIDENCE,
        )


def _is_refund_row(settlement: SettlementRecord) -> bool:
    return settlement.event_kind.is_reversal


def _is_refund_record(record: InternalRecord) -> bool:
    return record.kind.is_refund


class ReconciliationMatcher:
    """Two-phase settlement matcher."""

    def __init__(self, policy: Optional[MatchingPolicy] = None):
        self.policy = policy or MatchingPolicy()

    def match(
        self,
        settlements: Sequence[SettlementRecord],
        records: Sequence[InternalRecord],
    ) -> MatchOutcome:
        """
        Match settlement rows against internal records.

        Args:
            settlements: Normalized settlement rows for the day
            records: Internal payments and refunds for the day

        Returns:
            MatchOutcome with matches, both unmatched lists and the ids of
            rows treated as duplicate exports
        """
        matches: list[ReconciliationMatch] = []
        claimed_records: set[int] = set()
        leftover_settlements: list[int] = []
        duplicate_ids: set[str] = set()
        duplicate_indexes: set[int] = set()
        adjustment_indexes = {
            i for i, s in enumerate(settlements) if s.event_kind.is_adjustment
        }

        # --- Phase 1: exact --------------------------------------------
        by_ref: dict[tuple[bool, str], list[int]] = {}
        for index, record in enumerate(records):
            if record.transaction_ref:
                key = (_is_refund_record(record), record.transaction_ref)
                by_ref.setdefault(key, []).append(index)

        for s_index, settlement in enumerate(settlements):
            if s_index in adjustment_indexes:
                continue
            candidates = by_ref.get((_is_refund_row(settlement), settlement.transaction_ref), [])
            free = [i for i in candidates if i not in claimed_records]
            if free:
                claimed_records.add(free[0])
                matches.append(
                    ReconciliationMatch(
                        settlement=settlement,
                        record=records[free[0]],
                        match_type=MatchType.EXACT,
                    )
                )
            elif candidates:
                duplicate_ids.add(settlement.id)
                duplicate_indexes.add(s_index)
            else:
                leftover_settlements.append(s_index)

        # --- Phase 2: pattern ------------------------------------------
        open_records = [i for i in range(len(records)) if i not in claimed_records]
        scored: list[tuple[float, datetime, int, int]] = []
        for s_index in leftover_settlements:
            settlement = settlements[s_index]
            for r_index in open_records:
                confidence = self.confidence(settlement, records[r_index])
                if confidence is not None and confidence >= self.policy.min_confidence:
                    scored.append((confidence, records[r_index].occurred_at, s_index, r_index))

        # Highest confidence first, then earliest event, then input order
        scored.sort(key=lambda c: (-c[0], c[1], c[2], c[3]))

        paired_settlements: set[int] = set()
        for confidence, _, s_index, r_index in scored:
            if s_index in paired_settlements or r_index in claimed_records:
                continue
            paired_settlements.add(s_index)
            claimed_records.add(r_index)
            matches.append(
                ReconciliationMatch(
                    settlement=settlements[s_index],
                    record=records[r_index],
                    match_type=MatchType.PATTERN,
                    confidence=round(confidence, 4),
                )
            )

        leftover = set(leftover_settlements)
        unmatched_settlements = tuple(
            s for i, s in enumerate(settlements)
            if i in duplicate_indexes
            or (i in leftover and i not in paired_settlements)
        )
        unmatched_events = tuple(
            r for i, r in enumerate(records) if i not in claimed_records
        )

        logger.info(
            "Matching complete: exact=%d pattern=%d unmatched_stl=%d "
            "unmatched_evt=%d duplicates=%d adjustments=%d",
            sum(1 for m in matches if m.match_type == MatchType.EXACT),
            sum(1 for m in matches if m.match_type == MatchType.PATTERN),
            len(unmatched_settlements),
            len(unmatched_events),
            len(duplicate_ids),
            len(adjustment_indexes),
        )

        return MatchOutcome(
            matches=tuple(matches),
            unmatched_settlements=unmatched_settlements,
            unmatched_events=unmatched_events,
            adjustments=tuple(settlements[i] for i in sorted(adjustment_indexes)),
            duplicate_settlement_ids=frozenset(duplicate_ids),
        )

    def confidence(
        self,
        settlement: SettlementRecord,
        record: InternalRecord,
    ) -> Optional[float]:
        """
        Pattern-match confidence in ``[0, 1]``, or None when the pair is
        not a candidate at all.
        """
        policy = self.policy
        if record_kind_for(settlement.event_kind) != record.kind:
            return None
        if not settlement.product_ref or settlement.product_ref != record.product_ref:
            return None
        if settlement.currency.upper() != record.currency.upper():
            return None

        gross = abs(settlement.gross_amount)
        amount = abs(record.amount)
        delta = abs(gross - amount)
        if delta > policy.amount_tolerance:
            return None

        days = abs((settlement.settlement_date - record.occurred_at.date()).days)
        if days > policy.date_window_days:
            return None

        base = max(gross, amount)
        amount_score = 1.0 if base == 0 else 1.0 - float(delta / base)
        date_score = 1.0 - days / (policy.date_window_days + 1)
        return amount_score * policy.amount_weight + date_score * policy.date_weight
