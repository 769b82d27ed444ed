"""
Discrepancy Analysis
====================

Classifies matcher residue into discrepancies, auto-resolves the ones
that fit deterministic rules, and rates the severity of what remains.

Auto-resolution only annotates: a ``ResolvedDiscrepancy`` wraps the
untouched ``Discrepancy`` with a method and description.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Sequence

from app.config import Settings
from app.core.labels import describe_resolution
from app.schemas.reconciliation import (
    Discrepancy,
    DiscrepancyKind,
    MatchOutcome,
    MatchType,
    ResolutionMethod,
    ResolutionOutcome,
    ResolvedDiscrepancy,
    Severity,
    SeverityAssessment,
)
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)


class DiscrepancyAnalyzer:
    """
    Emits one discrepancy per:
    - unmatched settlement (missing internal event, or duplicate candidate
      when its ref was consumed by an exact match)
    - unmatched internal record (missing settlement record)
    - match whose amounts differ (amount mismatch)
    - pattern match below the safe band with equal amounts (timing mismatch)

    An exact match whose event types disagree (a renewal settled against a
    recorded purchase, say) additionally gets an event type mismatch.
    """

    def __init__(
        self,
        safe_confidence: float = 0.9,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.safe_confidence = safe_confidence
        self.clock = clock

    def analyze(self, outcome: MatchOutcome) -> tuple[Discrepancy, ...]:
        now = self.clock()
        found: list[Discrepancy] = []

        for match in outcome.matches:
            if not match.event_types_agree:
                found.append(
                    Discrepancy(
                        settlement_ref=match.settlement.id,
                        event_ref=match.record.event_ref,
                        kind=DiscrepancyKind.EVENT_TYPE_MISMATCH,
                        detected_at=now,
                        confidence=match.confidence,
                        reference_amount=abs(match.record.amount),
                    )
                )

            delta = match.amount_delta
            below_safe = (
                match.match_type == MatchType.PATTERN
                and match.confidence is not None
                and match.confidence < self.safe_confidence
            )
            if delta != 0:
                kind = DiscrepancyKind.AMOUNT_MISMATCH
            elif below_safe:
                kind = DiscrepancyKind.TIMING_MISMATCH
            else:
                continue
            found.append(
                Discrepancy(
                    settlement_ref=match.settlement.id,
                    event_ref=match.record.event_ref,
                    kind=kind,
                    amount_delta=delta,
                    detected_at=now,
                    confidence=match.confidence,
                    reference_amount=abs(match.record.amount),
                )
            )

        for settlement in outcome.unmatched_settlements:
            kind = (
                DiscrepancyKind.DUPLICATE_CANDIDATE
                if settlement.id in outcome.duplicate_settlement_ids
                else DiscrepancyKind.MISSING_INTERNAL_EVENT
            )
            found.append(
                Discrepancy(
                    settlement_ref=settlement.id,
                    kind=kind,
                    amount_delta=settlement.gross_amount,
                    detected_at=now,
                    reference_amount=abs(settlement.gross_amount),
                )
            )

        for record in outcome.unmatched_events:
            found.append(
                Discrepancy(
                    event_ref=record.event_ref,
                    kind=DiscrepancyKind.MISSING_SETTLEMENT_RECORD,
                    amount_delta=-record.amount,
                    detected_at=now,
                    reference_amount=abs(record.amount),
                )
            )

        return tuple(found)


class AutoResolver:
    """
    Deterministic resolution rules:
    - amount mismatch within the rounding tolerance -> rounding difference
    - duplicate candidate -> duplicate settlement export
    - timing mismatch (always inside the matching window) -> timing lag
    """

    def __init__(
        self,
        rounding_tolerance_abs: Decimal = Decimal("0.01"),
        rounding_tolerance_pct: Decimal = Decimal("0.001"),
        clock: Callable[[], datetime] = utc_now,
    ):
        self.rounding_tolerance_abs = rounding_tolerance_abs
        self.rounding_tolerance_pct = rounding_tolerance_pct
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "AutoResolver":
        return cls(
            rounding_tolerance_abs=settings.RECON_ROUNDING_TOLERANCE_ABS,
            rounding_tolerance_pct=settings.RECON_ROUNDING_TOLERANCE_PCT,
            **kwargs,
        )

    def resolve(self, discrepancies: Sequence[Discrepancy]) -> ResolutionOutcome:
        now = self.clock()
        resolved: list[ResolvedDiscrepancy] = []
        unresolved: list[Discrepancy] = []

        for discrepancy in discrepancies:
            method = self._method_for(discrepancy)
            if method is None:
                unresolved.append(discrepancy)
                continue
            resolved.append(
                ResolvedDiscrepancy(
                    discrepancy=discrepancy,
                    method=method,
                    description=describe_resolution(method),
                    resolved_at=now,
                )
            )

        logger.info(
            "Auto-resolution: resolved=%d unresolved=%d",
            len(resolved),
            len(unresolved),
        )
        return ResolutionOutcome(resolved=tuple(resolved), unresolved=tuple(unresolved))

    def _method_for(self, discrepancy: Discrepancy) -> Optional[ResolutionMethod]:
        if discrepancy.kind == DiscrepancyKind.AMOUNT_MISMATCH:
            if self.is_rounding_difference(discrepancy.amount_delta, discrepancy.reference_amount):
                return ResolutionMethod.ROUNDING_DIFFERENCE
            return None
        if discrepancy.kind == DiscrepancyKind.DUPLICATE_CANDIDATE:
            return ResolutionMethod.DUPLICATE_SETTLEMENT_EXPORT
        if discrepancy.kind == DiscrepancyKind.TIMING_MISMATCH:
            return ResolutionMethod.SETTLEMENT_TIMING_LAG
        return None

    def is_rounding_difference(
        self,
        delta: Decimal,
        reference_amount: Optional[Decimal],
    ) -> bool:
        delta = abs(delta)
        if delta <= self.rounding_tolerance_abs:
            return True
        if reference_amount:
            return delta <= abs(reference_amount) * self.rounding_tolerance_pct
        return False


def assess_severity(
    unresolved: Sequence[Discrepancy],
    match_rate: float,
    critical_amount: Decimal = Decimal("1000.00"),
    critical_count: int = 10,
    critical_match_rate: float = 0.85,
) -> SeverityAssessment:
    """
    Rate a run by what it left unresolved.

    Returns:
        SeverityAssessment; ``alert_required`` for critical and high
    """
    amount = sum((abs(d.amount_delta) for d in unresolved), Decimal("0"))
    count = len(unresolved)

    severity = Severity.LOW
    reasons: list[str] = []
    if count >= critical_count:
        severity = Severity.MEDIUM
        reasons.append(f"{count} unresolved discrepancies")
    if match_rate < critical_match_rate:
        severity = Severity.HIGH
        reasons.append(f"match rate {match_rate:.2%} below {critical_match_rate:.0%}")
    if amount >= critical_amount:
        severity = Severity.CRITICAL
        reasons.append(f"unresolved amount {amount} at or above {critical_amount}")

    return SeverityAssessment(
        severity=severity,
        alert_required=severity in (Severity.CRITICAL, Severity.HIGH),
        unresolved_count=count,
        unresolved_amount=amount,
        reasons=tuple(reasons),
    )
