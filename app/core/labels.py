"""
Display Labels
==============

Human-readable English labels for enumerated codes. The lifecycle and
reconciliation code only deals in enum values; anything shown to people
is looked up here.
"""

from app.models.refund import RefundReason
from app.schemas.reconciliation import DiscrepancyKind, ResolutionMethod


RESOLUTION_DESCRIPTIONS: dict[ResolutionMethod, str] = {
    ResolutionMethod.ROUNDING_DIFFERENCE: (
        "Amount difference within rounding tolerance"
    ),
    ResolutionMethod.DUPLICATE_SETTLEMENT_EXPORT: (
        "Settlement row duplicates a row already matched to the same transaction"
    ),
    ResolutionMethod.SETTLEMENT_TIMING_LAG: (
        "Settlement dated within the accepted processing lag of the internal record"
    ),
}

DISCREPANCY_LABELS: dict[DiscrepancyKind, str] = {
    DiscrepancyKind.MISSING_INTERNAL_EVENT: "Settled by the platform but not recorded internally",
    DiscrepancyKind.MISSING_SETTLEMENT_RECORD: "Recorded internally but absent from the settlement",
    DiscrepancyKind.AMOUNT_MISMATCH: "Settled amount differs from the recorded amount",
    DiscrepancyKind.DUPLICATE_CANDIDATE: "Possible duplicate settlement row",
    DiscrepancyKind.TIMING_MISMATCH: "Settlement date differs from the recorded date",
    DiscrepancyKind.EVENT_TYPE_MISMATCH: "Settled as a different event type than recorded",
}

REFUND_REASON_LABELS: dict[RefundReason, str] = {
    RefundReason.CUSTOMER_REQUEST: "Customer request",
    RefundReason.TECHNICAL_ISSUE: "Technical issue",
    RefundReason.BILLING_ERROR: "Billing error",
    RefundReason.FRAUD_PREVENTION: "Fraud prevention",
    RefundReason.SERVICE_UNAVAILABLE: "Service unavailable",
    RefundReason.REGULATORY_COMPLIANCE: "Regulatory compliance",
    RefundReason.DUPLICATE_PAYMENT: "Duplicate payment",
    RefundReason.UNAUTHORIZED_PURCHASE: "Unauthorized purchase",
    RefundReason.POLICY_VIOLATION: "Policy violation",
}


def describe_resolution(method: ResolutionMethod) -> str:
    return RESOLUTION_DESCRIPTIONS.get(method, method.value)


def describe_discrepancy(kind: DiscrepancyKind) -> str:
    return DISCREPANCY_LABELS.get(kind, kind.value)


def describe_refund_reason(reason: RefundReason) -> str:
    return REFUND_REASON_LABELS.get(reason, reason.value)
