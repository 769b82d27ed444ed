"""
Database Models
===============

SQLAlchemy ORM models for all database entities.

All models are imported here to ensure they are registered
with SQLAlchemy's metadata for migrations and relationships.
"""

from app.models.event import EventKind, EventOutcome, LifecycleEventRecord, Platform
from app.models.subscription import (
    Subscription,
    SubscriptionHistory,
    SubscriptionStatus,
)
from app.models.payment import Payment, PaymentStatus
from app.models.refund import RefundReason, RefundStatus, RefundTransaction
from app.models.reconciliation import (
    ReconciliationResultRecord,
    ReconciliationStatus,
)

__all__ = [
    # Events
    "EventKind",
    "EventOutcome",
    "LifecycleEventRecord",
    "Platform",
    # Subscription
    "Subscription",
    "SubscriptionHistory",
    "SubscriptionStatus",
    # Payment
    "Payment",
    "PaymentStatus",
    # Refund
    "RefundReason",
    "RefundStatus",
    "RefundTransaction",
    # Reconciliation
    "ReconciliationResultRecord",
    "ReconciliationStatus",
]
