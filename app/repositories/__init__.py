"""
Repositories
============

Storage contracts and their SQLAlchemy and in-memory implementations.
"""

from app.repositories.base import (
    LifecycleEventRepository,
    PaymentRepository,
    ReconciliationResultRepository,
    RefundRepository,
    SubscriptionRepository,
)
from app.repositories.memory import (
    InMemoryLifecycleEventRepository,
    InMemoryPaymentRepository,
    InMemoryReconciliationResultRepository,
    InMemoryRefundRepository,
    InMemorySubscriptionRepository,
)
from app.repositories.sql import (
    SqlLifecycleEventRepository,
    SqlPaymentRepository,
    SqlReconciliationResultRepository,
    SqlRefundRepository,
    SqlSubscriptionRepository,
)

__all__ = [
    "LifecycleEventRepository",
    "PaymentRepository",
    "ReconciliationResultRepository",
    "RefundRepository",
    "SubscriptionRepository",
    "InMemoryLifecycleEventRepository",
    "InMemoryPaymentRepository",
    "InMemoryReconciliationResultRepository",
    "InMemoryRefundRepository",
    "InMemorySubscriptionRepository",
    "SqlLifecycleEventRepository",
    "SqlPaymentRepository",
    "SqlReconciliationResultRepository",
    "SqlRefundRepository",
    "SqlSubscriptionRepository",
]
