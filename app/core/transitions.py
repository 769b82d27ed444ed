"""
Lifecycle Transition Tables
===========================

Explicit state transition tables for subscriptions, payments and refunds.

Every status change in the lifecycle services goes through
``TransitionTable.ensure`` before any attribute is touched, so a
rejected transition leaves the entity exactly as it was.
"""

from enum import Enum
from typing import Generic, Mapping, TypeVar

from app.core.errors import AlreadyFinalized, InvalidTransition
from app.models.payment import PaymentStatus
from app.models.refund import RefundStatus
from app.models.subscription import SubscriptionStatus

S = TypeVar("S", bound=Enum)


class TransitionTable(Generic[S]):
    """Allowed ``from -> to`` moves for one entity type."""

    def __init__(self, entity: str, transitions: Mapping[S, frozenset]):
        self.entity = entity
        self._transitions = dict(transitions)

    def allowed_from(self, current: S) -> frozenset:
        return self._transitions.get(current, frozenset())

    def is_terminal(self, state: S) -> bool:
        return not self.allowed_from(state)

    def can_transition(self, current: S, target: S) -> bool:
        return target in self.allowed_from(current)

    def ensure(self, current: S, target: S) -> None:
        """
        Validate a transition.

        Raises:
            AlreadyFinalized: ``current`` is terminal
            InvalidTransition: ``target`` is not reachable from ``current``
        """
        if self.is_terminal(current):
            raise AlreadyFinalized(self.entity, current.value, target.value)
        if not self.can_transition(current, target):
            raise InvalidTransition(self.entity, current.value, target.value)

    def pairs(self) -> set[tuple[S, S]]:
        return {(src, dst) for src, targets in self._transitions.items() for dst in targets}


# =============================================================================
# Refund
# =============================================================================

REFUND_TRANSITIONS: TransitionTable[RefundStatus] = TransitionTable(
    "refund",
    {
        RefundStatus.REQUESTED: frozenset({
            RefundStatus.PENDING_APPROVAL,
            RefundStatus.APPROVED,
            RefundStatus.REJECTED,
            RefundStatus.CANCELLED,
        }),
        RefundStatus.PENDING_APPROVAL: frozenset({
            RefundStatus.APPROVED,
            RefundStatus.REJECTED,
            RefundStatus.CANCELLED,
        }),
        RefundStatus.APPROVED: frozenset({
            RefundStatus.PROCESSING,
            RefundStatus.FAILED,
            RefundStatus.CANCELLED,
        }),
        RefundStatus.PROCESSING: frozenset({
            RefundStatus.COMPLETED,
            RefundStatus.FAILED,
        }),
    },
)


# =============================================================================
# Payment
# =============================================================================

PAYMENT_TRANSITIONS: TransitionTable[PaymentStatus] = TransitionTable(
    "payment",
    {
        PaymentStatus.PENDING: frozenset({
            PaymentStatus.SUCCESS,
            PaymentStatus.FAILED,
        }),
        PaymentStatus.SUCCESS: frozenset({
            PaymentStatus.REFUNDED,
            PaymentStatus.PARTIALLY_REFUNDED,
            PaymentStatus.DISPUTED,
        }),
        PaymentStatus.PARTIALLY_REFUNDED: frozenset({
            PaymentStatus.REFUNDED,
            PaymentStatus.DISPUTED,
        }),
        PaymentStatus.DISPUTED: frozenset({
            PaymentStatus.SUCCESS,
            PaymentStatus.REFUNDED,
        }),
    },
)


# =============================================================================
# Subscription
# =============================================================================

# Subscriptions have no terminal state: an expired subscription can be
# bought again.
SUBSCRIPTION_TRANSITIONS: TransitionTable[SubscriptionStatus] = TransitionTable(
    "subscription",
    {
        SubscriptionStatus.ACTIVE: frozenset({
            SubscriptionStatus.IN_GRACE_PERIOD,
            SubscriptionStatus.ON_HOLD,
            SubscriptionStatus.PAUSED,
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.EXPIRED,
        }),
        SubscriptionStatus.IN_GRACE_PERIOD: frozenset({
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.ON_HOLD,
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.EXPIRED,
        }),
        SubscriptionStatus.ON_HOLD: frozenset({
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.EXPIRED,
        }),
        SubscriptionStatus.PAUSED: frozenset({
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.EXPIRED,
        }),
        SubscriptionStatus.CANCELED: frozenset({
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.EXPIRED,
        }),
        SubscriptionStatus.EXPIRED: frozenset({
            SubscriptionStatus.ACTIVE,
        }),
    },
)
