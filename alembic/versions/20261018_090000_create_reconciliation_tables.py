"""Create subscription lifecycle and reconciliation tables

Creates subscriptions, subscription_history, payments,
refund_transactions, lifecycle_events and reconciliation_results.

Revision ID: 3f9c1e7a2b40
Revises:
Create Date: 2026-10-18 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3f9c1e7a2b40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# SQLAlchemy stores enum member names
platform = postgresql.ENUM("GOOGLE_PLAY", "APP_STORE", name="platform", create_type=False)
event_kind = postgresql.ENUM(
    "PURCHASE", "RENEWAL", "CANCELLATION", "REFUND", "EXPIRATION",
    "GRACE_PERIOD_START", "GRACE_PERIOD_END", "PAUSE", "RESUME", "UNKNOWN",
    name="eventkind",
    create_type=False,
)
event_outcome = postgresql.ENUM("APPLIED", "IGNORED", "REJECTED", name="eventoutcome", create_type=False)
subscription_status = postgresql.ENUM(
    "ACTIVE", "EXPIRED", "CANCELED", "ON_HOLD", "IN_GRACE_PERIOD", "PAUSED",
    name="subscriptionstatus",
    create_type=False,
)
payment_status = postgresql.ENUM(
    "PENDING", "SUCCESS", "FAILED", "REFUNDED", "PARTIALLY_REFUNDED", "DISPUTED",
    name="paymentstatus",
    create_type=False,
)
refund_status = postgresql.ENUM(
    "REQUESTED", "PENDING_APPROVAL", "APPROVED", "PROCESSING",
    "COMPLETED", "FAILED", "REJECTED", "CANCELLED",
    name="refundstatus",
    create_type=False,
)
refund_reason = postgresql.ENUM(
    "CUSTOMER_REQUEST", "TECHNICAL_ISSUE", "BILLING_ERROR", "FRAUD_PREVENTION",
    "SERVICE_UNAVAILABLE", "REGULATORY_COMPLIANCE", "DUPLICATE_PAYMENT",
    "UNAUTHORIZED_PURCHASE", "POLICY_VIOLATION",
    name="refundreason",
    create_type=False,
)
reconciliation_status = postgresql.ENUM(
    "MATCHED", "PARTIAL_MATCH", "MAJOR_DISCREPANCY", "FAILED",
    name="reconciliationstatus",
    create_type=False,
)

ENUMS = (
    platform,
    event_kind,
    event_outcome,
    subscription_status,
    payment_status,
    refund_status,
    refund_reason,
    reconciliation_status,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum in ENUMS:
        enum.create(bind, checkfirst=True)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    op.create_table(
        "subscriptions",
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_id", sa.String(255), nullable=True),
        sa.Column("plan_ref", sa.String(255), nullable=False),
        sa.Column("platform", platform, nullable=False),
        sa.Column("purchase_token", sa.String(512), nullable=False, unique=True),
        sa.Column("status", subscription_status, nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expiry_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("auto_renew", sa.Boolean(), nullable=False),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_subscriptions_owner_id", "subscriptions", ["owner_id"])
    op.create_index("idx_subscription_status_expiry", "subscriptions", ["status", "expiry_at"])
    op.create_index("idx_subscription_platform_status", "subscriptions", ["platform", "status"])

    op.create_table(
        "subscription_history",
        sa.Column("history_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "subscription_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("subscriptions.subscription_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("event_kind", event_kind, nullable=False),
        sa.Column("previous_status", subscription_status, nullable=True),
        sa.Column("new_status", subscription_status, nullable=False),
        sa.Column("expiry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("event_data", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("idx_sub_history_subscription", "subscription_history", ["subscription_id", "created_at"])
    op.create_index("idx_sub_history_event_kind", "subscription_history", ["event_kind", "created_at"])

    # =========================================================================
    # Payments and refunds
    # =========================================================================

    op.create_table(
        "payments",
        sa.Column("payment_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "subscription_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("subscriptions.subscription_id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("platform", platform, nullable=False),
        sa.Column("order_ref", sa.String(255), nullable=True),
        sa.Column("transaction_ref", sa.String(255), nullable=False, unique=True),
        sa.Column("product_ref", sa.String(255), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", payment_status, nullable=False),
        sa.Column("payment_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_renewal", sa.Boolean(), nullable=False),
        sa.Column("acknowledged", sa.Boolean(), nullable=False),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_payments_subscription_id", "payments", ["subscription_id"])
    op.create_index("idx_payment_platform_date", "payments", ["platform", "payment_at"])
    op.create_index("idx_payment_status", "payments", ["status"])

    op.create_table(
        "refund_transactions",
        sa.Column("refund_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "payment_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("payments.payment_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("platform", platform, nullable=False),
        sa.Column("original_transaction_ref", sa.String(255), nullable=False),
        sa.Column("platform_refund_ref", sa.String(255), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("reason", refund_reason, nullable=False),
        sa.Column("status", refund_status, nullable=False),
        sa.Column("requested_by", sa.String(255), nullable=True),
        sa.Column("approved_by", sa.String(255), nullable=True),
        sa.Column("internal_note", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_refund_transactions_payment_id", "refund_transactions", ["payment_id"])
    op.create_index(
        "ix_refund_transactions_original_transaction_ref",
        "refund_transactions",
        ["original_transaction_ref"],
    )
    op.create_index("idx_refund_status", "refund_transactions", ["status"])
    op.create_index("idx_refund_platform_completed", "refund_transactions", ["platform", "completed_at"])

    # =========================================================================
    # Lifecycle events
    # =========================================================================

    op.create_table(
        "lifecycle_events",
        sa.Column("event_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("dedup_key", sa.String(512), nullable=False, unique=True),
        sa.Column("entity_id", sa.String(512), nullable=False),
        sa.Column("kind", event_kind, nullable=False),
        sa.Column("platform", platform, nullable=False),
        sa.Column("source_token", sa.String(512), nullable=False),
        sa.Column("platform_notification_id", sa.String(255), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("outcome", event_outcome, nullable=True),
        sa.Column("outcome_detail", sa.String(500), nullable=True),
    )
    op.create_index("ix_lifecycle_events_entity_id", "lifecycle_events", ["entity_id"])
    op.create_index("idx_lifecycle_event_platform_occurred", "lifecycle_events", ["platform", "occurred_at"])
    op.create_index("idx_lifecycle_event_kind", "lifecycle_events", ["kind", "occurred_at"])

    # =========================================================================
    # Reconciliation results
    # =========================================================================

    op.create_table(
        "reconciliation_results",
        sa.Column("result_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("result_date", sa.Date(), nullable=False),
        sa.Column("platform", platform, nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("status", reconciliation_status, nullable=False),
        sa.Column("body", postgresql.JSONB(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("result_date", "platform", "version", name="uq_recon_result_version"),
    )
    op.create_index("idx_recon_result_platform_date", "reconciliation_results", ["platform", "result_date"])


def downgrade() -> None:
    op.drop_table("reconciliation_results")
    op.drop_table("lifecycle_events")
    op.drop_table("refund_transactions")
    op.drop_table("payments")
    op.drop_table("subscription_history")
    op.drop_table("subscriptions")

    bind = op.get_bind()
    for enum in reversed(ENUMS):
        enum.drop(bind, checkfirst=True)
