"""create entitlement tables

Revision ID: 3f1c9a7e2b10
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f1c9a7e2b10"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create subscription, processed-event, usage-counter and audit tables."""
    op.create_table(
        "subscription_records",
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("tier", sa.String(length=50), nullable=False, server_default="starter"),
        sa.Column("billing_interval", sa.String(length=20), nullable=True),
        sa.Column("accelerator_access", sa.String(length=20), nullable=False, server_default="none"),
        sa.Column("provider_customer_id", sa.String(length=255), nullable=True),
        sa.Column("provider_subscription_id", sa.String(length=255), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_paid", sa.Numeric(precision=12, scale=2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("last_payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_payment_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("installment_plan", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("installment_payments", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("total_paid >= 0", name=op.f("ck_subscription_records_total_paid_non_negative")),
        sa.CheckConstraint("version >= 1", name=op.f("ck_subscription_records_version_positive")),
        sa.PrimaryKeyConstraint("user_id", name=op.f("pk_subscription_records")),
    )
    op.create_index(
        op.f("ix_subscription_records_provider_customer_id"),
        "subscription_records",
        ["provider_customer_id"],
        unique=True,
    )

    op.create_table(
        "processed_events",
        sa.Column("provider_event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("customer_id", sa.String(length=255), nullable=True),
        sa.Column("outcome", sa.String(length=20), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reconciled_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("provider_event_id", name=op.f("pk_processed_events")),
    )
    op.create_index(op.f("ix_processed_events_customer_id"), "processed_events", ["customer_id"])
    op.create_index(op.f("ix_processed_events_outcome"), "processed_events", ["outcome"])

    op.create_table(
        "usage_counters",
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("resource_type", sa.String(length=50), nullable=False),
        sa.Column("period_key", sa.String(length=20), nullable=False),
        sa.Column("current", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("limit", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("current >= 0", name=op.f("ck_usage_counters_current_non_negative")),
        sa.PrimaryKeyConstraint("user_id", "resource_type", "period_key", name=op.f("pk_usage_counters")),
    )

    op.create_table(
        "payment_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("provider_event_id", sa.String(length=255), nullable=True),
        sa.Column("amount", sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_payment_events")),
    )
    op.create_index(op.f("ix_payment_events_user_id"), "payment_events", ["user_id"])
    op.create_index(op.f("ix_payment_events_provider_event_id"), "payment_events", ["provider_event_id"])


def downgrade() -> None:
    """Drop all entitlement tables."""
    op.drop_index(op.f("ix_payment_events_provider_event_id"), table_name="payment_events")
    op.drop_index(op.f("ix_payment_events_user_id"), table_name="payment_events")
    op.drop_table("payment_events")
    op.drop_table("usage_counters")
    op.drop_index(op.f("ix_processed_events_outcome"), table_name="processed_events")
    op.drop_index(op.f("ix_processed_events_customer_id"), table_name="processed_events")
    op.drop_table("processed_events")
    op.drop_index(op.f("ix_subscription_records_provider_customer_id"), table_name="subscription_records")
    op.drop_table("subscription_records")
