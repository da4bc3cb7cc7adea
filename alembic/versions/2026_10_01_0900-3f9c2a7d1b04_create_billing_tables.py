"""create_billing_tables

Revision ID: 3f9c2a7d1b04
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "3f9c2a7d1b04"
down_revision = None
branch_labels = None
depends_on = None


def _enum(name: str, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, length=32)


def upgrade() -> None:
    """Create subscription, usage ledger and processed webhook event tables."""

    op.create_table(
        "account_subscriptions",
        sa.Column("account_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "tier",
            _enum("subscription_tier", "starter", "professional", "agency"),
            nullable=False,
        ),
        sa.Column(
            "status",
            _enum(
                "subscription_status",
                "active",
                "trialing",
                "past_due",
                "canceled",
                "canceled_for_nonpayment",
            ),
            nullable=False,
        ),
        sa.Column("external_subscription_id", sa.String(length=255), nullable=True),
        sa.Column("external_customer_id", sa.String(length=255), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False),
        sa.Column("grace_period_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grace_invoice_id", sa.String(length=255), nullable=True),
        sa.Column("grace_invoice_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_account_subscriptions_external_subscription_id",
        "account_subscriptions",
        ["external_subscription_id"],
    )
    op.create_index(
        "ix_account_subscriptions_external_customer_id",
        "account_subscriptions",
        ["external_customer_id"],
    )
    op.create_index(
        "ix_account_subscriptions_status_grace",
        "account_subscriptions",
        ["status", "grace_period_ends_at"],
    )

    op.create_table(
        "usage_records",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column(
            "resource_kind",
            _enum("usage_resource_kind", "audit", "keyword_search"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("usage_date", sa.Date(), nullable=False),
    )
    op.create_index(
        "ix_usage_records_account_kind_created",
        "usage_records",
        ["account_id", "resource_kind", "created_at"],
    )

    op.create_table(
        "billing_webhook_events",
        sa.Column("event_id", sa.String(length=255), primary_key=True),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=True),
        sa.Column(
            "outcome",
            _enum(
                "webhook_outcome",
                "processed",
                "acknowledged",
                "ignored",
                "stale",
                "duplicate",
                "unresolved",
            ),
            nullable=False,
        ),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("event_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_billing_webhook_events_outcome",
        "billing_webhook_events",
        ["outcome", "received_at"],
    )


def downgrade() -> None:
    """Drop billing tables."""
    op.drop_index("ix_billing_webhook_events_outcome", table_name="billing_webhook_events")
    op.drop_table("billing_webhook_events")
    op.drop_index("ix_usage_records_account_kind_created", table_name="usage_records")
    op.drop_table("usage_records")
    op.drop_index("ix_account_subscriptions_status_grace", table_name="account_subscriptions")
    op.drop_index(
        "ix_account_subscriptions_external_customer_id", table_name="account_subscriptions"
    )
    op.drop_index(
        "ix_account_subscriptions_external_subscription_id", table_name="account_subscriptions"
    )
    op.drop_table("account_subscriptions")
