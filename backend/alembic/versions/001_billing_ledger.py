"""Billing ledger schema - ledger entries, ledger lines, usage aggregates, subscriptions.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Ledger entries
    op.create_table(
        "billing_ledger_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("organization_id", sa.String(64), nullable=False),
        sa.Column("billing_id", sa.String(32), nullable=False),
        sa.Column("billing_period", sa.String(7), nullable=False),
        sa.Column("billing_date", sa.Date(), nullable=False),
        sa.Column("subscription_tier", sa.String(20), nullable=False),
        sa.Column("billing_status", sa.String(20), nullable=False, server_default="NOT_BILLED"),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="UNPAID"),
        sa.Column("total_cost", sa.Float(), nullable=False, server_default="0"),
        sa.Column("features_to_charge", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("features_cost", sa.Float(), nullable=False, server_default="0"),
        sa.Column("dollar_to_naira_rate", sa.Float(), server_default="0"),
        sa.Column("dollar_to_pounds_rate", sa.Float(), server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("organization_id", "billing_period", "subscription_tier", name="uq_ledger_org_period_tier"),
        sa.UniqueConstraint("organization_id", "billing_id", name="uq_ledger_org_billing_id"),
    )
    op.create_index("ix_ledger_status_period", "billing_ledger_entries", ["billing_status", "billing_period"])
    op.create_index("ix_ledger_payment_org", "billing_ledger_entries", ["payment_status", "organization_id"])

    # Ledger lines - one per metered field
    op.create_table(
        "ledger_lines",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("entry_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("billing_ledger_entries.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("field", sa.String(50), nullable=False),
        sa.Column("value", sa.Float(), nullable=False, server_default="0"),
        sa.Column("cost_in_dollar", sa.Float(), nullable=False, server_default="0"),
        sa.UniqueConstraint("entry_id", "field", name="uq_ledger_line_entry_field"),
    )

    # Usage aggregates
    op.create_table(
        "usage_aggregates",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("billing_period", sa.String(7), nullable=False, unique=True),
        sa.Column("totals", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("entry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Subscriptions
    op.create_table(
        "subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("organization_id", sa.String(64), nullable=False, unique=True),
        sa.Column("subscription_type", sa.String(20), server_default="FREEMIUM"),
        sa.Column("subscription_status", sa.String(20), server_default="ACTIVE"),
        sa.Column("freemium_start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("freemium_end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("premium_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("premium_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("subscriptions")
    op.drop_table("usage_aggregates")
    op.drop_table("ledger_lines")
    op.drop_index("ix_ledger_payment_org", table_name="billing_ledger_entries")
    op.drop_index("ix_ledger_status_period", table_name="billing_ledger_entries")
    op.drop_table("billing_ledger_entries")
