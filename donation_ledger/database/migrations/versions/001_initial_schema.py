"""Initial database schema

Revision ID: 001
Revises:
Create Date: 2025-01-06 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(precision=18, scale=2)


def upgrade() -> None:
    """Upgrade database schema."""
    # Create campaigns table
    op.create_table(
        "campaigns",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("creator_id", sa.Integer(), nullable=True),
        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("target_amount", MONEY, nullable=False),
        sa.Column("current_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=50), nullable=False, server_default="active"),
        sa.Column("excess_fund_option", sa.String(length=50), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("target_amount > 0", name="positive_target"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_campaigns_category_status_created",
        "campaigns",
        ["category_id", "status", "created_at"],
        unique=False,
    )
    op.create_index(op.f("ix_campaigns_category_id"), "campaigns", ["category_id"], unique=False)
    op.create_index(op.f("ix_campaigns_status"), "campaigns", ["status"], unique=False)

    # Create donations table
    op.create_table(
        "donations",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("campaign_id", sa.Integer(), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("is_anonymous", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("payment_method", sa.String(length=50), nullable=False),
        sa.Column("transaction_code", sa.String(length=64), nullable=False),
        sa.Column("payment_status", sa.String(length=20), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("amount > 0", name="positive_donation_amount"),
        sa.CheckConstraint(
            "payment_status IN ('pending', 'success', 'failed')",
            name="valid_payment_status",
        ),
        sa.ForeignKeyConstraint(["campaign_id"], ["campaigns.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_donations_campaign_id"), "donations", ["campaign_id"], unique=False)
    op.create_index(op.f("ix_donations_user_id"), "donations", ["user_id"], unique=False)
    op.create_index(
        op.f("ix_donations_transaction_code"), "donations", ["transaction_code"], unique=True
    )
    op.create_index(
        op.f("ix_donations_payment_status"), "donations", ["payment_status"], unique=False
    )

    # Create financial_transactions table (append-only ledger)
    op.create_table(
        "financial_transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("campaign_id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("donation_id", sa.Integer(), nullable=True),
        sa.Column("counterparty_campaign_id", sa.Integer(), nullable=True),
        sa.Column("fund_pool", sa.String(length=50), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount > 0", name="positive_ledger_amount"),
        sa.CheckConstraint(
            "type IN ('in', 'out', 'transfer_in', 'transfer_out')",
            name="valid_ledger_type",
        ),
        sa.ForeignKeyConstraint(["campaign_id"], ["campaigns.id"]),
        sa.ForeignKeyConstraint(["donation_id"], ["donations.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("donation_id", "type", name="uq_ledger_donation_type"),
    )
    op.create_index(
        "idx_ledger_campaign_created",
        "financial_transactions",
        ["campaign_id", "created_at"],
        unique=False,
    )
    op.create_index(
        op.f("ix_financial_transactions_campaign_id"),
        "financial_transactions",
        ["campaign_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_financial_transactions_donation_id"),
        "financial_transactions",
        ["donation_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_financial_transactions_created_at"),
        "financial_transactions",
        ["created_at"],
        unique=False,
    )

    # Ledger rows are insert-only at the database level too
    op.execute(
        """
        CREATE OR REPLACE FUNCTION reject_ledger_mutation() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'financial_transactions is append-only';
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER financial_transactions_append_only
        BEFORE UPDATE OR DELETE ON financial_transactions
        FOR EACH ROW EXECUTE FUNCTION reject_ledger_mutation();
        """
    )

    # Create notifications table
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("type", sa.String(length=50), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_notifications_user_id"), "notifications", ["user_id"], unique=False
    )

    # Create review_flags table
    op.create_table(
        "review_flags",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("kind", sa.String(length=50), nullable=False),
        sa.Column("transaction_code", sa.String(length=64), nullable=True),
        sa.Column("donation_id", sa.Integer(), nullable=True),
        sa.Column("campaign_id", sa.Integer(), nullable=True),
        sa.Column("amount", MONEY, nullable=True),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_review_flags_kind"), "review_flags", ["kind"], unique=False)
    op.create_index(
        op.f("ix_review_flags_transaction_code"),
        "review_flags",
        ["transaction_code"],
        unique=False,
    )
    op.create_index(op.f("ix_review_flags_resolved"), "review_flags", ["resolved"], unique=False)

    # Create reconciliation_runs table
    op.create_table(
        "reconciliation_runs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("campaigns_checked", sa.Integer(), nullable=True),
        sa.Column("discrepancy_count", sa.Integer(), nullable=True),
        sa.Column("discrepancy_amount", MONEY, nullable=True),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('in_progress', 'completed', 'failed')",
            name="valid_reconciliation_status",
        ),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table("reconciliation_runs")
    op.drop_index(op.f("ix_review_flags_resolved"), table_name="review_flags")
    op.drop_index(op.f("ix_review_flags_transaction_code"), table_name="review_flags")
    op.drop_index(op.f("ix_review_flags_kind"), table_name="review_flags")
    op.drop_table("review_flags")
    op.drop_index(op.f("ix_notifications_user_id"), table_name="notifications")
    op.drop_table("notifications")
    op.execute("DROP TRIGGER IF EXISTS financial_transactions_append_only ON financial_transactions")
    op.execute("DROP FUNCTION IF EXISTS reject_ledger_mutation()")
    op.drop_index(
        op.f("ix_financial_transactions_created_at"), table_name="financial_transactions"
    )
    op.drop_index(
        op.f("ix_financial_transactions_donation_id"), table_name="financial_transactions"
    )
    op.drop_index(
        op.f("ix_financial_transactions_campaign_id"), table_name="financial_transactions"
    )
    op.drop_index("idx_ledger_campaign_created", table_name="financial_transactions")
    op.drop_table("financial_transactions")
    op.drop_index(op.f("ix_donations_payment_status"), table_name="donations")
    op.drop_index(op.f("ix_donations_transaction_code"), table_name="donations")
    op.drop_index(op.f("ix_donations_user_id"), table_name="donations")
    op.drop_index(op.f("ix_donations_campaign_id"), table_name="donations")
    op.drop_table("donations")
    op.drop_index(op.f("ix_campaigns_status"), table_name="campaigns")
    op.drop_index(op.f("ix_campaigns_category_id"), table_name="campaigns")
    op.drop_index("idx_campaigns_category_status_created", table_name="campaigns")
    op.drop_table("campaigns")
