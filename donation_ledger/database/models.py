"""SQLAlchemy database models for donation confirmation and the campaign ledger."""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(18, 2)


class PaymentStatus(str, Enum):
    """Donation payment status."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class LedgerEntryType(str, Enum):
    """Financial transaction direction."""

    IN = "in"
    OUT = "out"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"


class ExcessFundPolicy(str, Enum):
    """What happens to money collected above a campaign's target."""

    RESERVE_FUND = "reserve_fund"
    NEXT_CASE = "next_case"
    GENERAL_FUND = "general_fund"
    EXTEND = "extend"
    REFUND = "refund"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Campaign(Base):
    """
    Campaign view used by the confirmation engine.

    current_amount is only mutated by confirmations and excess reallocation and
    must always equal the ledger-derived balance of the campaign.
    """

    __tablename__ = "campaigns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    creator_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    category_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    target_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    current_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="active", index=True)
    excess_fund_option: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("target_amount > 0", name="positive_target"),
        Index("idx_campaigns_category_status_created", "category_id", "status", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of Campaign."""
        return (
            f"<Campaign(id={self.id}, current={self.current_amount}, "
            f"target={self.target_amount}, status={self.status})>"
        )


class Donation(Base):
    """
    Donation records table.

    Created as pending by the donation-intent flow; the transaction code is the
    idempotency key shared by every confirmation channel.
    """

    __tablename__ = "donations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("campaigns.id", ondelete="SET NULL"), nullable=True, index=True
    )
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_anonymous: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payment_method: Mapped[str] = mapped_column(String(50), nullable=False)
    transaction_code: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, index=True
    )
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_donation_amount"),
        CheckConstraint(
            "payment_status IN ('pending', 'success', 'failed')",
            name="valid_payment_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation of Donation."""
        return (
            f"<Donation(id={self.id}, code={self.transaction_code}, "
            f"amount={self.amount}, status={self.payment_status})>"
        )


class FinancialTransaction(Base):
    """
    Append-only campaign ledger.

    Rows are never updated or deleted. A donation produces at most one row of
    each type, which the unique constraint enforces as a conflict guard.
    """

    __tablename__ = "financial_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("campaigns.id"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    donation_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("donations.id"), nullable=True, index=True
    )
    counterparty_campaign_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fund_pool: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_ledger_amount"),
        CheckConstraint(
            "type IN ('in', 'out', 'transfer_in', 'transfer_out')",
            name="valid_ledger_type",
        ),
        UniqueConstraint("donation_id", "type", name="uq_ledger_donation_type"),
        Index("idx_ledger_campaign_created", "campaign_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of FinancialTransaction."""
        return (
            f"<FinancialTransaction(id={self.id}, campaign_id={self.campaign_id}, "
            f"type={self.type}, amount={self.amount})>"
        )


class Notification(Base):
    """Best-effort user notifications. Not part of the ledger invariant."""

    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    def __repr__(self) -> str:
        """String representation of Notification."""
        return f"<Notification(id={self.id}, user_id={self.user_id}, type={self.type})>"


class ReviewFlag(Base):
    """
    Operator review queue.

    Anomalies that were accepted from a gateway (to stop retries) but need a
    human decision: missing campaigns, amount mismatches, refund requests.
    """

    __tablename__ = "review_flags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    transaction_code: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    donation_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    campaign_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    def __repr__(self) -> str:
        """String representation of ReviewFlag."""
        return f"<ReviewFlag(id={self.id}, kind={self.kind}, code={self.transaction_code})>"


class ReconciliationRun(Base):
    """
    Ledger reconciliation run tracking table.

    Stores the result of comparing every campaign's current_amount with its
    ledger-derived balance.
    """

    __tablename__ = "reconciliation_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    campaigns_checked: Mapped[int | None] = mapped_column(Integer, nullable=True)
    discrepancy_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    discrepancy_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('in_progress', 'completed', 'failed')",
            name="valid_reconciliation_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation of ReconciliationRun."""
        return f"<ReconciliationRun(id={self.id}, status={self.status})>"
