"""
Append-only campaign ledger.

The FinancialTransaction table is the auditable source of truth for campaign
balances:

    balance = sum(in, transfer_in) - sum(out, transfer_out)

Rows are insert-only. An ORM guard rejects any attempt to update or delete a
ledger row through the session.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import case, event, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from donation_ledger.database.models import Campaign, FinancialTransaction, LedgerEntryType

logger = structlog.get_logger(__name__)

CREDIT_TYPES = (LedgerEntryType.IN.value, LedgerEntryType.TRANSFER_IN.value)
CENT = Decimal("0.01")


class LedgerImmutabilityError(Exception):
    """Raised when code tries to modify or delete a ledger row."""

    pass


@event.listens_for(FinancialTransaction, "before_update")
def _reject_ledger_update(mapper: Any, connection: Any, target: FinancialTransaction) -> None:
    raise LedgerImmutabilityError(f"Ledger row {target.id} cannot be updated")


@event.listens_for(FinancialTransaction, "before_delete")
def _reject_ledger_delete(mapper: Any, connection: Any, target: FinancialTransaction) -> None:
    raise LedgerImmutabilityError(f"Ledger row {target.id} cannot be deleted")


def _signed_amount() -> Any:
    return case(
        (FinancialTransaction.type.in_(CREDIT_TYPES), FinancialTransaction.amount),
        else_=-FinancialTransaction.amount,
    )


class DonationLedger:
    """Insert-only access to FinancialTransaction plus balance derivation."""

    async def append_transaction(
        self,
        db: AsyncSession,
        campaign_id: int,
        entry_type: LedgerEntryType,
        amount: Decimal,
        description: Optional[str] = None,
        donation_id: Optional[int] = None,
        counterparty_campaign_id: Optional[int] = None,
        fund_pool: Optional[str] = None,
    ) -> FinancialTransaction:
        """
        Append one ledger row.

        Args:
            db: Database session (the caller owns the transaction)
            campaign_id: Campaign the row belongs to
            entry_type: in / out / transfer_in / transfer_out
            amount: Positive amount
            description: Human readable description
            donation_id: Originating donation, if any
            counterparty_campaign_id: Other side of a campaign-to-campaign transfer
            fund_pool: Non-campaign pool receiving a transfer_out

        Returns:
            FinancialTransaction: The flushed row

        Raises:
            ValueError: If the amount is not positive
        """
        if amount <= 0:
            raise ValueError("Ledger amount must be positive")

        row = FinancialTransaction(
            campaign_id=campaign_id,
            type=entry_type.value,
            amount=amount,
            description=description,
            donation_id=donation_id,
            counterparty_campaign_id=counterparty_campaign_id,
            fund_pool=fund_pool,
        )
        db.add(row)
        await db.flush()

        logger.info(
            "ledger_transaction_appended",
            ledger_id=row.id,
            campaign_id=campaign_id,
            type=entry_type.value,
            amount=str(amount),
            donation_id=donation_id,
        )
        return row

    async def campaign_balance(self, db: AsyncSession, campaign_id: int) -> Decimal:
        """Ledger-derived balance of a campaign."""
        stmt = select(func.coalesce(func.sum(_signed_amount()), 0)).where(
            FinancialTransaction.campaign_id == campaign_id
        )
        result = await db.execute(stmt)
        return Decimal(str(result.scalar_one())).quantize(CENT)

    async def list_transactions(
        self, db: AsyncSession, campaign_id: int, limit: int = 500
    ) -> List[FinancialTransaction]:
        """Ledger rows of a campaign, oldest first."""
        stmt = (
            select(FinancialTransaction)
            .where(FinancialTransaction.campaign_id == campaign_id)
            .order_by(FinancialTransaction.id)
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def count_for_donation(
        self, db: AsyncSession, donation_id: int, entry_type: Optional[LedgerEntryType] = None
    ) -> int:
        """Number of ledger rows referencing a donation."""
        stmt = select(func.count(FinancialTransaction.id)).where(
            FinancialTransaction.donation_id == donation_id
        )
        if entry_type is not None:
            stmt = stmt.where(FinancialTransaction.type == entry_type.value)
        result = await db.execute(stmt)
        return int(result.scalar_one())

    async def find_discrepancies(self, db: AsyncSession) -> List[Dict[str, Any]]:
        """
        Compare every campaign's current_amount with its ledger-derived balance.

        Returns:
            List[Dict[str, Any]]: One entry per campaign whose totals disagree
        """
        balances = (
            select(
                FinancialTransaction.campaign_id.label("campaign_id"),
                func.sum(_signed_amount()).label("balance"),
            )
            .group_by(FinancialTransaction.campaign_id)
            .subquery()
        )
        stmt = (
            select(
                Campaign.id,
                Campaign.current_amount,
                func.coalesce(balances.c.balance, 0).label("ledger_balance"),
            )
            .outerjoin(balances, balances.c.campaign_id == Campaign.id)
            .order_by(Campaign.id)
        )
        result = await db.execute(stmt)

        discrepancies = []
        for campaign_id, current_amount, ledger_balance in result.all():
            current = Decimal(str(current_amount or 0)).quantize(CENT)
            ledger = Decimal(str(ledger_balance)).quantize(CENT)
            if current != ledger:
                discrepancies.append({
                    "campaign_id": campaign_id,
                    "current_amount": str(current),
                    "ledger_balance": str(ledger),
                    "difference": str(current - ledger),
                })
        return discrepancies

    async def count_campaigns(self, db: AsyncSession) -> int:
        """Number of campaigns covered by a reconciliation pass."""
        result = await db.execute(select(func.count(Campaign.id)))
        return int(result.scalar_one())
