"""
Tests for the append-only ledger and invariant reconciliation.
"""
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from donation_ledger.core.confirmation import PaymentConfirmationProcessor, PaymentOutcome
from donation_ledger.core.ledger import DonationLedger, LedgerImmutabilityError
from donation_ledger.core.reconciliation import LedgerReconciler
from donation_ledger.database.models import Campaign, LedgerEntryType, ReconciliationRun

from .conftest import Store


class TestDonationLedger:
    """Test suite for ledger appends and balance derivation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_balance_counts_credits_minus_debits(
        self, store: Store, test_db: AsyncSession
    ) -> None:
        campaign_id = await store.add_campaign()
        ledger = DonationLedger()

        await ledger.append_transaction(test_db, campaign_id, LedgerEntryType.IN, Decimal("500000"))
        await ledger.append_transaction(
            test_db, campaign_id, LedgerEntryType.TRANSFER_IN, Decimal("200000")
        )
        await ledger.append_transaction(test_db, campaign_id, LedgerEntryType.OUT, Decimal("50000"))
        await ledger.append_transaction(
            test_db, campaign_id, LedgerEntryType.TRANSFER_OUT, Decimal("100000"), fund_pool="reserve_fund"
        )

        assert await ledger.campaign_balance(test_db, campaign_id) == Decimal("550000.00")
        assert len(await ledger.list_transactions(test_db, campaign_id)) == 4

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_campaign_balance_is_zero(
        self, store: Store, test_db: AsyncSession
    ) -> None:
        campaign_id = await store.add_campaign()

        assert await DonationLedger().campaign_balance(test_db, campaign_id) == Decimal("0.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-1000"])
    async def test_non_positive_amount_rejected(
        self, amount: str, store: Store, test_db: AsyncSession
    ) -> None:
        campaign_id = await store.add_campaign()

        with pytest.raises(ValueError):
            await DonationLedger().append_transaction(
                test_db, campaign_id, LedgerEntryType.IN, Decimal(amount)
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rows_cannot_be_updated(self, store: Store, test_db: AsyncSession) -> None:
        campaign_id = await store.add_campaign()
        row = await DonationLedger().append_transaction(
            test_db, campaign_id, LedgerEntryType.IN, Decimal("500000")
        )

        row.amount = Decimal("1")
        with pytest.raises(LedgerImmutabilityError):
            await test_db.flush()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rows_cannot_be_deleted(self, store: Store, test_db: AsyncSession) -> None:
        campaign_id = await store.add_campaign()
        row = await DonationLedger().append_transaction(
            test_db, campaign_id, LedgerEntryType.IN, Decimal("500000")
        )

        await test_db.delete(row)
        with pytest.raises(LedgerImmutabilityError):
            await test_db.flush()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_one_credit_per_donation(
        self,
        processor: PaymentConfirmationProcessor,
        store: Store,
        test_db: AsyncSession,
    ) -> None:
        """The unique constraint backs up the confirmation guards."""
        campaign_id = await store.add_campaign()
        code = await store.add_donation(campaign_id)
        await processor.confirm_outcome(code, PaymentOutcome.success())
        donation = await store.donation(code)

        with pytest.raises(IntegrityError):
            await DonationLedger().append_transaction(
                test_db, campaign_id, LedgerEntryType.IN, Decimal("500000"), donation_id=donation.id
            )


class TestLedgerReconciler:
    """Test suite for invariant reconciliation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_balanced_ledger_has_no_discrepancies(
        self,
        processor: PaymentConfirmationProcessor,
        store: Store,
        session_factory: Any,
    ) -> None:
        campaign_id = await store.add_campaign(target="1000000", excess_fund_option="reserve_fund")
        for amount in ("400000", "500000", "300000"):
            code = await store.add_donation(campaign_id, amount=amount)
            await processor.confirm_outcome(code, PaymentOutcome.success())

        result = await LedgerReconciler(session_factory=session_factory).reconcile()

        assert result["status"] == "completed"
        assert result["campaigns_checked"] == 1
        assert result["discrepancy_count"] == 0
        assert result["discrepancies"] == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_detects_drift_and_records_run(
        self,
        processor: PaymentConfirmationProcessor,
        store: Store,
        session_factory: Any,
    ) -> None:
        """A total changed outside the confirmation path is reported."""
        healthy_id = await store.add_campaign()
        drifted_id = await store.add_campaign()
        for campaign_id in (healthy_id, drifted_id):
            code = await store.add_donation(campaign_id, amount="500000")
            await processor.confirm_outcome(code, PaymentOutcome.success())

        async with session_factory() as db:
            await db.execute(
                update(Campaign)
                .where(Campaign.id == drifted_id)
                .values(current_amount=Decimal("650000"))
            )
            await db.commit()

        result = await LedgerReconciler(session_factory=session_factory).reconcile()

        assert result["discrepancy_count"] == 1
        assert result["discrepancy_amount"] == "150000.00"
        assert result["discrepancies"][0]["campaign_id"] == drifted_id
        assert result["discrepancies"][0]["ledger_balance"] == "500000.00"

        async with session_factory() as db:
            run = (
                await db.execute(
                    select(ReconciliationRun).where(ReconciliationRun.id == result["run_id"])
                )
            ).scalar_one()
        assert run.status == "completed"
        assert run.campaigns_checked == 2
        assert run.discrepancy_count == 1
        assert run.completed_at is not None
