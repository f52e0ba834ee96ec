"""
Race condition tests for concurrent confirmation signals.

Return redirect, IPN and manual confirmation can all arrive at once for the
same transaction code; exactly one of them may credit the campaign.
"""
import asyncio
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from donation_ledger.core.confirmation import (
    ConfirmationChannel,
    ConfirmationResult,
    GatewayMeta,
    PaymentConfirmationProcessor,
    PaymentOutcome,
)
from donation_ledger.core.ledger import DonationLedger
from donation_ledger.core.locking import LocalKeyedLock
from donation_ledger.core.repository import DonationRepository
from donation_ledger.database.models import LedgerEntryType, PaymentStatus
from donation_ledger.integrations.notifications import drain_notifications

from .conftest import RecordingNotifier, Store


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_confirmations_same_transaction_code(
        self,
        processor: PaymentConfirmationProcessor,
        store: Store,
        notifier: RecordingNotifier,
        test_db: AsyncSession,
    ) -> None:
        """
        Ten concurrent success signals for one donation.

        Should credit exactly once; the rest report AlreadyProcessed.
        """
        campaign_id = await store.add_campaign(target="100000000")
        code = await store.add_donation(campaign_id, amount="500000")
        channels = [ConfirmationChannel.RETURN, ConfirmationChannel.IPN, ConfirmationChannel.MANUAL]

        results = await asyncio.gather(*[
            processor.confirm_outcome(
                code, PaymentOutcome.success(), GatewayMeta(channel=channels[i % 3])
            )
            for i in range(10)
        ])
        await drain_notifications()

        assert results.count(ConfirmationResult.CONFIRMED) == 1
        assert results.count(ConfirmationResult.ALREADY_PROCESSED) == 9

        assert (await store.campaign(campaign_id)).current_amount == Decimal("500000")
        donation = await store.donation(code)
        assert await DonationLedger().count_for_donation(
            test_db, donation.id, LedgerEntryType.IN
        ) == 1
        assert len(notifier.sent) == 2

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_success_and_failure(
        self, processor: PaymentConfirmationProcessor, store: Store
    ) -> None:
        """
        A success and a failure racing for the same donation.

        Whichever wins, the donation ends in exactly one terminal state and
        the ledger agrees with it.
        """
        campaign_id = await store.add_campaign(target="100000000")
        code = await store.add_donation(campaign_id, amount="500000")

        results = await asyncio.gather(
            processor.confirm_outcome(code, PaymentOutcome.success()),
            processor.confirm_outcome(code, PaymentOutcome.failed("cancelled")),
        )

        donation = await store.donation(code)
        rows = await store.ledger_rows(campaign_id)
        if donation.payment_status == PaymentStatus.SUCCESS.value:
            assert results == [ConfirmationResult.CONFIRMED, ConfirmationResult.ALREADY_PROCESSED]
            assert len(rows) == 1
        else:
            assert results == [ConfirmationResult.ANOMALY_RECORDED, ConfirmationResult.RECORDED]
            assert rows == []

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_donations_to_same_campaign(
        self, processor: PaymentConfirmationProcessor, store: Store, test_db: AsyncSession
    ) -> None:
        """Different donations to one campaign all count; no update is lost."""
        campaign_id = await store.add_campaign(target="100000000")
        codes = [await store.add_donation(campaign_id, amount="100000") for _ in range(5)]

        results = await asyncio.gather(*[
            processor.confirm_outcome(code, PaymentOutcome.success()) for code in codes
        ])

        assert results == [ConfirmationResult.CONFIRMED] * 5
        assert (await store.campaign(campaign_id)).current_amount == Decimal("500000")
        assert await DonationLedger().find_discrepancies(test_db) == []

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_stale_status_update_is_rejected(
        self, store: Store, session_factory: Any
    ) -> None:
        """
        The compare-and-set guard holds even without the keyed lock.

        A writer that read the donation as pending before another writer
        confirmed it cannot apply a second transition.
        """
        campaign_id = await store.add_campaign()
        code = await store.add_donation(campaign_id)
        repository = DonationRepository()

        async with session_factory() as db:
            donation = await repository.find_donation_by_transaction_code(db, code)
            assert await repository.update_donation_status(db, donation.id, PaymentStatus.SUCCESS)
            await db.commit()

        async with session_factory() as db:
            assert not await repository.update_donation_status(
                db, donation.id, PaymentStatus.FAILED, reason="late"
            )
            await db.commit()

        assert (await store.donation(code)).payment_status == PaymentStatus.SUCCESS.value


class TestKeyedLock:
    """Test suite for the in-process keyed lock."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self) -> None:
        lock = LocalKeyedLock()
        order = []

        async def worker(name: str) -> None:
            async with lock.hold("DON1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (
            ["a-in", "a-out", "b-in", "b-out"],
            ["b-in", "b-out", "a-in", "a-out"],
        )

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self) -> None:
        lock = LocalKeyedLock()

        async def hold_other() -> bool:
            async with lock.hold("DON2"):
                return lock.is_locked("DON2")

        async with lock.hold("DON1"):
            assert lock.is_locked("DON1")
            assert await asyncio.wait_for(hold_other(), timeout=1)

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_released_keys_are_forgotten(self) -> None:
        lock = LocalKeyedLock()

        async with lock.hold("DON1"):
            pass

        assert not lock.is_locked("DON1")
        assert lock._locks == {}
