"""
Unit tests for the payment confirmation processor.
"""
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator

import pytest
from sqlalchemy.exc import OperationalError

from donation_ledger.core.confirmation import (
    ConfirmationChannel,
    ConfirmationResult,
    GatewayMeta,
    PaymentConfirmationProcessor,
    PaymentOutcome,
    PersistenceFailureError,
)
from donation_ledger.core.locking import LockUnavailableError
from donation_ledger.database.models import LedgerEntryType, PaymentStatus
from donation_ledger.integrations.gateways import GatewayConfirmation, GatewayKind
from donation_ledger.integrations.notifications import drain_notifications

from .conftest import RecordingNotifier, Store


class UnavailableLock:
    """Keyed lock that can never be acquired."""

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        raise LockUnavailableError(f"lock {key} busy")
        yield  # pragma: no cover


class TestSuccessfulConfirmation:
    """Test suite for crediting a pending donation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirm_pending_donation(
        self, processor: PaymentConfirmationProcessor, store: Store
    ) -> None:
        """Status, campaign total and ledger row change together."""
        campaign_id = await store.add_campaign(target="10000000")
        code = await store.add_donation(campaign_id, amount="500000")

        result = await processor.confirm_outcome(code, PaymentOutcome.success())

        assert result == ConfirmationResult.CONFIRMED
        donation = await store.donation(code)
        assert donation.payment_status == PaymentStatus.SUCCESS.value
        assert donation.confirmed_at is not None

        campaign = await store.campaign(campaign_id)
        assert campaign.current_amount == Decimal("500000")

        rows = await store.ledger_rows(campaign_id)
        assert len(rows) == 1
        assert rows[0].type == LedgerEntryType.IN.value
        assert rows[0].amount == Decimal("500000")
        assert rows[0].donation_id == donation.id
        assert rows[0].description == f"Donation from transaction #{code}"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_notifies_donor_and_creator(
        self,
        processor: PaymentConfirmationProcessor,
        store: Store,
        notifier: RecordingNotifier,
    ) -> None:
        """Donor and campaign creator are both told about the donation."""
        campaign_id = await store.add_campaign(creator_id=100, title="School roof")
        code = await store.add_donation(campaign_id, amount="250000", user_id=7)

        await processor.confirm_outcome(code, PaymentOutcome.success())
        await drain_notifications()

        by_user = {n.user_id: n for n in notifier.sent}
        assert set(by_user) == {7, 100}
        assert by_user[7].title == "Donation successful"
        assert "250,000 VND" in by_user[7].message
        assert "School roof" in by_user[7].message
        assert by_user[100].title == "New donation received"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_guest_donation_only_notifies_creator(
        self,
        processor: PaymentConfirmationProcessor,
        store: Store,
        notifier: RecordingNotifier,
    ) -> None:
        campaign_id = await store.add_campaign(creator_id=100)
        code = await store.add_donation(campaign_id, user_id=None)

        await processor.confirm_outcome(code, PaymentOutcome.success())
        await drain_notifications()

        assert [n.user_id for n in notifier.sent] == [100]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_anonymous_donor_is_still_notified(
        self,
        processor: PaymentConfirmationProcessor,
        store: Store,
        notifier: RecordingNotifier,
    ) -> None:
        """Anonymity is public-facing; the donor still hears about their own donation."""
        campaign_id = await store.add_campaign(creator_id=100)
        code = await store.add_donation(campaign_id, user_id=7, is_anonymous=True)

        await processor.confirm_outcome(code, PaymentOutcome.success())
        await drain_notifications()

        assert sorted(n.user_id for n in notifier.sent) == [7, 100]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_matching_gateway_amount_confirms(
        self, processor: PaymentConfirmationProcessor, store: Store
    ) -> None:
        campaign_id = await store.add_campaign()
        code = await store.add_donation(campaign_id, amount="500000")

        confirmation = GatewayConfirmation(
            gateway=GatewayKind.VNPAY,
            transaction_code=code,
            succeeded=True,
            amount=Decimal("500000"),
        )
        result = await processor.confirm_gateway_payload(confirmation, ConfirmationChannel.IPN)

        assert result == ConfirmationResult.CONFIRMED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_notification_failure_does_not_affect_result(
        self,
        session_factory: Any,
        test_settings: Any,
        store: Store,
    ) -> None:
        """A broken notification backend is logged, never propagated."""
        from donation_ledger.core.locking import LocalKeyedLock

        processor = PaymentConfirmationProcessor(
            session_factory=session_factory,
            notifier=RecordingNotifier(fail=True),
            lock=LocalKeyedLock(),
            settings=test_settings,
        )
        campaign_id = await store.add_campaign()
        code = await store.add_donation(campaign_id)

        result = await processor.confirm_outcome(code, PaymentOutcome.success())
        await drain_notifications()

        assert result == ConfirmationResult.CONFIRMED
        assert (await store.donation(code)).payment_status == PaymentStatus.SUCCESS.value


class TestIdempotency:
    """Test suite for repeated and conflicting signals."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_success_is_already_processed(
        self,
        processor: PaymentConfirmationProcessor,
        store: Store,
        notifier: RecordingNotifier,
    ) -> None:
        """Return redirect and IPN for the same payment credit once."""
        campaign_id = await store.add_campaign()
        code = await store.add_donation(campaign_id, amount="500000")

        first = await processor.confirm_outcome(
            code, PaymentOutcome.success(), GatewayMeta(channel=ConfirmationChannel.RETURN)
        )
        second = await processor.confirm_outcome(
            code, PaymentOutcome.success(), GatewayMeta(channel=ConfirmationChannel.IPN)
        )
        await drain_notifications()

        assert first == ConfirmationResult.CONFIRMED
        assert second == ConfirmationResult.ALREADY_PROCESSED
        assert (await store.campaign(campaign_id)).current_amount == Decimal("500000")
        assert len(await store.ledger_rows(campaign_id)) == 1
        assert len(notifier.sent) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_after_success_does_not_downgrade(
        self, processor: PaymentConfirmationProcessor, store: Store
    ) -> None:
        campaign_id = await store.add_campaign()
        code = await store.add_donation(campaign_id)

        await processor.confirm_outcome(code, PaymentOutcome.success())
        result = await processor.confirm_outcome(code, PaymentOutcome.failed("timeout"))

        assert result == ConfirmationResult.ALREADY_PROCESSED
        assert (await store.donation(code)).payment_status == PaymentStatus.SUCCESS.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_transaction_code(
        self,
        processor: PaymentConfirmationProcessor,
        store: Store,
        notifier: RecordingNotifier,
    ) -> None:
        """Unknown codes are reported, nothing is written."""
        campaign_id = await store.add_campaign()

        result = await processor.confirm_outcome("DON-DOES-NOT-EXIST", PaymentOutcome.success())

        assert result == ConfirmationResult.NOT_FOUND
        assert await store.ledger_rows() == []
        assert (await store.campaign(campaign_id)).current_amount == Decimal("0")
        await drain_notifications()
        assert notifier.sent == []


class TestFailureSignals:
    """Test suite for failure and anomaly handling."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_marks_donation_failed(
        self,
        processor: PaymentConfirmationProcessor,
        store: Store,
        notifier: RecordingNotifier,
    ) -> None:
        """Failures flip the status only: no ledger row, no total change."""
        campaign_id = await store.add_campaign()
        code = await store.add_donation(campaign_id)

        result = await processor.confirm_outcome(
            code, PaymentOutcome.failed("Customer cancelled")
        )
        await drain_notifications()

        assert result == ConfirmationResult.RECORDED
        donation = await store.donation(code)
        assert donation.payment_status == PaymentStatus.FAILED.value
        assert donation.failure_reason == "Customer cancelled"
        assert await store.ledger_rows() == []
        assert (await store.campaign(campaign_id)).current_amount == Decimal("0")
        assert notifier.sent == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repeated_failure_is_a_no_op(
        self, processor: PaymentConfirmationProcessor, store: Store
    ) -> None:
        campaign_id = await store.add_campaign()
        code = await store.add_donation(campaign_id)

        await processor.confirm_outcome(code, PaymentOutcome.failed("first"))
        result = await processor.confirm_outcome(code, PaymentOutcome.failed("second"))

        assert result == ConfirmationResult.RECORDED
        assert (await store.donation(code)).failure_reason == "first"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_late_success_after_failure_is_flagged(
        self, processor: PaymentConfirmationProcessor, store: Store
    ) -> None:
        """A success after a failure is left for an operator, not credited."""
        campaign_id = await store.add_campaign()
        code = await store.add_donation(campaign_id)

        await processor.confirm_outcome(code, PaymentOutcome.failed("timeout"))
        result = await processor.confirm_outcome(code, PaymentOutcome.success())

        assert result == ConfirmationResult.ANOMALY_RECORDED
        assert (await store.donation(code)).payment_status == PaymentStatus.FAILED.value
        assert await store.ledger_rows() == []
        flags = await store.review_flags("late_success_after_failure")
        assert len(flags) == 1
        assert flags[0].transaction_code == code

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_amount_mismatch_leaves_donation_pending(
        self, processor: PaymentConfirmationProcessor, store: Store
    ) -> None:
        campaign_id = await store.add_campaign()
        code = await store.add_donation(campaign_id, amount="500000")

        result = await processor.confirm_outcome(
            code,
            PaymentOutcome.success(),
            GatewayMeta(gateway=GatewayKind.MOMO, amount=Decimal("5000")),
        )

        assert result == ConfirmationResult.ANOMALY_RECORDED
        assert (await store.donation(code)).payment_status == PaymentStatus.PENDING.value
        assert (await store.campaign(campaign_id)).current_amount == Decimal("0")
        flags = await store.review_flags("amount_mismatch")
        assert len(flags) == 1
        assert flags[0].details["reported_amount"] == "5000"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_campaign_marks_success_without_ledger(
        self,
        processor: PaymentConfirmationProcessor,
        store: Store,
        notifier: RecordingNotifier,
    ) -> None:
        """The payment happened, so the donation is success, but nothing is credited."""
        code = await store.add_donation(None, amount="300000")

        result = await processor.confirm_outcome(code, PaymentOutcome.success())
        await drain_notifications()

        assert result == ConfirmationResult.ANOMALY_RECORDED
        assert (await store.donation(code)).payment_status == PaymentStatus.SUCCESS.value
        assert await store.ledger_rows() == []
        assert len(await store.review_flags("campaign_missing")) == 1
        assert notifier.sent == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_deleted_campaign_is_treated_as_missing(
        self, processor: PaymentConfirmationProcessor, store: Store
    ) -> None:
        code = await store.add_donation(424242)

        result = await processor.confirm_outcome(code, PaymentOutcome.success())

        assert result == ConfirmationResult.ANOMALY_RECORDED
        assert await store.ledger_rows() == []


class TestPersistenceFailures:
    """Test suite for rollback and retry behaviour."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_database_error_rolls_back_whole_unit(
        self,
        processor: PaymentConfirmationProcessor,
        store: Store,
        mocker: Any,
    ) -> None:
        """No partial state survives, and a later retry succeeds."""
        campaign_id = await store.add_campaign()
        code = await store.add_donation(campaign_id, amount="500000")

        append = mocker.patch.object(
            processor.ledger,
            "append_transaction",
            side_effect=OperationalError("INSERT", {}, Exception("database is locked")),
        )

        with pytest.raises(PersistenceFailureError):
            await processor.confirm_outcome(code, PaymentOutcome.success())

        assert append.call_count == 3
        assert (await store.donation(code)).payment_status == PaymentStatus.PENDING.value
        assert (await store.campaign(campaign_id)).current_amount == Decimal("0")
        assert await store.ledger_rows() == []

        mocker.stopall()
        result = await processor.confirm_outcome(code, PaymentOutcome.success())

        assert result == ConfirmationResult.CONFIRMED
        assert len(await store.ledger_rows(campaign_id)) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lock_unavailable_is_persistence_failure(
        self,
        session_factory: Any,
        test_settings: Any,
        store: Store,
    ) -> None:
        processor = PaymentConfirmationProcessor(
            session_factory=session_factory,
            notifier=RecordingNotifier(),
            lock=UnavailableLock(),
            settings=test_settings,
        )
        campaign_id = await store.add_campaign()
        code = await store.add_donation(campaign_id)

        with pytest.raises(PersistenceFailureError):
            await processor.confirm_outcome(code, PaymentOutcome.success())

        assert (await store.donation(code)).payment_status == PaymentStatus.PENDING.value
