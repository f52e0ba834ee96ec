"""
Payment confirmation processor with keyed locking and an idempotency gate.

Every inbound channel (browser return, gateway IPN, manual confirmation)
funnels into confirm_outcome:
1. Acquire the lock for the transaction code
2. Look up the donation (NotFound if absent)
3. Return AlreadyProcessed if it is already success
4. Record a failure, or
5. Credit the campaign: donation status, campaign total and ledger row are
   committed as one unit, together with any excess-fund reallocation
6. Release the lock
7. Dispatch notifications in a detached task
"""
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, NamedTuple, Optional, Sequence

import structlog
from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from donation_ledger.config import Settings, get_settings
from donation_ledger.core.ledger import DonationLedger
from donation_ledger.core.locking import KeyedLock, LockUnavailableError, build_lock
from donation_ledger.core.reallocation import ExcessFundReallocator
from donation_ledger.core.repository import DonationRepository
from donation_ledger.database.connection import get_session_factory
from donation_ledger.database.models import Campaign, Donation, LedgerEntryType, PaymentStatus
from donation_ledger.integrations.gateways import GatewayConfirmation, GatewayKind
from donation_ledger.integrations.notifications import (
    DatabaseNotificationDispatcher,
    NotificationDispatcher,
    NotificationRequest,
    dispatch_detached,
)
from donation_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ConfirmationResult(str, Enum):
    """Outcome reported to the calling channel."""

    CONFIRMED = "confirmed"
    ALREADY_PROCESSED = "already_processed"
    RECORDED = "recorded"
    NOT_FOUND = "not_found"
    ANOMALY_RECORDED = "anomaly_recorded"


class ConfirmationChannel(str, Enum):
    """How a confirmation signal arrived."""

    RETURN = "return"
    IPN = "ipn"
    MANUAL = "manual"


class ConfirmationError(Exception):
    """Base exception for confirmation processing errors."""

    pass


class PersistenceFailureError(ConfirmationError):
    """
    Raised when the confirmation unit could not be committed.

    Nothing from the unit survives, so the caller may retry.
    """

    pass


class PaymentOutcome(BaseModel):
    """Success, or failure with a reason."""

    model_config = ConfigDict(frozen=True)

    succeeded: bool
    reason: Optional[str] = None

    @classmethod
    def success(cls) -> "PaymentOutcome":
        return cls(succeeded=True)

    @classmethod
    def failed(cls, reason: str) -> "PaymentOutcome":
        return cls(succeeded=False, reason=reason)


class GatewayMeta(BaseModel):
    """Channel metadata accompanying a confirmation signal."""

    model_config = ConfigDict(frozen=True)

    gateway: GatewayKind = GatewayKind.MANUAL
    channel: ConfirmationChannel = ConfirmationChannel.MANUAL
    amount: Optional[Decimal] = None
    gateway_transaction_id: Optional[str] = None
    response_code: Optional[str] = None

    @classmethod
    def from_confirmation(
        cls, confirmation: GatewayConfirmation, channel: ConfirmationChannel
    ) -> "GatewayMeta":
        return cls(
            gateway=confirmation.gateway,
            channel=channel,
            amount=confirmation.amount,
            gateway_transaction_id=confirmation.gateway_transaction_id,
            response_code=confirmation.response_code,
        )


class _Decision(NamedTuple):
    result: ConfirmationResult
    notifications: Sequence[NotificationRequest] = ()
    confirmed_amount: Optional[Decimal] = None


def _format_amount(amount: Decimal) -> str:
    return f"{amount:,.0f} VND"


class PaymentConfirmationProcessor:
    """
    Moves a pending donation to a terminal state exactly once.

    Safe under duplicated, reordered and concurrent delivery: the keyed lock
    serializes calls for one transaction code, and the compare-and-set status
    update plus the unique ledger constraint reject a second credit even if
    the lock is bypassed.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        repository: Optional[DonationRepository] = None,
        ledger: Optional[DonationLedger] = None,
        reallocator: Optional[ExcessFundReallocator] = None,
        notifier: Optional[NotificationDispatcher] = None,
        lock: Optional[KeyedLock] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize confirmation processor.

        Args:
            session_factory: Optional session factory (defaults to the app's)
            repository: Optional donation repository
            ledger: Optional ledger
            reallocator: Optional excess-fund reallocator
            notifier: Optional notification dispatcher
            lock: Optional keyed lock (defaults to the configured backend)
            settings: Optional settings
        """
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self.repository = repository or DonationRepository()
        self.ledger = ledger or DonationLedger()
        self.reallocator = reallocator or ExcessFundReallocator(self.ledger, self.repository)
        self.notifier = notifier or DatabaseNotificationDispatcher(session_factory)
        self.lock = lock or build_lock(self.settings)

        logger.info("confirmation_processor_initialized")

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def confirm_gateway_payload(
        self, confirmation: GatewayConfirmation, channel: ConfirmationChannel
    ) -> ConfirmationResult:
        """Confirm a verified gateway payload."""
        outcome = (
            PaymentOutcome.success()
            if confirmation.succeeded
            else PaymentOutcome.failed(confirmation.reason or "Payment failed")
        )
        return await self.confirm_outcome(
            confirmation.transaction_code,
            outcome,
            GatewayMeta.from_confirmation(confirmation, channel),
        )

    async def confirm_outcome(
        self,
        transaction_code: str,
        outcome: PaymentOutcome,
        meta: Optional[GatewayMeta] = None,
    ) -> ConfirmationResult:
        """
        Apply a success/failure signal to the donation with this transaction code.

        Args:
            transaction_code: Idempotency key assigned at donation time
            outcome: Success or failure signal
            meta: Channel metadata (gateway, channel, reported amount)

        Returns:
            ConfirmationResult: What happened

        Raises:
            PersistenceFailureError: If the unit could not be committed
        """
        meta = meta or GatewayMeta()
        correlation_id = str(uuid.uuid4())
        start_time = time.time()

        log = logger.bind(
            correlation_id=correlation_id,
            transaction_code=transaction_code,
            gateway=meta.gateway.value,
            channel=meta.channel.value,
        )
        log.info("confirmation_started", succeeded=outcome.succeeded)

        try:
            async with self.lock.hold(transaction_code):
                decision = await self._run_with_retry(transaction_code, outcome, meta)
        except LockUnavailableError as e:
            metrics.record_confirmation_failure(meta.gateway.value)
            log.error("confirmation_lock_unavailable", error=str(e))
            raise PersistenceFailureError(f"Confirmation in progress elsewhere: {e}") from e
        except SQLAlchemyError as e:
            metrics.record_confirmation_failure(meta.gateway.value)
            log.error("confirmation_persistence_failed", error=str(e), error_type=type(e).__name__)
            raise PersistenceFailureError(f"Could not persist confirmation: {e}") from e

        # Lock released; notifications never hold it
        if decision.notifications:
            dispatch_detached(self.notifier, decision.notifications)

        duration = time.time() - start_time
        metrics.record_confirmation(
            meta.channel.value, meta.gateway.value, decision.result.value, duration
        )
        if decision.confirmed_amount is not None:
            metrics.record_confirmed_amount(float(decision.confirmed_amount))

        log.info(
            "confirmation_completed",
            result=decision.result.value,
            duration_seconds=duration,
        )
        return decision.result

    async def _run_with_retry(
        self, transaction_code: str, outcome: PaymentOutcome, meta: GatewayMeta
    ) -> _Decision:
        # Deadlocks and unique-constraint races are retried; the retry re-reads
        # the donation and lands on the idempotency branch if another writer won
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type((OperationalError, IntegrityError)),
            stop=stop_after_attempt(self.settings.confirmation_retry_max_attempts),
            wait=wait_exponential(multiplier=self.settings.confirmation_retry_base_delay, max=2),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "confirmation_retrying",
                        transaction_code=transaction_code,
                        attempt=attempt.retry_state.attempt_number,
                    )
                return await self._run_once(transaction_code, outcome, meta)
        raise PersistenceFailureError("Confirmation retries exhausted")  # pragma: no cover

    async def _run_once(
        self, transaction_code: str, outcome: PaymentOutcome, meta: GatewayMeta
    ) -> _Decision:
        async with self.session_factory() as db:
            try:
                decision = await self._apply(db, transaction_code, outcome, meta)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return decision

    async def _apply(
        self,
        db: AsyncSession,
        transaction_code: str,
        outcome: PaymentOutcome,
        meta: GatewayMeta,
    ) -> _Decision:
        donation = await self.repository.find_donation_by_transaction_code(db, transaction_code)
        if donation is None:
            logger.warning("confirmation_transaction_not_found", transaction_code=transaction_code)
            return _Decision(ConfirmationResult.NOT_FOUND)

        status = PaymentStatus(donation.payment_status)
        if status == PaymentStatus.SUCCESS:
            logger.info(
                "confirmation_already_processed",
                transaction_code=transaction_code,
                donation_id=donation.id,
            )
            return _Decision(ConfirmationResult.ALREADY_PROCESSED)

        if not outcome.succeeded:
            return await self._record_failure(db, donation, status, outcome)

        if status == PaymentStatus.FAILED:
            # Money may have moved after a failure signal; an operator decides
            await self.repository.flag_for_review(
                db,
                kind="late_success_after_failure",
                transaction_code=transaction_code,
                donation_id=donation.id,
                campaign_id=donation.campaign_id,
                amount=donation.amount,
                details={"gateway": meta.gateway.value, "channel": meta.channel.value},
            )
            return _Decision(ConfirmationResult.ANOMALY_RECORDED)

        if meta.amount is not None and meta.amount != donation.amount:
            await self.repository.flag_for_review(
                db,
                kind="amount_mismatch",
                transaction_code=transaction_code,
                donation_id=donation.id,
                campaign_id=donation.campaign_id,
                amount=donation.amount,
                details={
                    "gateway": meta.gateway.value,
                    "reported_amount": str(meta.amount),
                    "expected_amount": str(donation.amount),
                },
            )
            return _Decision(ConfirmationResult.ANOMALY_RECORDED)

        return await self._confirm_success(db, donation, meta)

    async def _record_failure(
        self,
        db: AsyncSession,
        donation: Donation,
        status: PaymentStatus,
        outcome: PaymentOutcome,
    ) -> _Decision:
        # Failed attempts leave no ledger trace, only the status flag
        if status == PaymentStatus.FAILED:
            return _Decision(ConfirmationResult.RECORDED)

        changed = await self.repository.update_donation_status(
            db,
            donation.id,
            PaymentStatus.FAILED,
            reason=outcome.reason,
        )
        if not changed:
            return _Decision(ConfirmationResult.ALREADY_PROCESSED)

        logger.warning(
            "payment_failed",
            transaction_code=donation.transaction_code,
            donation_id=donation.id,
            reason=outcome.reason,
        )
        return _Decision(ConfirmationResult.RECORDED)

    async def _confirm_success(
        self, db: AsyncSession, donation: Donation, meta: GatewayMeta
    ) -> _Decision:
        # Claim the donation first, then lock the campaign: every confirmation
        # takes its locks in the same order
        claimed = await self.repository.update_donation_status(
            db,
            donation.id,
            PaymentStatus.SUCCESS,
            timestamp=datetime.now(timezone.utc),
        )
        if not claimed:
            return _Decision(ConfirmationResult.ALREADY_PROCESSED)

        campaign = await self.repository.get_campaign(db, donation.campaign_id, for_update=True)

        if campaign is None:
            # The payment happened, so the donation is still marked success
            await self.repository.flag_for_review(
                db,
                kind="campaign_missing",
                transaction_code=donation.transaction_code,
                donation_id=donation.id,
                campaign_id=donation.campaign_id,
                amount=donation.amount,
                details={"gateway": meta.gateway.value},
            )
            logger.error(
                "confirmation_campaign_missing",
                transaction_code=donation.transaction_code,
                donation_id=donation.id,
                campaign_id=donation.campaign_id,
            )
            return _Decision(ConfirmationResult.ANOMALY_RECORDED)

        await self.repository.update_campaign_amount(
            db, campaign, campaign.current_amount + donation.amount
        )
        await self.ledger.append_transaction(
            db,
            campaign_id=campaign.id,
            entry_type=LedgerEntryType.IN,
            amount=donation.amount,
            description=f"Donation from transaction #{donation.transaction_code}",
            donation_id=donation.id,
        )
        reallocation = await self.reallocator.reallocate_if_exceeding(
            db, campaign, donation.amount, donation_id=donation.id
        )

        logger.info(
            "payment_confirmed",
            transaction_code=donation.transaction_code,
            donation_id=donation.id,
            campaign_id=campaign.id,
            amount=str(donation.amount),
            campaign_total=str(campaign.current_amount),
            reallocation=reallocation.action,
        )
        return _Decision(
            ConfirmationResult.CONFIRMED,
            self._build_notifications(donation, campaign),
            donation.amount,
        )

    @staticmethod
    def _build_notifications(
        donation: Donation, campaign: Campaign
    ) -> List[NotificationRequest]:
        notifications = []
        amount = _format_amount(donation.amount)
        # is_anonymous hides the donor from the campaign page, not from the donor;
        # neither message names the donor
        if donation.user_id is not None:
            notifications.append(
                NotificationRequest(
                    user_id=donation.user_id,
                    title="Donation successful",
                    message=f'Thank you for donating {amount} to "{campaign.title}"',
                )
            )
        if campaign.creator_id is not None:
            notifications.append(
                NotificationRequest(
                    user_id=campaign.creator_id,
                    title="New donation received",
                    message=f'Campaign "{campaign.title}" just received {amount}',
                )
            )
        return notifications
