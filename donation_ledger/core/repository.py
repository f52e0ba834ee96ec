"""
Donation and campaign persistence used by the confirmation engine.

These functions, together with DonationLedger.append_transaction, are the only
places the engine mutates state. Status transitions are compare-and-set
updates so a stale read can never apply a second transition.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from donation_ledger.database.models import Campaign, Donation, PaymentStatus, ReviewFlag

logger = structlog.get_logger(__name__)


class DonationRepository:
    """Lookup and mutation of donations, campaigns and review flags."""

    async def find_donation_by_transaction_code(
        self, db: AsyncSession, transaction_code: str
    ) -> Optional[Donation]:
        """
        Find a donation by its transaction code.

        Always reads the current row state, bypassing the identity map.
        """
        stmt = (
            select(Donation)
            .where(Donation.transaction_code == transaction_code)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def update_donation_status(
        self,
        db: AsyncSession,
        donation_id: int,
        new_status: PaymentStatus,
        timestamp: Optional[datetime] = None,
        expected_status: PaymentStatus = PaymentStatus.PENDING,
        reason: Optional[str] = None,
    ) -> bool:
        """
        Move a donation to a new status if it is still in the expected status.

        Args:
            db: Database session
            donation_id: Donation ID
            new_status: Target status
            timestamp: Confirmation timestamp (success only)
            expected_status: Status the row must currently have
            reason: Failure reason (failed only)

        Returns:
            bool: True if this call performed the transition
        """
        values: Dict[str, Any] = {"payment_status": new_status.value}
        if timestamp is not None:
            values["confirmed_at"] = timestamp
        if reason is not None:
            values["failure_reason"] = reason

        stmt = (
            update(Donation)
            .where(
                Donation.id == donation_id,
                Donation.payment_status == expected_status.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    async def get_campaign(
        self, db: AsyncSession, campaign_id: Optional[int], for_update: bool = False
    ) -> Optional[Campaign]:
        """
        Load a campaign, optionally taking a row lock for the rest of the transaction.

        Args:
            db: Database session
            campaign_id: Campaign ID (None for an orphaned donation)
            for_update: Lock the row (SELECT ... FOR UPDATE where supported)

        Returns:
            Optional[Campaign]: The campaign, or None if it does not exist
        """
        if campaign_id is None:
            return None
        stmt = (
            select(Campaign)
            .where(Campaign.id == campaign_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def update_campaign_amount(
        self, db: AsyncSession, campaign: Campaign, new_amount: Decimal
    ) -> None:
        """Set a locked campaign's running total."""
        campaign.current_amount = new_amount
        await db.flush()
        logger.debug(
            "campaign_amount_updated",
            campaign_id=campaign.id,
            current_amount=str(new_amount),
        )

    async def flag_for_review(
        self,
        db: AsyncSession,
        kind: str,
        transaction_code: Optional[str] = None,
        donation_id: Optional[int] = None,
        campaign_id: Optional[int] = None,
        amount: Optional[Decimal] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ReviewFlag:
        """
        File an anomaly for operator review.

        The flag is written in the caller's transaction so it commits together
        with whatever state change it describes.
        """
        flag = ReviewFlag(
            kind=kind,
            transaction_code=transaction_code,
            donation_id=donation_id,
            campaign_id=campaign_id,
            amount=amount,
            details=details,
            resolved=False,
        )
        db.add(flag)
        logger.warning(
            "review_flag_created",
            kind=kind,
            transaction_code=transaction_code,
            donation_id=donation_id,
            campaign_id=campaign_id,
        )
        return flag
