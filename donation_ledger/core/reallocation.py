"""
Excess-fund reallocation.

Runs after a confirmation has credited a campaign. Only the part of the new
donation that lies above the target is reallocated, so every later donation
to an over-target campaign moves just its own increment.

Convention: money that leaves a campaign is recorded as a transfer_out and
subtracted from current_amount, keeping current_amount equal to the
ledger-derived balance for every policy.
"""
from decimal import Decimal
from typing import Optional

import structlog
from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from donation_ledger.core.ledger import DonationLedger
from donation_ledger.core.repository import DonationRepository
from donation_ledger.database.models import Campaign, ExcessFundPolicy, LedgerEntryType
from donation_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ReallocationOutcome(BaseModel):
    """What the reallocator did for one confirmation."""

    model_config = ConfigDict(frozen=True)

    action: str
    policy: Optional[str] = None
    excess: Decimal = Decimal("0")
    destination_campaign_id: Optional[int] = None


class ExcessFundReallocator:
    """Applies a campaign's excess-fund policy inside the confirmation transaction."""

    def __init__(
        self,
        ledger: Optional[DonationLedger] = None,
        repository: Optional[DonationRepository] = None,
    ):
        self.ledger = ledger or DonationLedger()
        self.repository = repository or DonationRepository()

    async def reallocate_if_exceeding(
        self,
        db: AsyncSession,
        campaign: Campaign,
        increment: Decimal,
        donation_id: Optional[int] = None,
    ) -> ReallocationOutcome:
        """
        Apply the excess-fund policy when the campaign is above its target.

        Args:
            db: Database session holding the campaign row lock
            campaign: Campaign in its post-credit state
            increment: Amount just credited by the triggering donation
            donation_id: Triggering donation, recorded on transfer rows

        Returns:
            ReallocationOutcome: Action taken (never raises for a missing destination)
        """
        current = campaign.current_amount
        target = campaign.target_amount
        if current <= target:
            return ReallocationOutcome(action="below_target", policy=campaign.excess_fund_option)

        excess = min(increment, current - target)
        raw_policy = (campaign.excess_fund_option or "").strip().lower()

        logger.info(
            "campaign_exceeded_target",
            campaign_id=campaign.id,
            current_amount=str(current),
            target_amount=str(target),
            excess=str(excess),
            policy=raw_policy or None,
        )

        try:
            policy = ExcessFundPolicy(raw_policy)
        except ValueError:
            logger.warning(
                "excess_fund_policy_unknown",
                campaign_id=campaign.id,
                policy=campaign.excess_fund_option,
            )
            metrics.record_reallocation(raw_policy or "unset", "ignored")
            return ReallocationOutcome(
                action="unknown_policy", policy=campaign.excess_fund_option, excess=excess
            )

        if policy == ExcessFundPolicy.NEXT_CASE:
            outcome = await self._transfer_to_next_case(db, campaign, excess, donation_id)
        elif policy in (ExcessFundPolicy.RESERVE_FUND, ExcessFundPolicy.GENERAL_FUND):
            outcome = await self._move_to_pool(db, campaign, excess, donation_id, policy)
        elif policy == ExcessFundPolicy.REFUND:
            outcome = await self._flag_refund(db, campaign, excess, donation_id)
        else:
            logger.info("excess_fund_kept", campaign_id=campaign.id, excess=str(excess))
            outcome = ReallocationOutcome(action="kept", policy=policy.value, excess=excess)

        metrics.record_reallocation(policy.value, outcome.action)
        return outcome

    async def _find_next_case(self, db: AsyncSession, campaign: Campaign) -> Optional[Campaign]:
        """Oldest other active campaign in the same category."""
        if campaign.category_id is None:
            return None
        stmt = (
            select(Campaign)
            .where(
                Campaign.category_id == campaign.category_id,
                Campaign.status == "active",
                Campaign.id != campaign.id,
            )
            .order_by(Campaign.created_at, Campaign.id)
            .limit(1)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def _transfer_to_next_case(
        self,
        db: AsyncSession,
        campaign: Campaign,
        excess: Decimal,
        donation_id: Optional[int],
    ) -> ReallocationOutcome:
        destination = await self._find_next_case(db, campaign)
        if destination is None:
            logger.warning(
                "excess_fund_no_destination",
                campaign_id=campaign.id,
                category_id=campaign.category_id,
                excess=str(excess),
            )
            return ReallocationOutcome(
                action="no_destination", policy=ExcessFundPolicy.NEXT_CASE.value, excess=excess
            )

        await self.repository.update_campaign_amount(
            db, campaign, campaign.current_amount - excess
        )
        await self.ledger.append_transaction(
            db,
            campaign_id=campaign.id,
            entry_type=LedgerEntryType.TRANSFER_OUT,
            amount=excess,
            description=f"Excess fund moved to campaign #{destination.id}",
            donation_id=donation_id,
            counterparty_campaign_id=destination.id,
        )
        await self.repository.update_campaign_amount(
            db, destination, destination.current_amount + excess
        )
        await self.ledger.append_transaction(
            db,
            campaign_id=destination.id,
            entry_type=LedgerEntryType.TRANSFER_IN,
            amount=excess,
            description=f"Excess fund from campaign #{campaign.id}",
            donation_id=donation_id,
            counterparty_campaign_id=campaign.id,
        )

        logger.info(
            "excess_fund_transferred",
            source_campaign_id=campaign.id,
            destination_campaign_id=destination.id,
            amount=str(excess),
        )
        return ReallocationOutcome(
            action="transferred",
            policy=ExcessFundPolicy.NEXT_CASE.value,
            excess=excess,
            destination_campaign_id=destination.id,
        )

    async def _move_to_pool(
        self,
        db: AsyncSession,
        campaign: Campaign,
        excess: Decimal,
        donation_id: Optional[int],
        policy: ExcessFundPolicy,
    ) -> ReallocationOutcome:
        # No campaign receives the money, so there is no matching transfer_in
        await self.repository.update_campaign_amount(
            db, campaign, campaign.current_amount - excess
        )
        await self.ledger.append_transaction(
            db,
            campaign_id=campaign.id,
            entry_type=LedgerEntryType.TRANSFER_OUT,
            amount=excess,
            description=f"Excess fund moved to {policy.value}",
            donation_id=donation_id,
            fund_pool=policy.value,
        )

        logger.info(
            "excess_fund_pooled",
            campaign_id=campaign.id,
            pool=policy.value,
            amount=str(excess),
        )
        return ReallocationOutcome(action="pooled", policy=policy.value, excess=excess)

    async def _flag_refund(
        self,
        db: AsyncSession,
        campaign: Campaign,
        excess: Decimal,
        donation_id: Optional[int],
    ) -> ReallocationOutcome:
        await self.repository.flag_for_review(
            db,
            kind="excess_refund_requested",
            donation_id=donation_id,
            campaign_id=campaign.id,
            amount=excess,
            details={"policy": ExcessFundPolicy.REFUND.value},
        )
        return ReallocationOutcome(
            action="refund_flagged", policy=ExcessFundPolicy.REFUND.value, excess=excess
        )
