"""
Reconciliation engine for the campaign balance invariant.

For every campaign, current_amount must equal the ledger-derived balance.
Runs daily (and on demand) to detect drift such as:
- A campaign total changed outside the confirmation path
- A ledger row written without the matching total update
"""
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from donation_ledger.core.ledger import DonationLedger
from donation_ledger.database.connection import get_session_factory
from donation_ledger.database.models import ReconciliationRun
from donation_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ReconciliationError(Exception):
    """Raised when reconciliation fails."""

    pass


class LedgerReconciler:
    """
    Compares stored campaign totals with the append-only ledger.

    Each pass is recorded as a ReconciliationRun so operators can see when
    the invariant last held and which campaigns drifted.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        ledger: Optional[DonationLedger] = None,
    ):
        """
        Initialize reconciler.

        Args:
            session_factory: Optional session factory
            ledger: Optional ledger
        """
        self._session_factory = session_factory
        self.ledger = ledger or DonationLedger()
        logger.info("ledger_reconciler_initialized")

    async def reconcile(self) -> Dict[str, Any]:
        """
        Check the balance invariant for every campaign.

        Returns:
            Dict[str, Any]: Reconciliation results

        Raises:
            ReconciliationError: If the pass could not complete
        """
        start_time = time.time()
        logger.info("reconciliation_started")

        session_factory = self._session_factory or get_session_factory()
        async with session_factory() as db:
            run = ReconciliationRun(
                status="in_progress",
                started_at=datetime.now(timezone.utc),
            )
            db.add(run)
            await db.commit()
            run_id = run.id

            try:
                campaigns_checked = await self.ledger.count_campaigns(db)
                discrepancies = await self.ledger.find_discrepancies(db)

                discrepancy_amount = sum(
                    (abs(Decimal(d["difference"])) for d in discrepancies),
                    Decimal("0"),
                )

                run.status = "completed"
                run.campaigns_checked = campaigns_checked
                run.discrepancy_count = len(discrepancies)
                run.discrepancy_amount = discrepancy_amount
                run.completed_at = datetime.now(timezone.utc)
                run.details = {"discrepancies": discrepancies[:100]}  # Limit stored rows
                await db.commit()

            except Exception as e:
                await db.rollback()
                logger.error("reconciliation_failed", run_id=run_id, error=str(e))

                run.status = "failed"
                run.completed_at = datetime.now(timezone.utc)
                run.details = {"error": str(e)}
                await db.commit()

                raise ReconciliationError(f"Reconciliation failed: {str(e)}") from e

        duration = time.time() - start_time
        metrics.set_reconciliation_metrics(len(discrepancies), duration)

        if discrepancies:
            logger.warning(
                "reconciliation_discrepancies_detected",
                run_id=run_id,
                discrepancy_count=len(discrepancies),
                discrepancy_amount=str(discrepancy_amount),
            )
        logger.info(
            "reconciliation_completed",
            run_id=run_id,
            campaigns_checked=campaigns_checked,
            discrepancy_count=len(discrepancies),
            duration_seconds=duration,
        )

        return {
            "run_id": run_id,
            "status": "completed",
            "campaigns_checked": campaigns_checked,
            "discrepancy_count": len(discrepancies),
            "discrepancy_amount": str(discrepancy_amount),
            "discrepancies": discrepancies,
        }
