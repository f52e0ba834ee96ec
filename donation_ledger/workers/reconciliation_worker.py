"""
Reconciliation background worker.

Runs the ledger reconciliation daily at the configured hour.
"""
import asyncio
import signal
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import structlog

from donation_ledger.config import get_settings
from donation_ledger.core.reconciliation import LedgerReconciler
from donation_ledger.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_daily_reconciliation(reconciler: Optional[LedgerReconciler] = None) -> Dict[str, Any]:
    """
    Run one reconciliation pass over every campaign.

    Returns:
        Dict[str, Any]: Reconciliation results
    """
    logger.info("daily_reconciliation_started")

    try:
        reconciler = reconciler or LedgerReconciler()
        result = await reconciler.reconcile()

        logger.info(
            "daily_reconciliation_completed",
            run_id=result["run_id"],
            campaigns_checked=result["campaigns_checked"],
            discrepancy_count=result["discrepancy_count"],
        )

        if result["discrepancy_count"] > 0:
            logger.warning(
                "ledger_out_of_balance",
                run_id=result["run_id"],
                discrepancy_count=result["discrepancy_count"],
                discrepancy_amount=result["discrepancy_amount"],
                campaign_ids=[d["campaign_id"] for d in result["discrepancies"]],
            )

        return result

    except Exception as e:
        logger.error("daily_reconciliation_failed", error=str(e))
        raise


def calculate_next_run_time(target_hour: int, now: Optional[datetime] = None) -> float:
    """
    Calculate seconds until next scheduled run.

    Args:
        target_hour: Hour of day to run (24-hour format)
        now: Current time (defaults to now)

    Returns:
        float: Seconds until next run
    """
    now = now or datetime.now()
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)

    # If we've passed today's run time, schedule for tomorrow
    if now >= next_run:
        next_run += timedelta(days=1)

    seconds_until = (next_run - now).total_seconds()

    logger.info(
        "reconciliation_next_run_scheduled",
        next_run=next_run.isoformat(),
        seconds_until=seconds_until,
    )

    return seconds_until


async def start_reconciliation_worker(target_hour: Optional[int] = None) -> None:
    """
    Start the reconciliation worker.

    Args:
        target_hour: Hour of day to run (defaults to reconciliation_hour)
    """
    setup_logging()
    if target_hour is None:
        target_hour = get_settings().reconciliation_hour

    logger.info("reconciliation_worker_starting", target_hour=target_hour)

    stop = asyncio.Event()

    def request_stop(sig: int) -> None:
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        stop.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, request_stop, sig)

    reconciler = LedgerReconciler()
    try:
        while not stop.is_set():
            seconds_until = calculate_next_run_time(target_hour)

            try:
                await asyncio.wait_for(stop.wait(), timeout=seconds_until)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await run_daily_reconciliation(reconciler)
            except Exception as e:
                # Keep the schedule alive; the failed run is stored on its row
                logger.error("reconciliation_execution_error", error=str(e))

    finally:
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    """Console entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Ledger reconciliation worker")
    parser.add_argument(
        "--hour", type=int, default=None, help="Hour of day to run reconciliation (0-23)"
    )
    parser.add_argument(
        "--once", action="store_true", help="Run a single pass and exit"
    )
    args = parser.parse_args()

    if args.once:
        setup_logging()
        asyncio.run(run_daily_reconciliation())
    else:
        asyncio.run(start_reconciliation_worker(target_hour=args.hour))


if __name__ == "__main__":
    main()
