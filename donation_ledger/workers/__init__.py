"""Background workers."""
from .reconciliation_worker import run_daily_reconciliation, start_reconciliation_worker

__all__ = ["run_daily_reconciliation", "start_reconciliation_worker"]
