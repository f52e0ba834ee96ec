"""Database package for the donation ledger service."""
from .connection import get_db, get_session_factory, init_db
from .models import (
    Base,
    Campaign,
    Donation,
    ExcessFundPolicy,
    FinancialTransaction,
    LedgerEntryType,
    Notification,
    PaymentStatus,
    ReconciliationRun,
    ReviewFlag,
)

__all__ = [
    "Base",
    "Campaign",
    "Donation",
    "ExcessFundPolicy",
    "FinancialTransaction",
    "LedgerEntryType",
    "Notification",
    "PaymentStatus",
    "ReconciliationRun",
    "ReviewFlag",
    "get_db",
    "get_session_factory",
    "init_db",
]
