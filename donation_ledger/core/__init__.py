"""Core donation confirmation and ledger logic."""
from .confirmation import (
    ConfirmationChannel,
    ConfirmationError,
    ConfirmationResult,
    GatewayMeta,
    PaymentConfirmationProcessor,
    PaymentOutcome,
    PersistenceFailureError,
)
from .ledger import DonationLedger, LedgerImmutabilityError
from .locking import KeyedLock, LocalKeyedLock, LockUnavailableError, RedisKeyedLock
from .reallocation import ExcessFundReallocator, ReallocationOutcome
from .reconciliation import LedgerReconciler, ReconciliationError
from .repository import DonationRepository

__all__ = [
    "ConfirmationChannel",
    "ConfirmationError",
    "ConfirmationResult",
    "DonationLedger",
    "DonationRepository",
    "ExcessFundReallocator",
    "GatewayMeta",
    "KeyedLock",
    "LedgerImmutabilityError",
    "LedgerReconciler",
    "LocalKeyedLock",
    "LockUnavailableError",
    "PaymentConfirmationProcessor",
    "PaymentOutcome",
    "PersistenceFailureError",
    "ReallocationOutcome",
    "ReconciliationError",
    "RedisKeyedLock",
]
