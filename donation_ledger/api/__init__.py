"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CampaignLedgerResponse,
    ConfirmationResponse,
    ManualConfirmRequest,
    ManualFailureRequest,
    ReconciliationResponse,
    VNPayIpnResponse,
)

__all__ = [
    "app",
    "CampaignLedgerResponse",
    "ConfirmationResponse",
    "ManualConfirmRequest",
    "ManualFailureRequest",
    "ReconciliationResponse",
    "VNPayIpnResponse",
]
