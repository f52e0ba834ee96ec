"""
Pydantic schemas for API request/response models.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class ConfirmationResponse(BaseModel):
    """Response schema for a processed confirmation signal."""

    transaction_code: str = Field(..., description="Donation transaction code")
    result: str = Field(..., description="Confirmation result")
    succeeded: bool = Field(..., description="Whether the signal reported a successful payment")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "transaction_code": "DON20250106100000123",
                    "result": "confirmed",
                    "succeeded": True,
                }
            ]
        }
    }


class VNPayIpnResponse(BaseModel):
    """Acknowledgement body VNPay expects from an IPN endpoint."""

    RspCode: str = Field(..., description="VNPay response code")
    Message: str = Field(..., description="Human readable message")


class ManualConfirmRequest(BaseModel):
    """Request schema for a manual (simulated) confirmation."""

    amount: Optional[Decimal] = Field(
        default=None, gt=0, description="Amount reported by the operator, checked if present"
    )


class ManualFailureRequest(BaseModel):
    """Request schema for a manual failure signal."""

    reason: str = Field(..., min_length=1, max_length=500, description="Failure reason")

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        """Strip surrounding whitespace."""
        v = v.strip()
        if not v:
            raise ValueError("Reason must not be blank")
        return v


class LedgerEntryResponse(BaseModel):
    """Response schema for a single ledger row."""

    id: int = Field(..., description="Ledger row ID")
    type: str = Field(..., description="in / out / transfer_in / transfer_out")
    amount: str = Field(..., description="Positive amount")
    description: Optional[str] = Field(default=None, description="Description")
    donation_id: Optional[int] = Field(default=None, description="Originating donation")
    counterparty_campaign_id: Optional[int] = Field(
        default=None, description="Other campaign of a transfer"
    )
    fund_pool: Optional[str] = Field(default=None, description="Pool receiving a transfer_out")


class CampaignLedgerResponse(BaseModel):
    """Response schema for a campaign ledger."""

    campaign_id: int = Field(..., description="Campaign ID")
    current_amount: str = Field(..., description="Stored campaign total")
    ledger_balance: str = Field(..., description="Balance derived from the ledger")
    balanced: bool = Field(..., description="Whether the two agree")
    entries: List[LedgerEntryResponse] = Field(default_factory=list, description="Ledger rows")


class ReconciliationResponse(BaseModel):
    """Response schema for reconciliation results."""

    run_id: int = Field(..., description="Reconciliation run ID")
    status: str = Field(..., description="Run status")
    campaigns_checked: int = Field(..., description="Campaigns examined")
    discrepancy_count: int = Field(..., description="Campaigns out of balance")
    discrepancy_amount: str = Field(..., description="Sum of absolute differences")
    discrepancies: List[Dict[str, Any]] = Field(..., description="List of discrepancies")


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
