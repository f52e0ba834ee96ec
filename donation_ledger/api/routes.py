"""
API routes for donation confirmation.

Three inbound channels reach the same confirmation processor:
- Browser return redirects (VNPay / MoMo)
- Gateway IPN callbacks (VNPay / MoMo)
- Manual confirmation by an operator or the payment simulator
"""
import hmac
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, Mapping, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from donation_ledger.config import Settings, get_settings
from donation_ledger.core.confirmation import (
    ConfirmationChannel,
    ConfirmationResult,
    GatewayMeta,
    PaymentConfirmationProcessor,
    PaymentOutcome,
    PersistenceFailureError,
)
from donation_ledger.core.ledger import CENT, DonationLedger
from donation_ledger.core.reconciliation import LedgerReconciler, ReconciliationError
from donation_ledger.core.repository import DonationRepository
from donation_ledger.database.connection import get_db
from donation_ledger.integrations.gateways import (
    GatewayConfirmation,
    GatewayKind,
    GatewaySignatureVerifier,
    InvalidSignatureError,
    MalformedPayloadError,
    build_verifier,
)
from donation_ledger.monitoring.health import HealthCheck

from .schemas import (
    CampaignLedgerResponse,
    ConfirmationResponse,
    HealthCheckResponse,
    LedgerEntryResponse,
    ManualConfirmRequest,
    ManualFailureRequest,
    ReconciliationResponse,
    VNPayIpnResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
donation_router = APIRouter(prefix="/donations", tags=["donations"])
campaign_router = APIRouter(prefix="/campaigns", tags=["campaigns"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

# VNPay IPN acknowledgement codes
VNPAY_OK = ("00", "Confirm Success")
VNPAY_ORDER_NOT_FOUND = ("01", "Order not found")
VNPAY_ALREADY_CONFIRMED = ("02", "Order already confirmed")
VNPAY_INVALID_SIGNATURE = ("97", "Invalid signature")
VNPAY_UNKNOWN_ERROR = ("99", "Unknown error")


@lru_cache()
def get_processor() -> PaymentConfirmationProcessor:
    """Shared confirmation processor (one keyed lock per process)."""
    return PaymentConfirmationProcessor()


@lru_cache()
def get_reconciler() -> LedgerReconciler:
    return LedgerReconciler()


@lru_cache()
def get_health_check() -> HealthCheck:
    return HealthCheck()


def get_vnpay_verifier(settings: Settings = Depends(get_settings)) -> GatewaySignatureVerifier:
    return build_verifier(GatewayKind.VNPAY, settings)


def get_momo_verifier(settings: Settings = Depends(get_settings)) -> GatewaySignatureVerifier:
    return build_verifier(GatewayKind.MOMO, settings)


async def require_api_key(request: Request, settings: Settings = Depends(get_settings)) -> None:
    """
    Guard operator endpoints with the configured API key.

    Raises:
        HTTPException: 401 if the key is missing or wrong, 403 if no key is configured
    """
    expected = settings.admin_api_key.get_secret_value()
    if not expected:
        logger.warning("api_key_not_configured", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Operator endpoints are disabled"
        )

    provided = request.headers.get(settings.api_key_header, "")
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning("api_key_rejected", path=request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


async def _read_payload(request: Request) -> Dict[str, Any]:
    """Query parameters, overlaid with a JSON body when one is sent."""
    fields: Dict[str, Any] = dict(request.query_params)
    if request.method == "POST" and request.headers.get("content-type", "").startswith(
        "application/json"
    ):
        try:
            body = await request.json()
        except ValueError:
            raise MalformedPayloadError("Body is not valid JSON")
        if not isinstance(body, dict):
            raise MalformedPayloadError("JSON body must be an object")
        fields.update(body)
    return fields


async def _confirm_payload(
    fields: Mapping[str, Any],
    channel: ConfirmationChannel,
    verifier: GatewaySignatureVerifier,
    processor: PaymentConfirmationProcessor,
    settings: Settings,
) -> tuple[GatewayConfirmation, ConfirmationResult]:
    # Signature is checked before anything touches the database
    confirmation = verifier.confirm(fields, verify=settings.signature_verification_enabled)
    result = await processor.confirm_gateway_payload(confirmation, channel)
    return confirmation, result


async def _handle_return(
    fields: Mapping[str, Any],
    verifier: GatewaySignatureVerifier,
    processor: PaymentConfirmationProcessor,
    settings: Settings,
) -> Dict[str, Any]:
    try:
        confirmation, result = await _confirm_payload(
            fields, ConfirmationChannel.RETURN, verifier, processor, settings
        )
    except (InvalidSignatureError, MalformedPayloadError) as e:
        logger.warning("api_return_rejected", gateway=verifier.kind.value, error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except PersistenceFailureError as e:
        logger.error("api_return_persistence_error", gateway=verifier.kind.value, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Confirmation could not be saved, please retry",
        )

    if result == ConfirmationResult.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Donation not found")

    return {
        "transaction_code": confirmation.transaction_code,
        "result": result.value,
        "succeeded": confirmation.succeeded,
    }


@donation_router.get(
    "/vnpay/return",
    response_model=ConfirmationResponse,
    summary="VNPay return redirect",
    description="Browser redirect from VNPay after checkout",
)
async def vnpay_return(
    request: Request,
    verifier: GatewaySignatureVerifier = Depends(get_vnpay_verifier),
    processor: PaymentConfirmationProcessor = Depends(get_processor),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    """Confirm a donation from the VNPay return redirect."""
    return await _handle_return(dict(request.query_params), verifier, processor, settings)


@donation_router.api_route(
    "/vnpay/ipn",
    methods=["GET", "POST"],
    response_model=VNPayIpnResponse,
    summary="VNPay IPN",
    description="Server-to-server payment notification from VNPay",
)
async def vnpay_ipn(
    request: Request,
    verifier: GatewaySignatureVerifier = Depends(get_vnpay_verifier),
    processor: PaymentConfirmationProcessor = Depends(get_processor),
    settings: Settings = Depends(get_settings),
) -> Dict[str, str]:
    """
    Handle a VNPay IPN.

    VNPay reads the outcome from RspCode and retries until it gets a
    success-shaped code, so the HTTP status is always 200.
    """
    try:
        fields = await _read_payload(request)
        _, result = await _confirm_payload(
            fields, ConfirmationChannel.IPN, verifier, processor, settings
        )
    except InvalidSignatureError as e:
        logger.warning("api_vnpay_ipn_invalid_signature", error=str(e))
        code, message = VNPAY_INVALID_SIGNATURE
    except MalformedPayloadError as e:
        logger.warning("api_vnpay_ipn_malformed", error=str(e))
        code, message = VNPAY_UNKNOWN_ERROR
    except PersistenceFailureError as e:
        logger.error("api_vnpay_ipn_persistence_error", error=str(e))
        code, message = VNPAY_UNKNOWN_ERROR
    else:
        if result == ConfirmationResult.NOT_FOUND:
            code, message = VNPAY_ORDER_NOT_FOUND
        elif result == ConfirmationResult.ALREADY_PROCESSED:
            code, message = VNPAY_ALREADY_CONFIRMED
        else:
            code, message = VNPAY_OK

    return {"RspCode": code, "Message": message}


@donation_router.get(
    "/momo/return",
    response_model=ConfirmationResponse,
    summary="MoMo return redirect",
    description="Browser redirect from MoMo after checkout",
)
async def momo_return(
    request: Request,
    verifier: GatewaySignatureVerifier = Depends(get_momo_verifier),
    processor: PaymentConfirmationProcessor = Depends(get_processor),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    """Confirm a donation from the MoMo return redirect."""
    return await _handle_return(dict(request.query_params), verifier, processor, settings)


@donation_router.post(
    "/momo/ipn",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="MoMo IPN",
    description="Server-to-server payment notification from MoMo",
)
async def momo_ipn(
    request: Request,
    verifier: GatewaySignatureVerifier = Depends(get_momo_verifier),
    processor: PaymentConfirmationProcessor = Depends(get_processor),
    settings: Settings = Depends(get_settings),
) -> Response:
    """Handle a MoMo IPN. MoMo expects 204 once the notification is accepted."""
    try:
        fields = await _read_payload(request)
        _, result = await _confirm_payload(
            fields, ConfirmationChannel.IPN, verifier, processor, settings
        )
    except (InvalidSignatureError, MalformedPayloadError) as e:
        logger.warning("api_momo_ipn_rejected", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except PersistenceFailureError as e:
        logger.error("api_momo_ipn_persistence_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Confirmation could not be saved",
        )

    if result == ConfirmationResult.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Donation not found")

    return Response(status_code=status.HTTP_204_NO_CONTENT)


@donation_router.post(
    "/{transaction_code}/confirm",
    response_model=ConfirmationResponse,
    dependencies=[Depends(require_api_key)],
    summary="Confirm a donation manually",
    description="Operator or simulator confirmation without a gateway signature",
)
async def confirm_manually(
    transaction_code: str,
    request: Optional[ManualConfirmRequest] = None,
    processor: PaymentConfirmationProcessor = Depends(get_processor),
) -> Dict[str, Any]:
    """Mark a donation as paid."""
    meta = GatewayMeta(
        gateway=GatewayKind.MANUAL,
        channel=ConfirmationChannel.MANUAL,
        amount=request.amount if request else None,
    )
    logger.info("api_manual_confirm_request", transaction_code=transaction_code)
    return await _manual_signal(transaction_code, PaymentOutcome.success(), meta, processor)


@donation_router.post(
    "/{transaction_code}/fail",
    response_model=ConfirmationResponse,
    dependencies=[Depends(require_api_key)],
    summary="Record a failed donation",
    description="Operator or simulator failure signal",
)
async def fail_manually(
    transaction_code: str,
    request: ManualFailureRequest,
    processor: PaymentConfirmationProcessor = Depends(get_processor),
) -> Dict[str, Any]:
    """Mark a donation as failed."""
    meta = GatewayMeta(gateway=GatewayKind.MANUAL, channel=ConfirmationChannel.MANUAL)
    logger.info("api_manual_fail_request", transaction_code=transaction_code)
    return await _manual_signal(
        transaction_code, PaymentOutcome.failed(request.reason), meta, processor
    )


async def _manual_signal(
    transaction_code: str,
    outcome: PaymentOutcome,
    meta: GatewayMeta,
    processor: PaymentConfirmationProcessor,
) -> Dict[str, Any]:
    try:
        result = await processor.confirm_outcome(transaction_code, outcome, meta)
    except PersistenceFailureError as e:
        logger.error("api_manual_signal_error", transaction_code=transaction_code, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Confirmation could not be saved, please retry",
        )

    if result == ConfirmationResult.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Donation not found")

    return {
        "transaction_code": transaction_code,
        "result": result.value,
        "succeeded": outcome.succeeded,
    }


@campaign_router.get(
    "/{campaign_id}/ledger",
    response_model=CampaignLedgerResponse,
    summary="Campaign ledger",
    description="Ledger rows of a campaign with the derived balance",
)
async def campaign_ledger(
    campaign_id: int,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Get a campaign's ledger and check it against the stored total."""
    campaign = await DonationRepository().get_campaign(db, campaign_id)
    if campaign is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Campaign not found")

    ledger = DonationLedger()
    balance = await ledger.campaign_balance(db, campaign_id)
    rows = await ledger.list_transactions(db, campaign_id)
    current = Decimal(str(campaign.current_amount)).quantize(CENT)

    return {
        "campaign_id": campaign_id,
        "current_amount": str(current),
        "ledger_balance": str(balance),
        "balanced": current == balance,
        "entries": [
            LedgerEntryResponse(
                id=row.id,
                type=row.type,
                amount=str(row.amount),
                description=row.description,
                donation_id=row.donation_id,
                counterparty_campaign_id=row.counterparty_campaign_id,
                fund_pool=row.fund_pool,
            )
            for row in rows
        ],
    }


@admin_router.post(
    "/reconcile",
    response_model=ReconciliationResponse,
    dependencies=[Depends(require_api_key)],
    summary="Run reconciliation",
    description="Check every campaign total against its ledger",
)
async def run_reconciliation(
    reconciler: LedgerReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    """Run a ledger reconciliation pass."""
    try:
        logger.info("api_reconciliation_started")
        result = await reconciler.reconcile()
        logger.info(
            "api_reconciliation_completed",
            discrepancies=result["discrepancy_count"],
        )
        return result

    except ReconciliationError as e:
        logger.error("api_reconciliation_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Reconciliation failed: {str(e)}",
        )


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
