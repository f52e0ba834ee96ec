"""
Inbound payment gateway signature verification.

Implements:
- One canonicalization function per gateway (field order is gateway specific)
- Keyed-hash signature checks with case-insensitive, constant-time comparison
- Parsing of verified payloads into a gateway-neutral confirmation
"""
import hashlib
import hmac
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Mapping, Optional
from urllib.parse import quote_plus

import structlog
from pydantic import BaseModel, ConfigDict

from donation_ledger.config import Settings, get_settings
from donation_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class GatewayKind(str, Enum):
    """Inbound confirmation sources."""

    VNPAY = "vnpay"
    MOMO = "momo"
    MANUAL = "manual"


class GatewayError(Exception):
    """Base exception for inbound gateway payload errors."""

    pass


class InvalidSignatureError(GatewayError):
    """Raised when a payload signature is missing or does not match."""

    pass


class MalformedPayloadError(GatewayError):
    """Raised when required gateway fields are absent or unparseable."""

    pass


class GatewayConfirmation(BaseModel):
    """Gateway-neutral view of a verified confirmation payload."""

    model_config = ConfigDict(frozen=True)

    gateway: GatewayKind
    transaction_code: str
    succeeded: bool
    reason: Optional[str] = None
    amount: Optional[Decimal] = None
    gateway_transaction_id: Optional[str] = None
    response_code: Optional[str] = None


def compute_signature(
    canonical_payload: str,
    secret_key: str,
    digestmod: Callable[..., Any] = hashlib.sha256,
) -> str:
    """Keyed hash of a canonical payload as a lowercase hex digest."""
    return hmac.new(
        secret_key.encode("utf-8"), canonical_payload.encode("utf-8"), digestmod
    ).hexdigest()


def verify_signature(
    canonical_payload: str,
    provided_signature: Optional[str],
    secret_key: str,
    digestmod: Callable[..., Any] = hashlib.sha256,
) -> bool:
    """
    Check a provided signature against the canonical payload.

    Hex case is ignored because gateways are inconsistent about it. Signatures
    are compared as bytes so non-hex input fails the check instead of raising.

    Args:
        canonical_payload: Gateway-specific canonical string
        provided_signature: Signature received with the payload
        secret_key: Shared secret for the gateway
        digestmod: Hash constructor for the HMAC

    Returns:
        bool: True if the signature matches
    """
    if not provided_signature or not secret_key:
        return False
    expected = compute_signature(canonical_payload, secret_key, digestmod)
    provided = provided_signature.strip().lower().encode("utf-8", errors="replace")
    return hmac.compare_digest(expected.encode("ascii"), provided)


class GatewaySignatureVerifier(ABC):
    """
    Shared canonicalize/verify capability for a payment gateway.

    Subclasses define the canonical field ordering, the hash function and how
    a verified payload maps onto a GatewayConfirmation.
    """

    kind: GatewayKind
    signature_field: str
    merchant_field: str
    digestmod: Callable[..., Any] = hashlib.sha256

    def __init__(self, secret_key: str, merchant_code: str = ""):
        self._secret_key = secret_key
        self._merchant_code = merchant_code

    @abstractmethod
    def canonicalize(self, fields: Mapping[str, Any]) -> str:
        """Build the string the gateway signed, in the gateway's documented order."""

    @abstractmethod
    def parse(self, fields: Mapping[str, Any]) -> GatewayConfirmation:
        """Map payload fields onto a GatewayConfirmation."""

    def sign(self, fields: Mapping[str, Any]) -> str:
        """Signature the gateway would attach to these fields."""
        return compute_signature(self.canonicalize(fields), self._secret_key, self.digestmod)

    def verify(self, fields: Mapping[str, Any]) -> bool:
        """Check the signature carried inside the payload."""
        provided = fields.get(self.signature_field)
        return verify_signature(
            self.canonicalize(fields),
            str(provided) if provided is not None else None,
            self._secret_key,
            self.digestmod,
        )

    def confirm(self, fields: Mapping[str, Any], verify: bool = True) -> GatewayConfirmation:
        """
        Verify and parse an inbound payload.

        Args:
            fields: Raw payload fields (query string or JSON body)
            verify: Whether to check the signature

        Returns:
            GatewayConfirmation: Parsed confirmation

        Raises:
            InvalidSignatureError: If verification is on and the signature fails
            MalformedPayloadError: If required fields are missing
        """
        if verify:
            if not self.verify(fields):
                logger.warning(
                    "gateway_signature_rejected",
                    gateway=self.kind.value,
                    transaction_code=self._transaction_code_hint(fields),
                )
                metrics.record_signature_rejection(self.kind.value, "invalid_signature")
                raise InvalidSignatureError(f"Invalid {self.kind.value} signature")
        else:
            logger.warning(
                "gateway_signature_check_disabled",
                gateway=self.kind.value,
                transaction_code=self._transaction_code_hint(fields),
            )

        try:
            confirmation = self.parse(fields)
        except MalformedPayloadError:
            metrics.record_signature_rejection(self.kind.value, "malformed")
            raise

        logger.info(
            "gateway_payload_accepted",
            gateway=self.kind.value,
            transaction_code=confirmation.transaction_code,
            succeeded=confirmation.succeeded,
            verified=verify,
        )
        return confirmation

    def _transaction_code_hint(self, fields: Mapping[str, Any]) -> Optional[str]:
        return None

    def _check_merchant(self, fields: Mapping[str, Any]) -> None:
        """Reject payloads addressed to another merchant account, when one is configured."""
        if not self._merchant_code:
            return
        received = fields.get(self.merchant_field)
        if received is None or str(received) != self._merchant_code:
            raise MalformedPayloadError(f"Unexpected {self.merchant_field}: {received}")

    @staticmethod
    def _require(fields: Mapping[str, Any], name: str) -> str:
        value = fields.get(name)
        if value is None or str(value) == "":
            raise MalformedPayloadError(f"Missing required field: {name}")
        return str(value)


class VNPaySignatureVerifier(GatewaySignatureVerifier):
    """
    VNPay return/IPN verification.

    VNPay signs every non-empty vnp_* parameter except the hash fields, sorted
    by name and URL-encoded, with HMAC-SHA512.
    """

    kind = GatewayKind.VNPAY
    signature_field = "vnp_SecureHash"
    merchant_field = "vnp_TmnCode"
    digestmod = hashlib.sha512

    _excluded = frozenset({"vnp_SecureHash", "vnp_SecureHashType"})

    def canonicalize(self, fields: Mapping[str, Any]) -> str:
        pairs = sorted(
            (key, str(value))
            for key, value in fields.items()
            if key.startswith("vnp_")
            and key not in self._excluded
            and value is not None
            and str(value) != ""
        )
        return "&".join(f"{key}={quote_plus(value)}" for key, value in pairs)

    def parse(self, fields: Mapping[str, Any]) -> GatewayConfirmation:
        self._check_merchant(fields)
        transaction_code = self._require(fields, "vnp_TxnRef")
        response_code = self._require(fields, "vnp_ResponseCode")
        transaction_status = fields.get("vnp_TransactionStatus")

        amount = None
        raw_amount = fields.get("vnp_Amount")
        if raw_amount not in (None, ""):
            try:
                # VNPay sends the amount multiplied by 100
                amount = Decimal(str(raw_amount)) / 100
            except InvalidOperation:
                raise MalformedPayloadError(f"Invalid vnp_Amount: {raw_amount}")

        succeeded = response_code == "00" and transaction_status in (None, "", "00")
        return GatewayConfirmation(
            gateway=self.kind,
            transaction_code=transaction_code,
            succeeded=succeeded,
            reason=None if succeeded else f"VNPay response code {response_code}",
            amount=amount,
            gateway_transaction_id=fields.get("vnp_TransactionNo") or None,
            response_code=response_code,
        )

    def _transaction_code_hint(self, fields: Mapping[str, Any]) -> Optional[str]:
        return fields.get("vnp_TxnRef")


class MoMoSignatureVerifier(GatewaySignatureVerifier):
    """
    MoMo redirect/IPN verification.

    The access key is part of the signed string but never sent by MoMo, so it
    comes from configuration.
    """

    kind = GatewayKind.MOMO
    signature_field = "signature"
    merchant_field = "partnerCode"
    digestmod = hashlib.sha256

    field_order = (
        "amount",
        "extraData",
        "message",
        "orderId",
        "orderInfo",
        "orderType",
        "partnerCode",
        "payType",
        "requestId",
        "responseTime",
        "resultCode",
        "transId",
    )

    def __init__(self, secret_key: str, access_key: str, partner_code: str = ""):
        super().__init__(secret_key, partner_code)
        self._access_key = access_key

    def canonicalize(self, fields: Mapping[str, Any]) -> str:
        parts = [f"accessKey={self._access_key}"]
        for name in self.field_order:
            value = fields.get(name)
            parts.append(f"{name}={'' if value is None else value}")
        return "&".join(parts)

    def parse(self, fields: Mapping[str, Any]) -> GatewayConfirmation:
        self._check_merchant(fields)
        transaction_code = self._require(fields, "orderId")
        raw_result = self._require(fields, "resultCode")
        try:
            result_code = int(raw_result)
        except ValueError:
            raise MalformedPayloadError(f"Invalid resultCode: {raw_result}")

        amount = None
        raw_amount = fields.get("amount")
        if raw_amount not in (None, ""):
            try:
                amount = Decimal(str(raw_amount))
            except InvalidOperation:
                raise MalformedPayloadError(f"Invalid amount: {raw_amount}")

        succeeded = result_code == 0
        trans_id = fields.get("transId")
        return GatewayConfirmation(
            gateway=self.kind,
            transaction_code=transaction_code,
            succeeded=succeeded,
            reason=None if succeeded else (
                fields.get("message") or f"MoMo result code {result_code}"
            ),
            amount=amount,
            gateway_transaction_id=str(trans_id) if trans_id not in (None, "") else None,
            response_code=str(result_code),
        )

    def _transaction_code_hint(self, fields: Mapping[str, Any]) -> Optional[str]:
        return fields.get("orderId")


def build_verifier(
    kind: GatewayKind, settings: Optional[Settings] = None
) -> GatewaySignatureVerifier:
    """
    Create the verifier for a gateway from configuration.

    Raises:
        ValueError: For gateways without signatures (manual confirmation)
    """
    settings = settings or get_settings()
    if kind == GatewayKind.VNPAY:
        return VNPaySignatureVerifier(
            settings.vnpay_hash_secret.get_secret_value(), settings.vnpay_tmn_code
        )
    if kind == GatewayKind.MOMO:
        return MoMoSignatureVerifier(
            settings.momo_secret_key.get_secret_value(),
            settings.momo_access_key.get_secret_value(),
            settings.momo_partner_code,
        )
    raise ValueError(f"No signature verifier for gateway: {kind.value}")
