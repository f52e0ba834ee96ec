"""Inbound gateway verification and outbound notification delivery."""
from .gateways import (
    GatewayConfirmation,
    GatewayError,
    GatewayKind,
    GatewaySignatureVerifier,
    InvalidSignatureError,
    MalformedPayloadError,
    MoMoSignatureVerifier,
    VNPaySignatureVerifier,
    build_verifier,
)
from .notifications import (
    DatabaseNotificationDispatcher,
    NotificationDispatcher,
    NotificationRequest,
    dispatch_detached,
    drain_notifications,
)

__all__ = [
    "DatabaseNotificationDispatcher",
    "GatewayConfirmation",
    "GatewayError",
    "GatewayKind",
    "GatewaySignatureVerifier",
    "InvalidSignatureError",
    "MalformedPayloadError",
    "MoMoSignatureVerifier",
    "NotificationDispatcher",
    "NotificationRequest",
    "VNPaySignatureVerifier",
    "build_verifier",
    "dispatch_detached",
    "drain_notifications",
]
