"""Payment gateway adapters."""
from .base import (
    GatewayClient,
    GatewayErrorCode,
    GatewayFailure,
    GatewayPaymentStatus,
    GatewayTransportError,
    InitializeResult,
    RefundResult,
    StatusResult,
    VerifyResult,
)
from .idpay import IDPayGateway
from .registry import GatewayRegistry
from .zarinpal import ZarinpalGateway

__all__ = [
    "GatewayClient",
    "GatewayErrorCode",
    "GatewayFailure",
    "GatewayPaymentStatus",
    "GatewayRegistry",
    "GatewayTransportError",
    "IDPayGateway",
    "InitializeResult",
    "RefundResult",
    "StatusResult",
    "VerifyResult",
    "ZarinpalGateway",
]
