"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    InitializePaymentRequest,
    InitializePaymentResponse,
    PaymentResponse,
    RefundRequest,
    VerificationResponse,
)

__all__ = [
    "create_app",
    "InitializePaymentRequest",
    "InitializePaymentResponse",
    "PaymentResponse",
    "RefundRequest",
    "VerificationResponse",
]
