"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class InitializePaymentRequest(BaseModel):
    """Request schema for opening a payment session."""

    order_id: UUID = Field(..., description="Order to pay")
    gateway: Optional[str] = Field(
        default=None, description="Gateway name (default gateway when omitted)"
    )

    @field_validator("gateway")
    @classmethod
    def normalize_gateway(cls, v: Optional[str]) -> Optional[str]:
        """Gateway names are lower case."""
        return v.strip().lower() if v else None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"order_id": "123e4567-e89b-12d3-a456-426614174000", "gateway": "zarinpal"},
            ]
        }
    }


class InitializePaymentResponse(BaseModel):
    """Response schema for payment initialization."""

    payment_id: str = Field(..., description="Payment ID")
    payment_number: str = Field(..., description="Human readable payment number")
    order_id: str = Field(..., description="Order ID")
    amount: int = Field(..., description="Amount in the gateway's minor unit (rial)")
    gateway: str = Field(..., description="Gateway name")
    authority: str = Field(..., description="Gateway session token")
    redirect_url: str = Field(..., description="Where to send the user to pay")
    attempt_count: int = Field(..., description="Attempts made on this record")


class PaymentResponse(BaseModel):
    """Public view of a payment record."""

    id: str
    payment_number: str
    order_id: str
    user_id: str
    amount: int
    gateway: str
    status: str
    authority: Optional[str] = None
    transaction_id: Optional[str] = None
    ref_id: Optional[str] = None
    redirect_url: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    refund_amount: Optional[int] = None
    refund_reason: Optional[str] = None
    attempt_count: int
    created_at: Optional[str] = None
    completed_at: Optional[str] = None
    refunded_at: Optional[str] = None


class Pagination(BaseModel):
    """Pagination metadata."""

    page: int
    limit: int
    total: int
    pages: int


class PaymentListResponse(BaseModel):
    """A page of the caller's payments."""

    payments: List[PaymentResponse]
    pagination: Pagination


class VerificationResponse(BaseModel):
    """Outcome of a gateway callback."""

    success: bool = Field(..., description="True if the order is paid")
    outcome: str = Field(..., description="settled, already_settled, failed or indeterminate")
    payment_id: str
    order_id: str
    transaction_id: Optional[str] = None
    ref_id: Optional[str] = None
    redirect_url: str = Field(..., description="Storefront page to show the user")
    message: str
    retryable: bool = False


class RefundRequest(BaseModel):
    """Request schema for refunding a payment."""

    amount: Optional[int] = Field(
        default=None, gt=0, description="Partial refund amount (full refund if not specified)"
    )
    reason: Optional[str] = Field(default=None, max_length=500, description="Refund reason")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"amount": 50000, "reason": "requested_by_customer"},
                {"reason": "duplicate"},
            ]
        }
    }


class InquiryResponse(BaseModel):
    """Gateway view of a payment, next to the local status."""

    payment_id: str
    gateway: str
    local_status: str
    gateway_status: str
    gateway_code: Optional[str] = None


class GatewaysResponse(BaseModel):
    """Gateways the service can use."""

    default: Optional[str] = None
    available: List[str]


class ErrorResponse(BaseModel):
    """Error body returned for every PaymentError."""

    code: str
    message: str
    category: str
    retryable: bool = False


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual check results")
    message: Optional[str] = Field(default=None, description="Status message")
