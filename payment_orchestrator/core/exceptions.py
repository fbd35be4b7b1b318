"""
Error taxonomy for payment orchestration.

Every error raised by the orchestrator carries a machine readable ``code``,
a safe user-facing ``message`` and a ``category`` the transport layer maps to
a response. Internal detail (raw gateway payloads, stack traces) is logged,
never placed on the exception message.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """Classification of payment errors."""

    CONFIG = "config"
    VALIDATION = "validation"
    TRANSPORT = "transport"
    BUSINESS_REJECTED = "business_rejected"
    CONFLICT = "conflict"
    CRITICAL_INCONSISTENCY = "critical_inconsistency"


class PaymentError(Exception):
    """Base exception for payment orchestration errors."""

    category: ErrorCategory = ErrorCategory.BUSINESS_REJECTED
    retryable: bool = False

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize payment error.

        Args:
            code: Machine readable error code (e.g. ORDER_ALREADY_PAID)
            message: Localized, user-safe message
            details: Optional non-sensitive context
        """
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses."""
        return {
            "code": self.code,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }


class PaymentConfigurationError(PaymentError):
    """Raised when a gateway is unknown or missing credentials."""

    category = ErrorCategory.CONFIG


class PaymentValidationError(PaymentError):
    """Raised when a request or callback is malformed."""

    category = ErrorCategory.VALIDATION


class PaymentNotFoundError(PaymentError):
    """Raised when an order or payment record does not exist."""

    category = ErrorCategory.VALIDATION


class PaymentTransportError(PaymentError):
    """Raised when the gateway could not be reached; safe to retry."""

    category = ErrorCategory.TRANSPORT
    retryable = True


class PaymentRejectedError(PaymentError):
    """Raised when the gateway declined the operation."""

    category = ErrorCategory.BUSINESS_REJECTED


class PaymentConflictError(PaymentError):
    """Raised when a record is not in a state that allows the operation."""

    category = ErrorCategory.CONFLICT


class PaymentInconsistencyError(PaymentError):
    """Raised when the gateway settled something local state cannot reflect."""

    category = ErrorCategory.CRITICAL_INCONSISTENCY
