"""Core payment orchestration logic."""
from .exceptions import (
    ErrorCategory,
    PaymentConfigurationError,
    PaymentConflictError,
    PaymentError,
    PaymentInconsistencyError,
    PaymentNotFoundError,
    PaymentRejectedError,
    PaymentTransportError,
    PaymentValidationError,
)
from .messages import localized_message
from .orchestrator import (
    InitializationResult,
    PaymentOrchestrator,
    VerificationOutcome,
    VerificationResult,
)
from .orders import OrderLookup, OrderReconciler, OrderSnapshot, SqlOrderStore
from .state import PaymentStatus

__all__ = [
    "ErrorCategory",
    "InitializationResult",
    "OrderLookup",
    "OrderReconciler",
    "OrderSnapshot",
    "PaymentConfigurationError",
    "PaymentConflictError",
    "PaymentError",
    "PaymentInconsistencyError",
    "PaymentNotFoundError",
    "PaymentOrchestrator",
    "PaymentRejectedError",
    "PaymentStatus",
    "PaymentTransportError",
    "PaymentValidationError",
    "SqlOrderStore",
    "VerificationOutcome",
    "VerificationResult",
    "localized_message",
]
