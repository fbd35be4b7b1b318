"""
Uniform gateway contract and shared HTTP plumbing.

Every adapter exposes the same asynchronous operations:

- ``initialize``: open a payment session and return the redirect target
- ``verify``: confirm a settlement after the user returns
- ``refund``: return funds for a settled payment
- ``status``: read-only inquiry used for reconciliation
- ``validate_callback`` / ``authority_from_callback``: callback parsing

Business failures reported by a provider come back as ``GatewayFailure``
values. Only transport failures (timeout, connection error, 5xx, a body that
is not a JSON object) raise ``GatewayTransportError``.
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Mapping,
    Optional,
    Protocol,
    Tuple,
    TypeVar,
    Union,
    runtime_checkable,
)

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from payment_orchestrator.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class GatewayErrorCode(str, Enum):
    """Classification of adapter-reported failures."""

    AUTH_FAILURE = "AUTH_FAILURE"  # bad credentials or merchant not allowed
    BUSINESS_REJECTED = "BUSINESS_REJECTED"  # gateway declined
    TRANSPORT = "TRANSPORT"  # network or timeout
    UNKNOWN = "UNKNOWN"


class GatewayPaymentStatus(str, Enum):
    """Provider payment status normalized across gateways."""

    PENDING = "pending"  # user has not finished paying
    PAID = "paid"  # paid, waiting for merchant verification
    VERIFIED = "verified"  # settlement confirmed
    FAILED = "failed"
    REFUNDED = "refunded"
    UNKNOWN = "unknown"


class GatewayTransportError(Exception):
    """Raised when a gateway could not be reached or answered garbage."""

    def __init__(self, gateway: str, operation: str, message: str):
        """
        Initialize transport error.

        Args:
            gateway: Gateway name
            operation: Contract operation that failed
            message: Diagnostic message (never shown to users)
        """
        super().__init__(f"{gateway} {operation}: {message}")
        self.gateway = gateway
        self.operation = operation


@dataclass(frozen=True)
class GatewayFailure:
    """Structured business failure reported by a provider."""

    error_code: GatewayErrorCode
    message: str
    gateway_code: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InitializeResult:
    """Successful payment session."""

    authority_token: str
    redirect_url: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VerifyResult:
    """Settlement proof returned by a successful verification."""

    transaction_id: str
    ref_id: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)
    card_pan: Optional[str] = None


@dataclass(frozen=True)
class RefundResult:
    """Successful refund."""

    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StatusResult:
    """Read-only view of a payment at the provider."""

    status: GatewayPaymentStatus
    gateway_code: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class GatewayClient(Protocol):
    """Contract every payment gateway adapter implements."""

    name: str

    async def initialize(
        self,
        amount: int,
        description: str,
        callback_url: str,
        order_ref: str,
        customer_meta: Optional[Mapping[str, Any]] = None,
    ) -> Union[InitializeResult, GatewayFailure]:
        ...

    async def verify(
        self, authority_token: str, order_ref: str, amount: int
    ) -> Union[VerifyResult, GatewayFailure]:
        ...

    async def refund(
        self, authority_token: str, order_ref: str, amount: int
    ) -> Union[RefundResult, GatewayFailure]:
        ...

    async def status(
        self, authority_token: str, order_ref: str
    ) -> Union[StatusResult, GatewayFailure]:
        ...

    def validate_callback(self, payload: Mapping[str, Any]) -> bool:
        ...

    def authority_from_callback(self, payload: Mapping[str, Any]) -> str:
        ...


class HttpGatewayClient:
    """
    Shared JSON-over-HTTP plumbing for gateway adapters.

    Adapters hold configuration only; a fresh ``httpx.AsyncClient`` is opened
    per call so no connection or payment state is shared between requests.
    """

    name = "base"

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        status_retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize HTTP plumbing.

        Args:
            base_url: Provider API base URL
            timeout_seconds: Bound on every HTTP call
            status_retry_attempts: Attempts for read-only status inquiries
            retry_backoff_seconds: Exponential backoff multiplier for retries
            transport: Optional transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.status_retry_attempts = status_retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Accept": "application/json"}

    async def _post(
        self, operation: str, path: str, payload: Dict[str, Any]
    ) -> Tuple[int, Dict[str, Any]]:
        """
        POST a JSON payload and decode the JSON object answer.

        Args:
            operation: Contract operation name, for logs and metrics
            path: Path relative to the base URL
            payload: JSON body

        Returns:
            Tuple[int, Dict[str, Any]]: HTTP status code and decoded body

        Raises:
            GatewayTransportError: On timeout, connection error, 5xx or malformed body
        """
        start_time = time.time()
        url = f"{self.base_url}{path}"

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(url, json=payload, headers=self._headers())

        except httpx.TimeoutException as e:
            self._record(operation, "transport_error", start_time)
            logger.error("gateway_timeout", gateway=self.name, operation=operation)
            raise GatewayTransportError(self.name, operation, "timeout") from e

        except httpx.HTTPError as e:
            self._record(operation, "transport_error", start_time)
            logger.error(
                "gateway_connection_error",
                gateway=self.name,
                operation=operation,
                error=str(e),
            )
            raise GatewayTransportError(self.name, operation, str(e)) from e

        if response.status_code >= 500:
            self._record(operation, "transport_error", start_time)
            logger.error(
                "gateway_server_error",
                gateway=self.name,
                operation=operation,
                status_code=response.status_code,
            )
            raise GatewayTransportError(
                self.name, operation, f"HTTP {response.status_code}"
            )

        try:
            body = response.json()
        except ValueError as e:
            self._record(operation, "transport_error", start_time)
            logger.error(
                "gateway_malformed_response",
                gateway=self.name,
                operation=operation,
                status_code=response.status_code,
                preview=response.text[:200],
            )
            raise GatewayTransportError(self.name, operation, "response is not JSON") from e

        if not isinstance(body, dict):
            self._record(operation, "transport_error", start_time)
            raise GatewayTransportError(self.name, operation, "response is not a JSON object")

        self._record(
            operation, "success" if response.status_code < 400 else "failure", start_time
        )
        logger.debug(
            "gateway_response_received",
            gateway=self.name,
            operation=operation,
            status_code=response.status_code,
        )
        return response.status_code, body

    def _record(self, operation: str, status: str, start_time: float) -> None:
        metrics.record_gateway_call(self.name, operation, status, time.time() - start_time)

    async def _with_retry(
        self, operation: str, func: Callable[..., Awaitable[T]], *args: Any
    ) -> T:
        """
        Run a read-only call, retrying transport errors with exponential backoff.

        ``func`` must be a coroutine function; it is called with ``args`` on
        every attempt so each retry sends a fresh request.

        Mutating operations (initialize, verify, refund) are never retried here.
        """

        def _log_retry(retry_state: Any) -> None:
            logger.warning(
                "gateway_call_retrying",
                gateway=self.name,
                operation=operation,
                attempt=retry_state.attempt_number,
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(GatewayTransportError),
            stop=stop_after_attempt(self.status_retry_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff_seconds, max=8),
            before_sleep=_log_retry,
            reraise=True,
        )
        return await retrying(func, *args)
