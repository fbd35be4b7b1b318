"""
Zarinpal payment gateway adapter (REST API v4).

Flow:
1. ``/v4/payment/request.json`` returns an authority; the user is sent to
   ``{base}/StartPay/{authority}``
2. Zarinpal redirects back with ``Authority`` and ``Status`` (OK/NOK)
3. ``/v4/payment/verify.json`` confirms the settlement (100 = verified,
   101 = already verified)
4. ``/v4/payment/inquiry.json`` reports the session status

Refunds are not available through the merchant API and are reported as a
business rejection.
"""
from typing import Any, Dict, Mapping, Optional, Union

import httpx
import structlog

from .base import (
    GatewayErrorCode,
    GatewayFailure,
    GatewayPaymentStatus,
    HttpGatewayClient,
    InitializeResult,
    RefundResult,
    StatusResult,
    VerifyResult,
)

logger = structlog.get_logger(__name__)

SANDBOX_BASE_URL = "https://sandbox.zarinpal.com/pg"
PRODUCTION_BASE_URL = "https://payment.zarinpal.com/pg"

SUCCESS_CODES = frozenset({100, 101})

# Merchant or terminal level rejections: credentials or account state
AUTH_FAILURE_CODES = frozenset({-10, -11, -15, -16, -17})

INQUIRY_STATUSES = {
    "VERIFIED": GatewayPaymentStatus.VERIFIED,
    "PAID": GatewayPaymentStatus.PAID,
    "IN_BANK": GatewayPaymentStatus.PENDING,
    "FAILED": GatewayPaymentStatus.FAILED,
    "REVERSED": GatewayPaymentStatus.REFUNDED,
}


class ZarinpalGateway(HttpGatewayClient):
    """
    Zarinpal v4 adapter.

    Authenticates with the merchant id in the request body and, when
    configured, an additional bearer access token.
    """

    name = "zarinpal"

    def __init__(
        self,
        merchant_id: str,
        access_token: str = "",
        sandbox: bool = True,
        timeout_seconds: float = 10.0,
        status_retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Zarinpal adapter.

        Args:
            merchant_id: Zarinpal merchant id (required)
            access_token: Optional v4 bearer token
            sandbox: Use the sandbox environment
            timeout_seconds: Bound on every HTTP call
            status_retry_attempts: Attempts for status inquiries
            retry_backoff_seconds: Backoff multiplier for status retries
            transport: Optional httpx transport
        """
        super().__init__(
            base_url=SANDBOX_BASE_URL if sandbox else PRODUCTION_BASE_URL,
            timeout_seconds=timeout_seconds,
            status_retry_attempts=status_retry_attempts,
            retry_backoff_seconds=retry_backoff_seconds,
            transport=transport,
        )
        self.merchant_id = merchant_id
        self.access_token = access_token.strip()
        self.sandbox = sandbox

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        if self.access_token:
            token = self.access_token
            headers["Authorization"] = token if token.startswith("Bearer ") else f"Bearer {token}"
        return headers

    @staticmethod
    def _data(body: Dict[str, Any]) -> Dict[str, Any]:
        # Zarinpal sends an empty list instead of an empty object
        data = body.get("data")
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _failure(status_code: int, body: Dict[str, Any], default_message: str) -> GatewayFailure:
        """
        Build a structured failure from an error answer.

        Errors arrive as ``{"data": [], "errors": {"code": -9, "message": ...}}``
        or, for non-success verify codes, inside ``data``.
        """
        errors = body.get("errors")
        errors = errors if isinstance(errors, dict) else {}
        data = ZarinpalGateway._data(body)

        code = errors.get("code", data.get("code"))
        message = errors.get("message") or data.get("message") or default_message

        if code is None:
            error_code = (
                GatewayErrorCode.AUTH_FAILURE
                if status_code in (401, 403)
                else GatewayErrorCode.UNKNOWN
            )
        elif _as_int(code) in AUTH_FAILURE_CODES or status_code in (401, 403):
            error_code = GatewayErrorCode.AUTH_FAILURE
        else:
            error_code = GatewayErrorCode.BUSINESS_REJECTED

        return GatewayFailure(
            error_code=error_code,
            message=str(message),
            gateway_code=str(code) if code is not None else None,
            raw=body,
        )

    async def initialize(
        self,
        amount: int,
        description: str,
        callback_url: str,
        order_ref: str,
        customer_meta: Optional[Mapping[str, Any]] = None,
    ) -> Union[InitializeResult, GatewayFailure]:
        """
        Request a payment session.

        Returns:
            InitializeResult | GatewayFailure: Authority and StartPay URL, or the rejection

        Raises:
            GatewayTransportError: If Zarinpal could not be reached
        """
        customer_meta = customer_meta or {}
        payload = {
            "merchant_id": self.merchant_id,
            "amount": amount,
            "description": description,
            "callback_url": callback_url,
            "metadata": {
                "mobile": customer_meta.get("phone"),
                "email": customer_meta.get("email"),
                "order_id": order_ref,
            },
        }

        logger.info(
            "zarinpal_initialize_requested",
            order_ref=order_ref,
            amount=amount,
            sandbox=self.sandbox,
        )
        status_code, body = await self._post("initialize", "/v4/payment/request.json", payload)

        data = self._data(body)
        if data.get("code") == 100:
            authority = data.get("authority")
            if not authority:
                logger.error("zarinpal_initialize_missing_authority", order_ref=order_ref)
                return GatewayFailure(
                    error_code=GatewayErrorCode.UNKNOWN,
                    message="Gateway returned success without an authority",
                    gateway_code="MISSING_AUTHORITY",
                    raw=body,
                )
            return InitializeResult(
                authority_token=authority,
                redirect_url=f"{self.base_url}/StartPay/{authority}",
                raw=body,
            )

        failure = self._failure(status_code, body, "Payment request rejected")
        logger.warning(
            "zarinpal_initialize_rejected",
            order_ref=order_ref,
            gateway_code=failure.gateway_code,
            error_code=failure.error_code.value,
        )
        return failure

    async def verify(
        self, authority_token: str, order_ref: str, amount: int
    ) -> Union[VerifyResult, GatewayFailure]:
        """
        Verify a settlement for an authority.

        Zarinpal needs the original amount; a mismatch is rejected by the gateway.

        Raises:
            GatewayTransportError: If Zarinpal could not be reached
        """
        payload = {
            "merchant_id": self.merchant_id,
            "authority": authority_token,
            "amount": amount,
        }
        status_code, body = await self._post("verify", "/v4/payment/verify.json", payload)

        data = self._data(body)
        if data.get("code") in SUCCESS_CODES:
            ref_id = data.get("ref_id")
            if ref_id is None:
                return GatewayFailure(
                    error_code=GatewayErrorCode.UNKNOWN,
                    message="Gateway verified without a reference id",
                    gateway_code=str(data.get("code")),
                    raw=body,
                )
            logger.info(
                "zarinpal_verify_succeeded",
                order_ref=order_ref,
                code=data.get("code"),
            )
            return VerifyResult(
                transaction_id=str(ref_id),
                ref_id=str(ref_id),
                card_pan=data.get("card_pan"),
                raw=body,
            )

        failure = self._failure(status_code, body, "Payment verification failed")
        logger.warning(
            "zarinpal_verify_rejected",
            order_ref=order_ref,
            gateway_code=failure.gateway_code,
        )
        return failure

    async def refund(
        self, authority_token: str, order_ref: str, amount: int
    ) -> Union[RefundResult, GatewayFailure]:
        """Refunds need a separate Zarinpal product; always rejected."""
        return GatewayFailure(
            error_code=GatewayErrorCode.BUSINESS_REJECTED,
            message="Refund is not supported for this gateway",
            gateway_code="NOT_SUPPORTED",
        )

    async def status(
        self, authority_token: str, order_ref: str
    ) -> Union[StatusResult, GatewayFailure]:
        """
        Inquire the session status. Transport errors are retried.

        Raises:
            GatewayTransportError: If every attempt failed to reach Zarinpal
        """
        payload = {"merchant_id": self.merchant_id, "authority": authority_token}
        status_code, body = await self._with_retry(
            "status", self._post, "status", "/v4/payment/inquiry.json", payload
        )

        data = self._data(body)
        if data.get("code") == 100:
            raw_status = str(data.get("status", "")).upper()
            return StatusResult(
                status=INQUIRY_STATUSES.get(raw_status, GatewayPaymentStatus.UNKNOWN),
                gateway_code=raw_status or None,
                raw=body,
            )
        return self._failure(status_code, body, "Payment inquiry failed")

    def validate_callback(self, payload: Mapping[str, Any]) -> bool:
        """Callback must carry an Authority and an OK/NOK Status."""
        authority = payload.get("Authority")
        return (
            isinstance(authority, str)
            and bool(authority.strip())
            and payload.get("Status") in ("OK", "NOK")
        )

    def authority_from_callback(self, payload: Mapping[str, Any]) -> str:
        return str(payload["Authority"]).strip()


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
