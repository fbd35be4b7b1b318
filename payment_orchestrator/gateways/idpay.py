"""
IDPay payment gateway adapter (REST API v1.1).

Authenticated with ``X-API-KEY``; ``X-SANDBOX: 1`` selects test mode.
Errors come back as HTTP 4xx with ``{"error_code": ..., "error_message": ...}``.
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

SANDBOX_BASE_URL = "https://api.sandbox.idpay.ir/v1.1"
PRODUCTION_BASE_URL = "https://api.idpay.ir/v1.1"

VERIFIED_CODES = frozenset({100, 101})

# 11 user blocked, 12 API key not found, 13 IP mismatch,
# 14 web service not approved, 21 bank account not approved
AUTH_FAILURE_CODES = frozenset({11, 12, 13, 14, 21})

TRANSACTION_STATUSES = {
    1: GatewayPaymentStatus.PENDING,
    2: GatewayPaymentStatus.FAILED,
    3: GatewayPaymentStatus.FAILED,
    4: GatewayPaymentStatus.FAILED,
    5: GatewayPaymentStatus.REFUNDED,
    6: GatewayPaymentStatus.REFUNDED,
    7: GatewayPaymentStatus.FAILED,
    8: GatewayPaymentStatus.PENDING,
    10: GatewayPaymentStatus.PAID,
    100: GatewayPaymentStatus.VERIFIED,
    101: GatewayPaymentStatus.VERIFIED,
    200: GatewayPaymentStatus.VERIFIED,
}


class IDPayGateway(HttpGatewayClient):
    """IDPay v1.1 adapter."""

    name = "idpay"

    def __init__(
        self,
        api_key: str,
        sandbox: bool = True,
        timeout_seconds: float = 10.0,
        status_retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize IDPay adapter.

        Args:
            api_key: IDPay API key
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
        self.api_key = api_key
        self.sandbox = sandbox

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["X-API-KEY"] = self.api_key
        headers["X-SANDBOX"] = "1" if self.sandbox else "0"
        return headers

    @staticmethod
    def _failure(status_code: int, body: Dict[str, Any], default_message: str) -> GatewayFailure:
        code = body.get("error_code")
        if code is None and status_code < 400:
            # 2xx answer with a non-success transaction status
            code = body.get("status")
        message = body.get("error_message") or default_message

        try:
            numeric = int(code) if code is not None else None
        except (TypeError, ValueError):
            numeric = None

        if status_code in (401, 403) or numeric in AUTH_FAILURE_CODES:
            error_code = GatewayErrorCode.AUTH_FAILURE
        elif code is None:
            error_code = GatewayErrorCode.UNKNOWN
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
        Create a payment; IDPay answers 201 with ``id`` and ``link``.

        Raises:
            GatewayTransportError: If IDPay could not be reached
        """
        customer_meta = customer_meta or {}
        payload = {
            "order_id": order_ref,
            "amount": amount,
            "name": customer_meta.get("name") or "",
            "phone": customer_meta.get("phone") or "",
            "mail": customer_meta.get("email") or "",
            "desc": description,
            "callback": callback_url,
        }

        logger.info(
            "idpay_initialize_requested",
            order_ref=order_ref,
            amount=amount,
            sandbox=self.sandbox,
        )
        status_code, body = await self._post("initialize", "/payment", payload)

        if status_code < 400 and body.get("id") and body.get("link"):
            return InitializeResult(
                authority_token=str(body["id"]),
                redirect_url=str(body["link"]),
                raw=body,
            )

        failure = self._failure(status_code, body, "Payment request rejected")
        logger.warning(
            "idpay_initialize_rejected",
            order_ref=order_ref,
            gateway_code=failure.gateway_code,
            error_code=failure.error_code.value,
        )
        return failure

    async def verify(
        self, authority_token: str, order_ref: str, amount: int
    ) -> Union[VerifyResult, GatewayFailure]:
        """
        Verify a payment. ``amount`` is not part of the IDPay verify call.

        Raises:
            GatewayTransportError: If IDPay could not be reached
        """
        payload = {"id": authority_token, "order_id": order_ref}
        status_code, body = await self._post("verify", "/payment/verify", payload)

        if status_code < 400 and body.get("status") in VERIFIED_CODES:
            track_id = body.get("track_id")
            payment = body.get("payment") if isinstance(body.get("payment"), dict) else {}
            if track_id is None:
                return GatewayFailure(
                    error_code=GatewayErrorCode.UNKNOWN,
                    message="Gateway verified without a tracking id",
                    gateway_code=str(body.get("status")),
                    raw=body,
                )
            bank_track_id = payment.get("track_id")
            logger.info(
                "idpay_verify_succeeded",
                order_ref=order_ref,
                status=body.get("status"),
            )
            return VerifyResult(
                transaction_id=str(track_id),
                ref_id=str(bank_track_id) if bank_track_id is not None else str(track_id),
                card_pan=payment.get("card_no"),
                raw=body,
            )

        failure = self._failure(status_code, body, "Payment verification failed")
        logger.warning(
            "idpay_verify_rejected",
            order_ref=order_ref,
            gateway_code=failure.gateway_code,
        )
        return failure

    async def refund(
        self, authority_token: str, order_ref: str, amount: int
    ) -> Union[RefundResult, GatewayFailure]:
        """
        Refund a verified payment.

        Raises:
            GatewayTransportError: If IDPay could not be reached
        """
        payload = {"id": authority_token, "order_id": order_ref, "amount": amount}
        status_code, body = await self._post("refund", "/payment/refund", payload)

        if status_code < 400 and body.get("status") == 100:
            return RefundResult(raw=body)

        failure = self._failure(status_code, body, "Refund failed")
        logger.warning(
            "idpay_refund_rejected",
            order_ref=order_ref,
            gateway_code=failure.gateway_code,
        )
        return failure

    async def status(
        self, authority_token: str, order_ref: str
    ) -> Union[StatusResult, GatewayFailure]:
        """
        Inquire the transaction status. Transport errors are retried.

        Raises:
            GatewayTransportError: If every attempt failed to reach IDPay
        """
        payload = {"id": authority_token, "order_id": order_ref}
        status_code, body = await self._with_retry(
            "status", self._post, "status", "/payment/inquiry", payload
        )

        if status_code >= 400 or "status" not in body:
            return self._failure(status_code, body, "Payment inquiry failed")

        try:
            code = int(body["status"])
        except (TypeError, ValueError):
            code = None
        return StatusResult(
            status=TRANSACTION_STATUSES.get(code, GatewayPaymentStatus.UNKNOWN),
            gateway_code=str(body["status"]),
            raw=body,
        )

    def validate_callback(self, payload: Mapping[str, Any]) -> bool:
        """Callback must carry the payment ``id`` and a transaction ``status``."""
        payment_id = payload.get("id")
        status = payload.get("status")
        return (
            payment_id is not None
            and bool(str(payment_id).strip())
            and status is not None
            and bool(str(status).strip())
        )

    def authority_from_callback(self, payload: Mapping[str, Any]) -> str:
        return str(payload["id"]).strip()
