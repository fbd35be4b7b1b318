"""
Tests for the Zarinpal adapter against a mocked HTTP transport.
"""
import json
from typing import Any, Callable, Dict, List

import httpx
import pytest

from payment_orchestrator.gateways.base import (
    GatewayErrorCode,
    GatewayFailure,
    GatewayPaymentStatus,
    GatewayTransportError,
    InitializeResult,
    RefundResult,
    StatusResult,
    VerifyResult,
)
from payment_orchestrator.gateways.zarinpal import ZarinpalGateway

MERCHANT_ID = "00000000-0000-0000-0000-000000000000"


def make_gateway(
    handler: Callable[[httpx.Request], httpx.Response], **kwargs: Any
) -> ZarinpalGateway:
    return ZarinpalGateway(
        merchant_id=MERCHANT_ID,
        sandbox=True,
        retry_backoff_seconds=0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def recorder(responses: List[httpx.Response], seen: List[httpx.Request]) -> Any:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return responses.pop(0)

    return handler


def body(request: httpx.Request) -> Dict[str, Any]:
    return json.loads(request.content)


class TestZarinpalInitialize:
    """Payment request."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_returns_startpay_url(self) -> None:
        seen: List[httpx.Request] = []
        gateway = make_gateway(
            recorder(
                [
                    httpx.Response(
                        200,
                        json={
                            "data": {"code": 100, "message": "Success", "authority": "A0000012345"},
                            "errors": [],
                        },
                    )
                ],
                seen,
            )
        )

        result = await gateway.initialize(
            amount=1_500_000,
            description="پرداخت سفارش ORD-1",
            callback_url="https://api.shop.test/payments/callback/zarinpal",
            order_ref="ORD-1",
            customer_meta={"phone": "09120000000", "email": "sara@example.com"},
        )

        assert isinstance(result, InitializeResult)
        assert result.authority_token == "A0000012345"
        assert result.redirect_url == "https://sandbox.zarinpal.com/pg/StartPay/A0000012345"

        request = seen[0]
        assert request.url.path == "/pg/v4/payment/request.json"
        sent = body(request)
        assert sent["merchant_id"] == MERCHANT_ID
        assert sent["amount"] == 1_500_000
        assert sent["metadata"]["order_id"] == "ORD-1"
        assert "Authorization" not in request.headers

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_access_token_sent_as_bearer(self) -> None:
        seen: List[httpx.Request] = []
        gateway = make_gateway(
            recorder(
                [httpx.Response(200, json={"data": {"code": 100, "authority": "A1"}})], seen
            ),
            access_token="secret-token",
        )

        await gateway.initialize(1000, "d", "https://cb", "ORD-1")

        assert seen[0].headers["Authorization"] == "Bearer secret-token"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_business_rejection_keeps_provider_code(self) -> None:
        gateway = make_gateway(
            lambda request: httpx.Response(
                400,
                json={"data": [], "errors": {"code": -9, "message": "The input params invalid"}},
            )
        )

        result = await gateway.initialize(500, "d", "https://cb", "ORD-1")

        assert isinstance(result, GatewayFailure)
        assert result.error_code == GatewayErrorCode.BUSINESS_REJECTED
        assert result.gateway_code == "-9"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_merchant_errors_are_auth_failures(self) -> None:
        gateway = make_gateway(
            lambda request: httpx.Response(
                400, json={"data": [], "errors": {"code": -11, "message": "Terminal is not active"}}
            )
        )

        result = await gateway.initialize(1000, "d", "https://cb", "ORD-1")

        assert isinstance(result, GatewayFailure)
        assert result.error_code == GatewayErrorCode.AUTH_FAILURE

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_without_authority_is_unknown_failure(self) -> None:
        gateway = make_gateway(lambda request: httpx.Response(200, json={"data": {"code": 100}}))

        result = await gateway.initialize(1000, "d", "https://cb", "ORD-1")

        assert isinstance(result, GatewayFailure)
        assert result.error_code == GatewayErrorCode.UNKNOWN
        assert result.gateway_code == "MISSING_AUTHORITY"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_raises_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        gateway = make_gateway(handler)

        with pytest.raises(GatewayTransportError):
            await gateway.initialize(1000, "d", "https://cb", "ORD-1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_server_error_raises_transport_error(self) -> None:
        gateway = make_gateway(lambda request: httpx.Response(502, text="Bad Gateway"))

        with pytest.raises(GatewayTransportError):
            await gateway.initialize(1000, "d", "https://cb", "ORD-1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_json_body_raises_transport_error(self) -> None:
        gateway = make_gateway(lambda request: httpx.Response(200, text="<html>maintenance</html>"))

        with pytest.raises(GatewayTransportError):
            await gateway.initialize(1000, "d", "https://cb", "ORD-1")


class TestZarinpalVerify:
    """Payment verification."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", [100, 101])
    async def test_verified_codes(self, code: int) -> None:
        seen: List[httpx.Request] = []
        gateway = make_gateway(
            recorder(
                [
                    httpx.Response(
                        200,
                        json={
                            "data": {
                                "code": code,
                                "ref_id": 201,
                                "card_pan": "502229******5995",
                            },
                            "errors": [],
                        },
                    )
                ],
                seen,
            )
        )

        result = await gateway.verify("A0000012345", "ORD-1", 1_500_000)

        assert isinstance(result, VerifyResult)
        assert result.transaction_id == "201"
        assert result.ref_id == "201"
        assert result.card_pan == "502229******5995"
        assert body(seen[0]) == {
            "merchant_id": MERCHANT_ID,
            "authority": "A0000012345",
            "amount": 1_500_000,
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_amount_mismatch_is_rejected(self) -> None:
        gateway = make_gateway(
            lambda request: httpx.Response(
                400, json={"data": [], "errors": {"code": -50, "message": "Amount mismatch"}}
            )
        )

        result = await gateway.verify("A1", "ORD-1", 999)

        assert isinstance(result, GatewayFailure)
        assert result.error_code == GatewayErrorCode.BUSINESS_REJECTED
        assert result.gateway_code == "-50"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verified_without_ref_id_is_unknown(self) -> None:
        gateway = make_gateway(lambda request: httpx.Response(200, json={"data": {"code": 100}}))

        result = await gateway.verify("A1", "ORD-1", 1000)

        assert isinstance(result, GatewayFailure)
        assert result.error_code == GatewayErrorCode.UNKNOWN


class TestZarinpalStatusAndRefund:
    """Inquiry, refund and callback parsing."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "raw_status,expected",
        [
            ("VERIFIED", GatewayPaymentStatus.VERIFIED),
            ("PAID", GatewayPaymentStatus.PAID),
            ("IN_BANK", GatewayPaymentStatus.PENDING),
            ("FAILED", GatewayPaymentStatus.FAILED),
            ("REVERSED", GatewayPaymentStatus.REFUNDED),
            ("SOMETHING_NEW", GatewayPaymentStatus.UNKNOWN),
        ],
    )
    async def test_inquiry_status_mapping(
        self, raw_status: str, expected: GatewayPaymentStatus
    ) -> None:
        gateway = make_gateway(
            lambda request: httpx.Response(
                200, json={"data": {"code": 100, "status": raw_status}, "errors": []}
            )
        )

        result = await gateway.status("A1", "ORD-1")

        assert isinstance(result, StatusResult)
        assert result.status == expected

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_inquiry_retries_transport_errors(self) -> None:
        seen: List[httpx.Request] = []
        gateway = make_gateway(
            recorder(
                [
                    httpx.Response(503, text="unavailable"),
                    httpx.Response(200, json={"data": {"code": 100, "status": "PAID"}}),
                ],
                seen,
            ),
            status_retry_attempts=3,
        )

        result = await gateway.status("A1", "ORD-1")

        assert isinstance(result, StatusResult)
        assert result.status == GatewayPaymentStatus.PAID
        assert len(seen) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_inquiry_gives_up_after_attempts(self) -> None:
        seen: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(500, text="error")

        gateway = make_gateway(handler, status_retry_attempts=2)

        with pytest.raises(GatewayTransportError):
            await gateway.status("A1", "ORD-1")
        assert len(seen) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verify_is_never_retried(self) -> None:
        seen: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(500, text="error")

        gateway = make_gateway(handler, status_retry_attempts=3)

        with pytest.raises(GatewayTransportError):
            await gateway.verify("A1", "ORD-1", 1000)
        assert len(seen) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_not_supported(self) -> None:
        gateway = make_gateway(lambda request: httpx.Response(500))

        result = await gateway.refund("A1", "ORD-1", 1000)

        assert not isinstance(result, RefundResult)
        assert result.error_code == GatewayErrorCode.BUSINESS_REJECTED
        assert result.gateway_code == "NOT_SUPPORTED"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "payload,valid",
        [
            ({"Authority": "A1", "Status": "OK"}, True),
            ({"Authority": "A1", "Status": "NOK"}, True),
            ({"Authority": "", "Status": "OK"}, False),
            ({"Status": "OK"}, False),
            ({"Authority": "A1", "Status": "MAYBE"}, False),
            ({"Authority": "A1"}, False),
        ],
    )
    def test_validate_callback(self, payload: Dict[str, str], valid: bool) -> None:
        gateway = make_gateway(lambda request: httpx.Response(500))

        assert gateway.validate_callback(payload) is valid

    @pytest.mark.unit
    def test_production_base_url(self) -> None:
        gateway = ZarinpalGateway(merchant_id=MERCHANT_ID, sandbox=False)

        assert gateway.base_url == "https://payment.zarinpal.com/pg"
