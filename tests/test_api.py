"""
HTTP level tests for the payment API.
"""
import uuid
from typing import Any, AsyncGenerator, Dict

import httpx
import pytest
import pytest_asyncio

from fakes import DbReader, FakeGateway, callback, open_payment, rejected
from payment_orchestrator.api.main import create_app, status_code_for
from payment_orchestrator.config import Settings
from payment_orchestrator.core.exceptions import (
    PaymentConfigurationError,
    PaymentConflictError,
    PaymentError,
    PaymentInconsistencyError,
    PaymentNotFoundError,
    PaymentRejectedError,
    PaymentTransportError,
    PaymentValidationError,
)
from payment_orchestrator.core.orchestrator import PaymentOrchestrator
from payment_orchestrator.gateways.base import GatewayTransportError

USER = {"X-User-ID": "user-1", "Accept-Language": "en"}
ADMIN = {
    "X-User-ID": "admin-1",
    "X-User-Permissions": "orders.read, orders.update",
    "Accept-Language": "en",
}


@pytest_asyncio.fixture
async def client(
    test_settings: Settings, orchestrator: PaymentOrchestrator
) -> AsyncGenerator[httpx.AsyncClient, Any]:
    app = create_app(settings=test_settings, orchestrator=orchestrator)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="https://api.shop.test") as client:
        yield client


class TestPaymentEndpoints:
    """Test suite for /payments."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_initialize_payment(
        self, client: httpx.AsyncClient, order_id: uuid.UUID
    ) -> None:
        response = await client.post(
            "/payments", json={"order_id": str(order_id), "gateway": "ZarinPal"}, headers=USER
        )

        assert response.status_code == 201
        body = response.json()
        assert body["order_id"] == str(order_id)
        assert body["gateway"] == "zarinpal"
        assert body["amount"] == 1_500_000
        assert body["authority"] == "ZARINPAL-0001"
        assert body["redirect_url"] == "https://gateway.test/StartPay/ZARINPAL-0001"
        assert body["attempt_count"] == 1
        assert "X-Request-ID" in response.headers

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_initialize_requires_user(
        self, client: httpx.AsyncClient, order_id: uuid.UUID
    ) -> None:
        response = await client.post("/payments", json={"order_id": str(order_id)})

        assert response.status_code == 401

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_initialize_rejects_malformed_body(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/payments", json={"order_id": "not-a-uuid"}, headers=USER)

        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "setup,expected_status,expected_code",
        [
            ("missing_order", 404, "ORDER_NOT_FOUND"),
            ("paid_order", 409, "ORDER_ALREADY_PAID"),
            ("cash_order", 400, "INVALID_PAYMENT_METHOD"),
            ("unknown_gateway", 503, "UNKNOWN_GATEWAY"),
            ("gateway_rejects", 422, "BUSINESS_REJECTED"),
            ("gateway_down", 503, "TRANSPORT"),
        ],
    )
    async def test_initialize_error_mapping(
        self,
        client: httpx.AsyncClient,
        create_order: Any,
        gateway: FakeGateway,
        setup: str,
        expected_status: int,
        expected_code: str,
    ) -> None:
        """Each error category maps to its HTTP status with a stable body."""
        body: Dict[str, Any] = {"order_id": str(await create_order())}
        if setup == "missing_order":
            body["order_id"] = str(uuid.uuid4())
        elif setup == "paid_order":
            body["order_id"] = str(await create_order(payment_status="completed"))
        elif setup == "cash_order":
            body["order_id"] = str(await create_order(payment_method="cash"))
        elif setup == "unknown_gateway":
            body["gateway"] = "paypal"
        elif setup == "gateway_rejects":
            gateway.queue("initialize", rejected("-9"))
        elif setup == "gateway_down":
            gateway.queue("initialize", GatewayTransportError("zarinpal", "initialize", "timeout"))

        response = await client.post("/payments", json=body, headers=USER)

        assert response.status_code == expected_status
        error = response.json()
        assert error["code"] == expected_code
        assert error["message"]
        assert error["retryable"] is (expected_code == "TRANSPORT")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_persian_is_used_when_requested(
        self, client: httpx.AsyncClient
    ) -> None:
        response = await client.post(
            "/payments",
            json={"order_id": str(uuid.uuid4())},
            headers={"X-User-ID": "user-1", "Accept-Language": "fa-IR,fa;q=0.9"},
        )

        assert response.status_code == 404
        assert response.json()["message"] == "سفارش یافت نشد"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verify_endpoint(
        self,
        client: httpx.AsyncClient,
        orchestrator: PaymentOrchestrator,
        order_id: uuid.UUID,
    ) -> None:
        opened = await open_payment(orchestrator, order_id)
        payload = callback(opened.payment.authority_token)

        first = await client.post("/payments/verify/zarinpal", json=payload, headers=USER)
        second = await client.post("/payments/verify/zarinpal", data=payload, headers=USER)

        assert first.status_code == 200
        assert first.json()["outcome"] == "settled"
        assert first.json()["success"] is True
        assert first.json()["redirect_url"] == f"https://shop.test/orders/{order_id}/success"
        assert second.json()["outcome"] == "already_settled"
        assert second.json()["transaction_id"] == first.json()["transaction_id"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verify_invalid_callback(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/payments/verify/zarinpal", json={"Status": "OK"}, headers=USER
        )

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_CALLBACK"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_callback_redirects_to_outcome(
        self,
        client: httpx.AsyncClient,
        orchestrator: PaymentOrchestrator,
        order_id: uuid.UUID,
    ) -> None:
        opened = await open_payment(orchestrator, order_id)

        response = await client.get(
            "/payments/callback/zarinpal",
            params=callback(opened.payment.authority_token),
        )

        assert response.status_code == 302
        assert response.headers["location"] == f"https://shop.test/orders/{order_id}/success"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_callback_failure_redirect(
        self,
        client: httpx.AsyncClient,
        orchestrator: PaymentOrchestrator,
        gateway: FakeGateway,
        order_id: uuid.UUID,
    ) -> None:
        opened = await open_payment(orchestrator, order_id)
        gateway.queue("verify", rejected("-51"))

        response = await client.get(
            "/payments/callback/zarinpal",
            params=callback(opened.payment.authority_token, "NOK"),
        )

        assert response.status_code == 302
        assert response.headers["location"] == f"https://shop.test/orders/{order_id}/failed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_callback_unknown_authority(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/payments/callback/zarinpal", data=callback("UNKNOWN")
        )

        assert response.status_code == 302
        assert (
            response.headers["location"]
            == "https://shop.test/orders/failed?error=PAYMENT_NOT_FOUND"
        )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_payment_scoped_to_owner(
        self,
        client: httpx.AsyncClient,
        orchestrator: PaymentOrchestrator,
        order_id: uuid.UUID,
    ) -> None:
        opened = await open_payment(orchestrator, order_id)

        own = await client.get(f"/payments/{opened.payment.id}", headers=USER)
        other = await client.get(
            f"/payments/{opened.payment.id}", headers={"X-User-ID": "user-2"}
        )

        assert own.status_code == 200
        assert own.json()["status"] == "processing"
        assert own.json()["authority"] == opened.payment.authority_token
        assert "gateway_response" not in own.json()
        assert other.status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_payment_by_order(
        self,
        client: httpx.AsyncClient,
        orchestrator: PaymentOrchestrator,
        order_id: uuid.UUID,
    ) -> None:
        opened = await open_payment(orchestrator, order_id)

        response = await client.get(f"/payments/order/{order_id}", headers=USER)

        assert response.status_code == 200
        assert response.json()["id"] == str(opened.payment.id)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_list_my_payments(
        self,
        client: httpx.AsyncClient,
        orchestrator: PaymentOrchestrator,
        create_order: Any,
    ) -> None:
        for _ in range(3):
            await open_payment(orchestrator, await create_order())

        response = await client.get("/payments/me", params={"limit": 2}, headers=USER)
        filtered = await client.get(
            "/payments/me", params={"status": "completed"}, headers=USER
        )

        assert response.status_code == 200
        assert len(response.json()["payments"]) == 2
        assert response.json()["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}
        assert filtered.json()["payments"] == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_endpoint(
        self,
        client: httpx.AsyncClient,
        orchestrator: PaymentOrchestrator,
        order_id: uuid.UUID,
    ) -> None:
        opened = await open_payment(orchestrator, order_id)
        await client.post(
            "/payments/verify/zarinpal",
            json=callback(opened.payment.authority_token),
            headers=USER,
        )

        response = await client.post(
            f"/payments/{opened.payment.id}/refund",
            json={"amount": 500_000, "reason": "damaged"},
            headers=ADMIN,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "refunded"
        assert response.json()["refund_amount"] == 500_000

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "headers",
        [
            {"X-User-ID": "total-stranger"},
            {"X-User-ID": "user-1"},
            {"X-User-ID": "user-1", "X-User-Permissions": "orders.read"},
        ],
    )
    async def test_refund_requires_permission(
        self,
        client: httpx.AsyncClient,
        orchestrator: PaymentOrchestrator,
        gateway: FakeGateway,
        order_id: uuid.UUID,
        db_reader: DbReader,
        headers: Dict[str, str],
    ) -> None:
        """Neither strangers nor the payer can refund without the refund permission."""
        opened = await open_payment(orchestrator, order_id)
        await orchestrator.verify_payment(
            "zarinpal", callback(opened.payment.authority_token), locale="en"
        )

        response = await client.post(
            f"/payments/{opened.payment.id}/refund", json={}, headers=headers
        )

        assert response.status_code == 403
        assert gateway.calls["refund"] == []
        assert (await db_reader.payment(opened.payment.id)).status == "completed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_requires_user(
        self, client: httpx.AsyncClient, orchestrator: PaymentOrchestrator, order_id: uuid.UUID
    ) -> None:
        opened = await open_payment(orchestrator, order_id)

        response = await client.post(
            f"/payments/{opened.payment.id}/refund",
            json={},
            headers={"X-User-Permissions": "orders.update"},
        )

        assert response.status_code == 401

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_of_unsettled_payment_conflicts(
        self,
        client: httpx.AsyncClient,
        orchestrator: PaymentOrchestrator,
        order_id: uuid.UUID,
    ) -> None:
        opened = await open_payment(orchestrator, order_id)

        response = await client.post(
            f"/payments/{opened.payment.id}/refund", json={}, headers=ADMIN
        )

        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_STATE"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_inquiry_endpoint(
        self,
        client: httpx.AsyncClient,
        orchestrator: PaymentOrchestrator,
        order_id: uuid.UUID,
    ) -> None:
        opened = await open_payment(orchestrator, order_id)

        response = await client.get(f"/payments/{opened.payment.id}/inquiry", headers=USER)

        assert response.status_code == 200
        assert response.json()["local_status"] == "processing"
        assert response.json()["gateway_status"] == "pending"


class TestServiceEndpoints:
    """Test suite for gateway listing and monitoring endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_list_gateways(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/gateways")

        assert response.status_code == 200
        assert response.json() == {"default": "zarinpal", "available": ["idpay", "zarinpal"]}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["gateways"]["available"] == ["idpay", "zarinpal"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness_and_readiness(self, client: httpx.AsyncClient) -> None:
        live = await client.get("/health/live")
        ready = await client.get("/health/ready")

        assert live.json()["status"] == "alive"
        assert ready.status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics_exposed(
        self,
        client: httpx.AsyncClient,
        orchestrator: PaymentOrchestrator,
        order_id: uuid.UUID,
    ) -> None:
        await open_payment(orchestrator, order_id)

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "payment_initializations_total" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_root(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/")

        assert response.json()["service"] == "payment-orchestrator-test"


class TestStatusCodeMapping:
    """Test suite for the error to HTTP status mapping."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "error,expected",
        [
            (PaymentNotFoundError("PAYMENT_NOT_FOUND", "x"), 404),
            (PaymentValidationError("INVALID_CALLBACK", "x"), 400),
            (PaymentConflictError("INVALID_STATE", "x"), 409),
            (PaymentRejectedError("BUSINESS_REJECTED", "x"), 422),
            (PaymentTransportError("TRANSPORT", "x"), 503),
            (PaymentConfigurationError("UNKNOWN_GATEWAY", "x"), 503),
            (PaymentInconsistencyError("INCONSISTENT_STATE", "x"), 500),
            (PaymentError("UNKNOWN", "x"), 400),
        ],
    )
    def test_status_code_for(self, error: PaymentError, expected: int) -> None:
        assert status_code_for(error) == expected
