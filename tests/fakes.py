"""Test doubles and helpers shared by the test modules."""
import asyncio
import uuid
from collections import defaultdict
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_orchestrator.core.orchestrator import InitializationResult, PaymentOrchestrator
from payment_orchestrator.core.orders import SqlOrderStore
from payment_orchestrator.database.models import Order, OutboxEvent, Payment, PaymentEvent
from payment_orchestrator.gateways.base import (
    GatewayErrorCode,
    GatewayFailure,
    GatewayPaymentStatus,
    InitializeResult,
    RefundResult,
    StatusResult,
    VerifyResult,
)


class FakeGateway:
    """
    In-memory gateway.

    Each operation pops its next outcome from a queue; an exception instance
    is raised, anything else is returned. With an empty queue the operation
    succeeds.
    """

    def __init__(self, name: str = "zarinpal") -> None:
        self.name = name
        self.outcomes: Dict[str, List[Any]] = defaultdict(list)
        self.calls: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.verify_delay = 0.0
        self._sequence = 0

    def queue(self, operation: str, *outcomes: Any) -> None:
        self.outcomes[operation].extend(outcomes)

    def _next(self, operation: str, default: Any) -> Any:
        if self.outcomes[operation]:
            outcome = self.outcomes[operation].pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return default

    async def initialize(
        self,
        amount: int,
        description: str,
        callback_url: str,
        order_ref: str,
        customer_meta: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        self.calls["initialize"].append(
            {"amount": amount, "callback_url": callback_url, "order_ref": order_ref}
        )
        self._sequence += 1
        authority = f"{self.name.upper()}-{self._sequence:04d}"
        return self._next(
            "initialize",
            InitializeResult(
                authority_token=authority,
                redirect_url=f"https://gateway.test/StartPay/{authority}",
                raw={"data": {"code": 100, "authority": authority}},
            ),
        )

    async def verify(self, authority_token: str, order_ref: str, amount: int) -> Any:
        self.calls["verify"].append({"authority": authority_token, "amount": amount})
        if self.verify_delay:
            await asyncio.sleep(self.verify_delay)
        return self._next(
            "verify",
            VerifyResult(
                transaction_id=f"TX-{authority_token}",
                ref_id=f"REF-{authority_token}",
                raw={"data": {"code": 100, "ref_id": authority_token}},
            ),
        )

    async def refund(self, authority_token: str, order_ref: str, amount: int) -> Any:
        self.calls["refund"].append({"authority": authority_token, "amount": amount})
        return self._next("refund", RefundResult(raw={"status": 100}))

    async def status(self, authority_token: str, order_ref: str) -> Any:
        self.calls["status"].append({"authority": authority_token})
        return self._next(
            "status", StatusResult(status=GatewayPaymentStatus.PENDING, gateway_code="IN_BANK")
        )

    def validate_callback(self, payload: Mapping[str, Any]) -> bool:
        return bool(payload.get("Authority")) and payload.get("Status") in ("OK", "NOK")

    def authority_from_callback(self, payload: Mapping[str, Any]) -> str:
        return str(payload["Authority"])


class RecordingReconciler:
    """Order reconciler that records calls and can be told to fail."""

    def __init__(self, store: SqlOrderStore) -> None:
        self.store = store
        self.fail_mark_paid = False
        self.fail_mark_refunded = False
        self.paid_calls: List[Tuple[uuid.UUID, str]] = []
        self.refunded_calls: List[uuid.UUID] = []

    async def mark_paid(
        self,
        order_id: uuid.UUID,
        transaction_id: str,
        gateway_name: str,
        raw: Dict[str, Any],
    ) -> None:
        self.paid_calls.append((order_id, transaction_id))
        if self.fail_mark_paid:
            raise RuntimeError("order service unavailable")
        await self.store.mark_paid(order_id, transaction_id, gateway_name, raw)

    async def mark_refunded(self, order_id: uuid.UUID) -> None:
        self.refunded_calls.append(order_id)
        if self.fail_mark_refunded:
            raise RuntimeError("order service unavailable")
        await self.store.mark_refunded(order_id)


class DbReader:
    """Fresh-session reads for assertions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def payment(self, payment_id: uuid.UUID) -> Payment:
        async with self.session_factory() as db:
            stmt = select(Payment).where(Payment.id == payment_id)
            return (await db.execute(stmt)).scalar_one()

    async def payments_for_order(self, order_id: uuid.UUID) -> List[Payment]:
        async with self.session_factory() as db:
            stmt = select(Payment).where(Payment.order_id == order_id)
            return list((await db.execute(stmt)).scalars().all())

    async def order(self, order_id: uuid.UUID) -> Order:
        async with self.session_factory() as db:
            return (await db.execute(select(Order).where(Order.id == order_id))).scalar_one()

    async def event_types(self, payment_id: uuid.UUID) -> List[str]:
        async with self.session_factory() as db:
            stmt = (
                select(PaymentEvent.event_type)
                .where(PaymentEvent.payment_id == payment_id)
                .order_by(PaymentEvent.id)
            )
            return list((await db.execute(stmt)).scalars().all())

    async def outbox_types(self) -> List[str]:
        async with self.session_factory() as db:
            stmt = select(OutboxEvent.event_type).order_by(OutboxEvent.id)
            return list((await db.execute(stmt)).scalars().all())


def callback(authority: str, status: str = "OK") -> Dict[str, str]:
    """Zarinpal style callback payload."""
    return {"Authority": authority, "Status": status}


def rejected(code: str, message: str = "rejected") -> GatewayFailure:
    return GatewayFailure(
        error_code=GatewayErrorCode.BUSINESS_REJECTED,
        message=message,
        gateway_code=code,
        raw={"errors": {"code": code, "message": message}},
    )


async def open_payment(
    orchestrator: PaymentOrchestrator,
    order_id: uuid.UUID,
    user_id: str = "user-1",
    gateway_name: Optional[str] = None,
) -> InitializationResult:
    """Initialize a payment and return the processing record."""
    return await orchestrator.initialize_payment(
        order_id, user_id, gateway_name=gateway_name, locale="en"
    )
