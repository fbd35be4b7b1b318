"""
Order boundary.

Orders are owned by another part of the system. The orchestrator only reads
what it needs to open a payment (``OrderLookup``) and reports settlement
outcomes back (``OrderReconciler``). ``SqlOrderStore`` is the default
implementation over the local ``orders`` table.
"""
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_orchestrator.database.models import Order, utcnow

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class OrderSnapshot:
    """The fields of an order that payment orchestration depends on."""

    id: uuid.UUID
    order_number: str
    user_id: str
    total: int
    payment_method: str
    payment_status: str
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "completed"

    @property
    def is_online(self) -> bool:
        return self.payment_method == "online"

    def customer_meta(self) -> Dict[str, Any]:
        return {
            "name": self.customer_name,
            "phone": self.customer_phone,
            "email": self.customer_email,
        }


class OrderLookup(Protocol):
    """Read access to orders."""

    async def get_order(
        self, order_id: uuid.UUID, user_id: Optional[str] = None
    ) -> Optional[OrderSnapshot]:
        ...


class OrderReconciler(Protocol):
    """
    Applies payment outcomes to orders.

    Implementations must be idempotent: marking an order paid twice with the
    same transaction id must not apply its business effects twice.
    """

    async def mark_paid(
        self,
        order_id: uuid.UUID,
        transaction_id: str,
        gateway_name: str,
        raw: Dict[str, Any],
    ) -> None:
        ...

    async def mark_refunded(self, order_id: uuid.UUID) -> None:
        ...


class OrderNotReconcilableError(Exception):
    """Raised when an order cannot take a payment outcome."""

    pass


class SqlOrderStore:
    """Order lookup and reconciliation over the ``orders`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def get_order(
        self, order_id: uuid.UUID, user_id: Optional[str] = None
    ) -> Optional[OrderSnapshot]:
        """
        Load an order, optionally scoped to its owner.

        Args:
            order_id: Order id
            user_id: When given, orders of other users are not visible

        Returns:
            Optional[OrderSnapshot]: The order, or None
        """
        async with self.session_factory() as db:
            stmt = select(Order).where(Order.id == order_id, Order.deleted_at.is_(None))
            if user_id is not None:
                stmt = stmt.where(Order.user_id == user_id)
            order = (await db.execute(stmt)).scalar_one_or_none()

        if order is None:
            return None
        return OrderSnapshot(
            id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            total=order.total,
            payment_method=order.payment_method,
            payment_status=order.payment_status,
            customer_name=order.customer_name,
            customer_phone=order.customer_phone,
            customer_email=order.customer_email,
        )

    async def mark_paid(
        self,
        order_id: uuid.UUID,
        transaction_id: str,
        gateway_name: str,
        raw: Dict[str, Any],
    ) -> None:
        """
        Mark an order paid.

        Re-marking with the same transaction id is a no-op.

        Raises:
            OrderNotReconcilableError: If the order is missing or was paid by
                another transaction
        """
        async with self.session_factory() as db:
            order = await db.get(Order, order_id, with_for_update=True)
            if order is None:
                raise OrderNotReconcilableError(f"Order {order_id} not found")

            if order.payment_status == "completed":
                if order.transaction_id == transaction_id:
                    logger.info(
                        "order_already_marked_paid",
                        order_id=str(order_id),
                        transaction_id=transaction_id,
                    )
                    return
                raise OrderNotReconcilableError(
                    f"Order {order_id} already paid by another transaction"
                )

            order.payment_status = "completed"
            order.transaction_id = transaction_id
            order.gateway = gateway_name
            order.gateway_response = raw
            order.paid_at = utcnow()
            await db.commit()

        logger.info(
            "order_marked_paid",
            order_id=str(order_id),
            transaction_id=transaction_id,
            gateway=gateway_name,
        )

    async def mark_refunded(self, order_id: uuid.UUID) -> None:
        """
        Mark an order refunded. Idempotent.

        Raises:
            OrderNotReconcilableError: If the order is missing
        """
        async with self.session_factory() as db:
            order = await db.get(Order, order_id, with_for_update=True)
            if order is None:
                raise OrderNotReconcilableError(f"Order {order_id} not found")
            if order.payment_status == "refunded":
                return
            order.payment_status = "refunded"
            order.refunded_at = utcnow()
            await db.commit()

        logger.info("order_marked_refunded", order_id=str(order_id))
