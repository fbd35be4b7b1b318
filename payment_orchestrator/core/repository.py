"""
Payment record persistence.

All status changes go through ``PaymentRepository.transition``, a conditional
UPDATE that only matches while the row is still in one of the expected
statuses. The affected-row count tells the caller whether it won; this is the
mutual-exclusion primitive across service instances.
"""
import random
import string
import time
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from payment_orchestrator.database.models import Payment, PaymentEvent, utcnow

from .state import PaymentStatus, ensure_transition

logger = structlog.get_logger(__name__)

_BASE36 = string.digits + string.ascii_uppercase


def _to_base36(value: int) -> str:
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits)) or "0"


def generate_payment_number() -> str:
    """Human readable payment number: ``PAY-<base36 millis>-<random>``."""
    millis = int(time.time() * 1000)
    suffix = "".join(random.choices(_BASE36, k=5))
    return f"PAY-{_to_base36(millis)}-{suffix}"


class PaymentRepository:
    """
    Queries and conditional updates over ``payments``.

    Methods take the caller's session; committing is the caller's job so a
    transition, its audit event and its outbox event share one transaction.
    """

    @staticmethod
    def _active():
        return select(Payment).where(Payment.deleted_at.is_(None))

    async def get(
        self, db: AsyncSession, payment_id: uuid.UUID, user_id: Optional[str] = None
    ) -> Optional[Payment]:
        stmt = self._active().where(Payment.id == payment_id)
        if user_id is not None:
            stmt = stmt.where(Payment.user_id == user_id)
        # populate_existing: another session may have moved the row since
        stmt = stmt.execution_options(populate_existing=True)
        return (await db.execute(stmt)).scalar_one_or_none()

    async def find_by_authority(self, db: AsyncSession, authority_token: str) -> Optional[Payment]:
        stmt = (
            self._active()
            .where(Payment.authority_token == authority_token)
            .execution_options(populate_existing=True)
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    async def latest_for_order(
        self, db: AsyncSession, order_id: uuid.UUID, user_id: Optional[str] = None
    ) -> Optional[Payment]:
        """Most recently created record of an order."""
        stmt = self._active().where(Payment.order_id == order_id)
        if user_id is not None:
            stmt = stmt.where(Payment.user_id == user_id)
        stmt = (
            stmt.order_by(Payment.created_at.desc(), Payment.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    async def completed_for_order(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> Optional[Payment]:
        """The completed record of an order, if any (at most one exists)."""
        stmt = self._active().where(
            Payment.order_id == order_id,
            Payment.status == PaymentStatus.COMPLETED.value,
        )
        if exclude_id is not None:
            stmt = stmt.where(Payment.id != exclude_id)
        stmt = stmt.execution_options(populate_existing=True)
        return (await db.execute(stmt)).scalars().first()

    async def list_for_user(
        self,
        db: AsyncSession,
        user_id: str,
        page: int = 1,
        limit: int = 10,
        status: Optional[PaymentStatus] = None,
    ) -> Tuple[List[Payment], int]:
        """
        Page through a user's payments, newest first.

        Returns:
            Tuple[List[Payment], int]: The page and the total count
        """
        conditions = [Payment.deleted_at.is_(None), Payment.user_id == user_id]
        if status is not None:
            conditions.append(Payment.status == PaymentStatus(status).value)

        total_stmt = select(func.count()).select_from(Payment).where(*conditions)
        total = int((await db.execute(total_stmt)).scalar_one())

        stmt = (
            select(Payment)
            .where(*conditions)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list((await db.execute(stmt)).scalars().all()), total

    async def stale_processing(
        self, db: AsyncSession, older_than: datetime, limit: int
    ) -> List[uuid.UUID]:
        """Ids of records stuck in ``processing`` since before ``older_than``."""
        stmt = (
            select(Payment.id)
            .where(
                Payment.deleted_at.is_(None),
                Payment.status == PaymentStatus.PROCESSING.value,
                Payment.processed_at < older_than,
            )
            .order_by(Payment.processed_at)
            .limit(limit)
        )
        return list((await db.execute(stmt)).scalars().all())

    async def unreconciled(self, db: AsyncSession, limit: int) -> List[uuid.UUID]:
        """Ids of completed records whose order was never marked paid."""
        stmt = (
            select(Payment.id)
            .where(
                Payment.deleted_at.is_(None),
                Payment.status == PaymentStatus.COMPLETED.value,
                Payment.reconciled_at.is_(None),
            )
            .order_by(Payment.completed_at)
            .limit(limit)
        )
        return list((await db.execute(stmt)).scalars().all())

    async def transition(
        self,
        db: AsyncSession,
        payment_id: uuid.UUID,
        expected: Iterable[PaymentStatus],
        target: PaymentStatus,
        where_authority: Optional[str] = None,
        **values: Any,
    ) -> bool:
        """
        Move a record to ``target`` if it is still in one of ``expected``.

        Args:
            db: Database session
            payment_id: Payment id
            expected: Statuses the row may currently be in
            target: New status
            where_authority: Also require this authority (a reused record
                carries a new one)
            **values: Extra columns written with the status

        Returns:
            bool: True if this call performed the transition

        Raises:
            InvalidTransitionError: If any expected status cannot reach target
        """
        expected = [PaymentStatus(status) for status in expected]
        for current in expected:
            ensure_transition(current, target)

        stmt = (
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.deleted_at.is_(None),
                Payment.status.in_([status.value for status in expected]),
            )
            .values(status=target.value, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if where_authority is not None:
            stmt = stmt.where(Payment.authority_token == where_authority)
        result = await db.execute(stmt)
        won = result.rowcount == 1

        logger.debug(
            "payment_transition_attempted",
            payment_id=str(payment_id),
            expected=[status.value for status in expected],
            target=target.value,
            won=won,
        )
        return won

    async def update_if_status(
        self,
        db: AsyncSession,
        payment_id: uuid.UUID,
        status: PaymentStatus,
        **values: Any,
    ) -> bool:
        """Write columns without a status change, only while in ``status``."""
        stmt = (
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.deleted_at.is_(None),
                Payment.status == PaymentStatus(status).value,
            )
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    @staticmethod
    def record_event(
        db: AsyncSession,
        payment_id: uuid.UUID,
        event_type: str,
        event_data: Dict[str, Any],
        correlation_id: uuid.UUID,
    ) -> None:
        """
        Append to the audit trail within the caller's transaction.

        Args:
            db: Database session
            payment_id: Payment ID
            event_type: Event type (e.g. 'payment.failed')
            event_data: Event data
            correlation_id: Correlation ID for tracing
        """
        db.add(
            PaymentEvent(
                payment_id=payment_id,
                event_type=event_type,
                event_data=event_data,
                correlation_id=correlation_id,
            )
        )

    async def events_for(self, db: AsyncSession, payment_id: uuid.UUID) -> List[PaymentEvent]:
        stmt = (
            select(PaymentEvent)
            .where(PaymentEvent.payment_id == payment_id)
            .order_by(PaymentEvent.id)
        )
        return list((await db.execute(stmt)).scalars().all())
