"""
Payment orchestrator: drives payment records through their lifecycle.

Operations:
1. initialize_payment: open a gateway session for an order
2. verify_payment: settle a gateway callback, exactly once per settlement
3. refund_payment: return funds for a completed payment
4. inquire_payment / settle_from_inquiry: resolve ambiguous outcomes
5. retry_reconciliation: re-apply a settlement the order store missed

Guarantees:
- No database transaction is held across a gateway call
- Status changes are conditional UPDATEs; only the winner acts on the order
- A settled payment is never reverted, whatever happens to the order update
"""
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_orchestrator.config import Settings, get_settings
from payment_orchestrator.database.connection import get_session_factory
from payment_orchestrator.database.models import Payment, utcnow
from payment_orchestrator.gateways.base import (
    GatewayClient,
    GatewayErrorCode,
    GatewayFailure,
    GatewayPaymentStatus,
    GatewayTransportError,
    VerifyResult,
)
from payment_orchestrator.monitoring.metrics import metrics

from .exceptions import (
    PaymentConfigurationError,
    PaymentConflictError,
    PaymentInconsistencyError,
    PaymentNotFoundError,
    PaymentRejectedError,
    PaymentTransportError,
    PaymentValidationError,
)
from .locks import KeyedLocks
from .messages import gateway_message, localized_message
from .orders import OrderLookup, OrderReconciler, OrderSnapshot
from .outbox import write_outbox_event
from .redirects import redirect_for
from .repository import PaymentRepository, generate_payment_number
from .state import REUSABLE_STATUSES, PaymentStatus

if TYPE_CHECKING:
    from payment_orchestrator.gateways.registry import GatewayRegistry

logger = structlog.get_logger(__name__)

# Columns cleared when a failed or cancelled record starts a new attempt
_ATTEMPT_RESET = {
    "authority_token": None,
    "redirect_url": None,
    "transaction_id": None,
    "ref_id": None,
    "response_code": None,
    "gateway_response": None,
    "callback_data": None,
    "error_code": None,
    "error_message": None,
    "error_details": None,
    "processed_at": None,
    "failed_at": None,
    "cancelled_at": None,
}


class VerificationOutcome(str, Enum):
    """Result of handling a gateway callback."""

    SETTLED = "settled"  # this call completed the payment
    ALREADY_SETTLED = "already_settled"  # completed earlier; nothing done
    FAILED = "failed"  # gateway declined the payment
    INDETERMINATE = "indeterminate"  # gateway unreachable; retry later


@dataclass(frozen=True)
class VerificationResult:
    """What a callback produced, plus where to send the user."""

    outcome: VerificationOutcome
    payment_id: uuid.UUID
    order_id: uuid.UUID
    redirect_url: str
    message: str
    transaction_id: Optional[str] = None
    ref_id: Optional[str] = None
    retryable: bool = False

    @property
    def success(self) -> bool:
        return self.outcome in (VerificationOutcome.SETTLED, VerificationOutcome.ALREADY_SETTLED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "outcome": self.outcome.value,
            "payment_id": str(self.payment_id),
            "order_id": str(self.order_id),
            "transaction_id": self.transaction_id,
            "ref_id": self.ref_id,
            "redirect_url": self.redirect_url,
            "message": self.message,
            "retryable": self.retryable,
        }


@dataclass(frozen=True)
class InitializationResult:
    """A payment ready for the user to complete at the gateway."""

    payment: Payment
    redirect_url: str


@dataclass(frozen=True)
class _Attempt:
    """Immutable copy of the fields a gateway call needs."""

    payment_id: uuid.UUID
    order_id: uuid.UUID
    order_ref: str
    amount: int
    gateway_name: str
    authority_token: str

    @classmethod
    def of(cls, payment: Payment) -> "_Attempt":
        return cls(
            payment_id=payment.id,
            order_id=payment.order_id,
            order_ref=payment.order_ref,
            amount=payment.amount,
            gateway_name=payment.gateway_name,
            authority_token=payment.authority_token or "",
        )


class PaymentOrchestrator:
    """
    Payment lifecycle driver.

    Owns a session factory and opens a short session per step. Concurrent
    callbacks for one authority are serialized in-process by a keyed lock;
    across instances the conditional status UPDATE decides the winner.
    """

    def __init__(
        self,
        registry: "GatewayRegistry",
        order_lookup: OrderLookup,
        order_reconciler: OrderReconciler,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            registry: Gateway registry
            order_lookup: Read access to orders
            order_reconciler: Applies payment outcomes to orders
            session_factory: Session factory (defaults to the global one)
            settings: Application settings
        """
        self.registry = registry
        self.order_lookup = order_lookup
        self.order_reconciler = order_reconciler
        self.session_factory = session_factory or get_session_factory()
        self.settings = settings or get_settings()
        self.repository = PaymentRepository()
        self._order_locks = KeyedLocks()
        self._authority_locks = KeyedLocks()

        logger.info("payment_orchestrator_initialized", gateways=registry.available())

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> "PaymentOrchestrator":
        """
        Wire an orchestrator over the local order store.

        Args:
            settings: Application settings
            session_factory: Session factory (defaults to the global one)

        Returns:
            PaymentOrchestrator: Ready to use orchestrator
        """
        from payment_orchestrator.gateways.registry import GatewayRegistry

        from .orders import SqlOrderStore

        settings = settings or get_settings()
        session_factory = session_factory or get_session_factory()
        store = SqlOrderStore(session_factory)
        return cls(
            registry=GatewayRegistry.from_settings(settings),
            order_lookup=store,
            order_reconciler=store,
            session_factory=session_factory,
            settings=settings,
        )

    def _redirect(self, order_id: uuid.UUID, success: bool) -> str:
        return redirect_for(order_id, success, frontend_url=self.settings.frontend_url)

    # ------------------------------------------------------------------
    # Initialize
    # ------------------------------------------------------------------

    async def initialize_payment(
        self,
        order_id: uuid.UUID,
        user_id: str,
        gateway_name: Optional[str] = None,
        locale: Optional[str] = None,
    ) -> InitializationResult:
        """
        Open a gateway payment session for an order.

        Flow:
        1. Load and check the order
        2. Resolve the gateway (before any state change)
        3. Create or reuse the payment record and commit it as pending
        4. Call the gateway
        5. Move the record to processing with the authority

        Args:
            order_id: Order to pay
            user_id: Owner of the order
            gateway_name: Gateway to use (default gateway when omitted)
            locale: Locale for user-facing messages

        Returns:
            InitializationResult: The record and the gateway redirect URL

        Raises:
            PaymentNotFoundError: If the order does not exist for the user
            PaymentConflictError: If the order is already paid
            PaymentValidationError: If the order is not payable online
            PaymentConfigurationError: If the gateway is unknown or misconfigured
            PaymentRejectedError: If the gateway declined the request
            PaymentTransportError: If the gateway could not be reached
        """
        start_time = time.time()
        correlation_id = uuid.uuid4()

        logger.info(
            "payment_initialization_started",
            correlation_id=str(correlation_id),
            order_id=str(order_id),
            user_id=user_id,
            gateway=gateway_name,
        )

        order = await self.order_lookup.get_order(order_id, user_id)
        if order is None:
            raise PaymentNotFoundError("ORDER_NOT_FOUND", localized_message("ORDER_NOT_FOUND", locale))
        if order.is_paid:
            raise PaymentConflictError(
                "ORDER_ALREADY_PAID", localized_message("ORDER_ALREADY_PAID", locale)
            )
        if not order.is_online:
            raise PaymentValidationError(
                "INVALID_PAYMENT_METHOD", localized_message("INVALID_PAYMENT_METHOD", locale)
            )

        gateway = self.registry.resolve(gateway_name)
        callback_url = self.settings.callback_url_for(gateway.name)

        async with self._order_locks.hold(str(order.id)):
            payment = await self._prepare_record(
                order, user_id, gateway.name, callback_url, correlation_id, locale
            )

            try:
                result = await gateway.initialize(
                    amount=payment.amount,
                    description=payment.description or "",
                    callback_url=callback_url,
                    order_ref=payment.order_ref,
                    customer_meta=payment.customer_info or {},
                )
            except GatewayTransportError as e:
                await self._fail_attempt(
                    payment.id,
                    error_code=GatewayErrorCode.TRANSPORT.value,
                    error_message=str(e),
                    error_details={"gateway": gateway.name, "operation": "initialize"},
                    correlation_id=correlation_id,
                )
                metrics.record_initialization(gateway.name, "transport_error", payment.amount)
                raise PaymentTransportError(
                    "TRANSPORT",
                    localized_message("TRANSPORT", locale),
                    {"payment_id": str(payment.id)},
                ) from e

            if isinstance(result, GatewayFailure):
                await self._fail_attempt(
                    payment.id,
                    error_code=result.error_code.value,
                    error_message=result.message,
                    error_details={"gateway_code": result.gateway_code, "raw": result.raw},
                    correlation_id=correlation_id,
                )
                metrics.record_initialization(gateway.name, "rejected", payment.amount)
                message = gateway_message(
                    gateway.name, result.gateway_code, locale
                ) or localized_message(result.error_code.value, locale)
                details = {"payment_id": str(payment.id), "gateway_code": result.gateway_code}
                if result.error_code == GatewayErrorCode.AUTH_FAILURE:
                    raise PaymentConfigurationError(result.error_code.value, message, details)
                raise PaymentRejectedError(result.error_code.value, message, details)

            async with self.session_factory() as db:
                moved = await self.repository.transition(
                    db,
                    payment.id,
                    [PaymentStatus.PENDING],
                    PaymentStatus.PROCESSING,
                    authority_token=result.authority_token,
                    redirect_url=result.redirect_url,
                    callback_url=callback_url,
                    gateway_response=result.raw,
                    processed_at=utcnow(),
                )
                if not moved:
                    await db.rollback()
                    logger.error(
                        "payment_initialization_lost_record",
                        correlation_id=str(correlation_id),
                        payment_id=str(payment.id),
                    )
                    raise PaymentConflictError(
                        "INVALID_STATE", localized_message("INVALID_STATE", locale)
                    )
                self.repository.record_event(
                    db,
                    payment.id,
                    "payment.processing",
                    {"gateway": gateway.name, "authority": result.authority_token},
                    correlation_id,
                )
                await db.commit()
                payment = await self.repository.get(db, payment.id)

        metrics.record_initialization(gateway.name, "processing", payment.amount)
        metrics.record_operation_duration("initialize", time.time() - start_time)
        logger.info(
            "payment_initialized",
            correlation_id=str(correlation_id),
            payment_id=str(payment.id),
            payment_number=payment.payment_number,
            order_id=str(order.id),
            gateway=gateway.name,
            attempt=payment.attempt_count,
        )
        return InitializationResult(payment=payment, redirect_url=result.redirect_url)

    async def _prepare_record(
        self,
        order: OrderSnapshot,
        user_id: str,
        gateway_name: str,
        callback_url: str,
        correlation_id: uuid.UUID,
        locale: Optional[str],
    ) -> Payment:
        """
        Create or reuse the order's record and commit it as ``pending``.

        A processing record is superseded (cancelled) first; a failed or
        cancelled record with an unchanged amount is reused.
        """
        async with self.session_factory() as db:
            if await self.repository.completed_for_order(db, order.id) is not None:
                raise PaymentConflictError(
                    "ORDER_ALREADY_PAID", localized_message("ORDER_ALREADY_PAID", locale)
                )

            latest = await self.repository.latest_for_order(db, order.id)

            if latest is not None and latest.status in (
                PaymentStatus.PROCESSING.value,
                PaymentStatus.PENDING.value,
            ) and (latest.status == PaymentStatus.PROCESSING.value or latest.amount != order.total):
                superseded = await self.repository.transition(
                    db,
                    latest.id,
                    [PaymentStatus(latest.status)],
                    PaymentStatus.CANCELLED,
                    cancelled_at=utcnow(),
                )
                if superseded:
                    self.repository.record_event(
                        db,
                        latest.id,
                        "payment.cancelled",
                        {"reason": "superseded", "authority": latest.authority_token},
                        correlation_id,
                    )
                    logger.info(
                        "payment_attempt_superseded",
                        correlation_id=str(correlation_id),
                        payment_id=str(latest.id),
                    )
                await db.commit()
                latest = await self.repository.get(db, latest.id)
                if latest is not None and latest.status == PaymentStatus.COMPLETED.value:
                    # A callback settled it while we were superseding
                    raise PaymentConflictError(
                        "ORDER_ALREADY_PAID", localized_message("ORDER_ALREADY_PAID", locale)
                    )

            if latest is not None and latest.amount == order.total:
                if latest.status in {status.value for status in REUSABLE_STATUSES}:
                    reused = await self.repository.transition(
                        db,
                        latest.id,
                        REUSABLE_STATUSES,
                        PaymentStatus.PENDING,
                        gateway_name=gateway_name,
                        callback_url=callback_url,
                        attempt_count=Payment.attempt_count + 1,
                        **_ATTEMPT_RESET,
                    )
                    if reused:
                        self.repository.record_event(
                            db,
                            latest.id,
                            "payment.retried",
                            {"gateway": gateway_name, "previous_error": latest.error_code},
                            correlation_id,
                        )
                        await db.commit()
                        logger.info(
                            "payment_record_reused",
                            correlation_id=str(correlation_id),
                            payment_id=str(latest.id),
                        )
                        return await self.repository.get(db, latest.id)
                    await db.rollback()
                    raise PaymentConflictError(
                        "INVALID_STATE", localized_message("INVALID_STATE", locale)
                    )

                if latest.status == PaymentStatus.PENDING.value:
                    # Gateway choice is still open while pending
                    await self.repository.update_if_status(
                        db,
                        latest.id,
                        PaymentStatus.PENDING,
                        gateway_name=gateway_name,
                        callback_url=callback_url,
                    )
                    await db.commit()
                    return await self.repository.get(db, latest.id)

            payment = Payment(
                id=uuid.uuid4(),
                payment_number=generate_payment_number(),
                order_id=order.id,
                order_ref=order.order_number,
                user_id=user_id,
                amount=order.total,
                gateway_name=gateway_name,
                status=PaymentStatus.PENDING.value,
                callback_url=callback_url,
                description=f"پرداخت سفارش {order.order_number}",
                customer_info=order.customer_meta(),
                attempt_count=1,
            )
            db.add(payment)
            await db.flush()
            self.repository.record_event(
                db,
                payment.id,
                "payment.created",
                {"amount": payment.amount, "gateway": gateway_name, "status": payment.status},
                correlation_id,
            )
            await db.commit()

            logger.info(
                "payment_record_created",
                correlation_id=str(correlation_id),
                payment_id=str(payment.id),
                payment_number=payment.payment_number,
            )
            return payment

    async def _fail_attempt(
        self,
        payment_id: uuid.UUID,
        error_code: str,
        error_message: str,
        error_details: Dict[str, Any],
        correlation_id: uuid.UUID,
    ) -> None:
        """Record an initialization failure on a pending record."""
        async with self.session_factory() as db:
            moved = await self.repository.transition(
                db,
                payment_id,
                [PaymentStatus.PENDING],
                PaymentStatus.FAILED,
                error_code=error_code,
                error_message=error_message,
                error_details=error_details,
                failed_at=utcnow(),
            )
            if moved:
                self.repository.record_event(
                    db,
                    payment_id,
                    "payment.failed",
                    {"stage": "initialize", "error_code": error_code, **error_details},
                    correlation_id,
                )
            await db.commit()

        logger.warning(
            "payment_initialization_failed",
            correlation_id=str(correlation_id),
            payment_id=str(payment_id),
            error_code=error_code,
            recorded=moved,
        )

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    async def verify_payment(
        self,
        gateway_name: str,
        callback_payload: Mapping[str, Any],
        locale: Optional[str] = None,
    ) -> VerificationResult:
        """
        Settle a gateway callback. Safe to call any number of times, concurrently.

        Args:
            gateway_name: Gateway the callback came from
            callback_payload: Provider payload (query string or body)
            locale: Locale for user-facing messages

        Returns:
            VerificationResult: Outcome and redirect target

        Raises:
            PaymentConfigurationError: If the gateway is unknown or misconfigured
            PaymentValidationError: If the callback is malformed
            PaymentNotFoundError: If no record carries the authority
            PaymentConflictError: If the record cannot be settled from its state
        """
        start_time = time.time()
        gateway = self.registry.resolve(gateway_name)

        if not gateway.validate_callback(callback_payload):
            logger.warning("payment_callback_invalid", gateway=gateway.name)
            raise PaymentValidationError(
                "INVALID_CALLBACK", localized_message("INVALID_CALLBACK", locale)
            )

        authority = gateway.authority_from_callback(callback_payload)
        correlation_id = uuid.uuid4()

        logger.info(
            "payment_callback_received",
            correlation_id=str(correlation_id),
            gateway=gateway.name,
            authority=authority,
        )

        async with self._authority_locks.hold(authority):
            result = await self._verify_locked(
                gateway, authority, dict(callback_payload), correlation_id, locale
            )

        metrics.record_verification(gateway.name, result.outcome.value)
        metrics.record_operation_duration("verify", time.time() - start_time)
        return result

    async def _verify_locked(
        self,
        gateway: GatewayClient,
        authority: str,
        callback_payload: Dict[str, Any],
        correlation_id: uuid.UUID,
        locale: Optional[str],
    ) -> VerificationResult:
        async with self.session_factory() as db:
            payment = await self.repository.find_by_authority(db, authority)
            if payment is None:
                raise PaymentNotFoundError(
                    "PAYMENT_NOT_FOUND", localized_message("PAYMENT_NOT_FOUND", locale)
                )
            if payment.gateway_name != gateway.name:
                logger.warning(
                    "payment_callback_gateway_mismatch",
                    correlation_id=str(correlation_id),
                    payment_id=str(payment.id),
                    expected=payment.gateway_name,
                    received=gateway.name,
                )
                raise PaymentValidationError(
                    "INVALID_CALLBACK", localized_message("INVALID_CALLBACK", locale)
                )

            if payment.status == PaymentStatus.COMPLETED.value:
                logger.info(
                    "payment_already_settled",
                    correlation_id=str(correlation_id),
                    payment_id=str(payment.id),
                )
                return self._already_settled(payment, locale)

            other = await self.repository.completed_for_order(
                db, payment.order_id, exclude_id=payment.id
            )
            if other is not None:
                if payment.status in (PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value):
                    cancelled = await self.repository.transition(
                        db,
                        payment.id,
                        [PaymentStatus(payment.status)],
                        PaymentStatus.CANCELLED,
                        cancelled_at=utcnow(),
                        callback_data=callback_payload,
                    )
                    if cancelled:
                        self.repository.record_event(
                            db,
                            payment.id,
                            "payment.cancelled",
                            {"reason": "order_already_settled", "settled_by": str(other.id)},
                            correlation_id,
                        )
                    await db.commit()
                logger.info(
                    "payment_order_settled_by_other_record",
                    correlation_id=str(correlation_id),
                    payment_id=str(payment.id),
                    settled_by=str(other.id),
                )
                return self._already_settled(other, locale)

            if payment.status != PaymentStatus.PROCESSING.value:
                logger.warning(
                    "payment_callback_invalid_state",
                    correlation_id=str(correlation_id),
                    payment_id=str(payment.id),
                    status=payment.status,
                )
                raise PaymentConflictError(
                    "INVALID_STATE",
                    localized_message("INVALID_STATE", locale),
                    {"status": payment.status},
                )

            attempt = _Attempt.of(payment)

        return await self._settle(gateway, attempt, callback_payload, correlation_id, locale)

    async def _settle(
        self,
        gateway: GatewayClient,
        attempt: _Attempt,
        callback_payload: Optional[Dict[str, Any]],
        correlation_id: uuid.UUID,
        locale: Optional[str],
    ) -> VerificationResult:
        """
        Verify a processing attempt with the gateway and apply the answer.

        Only a business rejection fails the record. Transport errors and any
        other failure (unknown answer, credentials refused) leave it
        ``processing`` for the sweeper's status inquiry.
        """
        try:
            result = await gateway.verify(attempt.authority_token, attempt.order_ref, attempt.amount)
        except GatewayTransportError as e:
            return await self._record_indeterminate(
                attempt,
                {"error": str(e), "callback": callback_payload},
                correlation_id,
                locale,
            )

        if isinstance(result, GatewayFailure):
            if result.error_code != GatewayErrorCode.BUSINESS_REJECTED:
                return await self._record_indeterminate(
                    attempt,
                    {
                        "error_code": result.error_code.value,
                        "gateway_code": result.gateway_code,
                        "error": result.message,
                        "callback": callback_payload,
                    },
                    correlation_id,
                    locale,
                )
            return await self._apply_verify_failure(
                attempt, result, callback_payload, correlation_id, locale
            )
        return await self._apply_settlement(
            attempt, result, callback_payload, correlation_id, locale
        )

    async def _record_indeterminate(
        self,
        attempt: _Attempt,
        details: Dict[str, Any],
        correlation_id: uuid.UUID,
        locale: Optional[str],
    ) -> VerificationResult:
        async with self.session_factory() as db:
            self.repository.record_event(
                db,
                attempt.payment_id,
                "payment.verify_indeterminate",
                details,
                correlation_id,
            )
            await db.commit()
        logger.warning(
            "payment_verification_indeterminate",
            correlation_id=str(correlation_id),
            payment_id=str(attempt.payment_id),
            error=details.get("error"),
            error_code=details.get("error_code"),
        )
        return VerificationResult(
            outcome=VerificationOutcome.INDETERMINATE,
            payment_id=attempt.payment_id,
            order_id=attempt.order_id,
            redirect_url=self._redirect(attempt.order_id, success=False),
            message=localized_message("VERIFICATION_PENDING", locale),
            retryable=True,
        )

    async def _apply_verify_failure(
        self,
        attempt: _Attempt,
        failure: GatewayFailure,
        callback_payload: Optional[Dict[str, Any]],
        correlation_id: uuid.UUID,
        locale: Optional[str],
    ) -> VerificationResult:
        async with self.session_factory() as db:
            moved = await self.repository.transition(
                db,
                attempt.payment_id,
                [PaymentStatus.PROCESSING],
                PaymentStatus.FAILED,
                where_authority=attempt.authority_token,
                error_code=failure.error_code.value,
                error_message=failure.message,
                error_details={"gateway_code": failure.gateway_code, "raw": failure.raw},
                callback_data=callback_payload,
                failed_at=utcnow(),
            )
            if moved:
                self.repository.record_event(
                    db,
                    attempt.payment_id,
                    "payment.failed",
                    {
                        "stage": "verify",
                        "error_code": failure.error_code.value,
                        "gateway_code": failure.gateway_code,
                    },
                    correlation_id,
                )
                write_outbox_event(
                    db,
                    attempt.payment_id,
                    "payment.failed",
                    await self._event_payload(db, attempt.payment_id),
                )
            await db.commit()

        if not moved:
            return await self._resolve_lost_race(attempt, None, correlation_id, locale)

        logger.warning(
            "payment_verification_failed",
            correlation_id=str(correlation_id),
            payment_id=str(attempt.payment_id),
            error_code=failure.error_code.value,
            gateway_code=failure.gateway_code,
        )
        return VerificationResult(
            outcome=VerificationOutcome.FAILED,
            payment_id=attempt.payment_id,
            order_id=attempt.order_id,
            redirect_url=self._redirect(attempt.order_id, success=False),
            message=gateway_message(attempt.gateway_name, failure.gateway_code, locale)
            or localized_message("PAYMENT_FAILED", locale),
        )

    async def _apply_settlement(
        self,
        attempt: _Attempt,
        proof: VerifyResult,
        callback_payload: Optional[Dict[str, Any]],
        correlation_id: uuid.UUID,
        locale: Optional[str],
    ) -> VerificationResult:
        async with self.session_factory() as db:
            try:
                moved = await self.repository.transition(
                    db,
                    attempt.payment_id,
                    [PaymentStatus.PROCESSING],
                    PaymentStatus.COMPLETED,
                    where_authority=attempt.authority_token,
                    transaction_id=proof.transaction_id,
                    ref_id=proof.ref_id,
                    response_code="SUCCESS",
                    gateway_response=proof.raw,
                    callback_data=callback_payload,
                    completed_at=utcnow(),
                )
                if moved:
                    self.repository.record_event(
                        db,
                        attempt.payment_id,
                        "payment.completed",
                        {"transaction_id": proof.transaction_id, "ref_id": proof.ref_id},
                        correlation_id,
                    )
                    write_outbox_event(
                        db,
                        attempt.payment_id,
                        "payment.completed",
                        await self._event_payload(db, attempt.payment_id, proof),
                    )
                await db.commit()
            except IntegrityError:
                # Another record of the same order completed first
                await db.rollback()
                moved = False

        if not moved:
            return await self._resolve_lost_race(attempt, proof, correlation_id, locale)

        logger.info(
            "payment_settled",
            correlation_id=str(correlation_id),
            payment_id=str(attempt.payment_id),
            order_id=str(attempt.order_id),
            transaction_id=proof.transaction_id,
        )

        await self._reconcile_order(
            attempt.payment_id,
            attempt.order_id,
            proof.transaction_id,
            attempt.gateway_name,
            proof.raw,
            correlation_id,
        )

        return VerificationResult(
            outcome=VerificationOutcome.SETTLED,
            payment_id=attempt.payment_id,
            order_id=attempt.order_id,
            redirect_url=self._redirect(attempt.order_id, success=True),
            message=localized_message("VERIFIED", locale),
            transaction_id=proof.transaction_id,
            ref_id=proof.ref_id,
        )

    async def _resolve_lost_race(
        self,
        attempt: _Attempt,
        proof: Optional[VerifyResult],
        correlation_id: uuid.UUID,
        locale: Optional[str],
    ) -> VerificationResult:
        """
        Work out the outcome after another caller moved the record first.

        ``proof`` is set when the gateway confirmed a settlement for this
        attempt; if the record did not end up completed that money is not
        reflected anywhere and needs an operator.
        """
        async with self.session_factory() as db:
            payment = await self.repository.get(db, attempt.payment_id)
            same_attempt = (
                payment is not None and payment.authority_token == attempt.authority_token
            )
            if same_attempt and payment.status == PaymentStatus.COMPLETED.value:
                return self._already_settled(payment, locale)

            # Includes this record if a later attempt on it completed
            other = await self.repository.completed_for_order(db, attempt.order_id)

            if proof is not None:
                logger.critical(
                    "settlement_on_superseded_payment",
                    correlation_id=str(correlation_id),
                    payment_id=str(attempt.payment_id),
                    order_id=str(attempt.order_id),
                    transaction_id=proof.transaction_id,
                    status=payment.status if payment is not None else None,
                    settled_by=str(other.id) if other is not None else None,
                )
                metrics.record_critical_inconsistency("superseded_settlement")
                self.repository.record_event(
                    db,
                    attempt.payment_id,
                    "payment.settlement_unapplied",
                    {
                        "transaction_id": proof.transaction_id,
                        "ref_id": proof.ref_id,
                        "status": payment.status if payment is not None else None,
                    },
                    correlation_id,
                )
                await db.commit()

            if other is not None:
                return self._already_settled(other, locale)

            if proof is None and same_attempt and payment.status == PaymentStatus.FAILED.value:
                return VerificationResult(
                    outcome=VerificationOutcome.FAILED,
                    payment_id=attempt.payment_id,
                    order_id=attempt.order_id,
                    redirect_url=self._redirect(attempt.order_id, success=False),
                    message=localized_message("PAYMENT_FAILED", locale),
                )

        if proof is not None:
            raise PaymentInconsistencyError(
                "INCONSISTENT_STATE",
                localized_message("INCONSISTENT_STATE", locale),
                {"payment_id": str(attempt.payment_id)},
            )
        raise PaymentConflictError(
            "INVALID_STATE",
            localized_message("INVALID_STATE", locale),
            {"status": payment.status if payment is not None else None},
        )

    def _already_settled(self, payment: Payment, locale: Optional[str]) -> VerificationResult:
        return VerificationResult(
            outcome=VerificationOutcome.ALREADY_SETTLED,
            payment_id=payment.id,
            order_id=payment.order_id,
            redirect_url=self._redirect(payment.order_id, success=True),
            message=localized_message("ALREADY_SETTLED", locale),
            transaction_id=payment.transaction_id,
            ref_id=payment.ref_id,
        )

    async def _event_payload(
        self,
        db: AsyncSession,
        payment_id: uuid.UUID,
        proof: Optional[VerifyResult] = None,
    ) -> Dict[str, Any]:
        payment = await self.repository.get(db, payment_id)
        payload = {
            "payment_id": str(payment_id),
            "payment_number": payment.payment_number if payment else None,
            "order_id": str(payment.order_id) if payment else None,
            "order_ref": payment.order_ref if payment else None,
            "user_id": payment.user_id if payment else None,
            "amount": payment.amount if payment else None,
            "gateway": payment.gateway_name if payment else None,
            "status": payment.status if payment else None,
        }
        if proof is not None:
            payload["transaction_id"] = proof.transaction_id
            payload["ref_id"] = proof.ref_id
        return payload

    async def _reconcile_order(
        self,
        payment_id: uuid.UUID,
        order_id: uuid.UUID,
        transaction_id: str,
        gateway_name: str,
        raw: Dict[str, Any],
        correlation_id: uuid.UUID,
    ) -> bool:
        """
        Mark the order paid. A failure is logged as critical, never reverted.

        Returns:
            bool: True if the order store acknowledged the settlement
        """
        try:
            await self.order_reconciler.mark_paid(order_id, transaction_id, gateway_name, raw)
        except Exception as e:
            logger.critical(
                "order_reconciliation_failed",
                correlation_id=str(correlation_id),
                payment_id=str(payment_id),
                order_id=str(order_id),
                transaction_id=transaction_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            metrics.record_critical_inconsistency("mark_paid_failed")
            async with self.session_factory() as db:
                self.repository.record_event(
                    db,
                    payment_id,
                    "order.reconciliation_failed",
                    {"transaction_id": transaction_id, "error": str(e)},
                    correlation_id,
                )
                await db.commit()
            return False

        async with self.session_factory() as db:
            await self.repository.update_if_status(
                db, payment_id, PaymentStatus.COMPLETED, reconciled_at=utcnow()
            )
            await db.commit()
        return True

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    async def refund_payment(
        self,
        payment_id: uuid.UUID,
        actor_id: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        locale: Optional[str] = None,
    ) -> Payment:
        """
        Refund a completed payment.

        Args:
            payment_id: Payment to refund
            actor_id: Who requested the refund
            amount: Amount to refund (full amount when omitted)
            reason: Free text reason
            locale: Locale for user-facing messages

        Returns:
            Payment: The refunded record

        Raises:
            PaymentNotFoundError: If the payment does not exist
            PaymentConflictError: If the payment is not completed
            PaymentValidationError: If the amount is outside (0, payment amount]
            PaymentRejectedError: If the gateway declined the refund
            PaymentTransportError: If the gateway could not be reached
        """
        correlation_id = uuid.uuid4()
        payment = await self.get_payment(payment_id, locale=locale)
        self._ensure_refundable(payment, locale)

        refund_amount = payment.amount if amount is None else amount
        if refund_amount <= 0 or refund_amount > payment.amount:
            raise PaymentValidationError(
                "INVALID_REFUND_AMOUNT",
                localized_message("INVALID_REFUND_AMOUNT", locale),
                {"amount": refund_amount, "max": payment.amount},
            )

        gateway = self.registry.resolve(payment.gateway_name)

        logger.info(
            "payment_refund_started",
            correlation_id=str(correlation_id),
            payment_id=str(payment.id),
            amount=refund_amount,
            actor_id=actor_id,
        )

        async with self._authority_locks.hold(payment.authority_token or str(payment.id)):
            # Re-check under the lock; a concurrent refund may have finished
            payment = await self.get_payment(payment_id, locale=locale)
            self._ensure_refundable(payment, locale)
            attempt = _Attempt.of(payment)

            try:
                result = await gateway.refund(
                    attempt.authority_token, attempt.order_ref, refund_amount
                )
            except GatewayTransportError as e:
                await self._record_refund_failure(
                    attempt, "TRANSPORT", str(e), None, correlation_id
                )
                metrics.record_refund(gateway.name, "transport_error")
                raise PaymentTransportError(
                    "TRANSPORT", localized_message("TRANSPORT", locale)
                ) from e

            if isinstance(result, GatewayFailure):
                await self._record_refund_failure(
                    attempt,
                    result.error_code.value,
                    result.message,
                    result.gateway_code,
                    correlation_id,
                )
                metrics.record_refund(gateway.name, "rejected")
                message = gateway_message(
                    gateway.name, result.gateway_code, locale
                ) or localized_message("REFUND_FAILED", locale)
                details = {"gateway_code": result.gateway_code}
                if result.error_code == GatewayErrorCode.AUTH_FAILURE:
                    raise PaymentConfigurationError(result.error_code.value, message, details)
                raise PaymentRejectedError("REFUND_FAILED", message, details)

            async with self.session_factory() as db:
                moved = await self.repository.transition(
                    db,
                    attempt.payment_id,
                    [PaymentStatus.COMPLETED],
                    PaymentStatus.REFUNDED,
                    refund_amount=refund_amount,
                    refund_reason=reason,
                    refunded_by=actor_id,
                    refund_gateway_response=result.raw,
                    refunded_at=utcnow(),
                )
                if moved:
                    self.repository.record_event(
                        db,
                        attempt.payment_id,
                        "payment.refunded",
                        {"amount": refund_amount, "reason": reason, "actor_id": actor_id},
                        correlation_id,
                    )
                    payload = await self._event_payload(db, attempt.payment_id)
                    payload.update(refund_amount=refund_amount, status=PaymentStatus.REFUNDED.value)
                    write_outbox_event(db, attempt.payment_id, "payment.refunded", payload)
                await db.commit()

            if not moved:
                logger.critical(
                    "refund_not_recorded",
                    correlation_id=str(correlation_id),
                    payment_id=str(attempt.payment_id),
                    amount=refund_amount,
                )
                metrics.record_critical_inconsistency("refund_not_recorded")
                raise PaymentInconsistencyError(
                    "INCONSISTENT_STATE", localized_message("INCONSISTENT_STATE", locale)
                )

        metrics.record_refund(gateway.name, "refunded")
        logger.info(
            "payment_refunded",
            correlation_id=str(correlation_id),
            payment_id=str(attempt.payment_id),
            amount=refund_amount,
        )

        try:
            await self.order_reconciler.mark_refunded(attempt.order_id)
        except Exception as e:
            logger.critical(
                "order_refund_reconciliation_failed",
                correlation_id=str(correlation_id),
                payment_id=str(attempt.payment_id),
                order_id=str(attempt.order_id),
                error=str(e),
            )
            metrics.record_critical_inconsistency("mark_refunded_failed")
            async with self.session_factory() as db:
                self.repository.record_event(
                    db,
                    attempt.payment_id,
                    "order.reconciliation_failed",
                    {"stage": "refund", "error": str(e)},
                    correlation_id,
                )
                await db.commit()

        return await self.get_payment(attempt.payment_id, locale=locale)

    @staticmethod
    def _ensure_refundable(payment: Payment, locale: Optional[str]) -> None:
        if payment.status != PaymentStatus.COMPLETED.value:
            raise PaymentConflictError(
                "INVALID_STATE",
                localized_message("REFUND_NOT_ALLOWED", locale),
                {"status": payment.status},
            )

    async def _record_refund_failure(
        self,
        attempt: _Attempt,
        error_code: str,
        error_message: str,
        gateway_code: Optional[str],
        correlation_id: uuid.UUID,
    ) -> None:
        async with self.session_factory() as db:
            self.repository.record_event(
                db,
                attempt.payment_id,
                "payment.refund_failed",
                {
                    "error_code": error_code,
                    "error": error_message,
                    "gateway_code": gateway_code,
                },
                correlation_id,
            )
            await db.commit()

        logger.warning(
            "payment_refund_failed",
            correlation_id=str(correlation_id),
            payment_id=str(attempt.payment_id),
            error_code=error_code,
            gateway_code=gateway_code,
        )

    # ------------------------------------------------------------------
    # Inquiry and reconciliation
    # ------------------------------------------------------------------

    async def inquire_payment(
        self,
        payment_id: uuid.UUID,
        user_id: Optional[str] = None,
        locale: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Ask the gateway about a payment. Never changes local state.

        Raises:
            PaymentNotFoundError: If the payment does not exist
            PaymentConflictError: If the payment never reached the gateway
            PaymentRejectedError: If the gateway refused the inquiry
            PaymentTransportError: If the gateway could not be reached
        """
        payment = await self.get_payment(payment_id, user_id=user_id, locale=locale)
        if not payment.authority_token:
            raise PaymentConflictError(
                "INVALID_STATE", localized_message("INVALID_STATE", locale)
            )

        gateway = self.registry.resolve(payment.gateway_name)
        try:
            result = await gateway.status(payment.authority_token, payment.order_ref)
        except GatewayTransportError as e:
            raise PaymentTransportError("TRANSPORT", localized_message("TRANSPORT", locale)) from e

        if isinstance(result, GatewayFailure):
            raise PaymentRejectedError(
                result.error_code.value,
                localized_message(result.error_code.value, locale),
                {"gateway_code": result.gateway_code},
            )

        return {
            "payment_id": str(payment.id),
            "gateway": payment.gateway_name,
            "local_status": payment.status,
            "gateway_status": result.status.value,
            "gateway_code": result.gateway_code,
        }

    async def settle_from_inquiry(self, payment_id: uuid.UUID) -> Optional[VerificationResult]:
        """
        Resolve a processing payment whose callback never arrived.

        Paid or verified at the gateway: settled through the same conditional
        transition as a callback. Failed or reversed: marked failed. Still
        pending or unknown: left alone.

        Returns:
            Optional[VerificationResult]: The outcome, or None if nothing changed

        Raises:
            GatewayTransportError: If the gateway could not be reached
        """
        correlation_id = uuid.uuid4()
        async with self.session_factory() as db:
            payment = await self.repository.get(db, payment_id)
        if payment is None or payment.status != PaymentStatus.PROCESSING.value:
            return None
        if not payment.authority_token:
            return None

        gateway = self.registry.resolve(payment.gateway_name)

        async with self._authority_locks.hold(payment.authority_token):
            async with self.session_factory() as db:
                payment = await self.repository.get(db, payment_id)
            if payment is None or payment.status != PaymentStatus.PROCESSING.value:
                return None
            attempt = _Attempt.of(payment)

            status = await gateway.status(attempt.authority_token, attempt.order_ref)
            if isinstance(status, GatewayFailure):
                logger.warning(
                    "payment_inquiry_rejected",
                    correlation_id=str(correlation_id),
                    payment_id=str(payment_id),
                    gateway_code=status.gateway_code,
                )
                return None

            logger.info(
                "payment_inquiry_result",
                correlation_id=str(correlation_id),
                payment_id=str(payment_id),
                gateway_status=status.status.value,
            )

            if status.status in (GatewayPaymentStatus.PAID, GatewayPaymentStatus.VERIFIED):
                return await self._settle(gateway, attempt, None, correlation_id, None)

            if status.status in (GatewayPaymentStatus.FAILED, GatewayPaymentStatus.REFUNDED):
                failure = GatewayFailure(
                    error_code=GatewayErrorCode.BUSINESS_REJECTED,
                    message=f"Gateway reports payment {status.status.value}",
                    gateway_code=status.gateway_code,
                    raw=status.raw,
                )
                return await self._apply_verify_failure(
                    attempt, failure, None, correlation_id, None
                )

        return None

    async def retry_reconciliation(self, payment_id: uuid.UUID) -> bool:
        """
        Re-apply a completed payment to its order.

        Returns:
            bool: True if the order store acknowledged the settlement
        """
        async with self.session_factory() as db:
            payment = await self.repository.get(db, payment_id)
        if (
            payment is None
            or payment.status != PaymentStatus.COMPLETED.value
            or payment.reconciled_at is not None
        ):
            return False

        logger.info(
            "order_reconciliation_retry",
            payment_id=str(payment.id),
            order_id=str(payment.order_id),
        )
        return await self._reconcile_order(
            payment.id,
            payment.order_id,
            payment.transaction_id or "",
            payment.gateway_name,
            payment.gateway_response or {},
            uuid.uuid4(),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_payment(
        self,
        payment_id: uuid.UUID,
        user_id: Optional[str] = None,
        locale: Optional[str] = None,
    ) -> Payment:
        """
        Load a payment, optionally scoped to its owner.

        Raises:
            PaymentNotFoundError: If the payment does not exist
        """
        async with self.session_factory() as db:
            payment = await self.repository.get(db, payment_id, user_id=user_id)
        if payment is None:
            raise PaymentNotFoundError(
                "PAYMENT_NOT_FOUND", localized_message("PAYMENT_NOT_FOUND", locale)
            )
        return payment

    async def get_payment_by_order(
        self,
        order_id: uuid.UUID,
        user_id: Optional[str] = None,
        locale: Optional[str] = None,
    ) -> Payment:
        """
        The order's completed payment, or its latest attempt.

        Raises:
            PaymentNotFoundError: If the order has no payment
        """
        async with self.session_factory() as db:
            payment = await self.repository.completed_for_order(db, order_id)
            if payment is not None and user_id is not None and payment.user_id != user_id:
                payment = None
            if payment is None:
                payment = await self.repository.latest_for_order(db, order_id, user_id=user_id)
        if payment is None:
            raise PaymentNotFoundError(
                "PAYMENT_NOT_FOUND", localized_message("PAYMENT_NOT_FOUND", locale)
            )
        return payment

    async def list_user_payments(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 10,
        status: Optional[PaymentStatus] = None,
    ) -> Dict[str, Any]:
        """
        Page through a user's payments.

        Returns:
            Dict[str, Any]: ``payments`` and ``pagination`` metadata
        """
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        async with self.session_factory() as db:
            payments, total = await self.repository.list_for_user(
                db, user_id, page=page, limit=limit, status=status
            )
        return {
            "payments": payments,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }
