"""
API routes for payment orchestration.
"""
from typing import Any, Dict, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import RedirectResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from payment_orchestrator.config import get_settings
from payment_orchestrator.core.exceptions import PaymentError
from payment_orchestrator.core.orchestrator import PaymentOrchestrator
from payment_orchestrator.core.redirects import error_redirect
from payment_orchestrator.core.state import PaymentStatus
from payment_orchestrator.monitoring.health import HealthCheck

from .schemas import (
    ErrorResponse,
    GatewaysResponse,
    HealthCheckResponse,
    InitializePaymentRequest,
    InitializePaymentResponse,
    InquiryResponse,
    PaymentListResponse,
    PaymentResponse,
    RefundRequest,
    VerificationResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
gateway_router = APIRouter(prefix="/gateways", tags=["gateways"])
monitoring_router = APIRouter(tags=["monitoring"])

ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def get_orchestrator(request: Request) -> PaymentOrchestrator:
    """Orchestrator created by the application lifespan."""
    return request.app.state.orchestrator


def get_health_check(request: Request) -> HealthCheck:
    return request.app.state.health_check


def get_locale(request: Request) -> Optional[str]:
    """
    Pick the message locale from ``Accept-Language``.

    Only ``fa`` and ``en`` are supported; anything else falls back to the
    configured default.
    """
    header = request.headers.get("accept-language", "")
    for part in header.split(","):
        language = part.split(";")[0].strip().lower()[:2]
        if language in ("fa", "en"):
            return language
    return None


def get_current_user(request: Request) -> str:
    """
    Caller identity, set by the authenticating proxy in front of the API.

    Raises:
        HTTPException: 401 if the identity header is missing
    """
    header = get_settings().user_id_header
    user_id = request.headers.get(header, "").strip()
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user_id


def get_refund_actor(request: Request, user_id: str = Depends(get_current_user)) -> str:
    """
    Caller allowed to refund payments.

    Permissions come from the authenticating proxy, like the identity.

    Raises:
        HTTPException: 403 if the refund permission is not granted
    """
    settings = get_settings()
    granted = {
        permission.strip()
        for permission in request.headers.get(settings.permissions_header, "").split(",")
        if permission.strip()
    }
    if settings.refund_permission not in granted:
        logger.warning(
            "api_permission_denied",
            user_id=user_id,
            permission=settings.refund_permission,
        )
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    return user_id


async def _callback_payload(request: Request) -> Dict[str, Any]:
    """Gateway callback fields from the query string and a JSON or form body."""
    payload: Dict[str, Any] = dict(request.query_params)
    if request.method != "POST":
        return payload

    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            payload.update(body)
    elif content_type.startswith(
        ("application/x-www-form-urlencoded", "multipart/form-data")
    ):
        form = await request.form()
        payload.update({key: value for key, value in form.items() if isinstance(value, str)})
    return payload


@payment_router.post(
    "",
    response_model=InitializePaymentResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    summary="Initialize a payment",
    description="Open a gateway payment session for an order and return the redirect URL",
)
async def initialize_payment(
    body: InitializePaymentRequest,
    user_id: str = Depends(get_current_user),
    locale: Optional[str] = Depends(get_locale),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Initialize a payment for one of the caller's orders."""
    logger.info(
        "api_initialize_payment_request",
        order_id=str(body.order_id),
        gateway=body.gateway,
    )

    result = await orchestrator.initialize_payment(
        order_id=body.order_id,
        user_id=user_id,
        gateway_name=body.gateway,
        locale=locale,
    )
    payment = result.payment

    return {
        "payment_id": str(payment.id),
        "payment_number": payment.payment_number,
        "order_id": str(payment.order_id),
        "amount": payment.amount,
        "gateway": payment.gateway_name,
        "authority": payment.authority_token,
        "redirect_url": result.redirect_url,
        "attempt_count": payment.attempt_count,
    }


@payment_router.post(
    "/verify/{gateway}",
    response_model=VerificationResponse,
    responses=ERROR_RESPONSES,
    summary="Verify a payment",
    description="Settle a gateway callback (JSON or form body); safe to repeat",
)
async def verify_payment(
    gateway: str,
    request: Request,
    locale: Optional[str] = Depends(get_locale),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Verify a callback forwarded by the storefront."""
    payload = await _callback_payload(request)
    result = await orchestrator.verify_payment(gateway, payload, locale=locale)
    return result.to_dict()


@payment_router.api_route(
    "/callback/{gateway}",
    methods=["GET", "POST"],
    response_class=RedirectResponse,
    status_code=status.HTTP_302_FOUND,
    summary="Gateway callback",
    description="Endpoint the gateway sends the user back to; redirects to the storefront",
)
async def gateway_callback(
    gateway: str,
    request: Request,
    locale: Optional[str] = Depends(get_locale),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> RedirectResponse:
    """Verify the callback and send the user to the outcome page."""
    payload = await _callback_payload(request)
    try:
        result = await orchestrator.verify_payment(gateway, payload, locale=locale)
    except PaymentError as e:
        logger.warning(
            "api_gateway_callback_failed",
            gateway=gateway,
            error_code=e.code,
            category=e.category.value,
        )
        return RedirectResponse(
            error_redirect(e.code, frontend_url=orchestrator.settings.frontend_url),
            status_code=status.HTTP_302_FOUND,
        )

    return RedirectResponse(result.redirect_url, status_code=status.HTTP_302_FOUND)


@payment_router.get(
    "/me",
    response_model=PaymentListResponse,
    summary="List my payments",
)
async def list_my_payments(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    payment_status: Optional[PaymentStatus] = Query(default=None, alias="status"),
    user_id: str = Depends(get_current_user),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Page through the caller's payments, newest first."""
    result = await orchestrator.list_user_payments(
        user_id, page=page, limit=limit, status=payment_status
    )
    return {
        "payments": [payment.to_dict() for payment in result["payments"]],
        "pagination": result["pagination"],
    }


@payment_router.get(
    "/order/{order_id}",
    response_model=PaymentResponse,
    responses=ERROR_RESPONSES,
    summary="Get the payment of an order",
)
async def get_order_payment(
    order_id: UUID,
    user_id: str = Depends(get_current_user),
    locale: Optional[str] = Depends(get_locale),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Completed payment of the order, or its latest attempt."""
    payment = await orchestrator.get_payment_by_order(order_id, user_id=user_id, locale=locale)
    return payment.to_dict()


@payment_router.get(
    "/{payment_id}",
    response_model=PaymentResponse,
    responses=ERROR_RESPONSES,
    summary="Get payment",
)
async def get_payment(
    payment_id: UUID,
    user_id: str = Depends(get_current_user),
    locale: Optional[str] = Depends(get_locale),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Get one of the caller's payments."""
    payment = await orchestrator.get_payment(payment_id, user_id=user_id, locale=locale)
    return payment.to_dict()


@payment_router.get(
    "/{payment_id}/inquiry",
    response_model=InquiryResponse,
    responses=ERROR_RESPONSES,
    summary="Ask the gateway about a payment",
    description="Read-only status inquiry; local state is not changed",
)
async def inquire_payment(
    payment_id: UUID,
    user_id: str = Depends(get_current_user),
    locale: Optional[str] = Depends(get_locale),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Gateway status inquiry."""
    return await orchestrator.inquire_payment(payment_id, user_id=user_id, locale=locale)


@payment_router.post(
    "/{payment_id}/refund",
    response_model=PaymentResponse,
    responses=ERROR_RESPONSES,
    summary="Refund a payment",
    description="Full or partial refund of a completed payment; requires the refund permission",
)
async def refund_payment(
    payment_id: UUID,
    body: RefundRequest,
    user_id: str = Depends(get_refund_actor),
    locale: Optional[str] = Depends(get_locale),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Refund a payment."""
    logger.info(
        "api_refund_payment_request",
        payment_id=str(payment_id),
        amount=body.amount,
        actor_id=user_id,
    )

    payment = await orchestrator.refund_payment(
        payment_id,
        actor_id=user_id,
        amount=body.amount,
        reason=body.reason,
        locale=locale,
    )
    return payment.to_dict()


@gateway_router.get(
    "",
    response_model=GatewaysResponse,
    summary="Available gateways",
)
async def list_gateways(
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Gateways that are configured and usable."""
    registry = orchestrator.registry
    available = registry.available()
    default = registry.default_gateway if registry.default_gateway in available else None
    return {"default": default, "available": available}


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,  # Don't include in OpenAPI docs
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
