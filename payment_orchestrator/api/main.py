"""
Main FastAPI application.

Payment orchestration API with:
- CORS configuration
- Error handling (one handler for the payment error taxonomy)
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional, Type

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from payment_orchestrator import __version__
from payment_orchestrator.config import Settings, get_settings
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
from payment_orchestrator.database.connection import close_db, init_db
from payment_orchestrator.monitoring.health import HealthCheck
from payment_orchestrator.monitoring.logging import setup_logging

from .routes import gateway_router, monitoring_router, payment_router

logger = structlog.get_logger(__name__)

# Most specific class first; PaymentNotFoundError shares its category with validation
STATUS_BY_ERROR: Dict[Type[PaymentError], int] = {
    PaymentNotFoundError: status.HTTP_404_NOT_FOUND,
    PaymentValidationError: status.HTTP_400_BAD_REQUEST,
    PaymentConflictError: status.HTTP_409_CONFLICT,
    PaymentRejectedError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    PaymentTransportError: status.HTTP_503_SERVICE_UNAVAILABLE,
    PaymentConfigurationError: status.HTTP_503_SERVICE_UNAVAILABLE,
    PaymentInconsistencyError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def status_code_for(exc: PaymentError) -> int:
    """HTTP status code for a payment error."""
    for error_class, status_code in STATUS_BY_ERROR.items():
        if isinstance(exc, error_class):
            return status_code
    return status.HTTP_400_BAD_REQUEST


def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[PaymentOrchestrator] = None,
    health_check: Optional[HealthCheck] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings (defaults to environment settings)
        orchestrator: Pre-built orchestrator; when omitted the lifespan builds
            one from settings over the global database engine
        health_check: Pre-built health check service

    Returns:
        FastAPI: Configured application
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        # Startup
        setup_logging(settings, service="api")
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
        )

        owns_database = orchestrator is None
        if owns_database:
            try:
                await init_db()
                logger.info("database_initialized")
            except Exception as e:
                logger.error("database_initialization_failed", error=str(e))
                raise

            built = PaymentOrchestrator.from_settings(settings)
            app.state.orchestrator = built
            app.state.health_check = health_check or HealthCheck(
                registry=built.registry, session_factory=built.session_factory
            )

        yield

        # Shutdown
        logger.info("application_shutdown")
        if owns_database:
            try:
                await close_db()
                logger.info("database_connections_closed")
            except Exception as e:
                logger.error("database_shutdown_error", error=str(e))

    app = FastAPI(
        title="Payment Orchestrator",
        description=(
            "Payment orchestration for Iranian gateways (Zarinpal, IDPay). "
            "Features: exactly-once settlement, retry-safe initialization, "
            "refunds, outbox notifications and monitoring."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    if orchestrator is not None:
        # Injected services are usable without running the lifespan
        app.state.orchestrator = orchestrator
        app.state.health_check = health_check or HealthCheck(
            registry=orchestrator.registry,
            session_factory=orchestrator.session_factory,
        )

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        Reuses an incoming ``X-Request-ID`` so traces span the storefront.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(PaymentError)
    async def payment_exception_handler(request: Request, exc: PaymentError) -> JSONResponse:
        """Map the payment error taxonomy onto HTTP responses."""
        status_code = status_code_for(exc)
        log = logger.error if status_code >= 500 else logger.warning
        log(
            "payment_error",
            code=exc.code,
            category=exc.category.value,
            details=exc.details,
            path=request.url.path,
            status_code=status_code,
        )
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled exceptions.
        """
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "code": "UNKNOWN",
                "message": "An unexpected error occurred. Please try again later.",
                "category": "internal",
                "retryable": False,
            },
        )

    # Include routers
    app.include_router(payment_router)
    app.include_router(gateway_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> Dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def main() -> None:
    """Run the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "payment_orchestrator.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
