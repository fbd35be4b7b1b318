"""
Structured logging configuration.

Every process (API, outbox publisher, sweeper) logs JSON through structlog.
Events carry the service name and, inside a request, the request id bound by
the API middleware. Gateway credentials are masked before rendering, including
inside raw gateway payloads attached to an event.
"""
import logging
import sys
from typing import Any, Callable, Dict, Optional

import structlog
from pythonjsonlogger import jsonlogger

from payment_orchestrator.config import Settings, get_settings

# Never emitted, whatever a caller binds
SENSITIVE_KEYS = frozenset(
    {"merchant_id", "access_token", "api_key", "authorization", "x-api-key"}
)

Processor = Callable[[Any, str, Dict[str, Any]], Dict[str, Any]]


def app_context(settings: Settings, service: str) -> Processor:
    """
    Build a processor adding application context to log events.

    Args:
        settings: Application settings
        service: Process name (api, outbox, sweeper)

    Returns:
        Processor: structlog processor
    """

    def add_app_context(
        logger: Any, method_name: str, event_dict: Dict[str, Any]
    ) -> Dict[str, Any]:
        event_dict.setdefault("app_name", settings.app_name)
        event_dict.setdefault("app_env", settings.app_env)
        event_dict.setdefault("service", service)
        return event_dict

    return add_app_context


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: "***" if str(key).lower() in SENSITIVE_KEYS else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask gateway credentials anywhere in an event."""
    return _redact(event_dict)


def setup_logging(settings: Optional[Settings] = None, service: str = "api") -> None:
    """
    Configure structured logging with JSON formatter.

    Args:
        settings: Application settings (defaults to environment settings)
        service: Process name added to every event
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            app_context(settings, service),
            redact_secrets,
            # Persian messages stay readable in the output
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(timestamp)s %(level)s %(name)s %(message)s",
            rename_fields={"timestamp": "@timestamp", "name": "logger"},
            json_ensure_ascii=False,
        )
    )
    root_logger.addHandler(json_handler)

    # Gateway HTTP traffic is logged by the adapters themselves
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        service=service,
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
