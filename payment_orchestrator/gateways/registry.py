"""Gateway registry: name to configured client, failing fast on bad config."""
from typing import Callable, Dict, List, Optional

import httpx
import structlog

from payment_orchestrator.config import Settings
from payment_orchestrator.core.exceptions import PaymentConfigurationError
from payment_orchestrator.core.messages import localized_message

from .base import GatewayClient
from .idpay import IDPayGateway
from .zarinpal import ZarinpalGateway

logger = structlog.get_logger(__name__)

GatewayFactory = Callable[[Settings, Optional[httpx.AsyncBaseTransport]], GatewayClient]


def _build_zarinpal(
    settings: Settings, transport: Optional[httpx.AsyncBaseTransport]
) -> GatewayClient:
    if not settings.zarinpal_merchant_id:
        raise ValueError("ZARINPAL_MERCHANT_ID is required")
    return ZarinpalGateway(
        merchant_id=settings.zarinpal_merchant_id,
        access_token=settings.zarinpal_access_token,
        sandbox=settings.zarinpal_sandbox,
        timeout_seconds=settings.gateway_timeout_seconds,
        status_retry_attempts=settings.gateway_status_retry_attempts,
        transport=transport,
    )


def _build_idpay(
    settings: Settings, transport: Optional[httpx.AsyncBaseTransport]
) -> GatewayClient:
    if not settings.idpay_api_key:
        raise ValueError("IDPAY_API_KEY is required")
    return IDPayGateway(
        api_key=settings.idpay_api_key,
        sandbox=settings.idpay_sandbox,
        timeout_seconds=settings.gateway_timeout_seconds,
        status_retry_attempts=settings.gateway_status_retry_attempts,
        transport=transport,
    )


FACTORIES: Dict[str, GatewayFactory] = {
    "zarinpal": _build_zarinpal,
    "idpay": _build_idpay,
}


class GatewayRegistry:
    """
    Lookup of configured gateway clients.

    A gateway with missing credentials is recorded as misconfigured at
    startup; it fails on ``resolve`` while every other gateway keeps working.
    """

    def __init__(self, default_gateway: Optional[str] = None) -> None:
        self.default_gateway = default_gateway
        self._clients: Dict[str, GatewayClient] = {}
        self._misconfigured: Dict[str, str] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "GatewayRegistry":
        """
        Build one client per enabled gateway.

        Args:
            settings: Application settings
            transport: Optional httpx transport shared by every adapter

        Returns:
            GatewayRegistry: Populated registry
        """
        registry = cls(default_gateway=settings.default_gateway)

        for name in settings.get_enabled_gateways_list():
            factory = FACTORIES.get(name)
            if factory is None:
                logger.warning("gateway_not_supported", gateway=name)
                continue
            try:
                registry.register(factory(settings, transport))
            except ValueError as e:
                registry._misconfigured[name] = str(e)
                logger.error("gateway_misconfigured", gateway=name, error=str(e))

        logger.info(
            "gateway_registry_built",
            available=registry.available(),
            misconfigured=registry.misconfigured(),
            default_gateway=registry.default_gateway,
        )
        return registry

    def register(self, client: GatewayClient) -> None:
        """Register (or replace) a client under its ``name``."""
        self._clients[client.name] = client
        self._misconfigured.pop(client.name, None)

    def resolve(self, name: Optional[str] = None) -> GatewayClient:
        """
        Return the client for a gateway name (default gateway when omitted).

        Raises:
            PaymentConfigurationError: If the gateway is unknown or misconfigured
        """
        key = (name or self.default_gateway or "").strip().lower()

        client = self._clients.get(key)
        if client is not None:
            return client

        if key in self._misconfigured:
            raise PaymentConfigurationError(
                "GATEWAY_MISCONFIGURED",
                localized_message("GATEWAY_MISCONFIGURED"),
                {"gateway": key},
            )
        raise PaymentConfigurationError(
            "UNKNOWN_GATEWAY",
            localized_message("UNKNOWN_GATEWAY"),
            {"gateway": key},
        )

    def available(self) -> List[str]:
        """Names of usable gateways."""
        return sorted(self._clients)

    def misconfigured(self) -> List[str]:
        """Names of enabled gateways missing credentials."""
        return sorted(self._misconfigured)
