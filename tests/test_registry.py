"""
Tests for gateway registry construction and settings helpers.
"""
import pytest

from payment_orchestrator.config import Settings
from payment_orchestrator.core.exceptions import PaymentConfigurationError
from payment_orchestrator.gateways import GatewayRegistry, IDPayGateway, ZarinpalGateway


class TestGatewayRegistry:
    """Test suite for GatewayRegistry."""

    @pytest.mark.unit
    def test_from_settings_builds_configured_gateways(self, test_settings: Settings) -> None:
        registry = GatewayRegistry.from_settings(test_settings)

        assert registry.available() == ["idpay", "zarinpal"]
        assert registry.misconfigured() == []
        assert isinstance(registry.resolve("zarinpal"), ZarinpalGateway)
        assert isinstance(registry.resolve("idpay"), IDPayGateway)

    @pytest.mark.unit
    def test_default_gateway_used_when_name_omitted(self, test_settings: Settings) -> None:
        registry = GatewayRegistry.from_settings(test_settings)

        assert registry.resolve().name == "zarinpal"
        assert registry.resolve(None).name == "zarinpal"

    @pytest.mark.unit
    def test_names_are_case_insensitive(self, test_settings: Settings) -> None:
        registry = GatewayRegistry.from_settings(test_settings)

        assert registry.resolve(" IDPay ").name == "idpay"

    @pytest.mark.unit
    def test_missing_credentials_mark_gateway_misconfigured(
        self, test_settings: Settings
    ) -> None:
        settings = test_settings.model_copy(update={"idpay_api_key": ""})

        registry = GatewayRegistry.from_settings(settings)

        assert registry.available() == ["zarinpal"]
        assert registry.misconfigured() == ["idpay"]
        with pytest.raises(PaymentConfigurationError) as exc_info:
            registry.resolve("idpay")
        assert exc_info.value.code == "GATEWAY_MISCONFIGURED"
        # The other gateway keeps working
        assert registry.resolve("zarinpal").name == "zarinpal"

    @pytest.mark.unit
    def test_unknown_gateway(self, test_settings: Settings) -> None:
        registry = GatewayRegistry.from_settings(test_settings)

        with pytest.raises(PaymentConfigurationError) as exc_info:
            registry.resolve("paypal")
        assert exc_info.value.code == "UNKNOWN_GATEWAY"
        assert exc_info.value.details == {"gateway": "paypal"}

    @pytest.mark.unit
    def test_unsupported_enabled_gateway_is_skipped(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(update={"enabled_gateways": "zarinpal,mellat"})

        registry = GatewayRegistry.from_settings(settings)

        assert registry.available() == ["zarinpal"]
        assert registry.misconfigured() == []

    @pytest.mark.unit
    def test_register_clears_misconfiguration(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(update={"zarinpal_merchant_id": ""})
        registry = GatewayRegistry.from_settings(settings)
        assert registry.misconfigured() == ["zarinpal"]

        registry.register(ZarinpalGateway(merchant_id="late-merchant"))

        assert registry.misconfigured() == []
        assert registry.resolve("zarinpal").merchant_id == "late-merchant"


class TestSettings:
    """Test suite for Settings helpers."""

    @pytest.mark.unit
    def test_callback_url_uses_callback_base(self, test_settings: Settings) -> None:
        assert (
            test_settings.callback_url_for("idpay")
            == "https://api.shop.test/payments/callback/idpay"
        )

    @pytest.mark.unit
    def test_callback_url_falls_back_to_frontend(self) -> None:
        settings = Settings(frontend_url="https://shop.test/", callback_base_url=None)

        assert settings.callback_url_for("zarinpal") == "https://shop.test/payments/callback/zarinpal"

    @pytest.mark.unit
    def test_enabled_gateways_list(self) -> None:
        settings = Settings(enabled_gateways=" Zarinpal , ,idpay")

        assert settings.get_enabled_gateways_list() == ["zarinpal", "idpay"]

    @pytest.mark.unit
    def test_log_level_is_normalized(self) -> None:
        assert Settings(log_level="debug").log_level == "DEBUG"

    @pytest.mark.unit
    def test_invalid_log_level_rejected(self) -> None:
        with pytest.raises(ValueError):
            Settings(log_level="LOUD")

    @pytest.mark.unit
    def test_invalid_locale_rejected(self) -> None:
        with pytest.raises(ValueError):
            Settings(default_locale="de")

    @pytest.mark.unit
    def test_is_production(self) -> None:
        assert Settings(app_env="Production").is_production
        assert not Settings(app_env="test").is_production
