"""
Provider configuration tests.

Settings are resolved once from the environment; components only ever see
the resolved objects.
"""

import pytest

from src.config.providers import (
    DEFAULT_ETSY_SCOPES,
    ConfigurationError,
    EbaySettings,
    GatewaySettings,
    ShopifySettings,
    normalize_store_domain,
)
from src.gateway.webhooks import MissingSecretPolicy

GATEWAY_ENV_VARS = [
    "APP_ENV",
    "GATEWAY_REQUEST_TIMEOUT_SECONDS",
    "DATABASE_URL",
    "SHOPIFY_STORE_URL",
    "SHOPIFY_ACCESS_TOKEN",
    "SHOPIFY_API_VERSION",
    "SHOPIFY_WEBHOOK_SECRET",
    "ETSY_API_KEY",
    "ETSY_SHARED_SECRET",
    "ETSY_REDIRECT_URI",
    "ETSY_SHOP_ID",
    "ETSY_SCOPES",
    "CJ_EMAIL",
    "CJ_API_KEY",
    "EBAY_CLIENT_ID",
    "EBAY_CLIENT_SECRET",
    "EBAY_ENVIRONMENT",
    "SERPAPI_KEY",
    "WEBHOOK_MISSING_SECRET_POLICY",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in GATEWAY_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestGatewaySettingsFromEnv:

    def test_defaults_with_empty_environment(self, clean_env):
        settings = GatewaySettings.from_env()

        assert settings.app_env == "development"
        assert settings.request_timeout_seconds == 30.0
        assert settings.database_url is None
        assert settings.webhooks.missing_secret_policy == MissingSecretPolicy.REJECT
        assert not settings.shopify.is_configured
        assert not settings.etsy.is_configured
        assert not settings.cj.is_configured
        assert not settings.ebay.is_configured
        assert not settings.google_shopping.is_configured
        assert settings.etsy.scopes == DEFAULT_ETSY_SCOPES

    def test_full_environment(self, clean_env):
        clean_env.setenv("APP_ENV", "staging")
        clean_env.setenv("GATEWAY_REQUEST_TIMEOUT_SECONDS", "12.5")
        clean_env.setenv("SHOPIFY_STORE_URL", "https://test-store.myshopify.com/")
        clean_env.setenv("SHOPIFY_ACCESS_TOKEN", "test_shopify_token")
        clean_env.setenv("SHOPIFY_API_VERSION", "2024-07")
        clean_env.setenv("ETSY_API_KEY", "test_etsy_key")
        clean_env.setenv("ETSY_REDIRECT_URI", "https://app.example.com/etsy/callback")
        clean_env.setenv("ETSY_SCOPES", "listings_r shops_r")
        clean_env.setenv("CJ_EMAIL", "ops@example.com")
        clean_env.setenv("CJ_API_KEY", "test_cj_key")
        clean_env.setenv("EBAY_CLIENT_ID", "client")
        clean_env.setenv("EBAY_CLIENT_SECRET", "test_ebay_secret")
        clean_env.setenv("EBAY_ENVIRONMENT", "Sandbox")
        clean_env.setenv("SERPAPI_KEY", "test_serpapi_key")
        clean_env.setenv("WEBHOOK_MISSING_SECRET_POLICY", "accept")

        settings = GatewaySettings.from_env()

        assert settings.request_timeout_seconds == 12.5
        assert settings.shopify.base_url == "https://test-store.myshopify.com/admin/api/2024-07"
        assert settings.etsy.scopes == ("listings_r", "shops_r")
        assert settings.ebay.environment == "sandbox"
        assert settings.ebay.browse_url == "https://api.sandbox.ebay.com/buy/browse/v1"
        assert settings.webhooks.missing_secret_policy == MissingSecretPolicy.ACCEPT_WITH_WARNING
        assert all([
            settings.shopify.is_configured,
            settings.etsy.is_configured,
            settings.cj.is_configured,
            settings.ebay.is_configured,
            settings.google_shopping.is_configured,
        ])

    def test_blank_values_are_unset(self, clean_env):
        clean_env.setenv("SHOPIFY_STORE_URL", "   ")
        clean_env.setenv("SHOPIFY_ACCESS_TOKEN", "")

        settings = GatewaySettings.from_env()

        assert settings.shopify.store_url is None
        assert not settings.shopify.is_configured

    def test_unknown_ebay_environment(self, clean_env):
        clean_env.setenv("EBAY_ENVIRONMENT", "qa")

        with pytest.raises(ConfigurationError, match="EBAY_ENVIRONMENT"):
            GatewaySettings.from_env()

    @pytest.mark.parametrize("value", ["abc", "0", "-5"])
    def test_invalid_timeout(self, clean_env, value):
        clean_env.setenv("GATEWAY_REQUEST_TIMEOUT_SECONDS", value)

        with pytest.raises(ConfigurationError, match="GATEWAY_REQUEST_TIMEOUT_SECONDS"):
            GatewaySettings.from_env()

    def test_accept_policy_refused_in_production(self, clean_env):
        clean_env.setenv("APP_ENV", "production")
        clean_env.setenv("WEBHOOK_MISSING_SECRET_POLICY", "accept")

        with pytest.raises(ConfigurationError):
            GatewaySettings.from_env()

    def test_secrets_not_in_repr(self, clean_env):
        clean_env.setenv("SHOPIFY_ACCESS_TOKEN", "test_shopify_token_in_repr")
        clean_env.setenv("SERPAPI_KEY", "test_serpapi_key_in_repr")
        clean_env.setenv("DATABASE_URL", "postgresql://user:test_db_password@db/app")

        text = repr(GatewaySettings.from_env())

        assert "test_shopify_token_in_repr" not in text
        assert "test_serpapi_key_in_repr" not in text
        assert "test_db_password" not in text


class TestSettingsHelpers:

    @pytest.mark.parametrize("raw,expected", [
        ("https://shop.myshopify.com/", "shop.myshopify.com"),
        ("http://shop.myshopify.com", "shop.myshopify.com"),
        ("shop.myshopify.com", "shop.myshopify.com"),
        ("  HTTPS://shop.myshopify.com//  ", "shop.myshopify.com"),
    ])
    def test_normalize_store_domain(self, raw, expected):
        assert normalize_store_domain(raw) == expected

    def test_shopify_base_url_requires_store(self):
        with pytest.raises(ConfigurationError):
            ShopifySettings().base_url

    def test_ebay_production_urls(self):
        settings = EbaySettings(client_id="id", client_secret="secret")

        assert settings.token_url == "https://api.ebay.com/identity/v1/oauth2/token"
        assert settings.browse_url == "https://api.ebay.com/buy/browse/v1"
