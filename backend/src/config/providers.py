"""
Provider gateway configuration.

All environment access for the gateway happens here. Components receive the
resolved settings objects below as constructor parameters and never read the
environment themselves.

Environment variables:
    APP_ENV                          development | staging | production
    GATEWAY_REQUEST_TIMEOUT_SECONDS  per-request HTTP timeout (default 30)
    SHOPIFY_STORE_URL, SHOPIFY_ACCESS_TOKEN, SHOPIFY_API_VERSION,
    SHOPIFY_WEBHOOK_SECRET
    ETSY_API_KEY, ETSY_SHARED_SECRET, ETSY_REDIRECT_URI, ETSY_SHOP_ID,
    ETSY_SCOPES (space separated)
    CJ_EMAIL, CJ_API_KEY
    EBAY_CLIENT_ID, EBAY_CLIENT_SECRET, EBAY_ENVIRONMENT (sandbox | production)
    SERPAPI_KEY
    WEBHOOK_MISSING_SECRET_POLICY    reject (default) | accept
    DATABASE_URL                     enables the encrypted SQL credential store
    CREDENTIAL_ENCRYPTION_KEY        AES-256 key for stored tokens (required with DATABASE_URL)
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from src.gateway.webhooks import (
    MissingSecretPolicy,
    WebhookConfigurationError,
    resolve_missing_secret_policy,
)

DEFAULT_APP_ENV = "development"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0

DEFAULT_SHOPIFY_API_VERSION = "2024-01"

ETSY_API_BASE_URL = "https://api.etsy.com/v3"
ETSY_TOKEN_URL = "https://api.etsy.com/v3/public/oauth/token"
ETSY_AUTHORIZE_URL = "https://www.etsy.com/oauth/connect"
DEFAULT_ETSY_SCOPES: Tuple[str, ...] = (
    "transactions_r",
    "transactions_w",
    "listings_r",
    "listings_w",
    "shops_r",
    "shops_w",
)

CJ_API_BASE_URL = "https://developers.cjdropshipping.com/api2.0/v1"

EBAY_API_BASE_URLS = {
    "production": "https://api.ebay.com",
    "sandbox": "https://api.sandbox.ebay.com",
}
EBAY_OAUTH_SCOPE = "https://api.ebay.com/oauth/api_scope"
DEFAULT_EBAY_MARKETPLACE_ID = "EBAY_US"

SERPAPI_SEARCH_URL = "https://serpapi.com/search.json"


class ConfigurationError(Exception):
    """Raised when environment configuration is invalid."""
    pass


def _get_str(name: str) -> Optional[str]:
    """Return a stripped env value, treating empty strings as unset."""
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _get_float(name: str, default: float) -> float:
    raw = _get_str(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {raw!r}")
    return value


def normalize_store_domain(store_url: str) -> str:
    """Strip scheme and trailing slashes: https://x.myshopify.com/ -> x.myshopify.com"""
    domain = store_url.strip()
    for prefix in ("https://", "http://"):
        if domain.lower().startswith(prefix):
            domain = domain[len(prefix):]
    return domain.rstrip("/")


@dataclass(frozen=True)
class ShopifySettings:
    store_url: Optional[str] = None
    access_token: Optional[str] = field(default=None, repr=False)
    api_version: str = DEFAULT_SHOPIFY_API_VERSION
    webhook_secret: Optional[str] = field(default=None, repr=False)

    @property
    def is_configured(self) -> bool:
        return bool(self.store_url and self.access_token)

    @property
    def store_domain(self) -> Optional[str]:
        return normalize_store_domain(self.store_url) if self.store_url else None

    @property
    def base_url(self) -> str:
        if not self.store_url:
            raise ConfigurationError("SHOPIFY_STORE_URL is not configured")
        return f"https://{self.store_domain}/admin/api/{self.api_version}"


@dataclass(frozen=True)
class EtsySettings:
    api_key: Optional[str] = field(default=None, repr=False)
    shared_secret: Optional[str] = field(default=None, repr=False)
    redirect_uri: Optional[str] = None
    shop_id: Optional[str] = None
    scopes: Tuple[str, ...] = DEFAULT_ETSY_SCOPES
    api_base_url: str = ETSY_API_BASE_URL
    token_url: str = ETSY_TOKEN_URL
    authorize_url: str = ETSY_AUTHORIZE_URL

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.redirect_uri)


@dataclass(frozen=True)
class CJSettings:
    email: Optional[str] = None
    api_key: Optional[str] = field(default=None, repr=False)
    api_base_url: str = CJ_API_BASE_URL

    @property
    def is_configured(self) -> bool:
        return bool(self.email and self.api_key)


@dataclass(frozen=True)
class EbaySettings:
    client_id: Optional[str] = None
    client_secret: Optional[str] = field(default=None, repr=False)
    environment: str = "production"
    marketplace_id: str = DEFAULT_EBAY_MARKETPLACE_ID

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def api_base_url(self) -> str:
        return EBAY_API_BASE_URLS[self.environment]

    @property
    def browse_url(self) -> str:
        return f"{self.api_base_url}/buy/browse/v1"

    @property
    def token_url(self) -> str:
        return f"{self.api_base_url}/identity/v1/oauth2/token"


@dataclass(frozen=True)
class GoogleShoppingSettings:
    serpapi_key: Optional[str] = field(default=None, repr=False)
    search_url: str = SERPAPI_SEARCH_URL

    @property
    def is_configured(self) -> bool:
        return bool(self.serpapi_key)


@dataclass(frozen=True)
class WebhookSettings:
    missing_secret_policy: MissingSecretPolicy = MissingSecretPolicy.REJECT


@dataclass(frozen=True)
class GatewaySettings:
    """Resolved configuration for every provider."""
    app_env: str = DEFAULT_APP_ENV
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    database_url: Optional[str] = field(default=None, repr=False)
    shopify: ShopifySettings = field(default_factory=ShopifySettings)
    etsy: EtsySettings = field(default_factory=EtsySettings)
    cj: CJSettings = field(default_factory=CJSettings)
    ebay: EbaySettings = field(default_factory=EbaySettings)
    google_shopping: GoogleShoppingSettings = field(default_factory=GoogleShoppingSettings)
    webhooks: WebhookSettings = field(default_factory=WebhookSettings)

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() in ("production", "prod")

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        """
        Read settings from the environment.

        Raises:
            ConfigurationError: Invalid values (unknown eBay environment,
                non-numeric timeout, webhook accept policy in production)
        """
        app_env = _get_str("APP_ENV") or DEFAULT_APP_ENV

        ebay_environment = (_get_str("EBAY_ENVIRONMENT") or "production").lower()
        if ebay_environment not in EBAY_API_BASE_URLS:
            raise ConfigurationError(
                f"EBAY_ENVIRONMENT must be 'sandbox' or 'production', got {ebay_environment!r}"
            )

        etsy_scopes = _get_str("ETSY_SCOPES")

        try:
            policy = resolve_missing_secret_policy(
                _get_str("WEBHOOK_MISSING_SECRET_POLICY"), app_env
            )
        except WebhookConfigurationError as e:
            raise ConfigurationError(str(e)) from e

        return cls(
            app_env=app_env,
            database_url=_get_str("DATABASE_URL"),
            request_timeout_seconds=_get_float(
                "GATEWAY_REQUEST_TIMEOUT_SECONDS", DEFAULT_REQUEST_TIMEOUT_SECONDS
            ),
            shopify=ShopifySettings(
                store_url=_get_str("SHOPIFY_STORE_URL"),
                access_token=_get_str("SHOPIFY_ACCESS_TOKEN"),
                api_version=_get_str("SHOPIFY_API_VERSION") or DEFAULT_SHOPIFY_API_VERSION,
                webhook_secret=_get_str("SHOPIFY_WEBHOOK_SECRET"),
            ),
            etsy=EtsySettings(
                api_key=_get_str("ETSY_API_KEY"),
                shared_secret=_get_str("ETSY_SHARED_SECRET"),
                redirect_uri=_get_str("ETSY_REDIRECT_URI"),
                shop_id=_get_str("ETSY_SHOP_ID"),
                scopes=tuple(etsy_scopes.split()) if etsy_scopes else DEFAULT_ETSY_SCOPES,
            ),
            cj=CJSettings(
                email=_get_str("CJ_EMAIL"),
                api_key=_get_str("CJ_API_KEY"),
            ),
            ebay=EbaySettings(
                client_id=_get_str("EBAY_CLIENT_ID"),
                client_secret=_get_str("EBAY_CLIENT_SECRET"),
                environment=ebay_environment,
            ),
            google_shopping=GoogleShoppingSettings(
                serpapi_key=_get_str("SERPAPI_KEY"),
            ),
            webhooks=WebhookSettings(missing_secret_policy=policy),
        )
