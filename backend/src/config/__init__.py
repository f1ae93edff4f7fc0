"""Configuration module for the provider gateway."""

from src.config.providers import (
    CJSettings,
    ConfigurationError,
    EbaySettings,
    EtsySettings,
    GatewaySettings,
    GoogleShoppingSettings,
    ShopifySettings,
    WebhookSettings,
)

__all__ = [
    "CJSettings",
    "ConfigurationError",
    "EbaySettings",
    "EtsySettings",
    "GatewaySettings",
    "GoogleShoppingSettings",
    "ShopifySettings",
    "WebhookSettings",
]
