"""
Application factory for the provider gateway API.

create_app() resolves settings, wires the gateway (credential store,
refreshers, TokenManager, RateLimitedDispatcher, WebhookVerifier) onto
app.state.gateway and mounts the webhook, Etsy OAuth and health routers.

Static credentials (Shopify Admin token, SerpAPI key) are written to the
credential store at startup; OAuth and client-credentials tokens are
acquired on first use.

Run with:
    uvicorn src.main:create_app --factory
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from src.api.dependencies.gateway import GatewayServices
from src.api.routes import etsy_oauth, health, webhooks_shopify
from src.config.providers import GatewaySettings
from src.credentials.encryption import TokenCipher
from src.credentials.pkce import PendingAuthorizationStore
from src.credentials.redaction import setup_credential_logging
from src.credentials.refreshers import (
    CJRefresher,
    EbayRefresher,
    EtsyRefresher,
    StaticTokenRefresher,
)
from src.credentials.store import CredentialStore, InMemoryCredentialStore, SqlCredentialStore
from src.credentials.token_manager import TokenManager
from src.gateway.dispatcher import RateLimitedDispatcher
from src.gateway.webhooks import WebhookVerifier
from src.models.provider_credential import ProviderCredentialRecord, ProviderType
from src.platform.errors import ErrorHandlerMiddleware

logger = logging.getLogger(__name__)


def build_credential_store(settings: GatewaySettings) -> CredentialStore:
    """SQL store with encrypted tokens when DATABASE_URL is set, else in-memory."""
    if not settings.database_url:
        logger.info("Using in-memory credential store")
        return InMemoryCredentialStore()

    engine = create_engine(settings.database_url, pool_pre_ping=True)
    ProviderCredentialRecord.__table__.create(bind=engine, checkfirst=True)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    logger.info("Using SQL credential store")
    return SqlCredentialStore(SessionLocal, TokenCipher.from_env())


def build_gateway(
    settings: GatewaySettings,
    store: Optional[CredentialStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> GatewayServices:
    """Wire every gateway component from resolved settings."""
    http_client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(settings.request_timeout_seconds))
    if store is None:
        store = build_credential_store(settings)

    refreshers = {
        ProviderType.SHOPIFY: StaticTokenRefresher(ProviderType.SHOPIFY),
        ProviderType.ETSY: EtsyRefresher(http_client, settings.etsy),
        ProviderType.CJ: CJRefresher(http_client, settings.cj),
        ProviderType.EBAY: EbayRefresher(http_client, settings.ebay),
        ProviderType.GOOGLE_SHOPPING: StaticTokenRefresher(ProviderType.GOOGLE_SHOPPING),
    }
    token_manager = TokenManager(store, refreshers)

    return GatewayServices(
        settings=settings,
        http_client=http_client,
        token_manager=token_manager,
        dispatcher=RateLimitedDispatcher(
            token_manager,
            http_client,
            request_timeout=settings.request_timeout_seconds,
        ),
        verifier=WebhookVerifier(settings.webhooks.missing_secret_policy),
        pending_authorizations=PendingAuthorizationStore(),
    )


async def seed_static_credentials(gateway: GatewayServices) -> None:
    """Store configured tokens that never expire."""
    settings = gateway.settings
    if settings.shopify.is_configured:
        await gateway.token_manager.store_static_token(
            settings.shopify.store_domain,
            ProviderType.SHOPIFY,
            settings.shopify.access_token,
            account_name=settings.shopify.store_domain,
        )
    if settings.google_shopping.is_configured:
        await gateway.token_manager.store_static_token(
            None,
            ProviderType.GOOGLE_SHOPPING,
            settings.google_shopping.serpapi_key,
        )


def create_app(
    settings: Optional[GatewaySettings] = None,
    store: Optional[CredentialStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Resolved settings (default: GatewaySettings.from_env())
        store: Credential store (default: chosen from settings)
        http_client: Shared outbound client; closed on shutdown only when
            created here

    Raises:
        ConfigurationError: Invalid environment (see GatewaySettings.from_env)
    """
    setup_credential_logging()

    settings = settings or GatewaySettings.from_env()
    owns_http_client = http_client is None
    gateway = build_gateway(settings, store=store, http_client=http_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await seed_static_credentials(gateway)
        logger.info("Provider gateway started", extra={"app_env": settings.app_env})
        yield
        if owns_http_client:
            await gateway.http_client.aclose()

    app = FastAPI(title="Storefront Provider Gateway", lifespan=lifespan)
    app.state.gateway = gateway
    app.add_middleware(ErrorHandlerMiddleware)

    app.include_router(health.router)
    app.include_router(webhooks_shopify.router)
    app.include_router(etsy_oauth.router)

    return app
