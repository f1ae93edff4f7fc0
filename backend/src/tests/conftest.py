"""
Shared pytest fixtures for gateway tests.

Time is always injected: FakeClock drives credential expiry (wall clock) and
VirtualTime drives pacing and backoff (monotonic clock + sleep), so no test
waits in real time.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from src.config.providers import (
    CJSettings,
    EbaySettings,
    EtsySettings,
    GatewaySettings,
    GoogleShoppingSettings,
    ShopifySettings,
)
from src.credentials.store import InMemoryCredentialStore
from src.credentials.refreshers import StaticTokenRefresher
from src.credentials.token_manager import TokenManager
from src.gateway.dispatcher import RateLimitedDispatcher
from src.models.provider_credential import CredentialKind, ProviderCredential, ProviderType

# NOTE: obviously fake values to avoid triggering secret scanners
SHOPIFY_TOKEN = "test_shopify_admin_token_not_real"
SERPAPI_KEY = "test_serpapi_key_not_real"
STORE_DOMAIN = "test-store.myshopify.com"


class FakeClock:
    """Wall clock for credential expiry."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class VirtualTime:
    """Monotonic clock plus a sleep that advances it instead of waiting."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def json_response(status_code: int = 200, body=None, headers=None) -> httpx.Response:
    return httpx.Response(
        status_code,
        content=json.dumps(body).encode("utf-8") if body is not None else b"",
        headers={"content-type": "application/json", **(headers or {})},
    )


def replay(response: httpx.Response) -> httpx.Response:
    """Fresh copy of a canned response; a Response is bound to one request."""
    return httpx.Response(response.status_code, headers=response.headers, content=response.content)


def mock_http(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class FakeProviderAPI:
    """MockTransport handler routing on (method, path); unknown routes are 404."""

    def __init__(self, routes: Optional[Dict[Tuple[str, str], Any]] = None):
        self.routes = dict(routes or {})
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return json_response(404, {"errors": "Not Found"})
        if callable(route):
            return route(request)
        return replay(route)

    def sent(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]


def static_credential(provider: ProviderType, access_token: str, tenant_id: Optional[str] = None) -> ProviderCredential:
    return ProviderCredential(
        provider=provider,
        kind=CredentialKind.STATIC_BEARER,
        access_token=access_token,
        tenant_id=tenant_id,
    )


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def virtual_time():
    return VirtualTime()


@pytest.fixture
def credential_store():
    return InMemoryCredentialStore()


@pytest.fixture
def gateway_settings():
    """Settings with every provider configured."""
    return GatewaySettings(
        app_env="test",
        shopify=ShopifySettings(
            store_url=f"https://{STORE_DOMAIN}/",
            access_token=SHOPIFY_TOKEN,
            webhook_secret="test_webhook_secret",
        ),
        etsy=EtsySettings(
            api_key="test_etsy_keystring",
            redirect_uri="https://app.example.com/etsy/callback",
            shop_id="12345",
        ),
        cj=CJSettings(email="ops@example.com", api_key="test_cj_api_key"),
        ebay=EbaySettings(client_id="test-ebay-client", client_secret="test_ebay_client_secret"),
        google_shopping=GoogleShoppingSettings(serpapi_key=SERPAPI_KEY),
    )


def static_refreshers():
    return {
        ProviderType.SHOPIFY: StaticTokenRefresher(ProviderType.SHOPIFY),
        ProviderType.GOOGLE_SHOPPING: StaticTokenRefresher(ProviderType.GOOGLE_SHOPPING),
    }


@pytest.fixture
def static_token_manager(credential_store, fake_clock):
    """TokenManager with only static-token providers registered."""
    return TokenManager(credential_store, static_refreshers(), clock=fake_clock)


@pytest.fixture
def shopify_manager(fake_clock):
    """Static-token TokenManager with the Shopify Admin token already stored."""
    store = InMemoryCredentialStore([static_credential(ProviderType.SHOPIFY, SHOPIFY_TOKEN, STORE_DOMAIN)])
    return TokenManager(store, static_refreshers(), clock=fake_clock)


@pytest.fixture
def make_dispatcher(virtual_time):
    """Build a dispatcher around a MockTransport handler on virtual time."""

    def _make(token_manager: TokenManager, handler: Callable[[httpx.Request], httpx.Response], **kwargs):
        return RateLimitedDispatcher(
            token_manager,
            mock_http(handler),
            clock=virtual_time.clock,
            sleep=virtual_time.sleep,
            **kwargs,
        )

    return _make
