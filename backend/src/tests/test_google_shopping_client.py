"""Google Shopping (SerpAPI) client tests."""

import pytest

from src.gateway.errors import NotConfigured, ProviderError
from src.integrations.google_shopping.client import GoogleProduct, GoogleShoppingClient
from src.models.provider_credential import ProviderType
from src.tests.conftest import SERPAPI_KEY, FakeProviderAPI, json_response

SEARCH = "/search.json"


@pytest.fixture
def api():
    return FakeProviderAPI()


@pytest.fixture
def client(api, static_token_manager, make_dispatcher, gateway_settings):
    return GoogleShoppingClient(make_dispatcher(static_token_manager, api), gateway_settings.google_shopping)


async def store_key(manager):
    await manager.store_static_token(None, ProviderType.GOOGLE_SHOPPING, SERPAPI_KEY)


@pytest.mark.asyncio
async def test_search_sends_key_as_query_param(client, api, static_token_manager):
    await store_key(static_token_manager)
    api.routes[("GET", SEARCH)] = json_response(200, {"shopping_results": [
        {
            "position": 1,
            "product_id": "987",
            "title": "Ceramic Mug",
            "source": "Walmart",
            "extracted_price": 9.99,
            "thumbnail": "https://img.example.com/mug.jpg",
            "product_link": "https://google.com/shopping/product/987",
            "rating": 4.6,
            "reviews": 120,
            "delivery": "Free delivery",
        },
        {"title": "Mystery Mug", "source": "eBay"},
    ]})

    products = await client.search_products("mug", limit=10, country="gb")

    assert products[0] == GoogleProduct(
        id="987",
        title="Ceramic Mug",
        source="Walmart",
        price=9.99,
        image="https://img.example.com/mug.jpg",
        url="https://google.com/shopping/product/987",
        rating=4.6,
        reviews=120,
        delivery="Free delivery",
    )
    assert products[1].id == "google-2"
    assert products[1].delivery == "Varies"

    request = api.requests[0]
    assert request.url.host == "serpapi.com"
    assert request.url.params["api_key"] == SERPAPI_KEY
    assert request.url.params["engine"] == "google_shopping"
    assert request.url.params["num"] == "10"
    assert request.url.params["gl"] == "gb"
    assert "Authorization" not in request.headers


@pytest.mark.asyncio
async def test_error_field_is_provider_error(client, api, static_token_manager):
    await store_key(static_token_manager)
    api.routes[("GET", SEARCH)] = json_response(200, {"error": "Invalid API key."})

    with pytest.raises(ProviderError) as exc_info:
        await client.search_products("mug")

    assert exc_info.value.message == "SerpAPI error: Invalid API key."


@pytest.mark.asyncio
async def test_no_results(client, api, static_token_manager):
    await store_key(static_token_manager)
    api.routes[("GET", SEARCH)] = json_response(200, {"search_metadata": {"status": "Success"}})

    assert await client.search_products("zzzz") == []


@pytest.mark.asyncio
async def test_key_not_stored(client, api):
    with pytest.raises(NotConfigured):
        await client.search_products("mug")

    assert api.requests == []
