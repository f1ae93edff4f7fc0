"""
Shopify Admin API client tests.

Requests go through a real RateLimitedDispatcher on virtual time; the
Admin API is a FakeProviderAPI keyed on method and path.
"""

import json

import pytest

from src.gateway.errors import ProviderError
from src.integrations.shopify.client import ShopifyClient, ShopifyNotFound
from src.tests.conftest import SHOPIFY_TOKEN, STORE_DOMAIN, FakeProviderAPI, json_response

API = "/admin/api/2024-01"

LOCATIONS = {"locations": [
    {"id": 1, "name": "Closed", "active": False},
    {"id": 2, "name": "Main Warehouse", "active": True},
]}

PRODUCTS = {"products": [
    {"id": 10, "title": "Mug", "variants": [{"id": 100, "sku": "MUG-1", "inventory_item_id": 1000}]},
    {"id": 11, "title": "Shirt", "variants": [
        {"id": 110, "sku": "SHIRT-S"},
        {"id": 111, "sku": "SHIRT-M", "inventory_item_id": 1110},
    ]},
]}


def level(inventory_item_id, location_id, available):
    return json_response(200, {"inventory_level": {
        "inventory_item_id": inventory_item_id,
        "location_id": location_id,
        "available": available,
    }})


@pytest.fixture
def api():
    return FakeProviderAPI()


@pytest.fixture
def client(api, shopify_manager, make_dispatcher, gateway_settings):
    return ShopifyClient(make_dispatcher(shopify_manager, api), gateway_settings.shopify)


def body_of(request):
    return json.loads(request.content)


# ============================================================================
# TEST SUITE: ORDERS
# ============================================================================

class TestOrders:

    @pytest.mark.asyncio
    async def test_get_orders_with_count(self, client, api):
        api.routes[("GET", f"{API}/orders.json")] = json_response(200, {"orders": [{"id": 1}, {"id": 2}]})
        api.routes[("GET", f"{API}/orders/count.json")] = json_response(200, {"count": 120})

        page = await client.get_orders(limit=500, financial_status="paid")

        assert [o["id"] for o in page.items] == [1, 2]
        assert page.limit == 250
        assert page.total == 120
        assert page.total_pages == 1

        params = api.sent("GET", f"{API}/orders.json")[0].url.params
        assert params["limit"] == "250"
        assert params["status"] == "any"
        assert params["financial_status"] == "paid"
        assert "fulfillment_status" not in params

    @pytest.mark.asyncio
    async def test_token_is_sent_in_shopify_header(self, client, api):
        api.routes[("GET", f"{API}/orders/5.json")] = json_response(200, {"order": {"id": 5}})

        assert await client.get_order(5) == {"id": 5}
        request = api.requests[0]
        assert request.url.host == STORE_DOMAIN
        assert request.headers["X-Shopify-Access-Token"] == SHOPIFY_TOKEN

    @pytest.mark.asyncio
    async def test_fulfill_order_sends_only_fulfillable_items(self, client, api):
        api.routes[("GET", f"{API}/orders/5.json")] = json_response(200, {"order": {"id": 5, "line_items": [
            {"id": 51, "fulfillable_quantity": 2},
            {"id": 52, "fulfillable_quantity": 0},
        ]}})
        api.routes[("POST", f"{API}/orders/5/fulfillments.json")] = json_response(201, {"fulfillment": {"id": 900}})

        fulfillment = await client.fulfill_order(5, "1Z999", "UPS")

        assert fulfillment == {"id": 900}
        sent = body_of(api.sent("POST", f"{API}/orders/5/fulfillments.json")[0])
        assert sent == {"fulfillment": {
            "tracking_number": "1Z999",
            "tracking_company": "UPS",
            "line_items": [{"id": 51}],
        }}

    @pytest.mark.asyncio
    async def test_fulfill_order_with_nothing_left(self, client, api):
        api.routes[("GET", f"{API}/orders/5.json")] = json_response(200, {"order": {"id": 5, "line_items": [
            {"id": 51, "fulfillable_quantity": 0},
        ]}})

        assert await client.fulfill_order(5, "1Z999", "UPS") is None
        assert api.sent("POST", f"{API}/orders/5/fulfillments.json") == []


# ============================================================================
# TEST SUITE: PRODUCTS
# ============================================================================

class TestProducts:

    @pytest.mark.asyncio
    async def test_create_update_delete(self, client, api):
        api.routes[("POST", f"{API}/products.json")] = json_response(201, {"product": {"id": 10, "title": "Mug"}})
        api.routes[("PUT", f"{API}/products/10.json")] = json_response(200, {"product": {"id": 10, "title": "Big Mug"}})
        api.routes[("DELETE", f"{API}/products/10.json")] = json_response(200, {})

        created = await client.create_product({"title": "Mug"})
        updated = await client.update_product(10, {"title": "Big Mug"})
        await client.delete_product(10)

        assert created["id"] == 10
        assert updated["title"] == "Big Mug"
        assert body_of(api.sent("PUT", f"{API}/products/10.json")[0]) == {"product": {"title": "Big Mug"}}
        assert len(api.sent("DELETE", f"{API}/products/10.json")) == 1

    @pytest.mark.asyncio
    async def test_missing_product_is_provider_error(self, client):
        with pytest.raises(ProviderError) as exc_info:
            await client.get_product(404)

        assert exc_info.value.status_code == 404


# ============================================================================
# TEST SUITE: INVENTORY
# ============================================================================

class TestInventory:

    @pytest.mark.asyncio
    async def test_primary_location_is_first_active(self, client, api):
        api.routes[("GET", f"{API}/locations.json")] = json_response(200, LOCATIONS)

        assert await client.get_primary_location_id() == 2

    @pytest.mark.asyncio
    async def test_no_active_location(self, client, api):
        api.routes[("GET", f"{API}/locations.json")] = json_response(200, {"locations": []})

        with pytest.raises(ShopifyNotFound):
            await client.get_primary_location_id()

    @pytest.mark.asyncio
    async def test_set_and_adjust(self, client, api):
        api.routes[("POST", f"{API}/inventory_levels/set.json")] = level(1000, 2, 7)
        api.routes[("POST", f"{API}/inventory_levels/adjust.json")] = level(1000, 2, 4)

        set_level = await client.set_inventory_level(1000, 2, 7)
        adjusted = await client.adjust_inventory_level(1000, 2, -3)

        assert set_level.available == 7
        assert adjusted.available == 4
        assert body_of(api.sent("POST", f"{API}/inventory_levels/adjust.json")[0]) == {
            "inventory_item_id": 1000,
            "location_id": 2,
            "available_adjustment": -3,
        }

    @pytest.mark.asyncio
    async def test_get_inventory_level_not_found(self, client, api):
        api.routes[("GET", f"{API}/inventory_levels.json")] = json_response(200, {"inventory_levels": []})

        with pytest.raises(ShopifyNotFound):
            await client.get_inventory_level(1000, 2)

    @pytest.mark.asyncio
    async def test_update_by_sku_looks_up_missing_inventory_item(self, client, api):
        api.routes[("GET", f"{API}/locations.json")] = json_response(200, LOCATIONS)
        api.routes[("GET", f"{API}/products.json")] = json_response(200, PRODUCTS)
        api.routes[("GET", f"{API}/products/count.json")] = json_response(200, {"count": 2})
        api.routes[("GET", f"{API}/variants/110.json")] = json_response(200, {"variant": {"id": 110, "inventory_item_id": 1100}})
        api.routes[("POST", f"{API}/inventory_levels/set.json")] = level(1100, 2, 9)

        result = await client.update_inventory_by_sku("SHIRT-S", 9)

        assert result.inventory_item_id == 1100
        assert body_of(api.sent("POST", f"{API}/inventory_levels/set.json")[0]) == {
            "inventory_item_id": 1100,
            "location_id": 2,
            "available": 9,
        }

    @pytest.mark.asyncio
    async def test_sync_inventory_records_per_item_failures(self, client, api):
        api.routes[("GET", f"{API}/locations.json")] = json_response(200, LOCATIONS)
        api.routes[("GET", f"{API}/products.json")] = json_response(200, PRODUCTS)
        api.routes[("GET", f"{API}/products/count.json")] = json_response(200, {"count": 2})
        api.routes[("POST", f"{API}/inventory_levels/set.json")] = level(1000, 2, 3)

        result = await client.sync_inventory([
            {"sku": "MUG-1", "quantity": 3},
            {"sku": "NOPE", "quantity": 1},
        ])

        assert result.success is False
        assert [r.sku for r in result.results] == ["MUG-1", "NOPE"]
        assert result.results[0].success is True
        assert result.failed[0].sku == "NOPE"
        assert "NOPE" in result.failed[0].error


# ============================================================================
# TEST SUITE: WEBHOOKS AND HEALTH
# ============================================================================

class TestWebhookRegistration:

    @pytest.mark.asyncio
    async def test_register_list_delete(self, client, api):
        api.routes[("POST", f"{API}/webhooks.json")] = json_response(201, {"webhook": {"id": 7, "topic": "orders/create"}})
        api.routes[("GET", f"{API}/webhooks.json")] = json_response(200, {"webhooks": [{"id": 7}]})
        api.routes[("DELETE", f"{API}/webhooks/7.json")] = json_response(200)

        webhook = await client.register_webhook("orders/create", "https://app.example.com/webhooks/shopify/orders/create")
        assert webhook["id"] == 7
        assert await client.get_webhooks() == [{"id": 7}]
        await client.delete_webhook(7)

        assert body_of(api.sent("POST", f"{API}/webhooks.json")[0]) == {"webhook": {
            "topic": "orders/create",
            "address": "https://app.example.com/webhooks/shopify/orders/create",
            "format": "json",
        }}


class TestConnection:

    @pytest.mark.asyncio
    async def test_connected(self, client, api):
        api.routes[("GET", f"{API}/shop.json")] = json_response(200, {"shop": {"name": "Test Store"}})

        status = await client.test_connection()

        assert status.connected is True
        assert status.shop_name == "Test Store"

    @pytest.mark.asyncio
    async def test_rejected_token_reports_disconnected(self, client, api):
        api.routes[("GET", f"{API}/shop.json")] = json_response(401, {"errors": "Invalid API key or access token"})

        status = await client.test_connection()

        assert status.connected is False
        assert status.error_kind == "auth_rejected"
