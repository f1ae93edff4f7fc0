"""
Shopify Admin REST API client.

Base URL: https://{store}/admin/api/{version} (default version 2024-01).
Auth: X-Shopify-Access-Token, a static Admin API token stored through
TokenManager.store_static_token. Pacing is per store: the
X-Shopify-Shop-Api-Call-Limit bucket is shared by every caller.

Orders and products are returned as Shopify's own JSON objects; only the
small entities the gateway reasons about (locations, inventory levels) are
mapped into dataclasses.

Required Access Scopes:
- read_orders, write_orders (fulfillments)
- read_products, write_products
- read_inventory, write_inventory
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from src.config.providers import ShopifySettings
from src.gateway.dispatcher import RateLimitedDispatcher
from src.gateway.errors import GatewayError, ProviderError
from src.integrations.base import PaginatedResult, ProviderClient, SyncItemResult, SyncResult
from src.models.provider_credential import ProviderType

logger = logging.getLogger(__name__)

# Shopify REST page size ceiling
MAX_PAGE_SIZE = 250
DEFAULT_PAGE_SIZE = 50


@dataclass
class ShopifyLocation:
    """A fulfillment location. active defaults to False when omitted."""
    id: int
    name: str = ""
    active: bool = False

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ShopifyLocation":
        return cls(id=data["id"], name=data.get("name") or "", active=bool(data.get("active", False)))


@dataclass
class InventoryLevel:
    """Stock of one inventory item at one location. available defaults to 0."""
    inventory_item_id: int
    location_id: int
    available: int = 0

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "InventoryLevel":
        return cls(
            inventory_item_id=data["inventory_item_id"],
            location_id=data["location_id"],
            available=data.get("available") or 0,
        )


@dataclass
class ConnectionStatus:
    connected: bool
    shop_name: Optional[str] = None
    error_kind: Optional[str] = None


class ShopifyNotFound(ProviderError):
    """A lookup the client performs itself (SKU, active location) found nothing."""

    def __init__(self, message: str):
        super().__init__(404, "", provider=ProviderType.SHOPIFY.value, message=message)


class ShopifyClient(ProviderClient):
    """
    Client for the Shopify Admin REST API.

    tenant_id selects the stored credential; by convention it is the store's
    myshopify.com domain.
    """

    provider = ProviderType.SHOPIFY

    def __init__(
        self,
        dispatcher: RateLimitedDispatcher,
        settings: ShopifySettings,
        tenant_id: Optional[str] = None,
    ):
        super().__init__(dispatcher, tenant_id=tenant_id or settings.store_domain)
        self.settings = settings
        self.base_url = settings.base_url

    def _default_headers(self) -> Dict[str, str]:
        return {"Accept": "application/json", "Content-Type": "application/json"}

    # ==================== ORDERS ====================

    async def get_orders(
        self,
        limit: int = DEFAULT_PAGE_SIZE,
        page: int = 1,
        status: str = "any",
        financial_status: Optional[str] = None,
        fulfillment_status: Optional[str] = None,
        created_at_min: Optional[str] = None,
        created_at_max: Optional[str] = None,
        since_id: Optional[int] = None,
    ) -> PaginatedResult[Dict[str, Any]]:
        """Fetch one page of orders plus the matching total count."""
        shopify_limit = min(limit, MAX_PAGE_SIZE)
        body = await self._request(
            "GET",
            "/orders.json",
            params={
                "limit": shopify_limit,
                "status": status,
                "financial_status": financial_status,
                "fulfillment_status": fulfillment_status,
                "created_at_min": created_at_min,
                "created_at_max": created_at_max,
                "since_id": since_id,
            },
        )
        orders = self._require_key(body, "orders")
        total = await self.get_orders_count(
            status=status,
            financial_status=financial_status,
            fulfillment_status=fulfillment_status,
        )
        return PaginatedResult(items=orders, page=page, limit=shopify_limit, total=total)

    async def get_orders_count(
        self,
        status: Optional[str] = None,
        financial_status: Optional[str] = None,
        fulfillment_status: Optional[str] = None,
    ) -> int:
        body = await self._request(
            "GET",
            "/orders/count.json",
            params={
                "status": status,
                "financial_status": financial_status,
                "fulfillment_status": fulfillment_status,
            },
        )
        return int(self._require_key(body, "count"))

    async def get_order(self, order_id: int) -> Dict[str, Any]:
        body = await self._request("GET", f"/orders/{order_id}.json")
        return self._require_key(body, "order")

    async def fulfill_order(
        self,
        order_id: int,
        tracking_number: str,
        tracking_company: str,
    ) -> Optional[Dict[str, Any]]:
        """
        Fulfill every line item that still has a fulfillable quantity.

        Returns:
            The created fulfillment, or None when nothing is left to fulfill
        """
        order = await self.get_order(order_id)
        fulfillable = [
            item for item in order.get("line_items") or []
            if (item.get("fulfillable_quantity") or 0) > 0
        ]
        if not fulfillable:
            logger.info(
                "Order has no fulfillable items",
                extra={"provider": self.provider.value, "order_id": order_id}
            )
            return None

        body = await self._request(
            "POST",
            f"/orders/{order_id}/fulfillments.json",
            json={
                "fulfillment": {
                    "tracking_number": tracking_number,
                    "tracking_company": tracking_company,
                    "line_items": [{"id": item["id"]} for item in fulfillable],
                }
            },
        )
        return (body or {}).get("fulfillment")

    # ==================== PRODUCTS ====================

    async def get_products(
        self,
        limit: int = DEFAULT_PAGE_SIZE,
        page: int = 1,
        since_id: Optional[int] = None,
        vendor: Optional[str] = None,
        product_type: Optional[str] = None,
        collection_id: Optional[int] = None,
        status: Optional[str] = None,
    ) -> PaginatedResult[Dict[str, Any]]:
        shopify_limit = min(limit, MAX_PAGE_SIZE)
        body = await self._request(
            "GET",
            "/products.json",
            params={
                "limit": shopify_limit,
                "since_id": since_id,
                "vendor": vendor,
                "product_type": product_type,
                "collection_id": collection_id,
                "status": status,
            },
        )
        products = self._require_key(body, "products")
        total = await self.get_products_count(vendor=vendor, product_type=product_type)
        return PaginatedResult(items=products, page=page, limit=shopify_limit, total=total)

    async def get_products_count(
        self,
        vendor: Optional[str] = None,
        product_type: Optional[str] = None,
    ) -> int:
        body = await self._request(
            "GET",
            "/products/count.json",
            params={"vendor": vendor, "product_type": product_type},
        )
        return int(self._require_key(body, "count"))

    async def get_product(self, product_id: int) -> Dict[str, Any]:
        body = await self._request("GET", f"/products/{product_id}.json")
        return self._require_key(body, "product")

    async def create_product(self, product: Dict[str, Any]) -> Dict[str, Any]:
        body = await self._request("POST", "/products.json", json={"product": product})
        return self._require_key(body, "product")

    async def update_product(self, product_id: int, updates: Dict[str, Any]) -> Dict[str, Any]:
        body = await self._request("PUT", f"/products/{product_id}.json", json={"product": updates})
        return self._require_key(body, "product")

    async def delete_product(self, product_id: int) -> None:
        await self._request("DELETE", f"/products/{product_id}.json")

    # ==================== INVENTORY ====================

    async def get_locations(self) -> List[ShopifyLocation]:
        body = await self._request("GET", "/locations.json")
        return [ShopifyLocation.from_api(loc) for loc in self._require_key(body, "locations")]

    async def get_primary_location_id(self) -> int:
        """First active location."""
        for location in await self.get_locations():
            if location.active:
                return location.id
        raise ShopifyNotFound("No active location found")

    async def get_inventory_item_id(self, variant_id: int) -> int:
        body = await self._request("GET", f"/variants/{variant_id}.json")
        return self._require_key(body, "variant")["inventory_item_id"]

    async def get_inventory_level(self, inventory_item_id: int, location_id: int) -> InventoryLevel:
        body = await self._request(
            "GET",
            "/inventory_levels.json",
            params={"inventory_item_ids": inventory_item_id, "location_ids": location_id},
        )
        levels = self._require_key(body, "inventory_levels")
        if not levels:
            raise ShopifyNotFound(
                f"Inventory level not found for item {inventory_item_id} at location {location_id}"
            )
        return InventoryLevel.from_api(levels[0])

    async def set_inventory_level(self, inventory_item_id: int, location_id: int, available: int) -> InventoryLevel:
        """Set the absolute available quantity."""
        body = await self._request(
            "POST",
            "/inventory_levels/set.json",
            json={
                "inventory_item_id": inventory_item_id,
                "location_id": location_id,
                "available": available,
            },
        )
        return InventoryLevel.from_api(self._require_key(body, "inventory_level"))

    async def adjust_inventory_level(self, inventory_item_id: int, location_id: int, adjustment: int) -> InventoryLevel:
        """Apply a relative change (positive or negative)."""
        body = await self._request(
            "POST",
            "/inventory_levels/adjust.json",
            json={
                "inventory_item_id": inventory_item_id,
                "location_id": location_id,
                "available_adjustment": adjustment,
            },
        )
        return InventoryLevel.from_api(self._require_key(body, "inventory_level"))

    async def update_inventory_by_sku(
        self,
        sku: str,
        quantity: int,
        location_id: Optional[int] = None,
    ) -> InventoryLevel:
        """
        Set inventory for the variant with this SKU.

        Searches the first page of products (up to 250).
        """
        location_id = location_id or await self.get_primary_location_id()

        products = await self.get_products(limit=MAX_PAGE_SIZE)
        variant = None
        for product in products.items:
            variant = next((v for v in product.get("variants") or [] if v.get("sku") == sku), None)
            if variant:
                break

        if not variant or not variant.get("id"):
            raise ShopifyNotFound(f"Variant with SKU {sku} not found")

        inventory_item_id = variant.get("inventory_item_id") or await self.get_inventory_item_id(variant["id"])
        return await self.set_inventory_level(inventory_item_id, location_id, quantity)

    async def sync_inventory(
        self,
        items: Iterable[Dict[str, Any]],
        location_id: Optional[int] = None,
    ) -> SyncResult:
        """
        Set quantities for many SKUs. Items are {"sku": str, "quantity": int}.

        Per-item gateway failures are recorded, not raised.
        """
        location_id = location_id or await self.get_primary_location_id()
        result = SyncResult()

        for item in items:
            try:
                await self.update_inventory_by_sku(item["sku"], item["quantity"], location_id)
                result.results.append(SyncItemResult(sku=item["sku"], success=True))
            except GatewayError as e:
                logger.warning(
                    "Inventory sync failed for SKU",
                    extra={"provider": self.provider.value, "sku": item["sku"], "error_kind": e.kind.value}
                )
                result.results.append(SyncItemResult(sku=item["sku"], success=False, error=e.message))

        return result

    # ==================== WEBHOOKS ====================

    async def register_webhook(self, topic: str, address: str, format: str = "json") -> Dict[str, Any]:
        body = await self._request(
            "POST",
            "/webhooks.json",
            json={"webhook": {"topic": topic, "address": address, "format": format}},
        )
        return self._require_key(body, "webhook")

    async def get_webhooks(self) -> List[Dict[str, Any]]:
        body = await self._request("GET", "/webhooks.json")
        return self._require_key(body, "webhooks")

    async def delete_webhook(self, webhook_id: int) -> None:
        await self._request("DELETE", f"/webhooks/{webhook_id}.json")

    # ==================== HEALTH ====================

    async def test_connection(self) -> ConnectionStatus:
        """Check credentials and connectivity with GET /shop.json."""
        try:
            body = await self._request("GET", "/shop.json")
        except GatewayError as e:
            logger.warning(
                "Shopify connection test failed",
                extra={"provider": self.provider.value, "error_kind": e.kind.value}
            )
            return ConnectionStatus(connected=False, error_kind=e.kind.value)

        shop = (body or {}).get("shop") or {}
        return ConnectionStatus(connected=True, shop_name=shop.get("name"))
