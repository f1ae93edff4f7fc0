"""
CJ Dropshipping API 2.0 client.

Base URL: https://developers.cjdropshipping.com/api2.0/v1
Auth: CJ-Access-Token header. One process-wide CJ account; the access token
(15 days) and refresh token (180 days) are managed by TokenManager through
CJRefresher.

Every response uses the envelope {result, code, message, data}. A response
with result false or code != 200 is a ProviderError carrying the CJ code,
even when the HTTP status is 200.

Rate Limits:
- Free accounts: 1000 requests per day, paced at one request per second
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from src.config.providers import CJSettings
from src.credentials.token_manager import TokenManager
from src.gateway.dispatcher import RateLimitedDispatcher
from src.gateway.errors import ProviderError
from src.integrations.base import PaginatedResult, ProviderClient
from src.models.provider_credential import ProviderType

logger = logging.getLogger(__name__)

CJ_SUCCESS_CODE = 200
DEFAULT_PRODUCT_PAGE_SIZE = 20
DEFAULT_ORDER_PAGE_SIZE = 10
TRACKING_URL_TEMPLATE = "https://t.17track.net/en#nums={}"


@dataclass
class WarehouseStock:
    """Stock in one CJ warehouse. stock defaults to 0, name to the country code."""
    name: str
    stock: int
    country_code: Optional[str] = None


@dataclass
class StockCheck:
    """Whether a variant can cover a quantity, optionally within one country."""
    stock: int
    available: bool
    warehouse: Optional[str] = None
    warehouses: List[WarehouseStock] = field(default_factory=list)


@dataclass
class ShippingMethod:
    """A freight quote. Prices default to 0.0, delivery_days to "" when CJ omits them."""
    name: str
    code: str
    price: float = 0.0
    price_cny: float = 0.0
    delivery_days: str = ""
    currency: str = "USD"

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ShippingMethod":
        return cls(
            name=data.get("logisticName") or "",
            code=data.get("logisticCode") or data.get("logisticName") or "",
            price=float(data.get("logisticPrice") or 0),
            price_cny=float(data.get("logisticPriceCn") or 0),
            delivery_days=str(data.get("logisticAging") or ""),
            currency=data.get("currency") or "USD",
        )


@dataclass
class TrackingLink:
    """Carrier defaults to "Unknown" when CJ has not assigned one."""
    tracking_number: str
    carrier: str
    tracking_url: str
    status: Optional[str] = None


class CJClient(ProviderClient):
    """Client for the CJ Dropshipping API."""

    provider = ProviderType.CJ

    def __init__(
        self,
        dispatcher: RateLimitedDispatcher,
        settings: CJSettings,
        token_manager: TokenManager,
    ):
        super().__init__(dispatcher, tenant_id=None)
        self.settings = settings
        self.token_manager = token_manager
        self.base_url = settings.api_base_url

    def _default_headers(self) -> Dict[str, str]:
        return {"Accept": "application/json", "Content-Type": "application/json"}

    async def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send and unwrap the CJ envelope."""
        response = await self._send(method, path, **kwargs)
        envelope = response.data
        if not isinstance(envelope, dict):
            raise ProviderError(
                response.status_code,
                "",
                provider=self.provider.value,
                message="CJ response is not an envelope",
            )

        if not envelope.get("result") or envelope.get("code") != CJ_SUCCESS_CODE:
            message = envelope.get("message") or "CJ request failed"
            logger.warning(
                "CJ request rejected",
                extra={"provider": self.provider.value, "path": path, "cj_code": envelope.get("code")}
            )
            raise ProviderError(
                response.status_code,
                message,
                provider=self.provider.value,
                message=f"CJ error {envelope.get('code')}: {message}",
            ).add_context(cj_code=envelope.get("code"))

        return envelope.get("data")

    def _page(self, data: Any, page_num: int, page_size: int) -> PaginatedResult[Dict[str, Any]]:
        data = data or {}
        return PaginatedResult(
            items=data.get("list") or [],
            page=data.get("pageNum") or page_num,
            limit=data.get("pageSize") or page_size,
            total=data.get("total"),
        )

    # ============ PRODUCT SEARCH & CATALOG ============

    async def search_products(
        self,
        keyword: Optional[str] = None,
        category_id: Optional[str] = None,
        page_num: int = 1,
        page_size: int = DEFAULT_PRODUCT_PAGE_SIZE,
        delivery_time: Optional[int] = None,
        price_min: Optional[float] = None,
        price_max: Optional[float] = None,
    ) -> PaginatedResult[Dict[str, Any]]:
        """Search the catalog. delivery_time is one of 24, 48, 72 (hours)."""
        data = await self._call(
            "GET",
            "/product/list",
            params={
                "productNameEn": keyword,
                "categoryId": category_id,
                "pageNum": page_num,
                "pageSize": page_size,
                "deliveryTime": delivery_time,
                "priceMin": price_min,
                "priceMax": price_max,
            },
        )
        return self._page(data, page_num, page_size)

    async def get_product(self, product_id: str) -> Dict[str, Any]:
        """Product detail including variants."""
        return await self._call("GET", "/product/query", params={"pid": product_id})

    async def get_variant(self, variant_id: str) -> Dict[str, Any]:
        return await self._call("GET", "/product/variant/queryByVid", params={"vid": variant_id})

    async def get_categories(self) -> List[Dict[str, Any]]:
        return await self._call("GET", "/product/getCategory") or []

    # ============ INVENTORY & STOCK ============

    async def get_inventory_by_product(self, product_id: str) -> List[Dict[str, Any]]:
        return await self._call("GET", "/product/stock/getInventoryByPid", params={"pid": product_id}) or []

    async def get_inventory_by_variant(self, variant_id: str) -> List[Dict[str, Any]]:
        return await self._call("GET", "/product/stock/queryByVid", params={"vid": variant_id}) or []

    async def get_inventory_by_sku(self, sku: str) -> List[Dict[str, Any]]:
        return await self._call("GET", "/product/stock/queryBySku", params={"sku": sku}) or []

    async def check_stock(
        self,
        variant_id: str,
        quantity: int = 1,
        country_code: Optional[str] = None,
    ) -> StockCheck:
        """
        Sum totalInventoryNum across warehouses (only those in country_code
        when given) and compare against quantity.
        """
        inventory = await self.get_inventory_by_variant(variant_id)
        target = [inv for inv in inventory if inv.get("countryCode") == country_code] if country_code else inventory

        total = sum(int(inv.get("totalInventoryNum") or 0) for inv in target)
        warehouses = [
            WarehouseStock(
                name=inv.get("areaEn") or inv.get("countryCode") or "",
                stock=int(inv.get("totalInventoryNum") or 0),
                country_code=inv.get("countryCode"),
            )
            for inv in inventory
        ]
        return StockCheck(
            stock=total,
            available=total >= quantity,
            warehouse=target[0].get("areaEn") if target else None,
            warehouses=warehouses,
        )

    # ============ ORDERS ============

    async def create_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        """Create a fulfillment order. Returns {"orderId", "orderNumber"}."""
        data = await self._call("POST", "/shopping/order/createOrder", json=order)
        logger.info(
            "CJ order created",
            extra={"provider": self.provider.value, "order_number": (data or {}).get("orderNumber")}
        )
        return data

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        return await self._call("GET", "/shopping/order/query", params={"orderId": order_id})

    async def get_orders(
        self,
        order_status: Optional[str] = None,
        order_number: Optional[str] = None,
        page_num: int = 1,
        page_size: int = DEFAULT_ORDER_PAGE_SIZE,
        create_date_start: Optional[str] = None,
        create_date_end: Optional[str] = None,
    ) -> PaginatedResult[Dict[str, Any]]:
        data = await self._call(
            "GET",
            "/shopping/order/list",
            params={
                "orderStatus": order_status,
                "orderNumber": order_number,
                "pageNum": page_num,
                "pageSize": page_size,
                "createDateStart": create_date_start,
                "createDateEnd": create_date_end,
            },
        )
        return self._page(data, page_num, page_size)

    # ============ TRACKING ============

    async def get_tracking(self, tracking_number: str) -> Dict[str, Any]:
        return await self._call("GET", "/logistic/getTrackInfo", params={"trackNumber": tracking_number})

    async def get_tracking_by_order(self, order_id: str) -> Optional[TrackingLink]:
        """Tracking link for an order, or None while CJ has not assigned a number."""
        order = await self.get_order(order_id) or {}
        tracking_number = order.get("trackNumber")
        if not tracking_number:
            return None
        return TrackingLink(
            tracking_number=tracking_number,
            carrier=order.get("logisticName") or "Unknown",
            tracking_url=TRACKING_URL_TEMPLATE.format(tracking_number),
            status=order.get("orderStatus"),
        )

    # ============ SHIPPING & FREIGHT ============

    async def calculate_freight(
        self,
        start_country_code: str,
        end_country_code: str,
        products: Sequence[Dict[str, Any]],
    ) -> List[ShippingMethod]:
        """Quote freight for [{"vid", "quantity"}] between two countries."""
        data = await self._call(
            "POST",
            "/logistic/freightCalculate",
            json={
                "startCountryCode": start_country_code,
                "endCountryCode": end_country_code,
                "products": [{"vid": p["vid"], "quantity": p["quantity"]} for p in products],
            },
        )
        return [ShippingMethod.from_api(m) for m in data or []]

    async def get_shipping_methods(
        self,
        end_country: str,
        products: Sequence[Dict[str, Any]],
        start_country: str = "CN",
    ) -> List[ShippingMethod]:
        """Shipping options to end_country; CN is the default origin warehouse."""
        if not products:
            raise ValueError("At least one product is required for a freight quote")
        return await self.calculate_freight(start_country, end_country, products)

    # ============ SESSION ============

    async def logout(self) -> bool:
        """Invalidate the CJ session upstream and clear the stored credential."""
        return await self.token_manager.clear(None, self.provider)
