"""
eBay Browse API client.

Base URL: https://api.ebay.com/buy/browse/v1 (sandbox: api.sandbox.ebay.com)
Auth: application token from the client-credentials grant, acquired and
renewed by TokenManager through EbayRefresher. The Browse API is read-only
and the token is process-wide.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from src.config.providers import EbaySettings
from src.gateway.dispatcher import RateLimitedDispatcher
from src.gateway.errors import GatewayError
from src.integrations.base import PaginatedResult, ProviderClient
from src.models.provider_credential import ProviderType

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 200

CONDITION_IDS = {
    "NEW": "1000",
    "USED": "3000",
}


@dataclass
class EbaySeller:
    """name defaults to "Unknown", rating and feedback_score to 0."""
    name: str = "Unknown"
    rating: float = 0.0
    feedback_score: int = 0

    @classmethod
    def from_api(cls, data: Optional[Dict[str, Any]]) -> "EbaySeller":
        data = data or {}
        return cls(
            name=data.get("username") or "Unknown",
            rating=float(data.get("feedbackPercentage") or 0),
            feedback_score=int(data.get("feedbackScore") or 0),
        )


@dataclass
class EbayProduct:
    """
    An eBay listing.

    Defaults when eBay omits a field: price 0.0, currency USD, image "",
    condition "Unknown", location "Unknown", category "General", shipping
    "Free" in search results and "See listing" for item lookups.
    """
    id: str
    title: str
    url: str
    price: float = 0.0
    currency: str = "USD"
    image: str = ""
    condition: str = "Unknown"
    seller: Optional[EbaySeller] = None
    shipping: str = "Free"
    location: str = "Unknown"
    category: str = "General"

    @staticmethod
    def _price(data: Dict[str, Any]) -> Dict[str, Any]:
        return data.get("price") or {}

    @classmethod
    def from_summary(cls, data: Dict[str, Any]) -> "EbayProduct":
        price = cls._price(data)
        thumbnails = data.get("thumbnailImages") or []
        shipping_options = data.get("shippingOptions") or []
        shipping_cost = (shipping_options[0].get("shippingCost") or {}).get("value") if shipping_options else None
        categories = data.get("categories") or []

        return cls(
            id=data["itemId"],
            title=data.get("title") or "",
            url=data.get("itemWebUrl") or "",
            price=float(price.get("value") or 0),
            currency=price.get("currency") or "USD",
            image=(data.get("image") or {}).get("imageUrl") or (thumbnails[0].get("imageUrl") if thumbnails else "") or "",
            condition=data.get("condition") or "Unknown",
            seller=EbaySeller.from_api(data.get("seller")),
            shipping=f"${shipping_cost}" if shipping_cost else "Free",
            location=(data.get("itemLocation") or {}).get("country") or "Unknown",
            category=categories[0].get("categoryName") if categories else "General",
        )

    @classmethod
    def from_item(cls, data: Dict[str, Any]) -> "EbayProduct":
        price = cls._price(data)
        return cls(
            id=data["itemId"],
            title=data.get("title") or "",
            url=data.get("itemWebUrl") or "",
            price=float(price.get("value") or 0),
            currency=price.get("currency") or "USD",
            image=(data.get("image") or {}).get("imageUrl") or "",
            condition=data.get("condition") or "Unknown",
            seller=EbaySeller.from_api(data.get("seller")),
            shipping="See listing",
            location=(data.get("itemLocation") or {}).get("country") or "Unknown",
            category=data.get("categoryPath") or "General",
        )


def build_search_filter(
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    condition: Optional[str] = None,
) -> Optional[str]:
    """Build the Browse API filter expression, e.g. "price:[10..50],conditionIds:{1000}"."""
    filters = []
    if min_price is not None or max_price is not None:
        low = "" if min_price is None else f"{min_price:g}"
        high = "" if max_price is None else f"{max_price:g}"
        filters.append(f"price:[{low}..{high}]")
    if condition:
        condition_id = CONDITION_IDS.get(condition.upper())
        if condition_id is None:
            raise ValueError(f"Unsupported eBay condition: {condition}")
        filters.append(f"conditionIds:{{{condition_id}}}")
    return ",".join(filters) or None


class EbayClient(ProviderClient):
    """Client for the eBay Browse API."""

    provider = ProviderType.EBAY

    def __init__(self, dispatcher: RateLimitedDispatcher, settings: EbaySettings):
        super().__init__(dispatcher, tenant_id=None)
        self.settings = settings
        self.base_url = settings.browse_url

    def _default_headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "X-EBAY-C-MARKETPLACE-ID": self.settings.marketplace_id,
        }

    async def search_products(
        self,
        keyword: str,
        category: Optional[str] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        condition: Optional[str] = None,
    ) -> PaginatedResult[EbayProduct]:
        """
        Search item summaries.

        Args:
            keyword: Free-text query
            category: eBay category id
            condition: "NEW" or "USED"
        """
        ebay_limit = min(limit, MAX_PAGE_SIZE)
        body = await self._request(
            "GET",
            "/item_summary/search",
            params={
                "q": keyword,
                "limit": ebay_limit,
                "offset": offset,
                "category_ids": category,
                "filter": build_search_filter(min_price, max_price, condition),
            },
        ) or {}

        items = [EbayProduct.from_summary(item) for item in body.get("itemSummaries") or []]
        return PaginatedResult(
            items=items,
            page=offset // ebay_limit + 1 if ebay_limit else 1,
            limit=ebay_limit,
            total=body.get("total") or 0,
        )

    async def get_item(self, item_id: str) -> EbayProduct:
        body = await self._request("GET", f"/item/{item_id}")
        self._require_key(body, "itemId")
        return EbayProduct.from_item(body)

    async def test_connection(self) -> bool:
        """True when an application token can be obtained."""
        try:
            await self.dispatcher.token_manager.get_valid_token(None, self.provider)
        except GatewayError as e:
            logger.warning(
                "eBay connection test failed",
                extra={"provider": self.provider.value, "error_kind": e.kind.value}
            )
            return False
        return True
