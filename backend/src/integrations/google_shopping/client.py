"""
Google Shopping results through SerpAPI.

Endpoint: https://serpapi.com/search.json?engine=google_shopping
Auth: api_key query parameter, injected by the dispatcher from the stored
static credential. The SerpAPI key is a process-wide monthly quota.

SerpAPI reports some failures (bad key, exhausted quota) as HTTP 200 with an
"error" field; those are raised as ProviderError.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List

from src.config.providers import GoogleShoppingSettings
from src.gateway.dispatcher import RateLimitedDispatcher
from src.gateway.errors import ProviderError
from src.integrations.base import ProviderClient
from src.models.provider_credential import ProviderType

logger = logging.getLogger(__name__)

DEFAULT_RESULT_COUNT = 20
DEFAULT_COUNTRY = "us"


@dataclass
class GoogleProduct:
    """
    A Google Shopping offer.

    Defaults when SerpAPI omits a field: price 0.0, rating 0.0, reviews 0,
    delivery "Varies", image/url "".
    """
    id: str
    title: str
    source: str
    price: float = 0.0
    image: str = ""
    url: str = ""
    rating: float = 0.0
    reviews: int = 0
    delivery: str = "Varies"

    @classmethod
    def from_api(cls, data: Dict[str, Any], index: int) -> "GoogleProduct":
        position = data.get("position") or index + 1
        return cls(
            id=str(data.get("product_id") or f"google-{position}"),
            title=data.get("title") or "",
            source=data.get("source") or "",
            price=float(data.get("extracted_price") or 0),
            image=data.get("thumbnail") or "",
            url=data.get("link") or data.get("product_link") or "",
            rating=float(data.get("rating") or 0),
            reviews=int(data.get("reviews") or 0),
            delivery=data.get("delivery") or "Varies",
        )


class GoogleShoppingClient(ProviderClient):
    """Client for SerpAPI's google_shopping engine."""

    provider = ProviderType.GOOGLE_SHOPPING

    def __init__(self, dispatcher: RateLimitedDispatcher, settings: GoogleShoppingSettings):
        super().__init__(dispatcher, tenant_id=None)
        self.settings = settings

    def _url(self, path: str) -> str:
        return self.settings.search_url

    async def search_products(
        self,
        query: str,
        limit: int = DEFAULT_RESULT_COUNT,
        country: str = DEFAULT_COUNTRY,
    ) -> List[GoogleProduct]:
        body = await self._request(
            "GET",
            "",
            params={
                "engine": "google_shopping",
                "q": query,
                "num": limit,
                "gl": country,
            },
        ) or {}

        if body.get("error"):
            logger.warning(
                "SerpAPI search returned an error",
                extra={"provider": self.provider.value}
            )
            raise ProviderError(200, body["error"], provider=self.provider.value, message=f"SerpAPI error: {body['error']}")

        return [
            GoogleProduct.from_api(item, index)
            for index, item in enumerate(body.get("shopping_results") or [])
        ]
