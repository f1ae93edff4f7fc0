"""
Etsy Open API v3 client.

Base URL: https://api.etsy.com/v3
Auth: x-api-key (application keystring) on every request plus an OAuth2
Bearer token obtained with the authorization-code + PKCE flow. Access tokens
last 1 hour and refresh tokens 90 days; TokenManager refreshes them.

Default scopes: transactions_r transactions_w listings_r listings_w shops_r shops_w

Usage:
    client = EtsyClient(dispatcher, settings.etsy, token_manager, pending, tenant_id)

    request = client.start_authorization()
    # redirect the user to request.url; Etsy calls back with code + state
    await client.complete_authorization(state, code)

    receipts = await client.get_shop_receipts(limit=50)
"""

import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence
from urllib.parse import urlencode

from src.config.providers import EtsySettings
from src.credentials.pkce import PendingAuthorizationStore, PKCEChallenge
from src.credentials.token_manager import TokenManager
from src.gateway.dispatcher import RateLimitedDispatcher
from src.gateway.errors import GatewayError, InvalidGrant, NotConfigured
from src.integrations.base import PaginatedResult, ProviderClient, SyncItemResult, SyncResult
from src.integrations.etsy.money import money_to_decimal
from src.models.provider_credential import ProviderCredential, ProviderType

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 25

# Etsy refuses offsets beyond this for receipts
MAX_RECEIPT_OFFSET = 12000


@dataclass
class AuthorizationRequest:
    """Where to send the user, and the state that identifies the flow."""
    url: str
    state: str


def clean_inventory_for_update(inventory: Dict[str, Any]) -> Dict[str, Any]:
    """
    Strip read-only fields from a GET inventory response so it can be PUT back.

    Offering prices come back as Money objects but are written as decimals.
    """
    products = []
    for product in inventory.get("products") or []:
        offerings = []
        for offering in product.get("offerings") or []:
            price = offering.get("price")
            if isinstance(price, dict):
                price = float(money_to_decimal(price))
            offerings.append({
                "quantity": offering.get("quantity", 0),
                "is_enabled": offering.get("is_enabled", True),
                "price": price,
            })
        products.append({
            "sku": product.get("sku"),
            "property_values": [
                {
                    "property_id": pv.get("property_id"),
                    "property_name": pv.get("property_name"),
                    "value_ids": pv.get("value_ids"),
                    "values": pv.get("values"),
                }
                for pv in product.get("property_values") or []
            ],
            "offerings": offerings,
        })

    return {
        "products": products,
        "price_on_property": inventory.get("price_on_property") or [],
        "quantity_on_property": inventory.get("quantity_on_property") or [],
        "sku_on_property": inventory.get("sku_on_property") or [],
    }


class EtsyClient(ProviderClient):
    """Client for the Etsy Open API v3."""

    provider = ProviderType.ETSY

    def __init__(
        self,
        dispatcher: RateLimitedDispatcher,
        settings: EtsySettings,
        token_manager: TokenManager,
        pending_authorizations: PendingAuthorizationStore,
        tenant_id: Optional[str] = None,
    ):
        super().__init__(dispatcher, tenant_id=tenant_id)
        self.settings = settings
        self.token_manager = token_manager
        self.pending_authorizations = pending_authorizations
        self.base_url = settings.api_base_url

    def _default_headers(self) -> Dict[str, str]:
        if not self.settings.api_key:
            raise NotConfigured("ETSY_API_KEY is not configured", provider=self.provider.value)
        return {
            "Accept": "application/json",
            "x-api-key": self.settings.api_key,
        }

    def _shop_id(self, shop_id: Optional[int]) -> Any:
        resolved = shop_id or self.settings.shop_id
        if not resolved:
            raise NotConfigured("No Etsy shop id given and ETSY_SHOP_ID is not configured", provider=self.provider.value)
        return resolved

    # ============================================================================
    # OAuth
    # ============================================================================

    def start_authorization(
        self,
        redirect_uri: Optional[str] = None,
        scopes: Optional[Sequence[str]] = None,
    ) -> AuthorizationRequest:
        """Generate a PKCE challenge, remember it, and build the consent URL."""
        if not self.settings.api_key:
            raise NotConfigured("ETSY_API_KEY is not configured", provider=self.provider.value)

        redirect_uri = redirect_uri or self.settings.redirect_uri
        if not redirect_uri:
            raise NotConfigured("ETSY_REDIRECT_URI is not configured", provider=self.provider.value)

        challenge = PKCEChallenge.generate()
        self.pending_authorizations.add(challenge, self.tenant_id, redirect_uri=redirect_uri)

        query = urlencode({
            "response_type": "code",
            "client_id": self.settings.api_key,
            "redirect_uri": redirect_uri,
            "scope": " ".join(scopes or self.settings.scopes),
            "state": challenge.state,
            "code_challenge": challenge.code_challenge,
            "code_challenge_method": PKCEChallenge.code_challenge_method,
        })
        logger.info(
            "Etsy authorization started",
            extra={"provider": self.provider.value, "tenant_id": self.tenant_id}
        )
        return AuthorizationRequest(url=f"{self.settings.authorize_url}?{query}", state=challenge.state)

    async def complete_authorization(self, state: str, code: str) -> ProviderCredential:
        """
        Finish the flow started by start_authorization.

        Raises:
            InvalidGrant: Unknown, expired or reused state, a state started
                for another tenant, or a code Etsy rejects
        """
        pending = self.pending_authorizations.consume(state)
        if pending.tenant_id != self.tenant_id:
            logger.warning(
                "Etsy authorization state belongs to another tenant",
                extra={"provider": self.provider.value, "tenant_id": self.tenant_id}
            )
            raise InvalidGrant("Authorization state does not belong to this tenant", provider=self.provider.value)

        return await self.token_manager.exchange_authorization_code(
            self.tenant_id,
            self.provider,
            code,
            verifier=pending.challenge.code_verifier,
            redirect_uri=pending.redirect_uri,
        )

    # ============================================================================
    # Receipts (orders)
    # ============================================================================

    async def get_shop_receipts(
        self,
        shop_id: Optional[int] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
        sort_on: Optional[str] = None,
        sort_order: Optional[str] = None,
        min_created: Optional[int] = None,
        max_created: Optional[int] = None,
        min_last_modified: Optional[int] = None,
        max_last_modified: Optional[int] = None,
        was_paid: Optional[bool] = None,
        was_shipped: Optional[bool] = None,
        was_delivered: Optional[bool] = None,
    ) -> PaginatedResult[Dict[str, Any]]:
        """One page of receipts. Requires transactions_r."""
        etsy_limit = min(limit, MAX_PAGE_SIZE)
        body = await self._request(
            "GET",
            f"/application/shops/{self._shop_id(shop_id)}/receipts",
            params={
                "limit": etsy_limit,
                "offset": offset or None,
                "sort_on": sort_on,
                "sort_order": sort_order,
                "min_created": min_created,
                "max_created": max_created,
                "min_last_modified": min_last_modified,
                "max_last_modified": max_last_modified,
                "was_paid": _bool_param(was_paid),
                "was_shipped": _bool_param(was_shipped),
                "was_delivered": _bool_param(was_delivered),
            },
        )
        return self._page(body, offset, etsy_limit)

    async def get_all_shop_receipts(self, shop_id: Optional[int] = None, **filters: Any) -> List[Dict[str, Any]]:
        """
        Page through every receipt, 100 at a time.

        Stops at Etsy's 12,000 offset ceiling.
        """
        filters.pop("limit", None)
        filters.pop("offset", None)
        receipts: List[Dict[str, Any]] = []
        offset = 0

        while offset < MAX_RECEIPT_OFFSET:
            page = await self.get_shop_receipts(shop_id, limit=MAX_PAGE_SIZE, offset=offset, **filters)
            receipts.extend(page.items)
            offset += len(page.items)

            has_more = len(page.items) == MAX_PAGE_SIZE and (page.total is None or len(receipts) < page.total)
            if not has_more:
                break

        return receipts

    async def get_shop_receipt(self, receipt_id: int, shop_id: Optional[int] = None) -> Dict[str, Any]:
        return await self._request("GET", f"/application/shops/{self._shop_id(shop_id)}/receipts/{receipt_id}")

    # ============================================================================
    # Listings
    # ============================================================================

    async def get_listing(self, listing_id: int) -> Dict[str, Any]:
        return await self._request("GET", f"/application/listings/{listing_id}")

    async def get_shop_listings(
        self,
        shop_id: Optional[int] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
        state: Optional[str] = None,
        sort_on: Optional[str] = None,
        sort_order: Optional[str] = None,
    ) -> PaginatedResult[Dict[str, Any]]:
        etsy_limit = min(limit, MAX_PAGE_SIZE)
        body = await self._request(
            "GET",
            f"/application/shops/{self._shop_id(shop_id)}/listings",
            params={
                "limit": etsy_limit,
                "offset": offset or None,
                "state": state,
                "sort_on": sort_on,
                "sort_order": sort_order,
            },
        )
        return self._page(body, offset, etsy_limit)

    async def create_draft_listing(self, listing: Dict[str, Any], shop_id: Optional[int] = None) -> Dict[str, Any]:
        """Create a draft listing. listing carries quantity, title, description, price, who_made, ..."""
        return await self._request(
            "POST",
            f"/application/shops/{self._shop_id(shop_id or listing.get('shop_id'))}/listings",
            json=listing,
        )

    async def update_listing(self, listing_id: int, updates: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("PATCH", f"/application/listings/{listing_id}", json=updates)

    async def delete_listing(self, listing_id: int) -> None:
        await self._request("DELETE", f"/application/listings/{listing_id}")

    # ============================================================================
    # Inventory
    # ============================================================================

    async def get_listing_inventory(self, listing_id: int) -> Dict[str, Any]:
        return await self._request("GET", f"/application/listings/{listing_id}/inventory")

    async def update_listing_inventory(self, listing_id: int, inventory: Dict[str, Any]) -> Dict[str, Any]:
        """Replace the full inventory structure. Read-only fields are stripped first."""
        return await self._request(
            "PUT",
            f"/application/listings/{listing_id}/inventory",
            json=clean_inventory_for_update(inventory),
        )

    async def update_listing_quantity(
        self,
        listing_id: int,
        quantity: int,
        sku: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Set the quantity of every offering, or only those of the product with this SKU."""
        inventory = copy.deepcopy(await self.get_listing_inventory(listing_id))
        for product in inventory.get("products") or []:
            if sku is None or product.get("sku") == sku:
                for offering in product.get("offerings") or []:
                    offering["quantity"] = quantity

        return await self.update_listing_inventory(listing_id, inventory)

    async def sync_inventory(self, updates: Iterable[Dict[str, Any]]) -> SyncResult:
        """
        Apply many quantity updates. Items are {"listing_id", "quantity", "sku"?}.

        Per-item gateway failures are recorded, not raised.
        """
        result = SyncResult()
        for update in updates:
            listing_id = update["listing_id"]
            sku = update.get("sku")
            try:
                await self.update_listing_quantity(listing_id, update["quantity"], sku)
                result.results.append(SyncItemResult(sku=sku, listing_id=listing_id, success=True))
            except GatewayError as e:
                logger.warning(
                    "Etsy inventory sync failed for listing",
                    extra={"provider": self.provider.value, "listing_id": listing_id, "error_kind": e.kind.value}
                )
                result.results.append(
                    SyncItemResult(sku=sku, listing_id=listing_id, success=False, error=e.message)
                )
        return result

    # ============================================================================
    # Helpers
    # ============================================================================

    def _page(self, body: Any, offset: int, limit: int) -> PaginatedResult[Dict[str, Any]]:
        results = self._require_key(body, "results")
        return PaginatedResult(
            items=results,
            page=offset // limit + 1 if limit else 1,
            limit=limit,
            total=body.get("count"),
        )


def _bool_param(value: Optional[bool]) -> Optional[str]:
    if value is None:
        return None
    return "true" if value else "false"
