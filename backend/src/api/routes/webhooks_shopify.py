"""
Shopify webhook handlers for order, product and app lifecycle events.

SECURITY:
- All webhooks MUST verify the HMAC signature over the raw body, before the
  payload is parsed or any handler runs
- No authentication middleware (webhooks are from Shopify, not users)
- tenant_id is derived from the X-Shopify-Shop-Domain header, never from payload

Responses:
- 401 {"status": "rejected"}: signature did not verify
- 200 {"status": "processed"}: handler completed
- 200 {"status": "error"}: handler failed; acknowledged so Shopify does not retry
"""

import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse

from src.api.dependencies.gateway import GatewayServices, get_gateway
from src.config.providers import normalize_store_domain
from src.models.provider_credential import ProviderType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/shopify", tags=["webhooks"])

TopicHandler = Callable[[GatewayServices, str, Dict[str, Any]], Awaitable[None]]


async def handle_order_created(gateway: GatewayServices, shop_domain: str, payload: Dict[str, Any]) -> None:
    logger.info("Shopify order created", extra={
        "shop_domain": shop_domain,
        "order_id": payload.get("id"),
        "order_number": payload.get("order_number"),
    })


async def handle_order_updated(gateway: GatewayServices, shop_domain: str, payload: Dict[str, Any]) -> None:
    awaiting_fulfillment = (
        payload.get("financial_status") == "paid" and payload.get("fulfillment_status") is None
    )
    logger.info("Shopify order updated", extra={
        "shop_domain": shop_domain,
        "order_id": payload.get("id"),
        "financial_status": payload.get("financial_status"),
        "awaiting_fulfillment": awaiting_fulfillment,
    })


async def handle_product_updated(gateway: GatewayServices, shop_domain: str, payload: Dict[str, Any]) -> None:
    logger.info("Shopify product updated", extra={
        "shop_domain": shop_domain,
        "product_id": payload.get("id"),
    })


async def handle_app_uninstalled(gateway: GatewayServices, shop_domain: str, payload: Dict[str, Any]) -> None:
    """The store's token is already invalid; drop it without calling Shopify."""
    cleared = await gateway.token_manager.clear(shop_domain, ProviderType.SHOPIFY, revoke=False)
    logger.info("Shopify app uninstalled", extra={
        "shop_domain": shop_domain,
        "credential_cleared": cleared,
    })


# Looked up per request so deployments and tests can replace a handler
TOPIC_HANDLERS: Dict[str, TopicHandler] = {
    "orders/create": handle_order_created,
    "orders/updated": handle_order_updated,
    "products/update": handle_product_updated,
    "app/uninstalled": handle_app_uninstalled,
}


async def process_webhook(
    request: Request,
    gateway: GatewayServices,
    topic: str,
    shop_domain: Optional[str],
    signature: Optional[str],
) -> JSONResponse:
    """Verify, parse and dispatch one webhook delivery."""
    body = await request.body()

    if not gateway.verifier.verify(body, signature, gateway.settings.shopify.webhook_secret):
        logger.warning("Invalid webhook signature", extra={
            "topic": topic,
            "shop_domain": shop_domain,
            "path": request.url.path,
            "signature_present": signature is not None,
        })
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"status": "rejected"})

    tenant_id = normalize_store_domain(shop_domain) if shop_domain else gateway.settings.shopify.store_domain

    try:
        payload = json.loads(body) if body else {}
        await TOPIC_HANDLERS[topic](gateway, tenant_id, payload)
    except Exception as e:
        logger.error("Failed to process Shopify webhook", extra={
            "topic": topic,
            "shop_domain": tenant_id,
            "error_type": type(e).__name__,
        })
        # Return 200 to prevent Shopify retries for processing errors
        # (we've received and logged the webhook)
        return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "error"})

    return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "processed"})


@router.post("/orders/create")
async def orders_create(
    request: Request,
    gateway: GatewayServices = Depends(get_gateway),
    x_shopify_shop_domain: Optional[str] = Header(None, alias="X-Shopify-Shop-Domain"),
    x_shopify_hmac_sha256: Optional[str] = Header(None, alias="X-Shopify-Hmac-Sha256"),
):
    """Handle orders/create webhook."""
    return await process_webhook(request, gateway, "orders/create", x_shopify_shop_domain, x_shopify_hmac_sha256)


@router.post("/orders/updated")
async def orders_updated(
    request: Request,
    gateway: GatewayServices = Depends(get_gateway),
    x_shopify_shop_domain: Optional[str] = Header(None, alias="X-Shopify-Shop-Domain"),
    x_shopify_hmac_sha256: Optional[str] = Header(None, alias="X-Shopify-Hmac-Sha256"),
):
    """Handle orders/updated webhook (payment and fulfillment status changes)."""
    return await process_webhook(request, gateway, "orders/updated", x_shopify_shop_domain, x_shopify_hmac_sha256)


@router.post("/products/update")
async def products_update(
    request: Request,
    gateway: GatewayServices = Depends(get_gateway),
    x_shopify_shop_domain: Optional[str] = Header(None, alias="X-Shopify-Shop-Domain"),
    x_shopify_hmac_sha256: Optional[str] = Header(None, alias="X-Shopify-Hmac-Sha256"),
):
    """Handle products/update webhook."""
    return await process_webhook(request, gateway, "products/update", x_shopify_shop_domain, x_shopify_hmac_sha256)


@router.post("/app/uninstalled")
async def app_uninstalled(
    request: Request,
    gateway: GatewayServices = Depends(get_gateway),
    x_shopify_shop_domain: Optional[str] = Header(None, alias="X-Shopify-Shop-Domain"),
    x_shopify_hmac_sha256: Optional[str] = Header(None, alias="X-Shopify-Hmac-Sha256"),
):
    """
    Handle app/uninstalled webhook.

    MANDATORY for public apps: the store's credential is cleared.
    """
    return await process_webhook(request, gateway, "app/uninstalled", x_shopify_shop_domain, x_shopify_hmac_sha256)
