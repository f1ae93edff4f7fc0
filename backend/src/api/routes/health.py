from fastapi import APIRouter, Depends

from src.api.dependencies.gateway import GatewayServices, get_gateway
from src.api.schemas.gateway import ProviderHealthResponse

router = APIRouter()

@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/api/health/providers", response_model=ProviderHealthResponse)
async def providers(gateway: GatewayServices = Depends(get_gateway)):
    """Which providers have the configuration they need. Never exposes secrets."""
    settings = gateway.settings
    return {
        "status": "ok",
        "environment": settings.app_env,
        "providers": {
            "shopify": settings.shopify.is_configured,
            "etsy": settings.etsy.is_configured,
            "cj": settings.cj.is_configured,
            "ebay": settings.ebay.is_configured,
            "google_shopping": settings.google_shopping.is_configured,
        },
        "webhook_missing_secret_policy": settings.webhooks.missing_secret_policy.value,
    }
