"""Helpers for getting gateway components from application state."""

from dataclasses import dataclass

import httpx
from fastapi import HTTPException, Request, status

from src.config.providers import GatewaySettings
from src.credentials.pkce import PendingAuthorizationStore
from src.credentials.token_manager import TokenManager
from src.gateway.dispatcher import RateLimitedDispatcher
from src.gateway.webhooks import WebhookVerifier


@dataclass
class GatewayServices:
    """The wired gateway, stored on app.state.gateway by create_app()."""
    settings: GatewaySettings
    http_client: httpx.AsyncClient
    token_manager: TokenManager
    dispatcher: RateLimitedDispatcher
    verifier: WebhookVerifier
    pending_authorizations: PendingAuthorizationStore


def get_gateway(request: Request) -> GatewayServices:
    """Return the gateway wired into this application."""
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Provider gateway not configured",
        )
    return gateway
