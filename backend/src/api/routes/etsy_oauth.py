"""
Etsy OAuth2 + PKCE connect flow.

GET /etsy/auth-url   start a flow, return the consent URL and state
GET /etsy/callback   Etsy redirects here with code + state; the code is
                     exchanged and the credential stored for the tenant that
                     started the flow

tenant_id is supplied by the caller's session layer (outside this package);
the callback recovers it from the pending state, never from Etsy's query.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from src.api.dependencies.gateway import GatewayServices, get_gateway
from src.api.schemas.gateway import AuthUrlResponse, ConnectedResponse
from src.gateway.errors import InvalidGrant
from src.integrations.etsy.client import EtsyClient
from src.platform.errors import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/etsy", tags=["etsy"])


def _client(gateway: GatewayServices, tenant_id: Optional[str]) -> EtsyClient:
    return EtsyClient(
        gateway.dispatcher,
        gateway.settings.etsy,
        gateway.token_manager,
        gateway.pending_authorizations,
        tenant_id=tenant_id,
    )


@router.get("/auth-url", response_model=AuthUrlResponse)
async def get_auth_url(
    tenant_id: str = Query(..., min_length=1),
    redirect_uri: Optional[str] = Query(None),
    gateway: GatewayServices = Depends(get_gateway),
):
    """Start the PKCE flow. The code verifier never leaves the server."""
    request = _client(gateway, tenant_id).start_authorization(redirect_uri=redirect_uri)
    return {"auth_url": request.url, "state": request.state}


@router.get("/callback", response_model=ConnectedResponse)
async def oauth_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    gateway: GatewayServices = Depends(get_gateway),
):
    """Exchange the authorization code for tokens."""
    if error:
        logger.warning("Etsy authorization denied", extra={"provider": "etsy", "oauth_error": error})
        raise ValidationError("Etsy authorization was not granted", {"oauth_error": error})
    if not code or not state:
        raise ValidationError("Missing authorization code or state")

    pending = gateway.pending_authorizations.peek(state)
    if pending is None:
        raise InvalidGrant("Unknown or already used authorization state", provider="etsy")

    credential = await _client(gateway, pending.tenant_id).complete_authorization(state, code)
    logger.info(
        "Etsy connected",
        extra={"provider": "etsy", "tenant_id": pending.tenant_id}
    )
    return {"status": "connected", "credential": credential.to_safe_dict()}
