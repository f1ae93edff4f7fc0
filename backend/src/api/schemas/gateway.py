"""
Response schemas for the gateway routes.

Credential responses carry metadata only; token values never appear here.
"""

from typing import List, Optional

from pydantic import BaseModel


class AuthUrlResponse(BaseModel):
    auth_url: str
    state: str


class CredentialSummary(BaseModel):
    """Safe view of a stored credential (ProviderCredential.to_safe_dict)."""
    provider: str
    tenant_id: Optional[str] = None
    kind: str
    account_name: Optional[str] = None
    has_refresh_token: bool
    issued_at: Optional[str] = None
    expires_at: Optional[str] = None
    refresh_expires_at: Optional[str] = None
    scopes: List[str] = []


class ConnectedResponse(BaseModel):
    status: str = "connected"
    credential: CredentialSummary


class ProviderConfigurationStatus(BaseModel):
    shopify: bool
    etsy: bool
    cj: bool
    ebay: bool
    google_shopping: bool


class ProviderHealthResponse(BaseModel):
    status: str
    environment: str
    providers: ProviderConfigurationStatus
    webhook_missing_secret_policy: str
