"""
Token endpoint clients, one per provider family.

Each refresher knows how to talk to one provider's token endpoint and turns
the response into a TokenGrant. Refreshers never touch the credential store
and never decide when to refresh; the TokenManager does both.

Families:
- StaticTokenRefresher:  Shopify Admin token, SerpAPI key. Cannot refresh.
- EtsyRefresher:         OAuth2 authorization code + PKCE, form-encoded.
- CJRefresher:           email + API key login, refresh token, logout.
- EbayRefresher:         client-credentials grant with HTTP Basic auth.

Token endpoint classification:
- 400/401 (or any other 4xx), or an invalid_grant error body
    -> AuthExpired (refresh/authenticate) or InvalidGrant (code exchange)
- 429, 5xx, transport errors -> AuthTransientFailure
- 2xx body that is not JSON  -> MalformedResponse

SECURITY: tokens, secrets and verifiers are never logged.
"""

import logging
from abc import ABC
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Type

import httpx

from src.config.providers import EBAY_OAUTH_SCOPE, CJSettings, EbaySettings, EtsySettings
from src.gateway.errors import (
    AuthExpired,
    AuthTransientFailure,
    GatewayError,
    InvalidGrant,
    MalformedResponse,
    NotConfigured,
)
from src.models.provider_credential import (
    CredentialKind,
    ProviderCredential,
    ProviderType,
    TokenGrant,
)

logger = logging.getLogger(__name__)

# Etsy refresh tokens are valid for 90 days from issue
ETSY_REFRESH_TOKEN_LIFETIME = timedelta(days=90)

# CJ documented lifetimes, used when the response omits absolute expiries
CJ_ACCESS_TOKEN_LIFETIME = timedelta(days=15)
CJ_REFRESH_TOKEN_LIFETIME = timedelta(days=180)
CJ_SUCCESS_CODE = 200


class TokenRefresher(ABC):
    """
    Base class for token endpoint clients.

    Subclasses override the operations their provider supports. The
    defaults raise, so an unsupported operation is a typed error rather than
    a silent no-op.
    """

    provider: ProviderType
    kind: CredentialKind

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self.http = http_client

    @property
    def supports_refresh(self) -> bool:
        return False

    async def refresh(self, credential: ProviderCredential, now: datetime) -> TokenGrant:
        """Exchange the credential's refresh token for a new grant."""
        raise AuthExpired(
            f"{self.provider.value} credentials cannot be refreshed. Re-authenticate.",
            provider=self.provider.value,
        )

    async def exchange_code(
        self,
        code: str,
        now: datetime,
        code_verifier: Optional[str] = None,
        redirect_uri: Optional[str] = None,
    ) -> TokenGrant:
        """Exchange an authorization code for a grant."""
        raise InvalidGrant(
            f"{self.provider.value} does not use the authorization-code flow",
            provider=self.provider.value,
        )

    async def authenticate(self, now: datetime) -> TokenGrant:
        """Run the provider's non-interactive grant."""
        raise NotConfigured(
            f"{self.provider.value} has no non-interactive grant",
            provider=self.provider.value,
        )

    async def revoke(self, credential: ProviderCredential) -> None:
        """Invalidate the credential upstream, where the provider supports it."""
        return None

    # ------------------------------------------------------------------
    # Shared token endpoint handling
    # ------------------------------------------------------------------

    async def _call_token_endpoint(
        self,
        url: str,
        rejected_error: Type[GatewayError],
        operation: str,
        **request_kwargs: Any,
    ) -> Dict[str, Any]:
        """
        POST to a token endpoint and classify the outcome.

        Returns:
            Parsed JSON body of a successful response

        Raises:
            rejected_error: Credentials, refresh token or code rejected
            AuthTransientFailure: Network failure, 429 or 5xx
            MalformedResponse: 2xx body that is not a JSON object
        """
        if self.http is None:
            raise NotConfigured("HTTP client not configured", provider=self.provider.value)

        try:
            response = await self.http.post(url, **request_kwargs)
        except httpx.TransportError as e:
            logger.warning(
                "Token endpoint unreachable",
                extra={
                    "provider": self.provider.value,
                    "operation": operation,
                    "error_type": type(e).__name__,
                }
            )
            raise AuthTransientFailure(
                f"{self.provider.value} token endpoint unreachable: {type(e).__name__}",
                provider=self.provider.value,
            ) from e

        status_code = response.status_code
        if status_code == 429 or status_code >= 500:
            logger.warning(
                "Token endpoint temporarily failing",
                extra={"provider": self.provider.value, "operation": operation, "status_code": status_code}
            )
            raise AuthTransientFailure(
                f"{self.provider.value} token endpoint returned HTTP {status_code}",
                provider=self.provider.value,
                details={"status_code": status_code},
            )

        if status_code >= 400:
            error_code = _error_code(response)
            logger.warning(
                "Token endpoint rejected request",
                extra={
                    "provider": self.provider.value,
                    "operation": operation,
                    "status_code": status_code,
                    "error_code": error_code,
                }
            )
            raise rejected_error(
                f"{self.provider.value} token endpoint rejected {operation} (HTTP {status_code})",
                provider=self.provider.value,
                details={"status_code": status_code, "error_code": error_code},
            )

        try:
            body = response.json()
        except ValueError as e:
            raise MalformedResponse(
                f"{self.provider.value} token endpoint returned a non-JSON body",
                provider=self.provider.value,
                details={"status_code": status_code},
            ) from e

        if not isinstance(body, dict):
            raise MalformedResponse(
                f"{self.provider.value} token endpoint returned an unexpected body",
                provider=self.provider.value,
            )

        if body.get("error") == "invalid_grant":
            raise rejected_error(
                f"{self.provider.value} token endpoint returned invalid_grant",
                provider=self.provider.value,
                details={"error_code": "invalid_grant"},
            )

        return body

    def _require_field(self, body: Dict[str, Any], field_name: str) -> Any:
        value = body.get(field_name)
        if not value:
            raise MalformedResponse(
                f"{self.provider.value} token response is missing {field_name}",
                provider=self.provider.value,
            )
        return value


def _error_code(response: httpx.Response) -> Optional[str]:
    """Best-effort OAuth error code from an error response, never the full body."""
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        code = body.get("error") or body.get("code")
        return str(code) if code is not None else None
    return None


def _parse_expiry(value: Optional[str]) -> Optional[datetime]:
    """Parse an absolute expiry timestamp (ISO 8601, optionally with Z)."""
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ============================================================================
# Provider-Specific Implementations
# ============================================================================

class StaticTokenRefresher(TokenRefresher):
    """
    Shopify Admin API tokens and SerpAPI keys do not expire and cannot be
    refreshed. A rejected static token means the configuration is wrong.
    """

    kind = CredentialKind.STATIC_BEARER

    def __init__(self, provider: ProviderType):
        super().__init__(http_client=None)
        self.provider = provider


class EtsyRefresher(TokenRefresher):
    """Etsy Open API v3 OAuth2 (authorization code with PKCE)."""

    provider = ProviderType.ETSY
    kind = CredentialKind.OAUTH2_PKCE

    def __init__(self, http_client: httpx.AsyncClient, settings: EtsySettings):
        super().__init__(http_client)
        self.settings = settings

    @property
    def supports_refresh(self) -> bool:
        return True

    def _require_client_id(self) -> str:
        if not self.settings.api_key:
            raise NotConfigured("ETSY_API_KEY is not configured", provider=self.provider.value)
        return self.settings.api_key

    def _grant_from_body(self, body: Dict[str, Any], now: datetime) -> TokenGrant:
        scope = body.get("scope")
        return TokenGrant.from_expires_in(
            access_token=self._require_field(body, "access_token"),
            now=now,
            expires_in=body.get("expires_in", 3600),
            refresh_token=body.get("refresh_token"),
            refresh_lifetime=ETSY_REFRESH_TOKEN_LIFETIME,
            scopes=tuple(scope.split()) if isinstance(scope, str) else (),
        )

    async def exchange_code(
        self,
        code: str,
        now: datetime,
        code_verifier: Optional[str] = None,
        redirect_uri: Optional[str] = None,
    ) -> TokenGrant:
        if not code_verifier:
            raise InvalidGrant("Etsy code exchange requires a PKCE code_verifier", provider=self.provider.value)

        body = await self._call_token_endpoint(
            self.settings.token_url,
            rejected_error=InvalidGrant,
            operation="exchange_code",
            data={
                "grant_type": "authorization_code",
                "client_id": self._require_client_id(),
                "redirect_uri": redirect_uri or self.settings.redirect_uri,
                "code": code,
                "code_verifier": code_verifier,
            },
        )
        return self._grant_from_body(body, now)

    async def refresh(self, credential: ProviderCredential, now: datetime) -> TokenGrant:
        if not credential.is_refresh_token_valid(now):
            raise AuthExpired("Etsy refresh token is missing or expired", provider=self.provider.value)

        body = await self._call_token_endpoint(
            self.settings.token_url,
            rejected_error=AuthExpired,
            operation="refresh",
            data={
                "grant_type": "refresh_token",
                "client_id": self._require_client_id(),
                "refresh_token": credential.refresh_token,
            },
        )
        return self._grant_from_body(body, now)


class CJRefresher(TokenRefresher):
    """
    CJ Dropshipping API 2.0 authentication.

    Access tokens last 15 days and refresh tokens 180 days, both reported as
    absolute timestamps. Responses use the CJ envelope
    {result, code, message, data}; code 200 is success.
    """

    provider = ProviderType.CJ
    kind = CredentialKind.OAUTH2_REFRESHABLE

    def __init__(self, http_client: httpx.AsyncClient, settings: CJSettings):
        super().__init__(http_client)
        self.settings = settings

    @property
    def supports_refresh(self) -> bool:
        return True

    def _url(self, path: str) -> str:
        return f"{self.settings.api_base_url}{path}"

    def _grant_from_envelope(
        self,
        envelope: Dict[str, Any],
        now: datetime,
        rejected_error: Type[GatewayError],
    ) -> TokenGrant:
        if not envelope.get("result") or envelope.get("code") != CJ_SUCCESS_CODE or not envelope.get("data"):
            raise rejected_error(
                envelope.get("message") or "CJ authentication rejected",
                provider=self.provider.value,
                details={"cj_code": envelope.get("code")},
            )

        data = envelope["data"]
        return TokenGrant(
            access_token=self._require_field(data, "accessToken"),
            issued_at=now,
            expires_at=_parse_expiry(data.get("accessTokenExpiryDate")) or now + CJ_ACCESS_TOKEN_LIFETIME,
            refresh_token=data.get("refreshToken"),
            refresh_expires_at=(
                _parse_expiry(data.get("refreshTokenExpiryDate")) or now + CJ_REFRESH_TOKEN_LIFETIME
            ),
        )

    async def authenticate(self, now: datetime) -> TokenGrant:
        if not self.settings.is_configured:
            raise NotConfigured("CJ_EMAIL and CJ_API_KEY are not configured", provider=self.provider.value)

        envelope = await self._call_token_endpoint(
            self._url("/authentication/getAccessToken"),
            rejected_error=AuthExpired,
            operation="authenticate",
            json={"email": self.settings.email, "password": self.settings.api_key},
        )
        return self._grant_from_envelope(envelope, now, AuthExpired)

    async def refresh(self, credential: ProviderCredential, now: datetime) -> TokenGrant:
        if credential.is_refresh_token_valid(now):
            try:
                envelope = await self._call_token_endpoint(
                    self._url("/authentication/refreshAccessToken"),
                    rejected_error=AuthExpired,
                    operation="refresh",
                    json={"refreshToken": credential.refresh_token},
                )
                return self._grant_from_envelope(envelope, now, AuthExpired)
            except AuthExpired:
                if not self.settings.is_configured:
                    raise
                logger.info(
                    "CJ refresh token rejected, re-authenticating with API key",
                    extra={"provider": self.provider.value}
                )

        if not self.settings.is_configured:
            raise AuthExpired("CJ refresh token expired and no API key configured", provider=self.provider.value)

        return await self.authenticate(now)

    async def revoke(self, credential: ProviderCredential) -> None:
        if self.http is None:
            return None
        try:
            response = await self.http.post(
                self._url("/authentication/logout"),
                headers={"CJ-Access-Token": credential.access_token},
            )
        except httpx.TransportError as e:
            logger.warning(
                "CJ logout failed, clearing local credential anyway",
                extra={"provider": self.provider.value, "error_type": type(e).__name__}
            )
            return None

        if response.status_code >= 400:
            logger.warning(
                "CJ logout returned an error, clearing local credential anyway",
                extra={"provider": self.provider.value, "status_code": response.status_code}
            )


class EbayRefresher(TokenRefresher):
    """
    eBay application token via the client-credentials grant.

    There is no refresh token; "refreshing" re-runs the grant.
    """

    provider = ProviderType.EBAY
    kind = CredentialKind.CLIENT_CREDENTIALS

    def __init__(self, http_client: httpx.AsyncClient, settings: EbaySettings, scope: Optional[str] = None):
        super().__init__(http_client)
        self.settings = settings
        self.scope = scope or EBAY_OAUTH_SCOPE

    @property
    def supports_refresh(self) -> bool:
        return True

    async def authenticate(self, now: datetime) -> TokenGrant:
        if not self.settings.is_configured:
            raise NotConfigured(
                "EBAY_CLIENT_ID and EBAY_CLIENT_SECRET are not configured",
                provider=self.provider.value,
            )

        body = await self._call_token_endpoint(
            self.settings.token_url,
            rejected_error=AuthExpired,
            operation="authenticate",
            data={"grant_type": "client_credentials", "scope": self.scope},
            auth=httpx.BasicAuth(self.settings.client_id, self.settings.client_secret),
        )
        return TokenGrant.from_expires_in(
            access_token=self._require_field(body, "access_token"),
            now=now,
            expires_in=body.get("expires_in", 7200),
            scopes=(self.scope,),
        )

    async def refresh(self, credential: ProviderCredential, now: datetime) -> TokenGrant:
        return await self.authenticate(now)
