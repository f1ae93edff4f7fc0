"""
TokenManager - valid access tokens per (tenant, provider), with single-flight refresh.

State machine per credential key:

    Unauthenticated -> Valid -> (expiring) -> RefreshPending -> Valid
                                                            +-> Unauthenticated (AuthExpired)

Only RefreshPending queues callers. While a refresh for a key is in flight,
every other caller for that key awaits the same asyncio.Task; callers for
other keys are never blocked.

SECURITY REQUIREMENTS:
- Tokens are never logged; audit events carry provider/tenant/account_name only
- A rejected refresh token clears the stored credential
- A network failure during refresh keeps the stored credential

Usage:
    manager = TokenManager(store, refreshers)
    token = await manager.get_valid_token("tenant-1", ProviderType.ETSY)

    # after a 401 from the provider
    token = await manager.force_refresh("tenant-1", ProviderType.ETSY, rejected_token=token)
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from src.credentials.redaction import AuditEventType, CredentialAuditLogger
from src.credentials.refreshers import TokenRefresher
from src.credentials.store import CredentialStore
from src.gateway.errors import (
    AuthExpired,
    AuthRejected,
    GatewayError,
    NotConfigured,
)
from src.models.provider_credential import (
    CredentialKey,
    CredentialKind,
    ProviderCredential,
    ProviderType,
)

logger = logging.getLogger(__name__)

# Refresh this long before the provider-reported expiry
DEFAULT_SAFETY_MARGIN = timedelta(minutes=5)

# Credentials shared by every tenant in the process
PROCESS_WIDE_PROVIDERS = frozenset({
    ProviderType.CJ,
    ProviderType.EBAY,
    ProviderType.GOOGLE_SHOPPING,
})

# Kinds that can be (re)acquired without user interaction
NON_INTERACTIVE_KINDS = frozenset({
    CredentialKind.OAUTH2_REFRESHABLE,
    CredentialKind.CLIENT_CREDENTIALS,
})

CredentialCheck = Callable[[Optional[ProviderCredential]], bool]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenManager:
    """
    Owns credential reads, refreshes and replacement for every provider.

    Provider clients never read credentials directly; they go through the
    RateLimitedDispatcher, which asks this class for a token.
    """

    def __init__(
        self,
        store: CredentialStore,
        refreshers: Dict[ProviderType, TokenRefresher],
        safety_margin: timedelta = DEFAULT_SAFETY_MARGIN,
        clock: Optional[Callable[[], datetime]] = None,
        audit: Optional[CredentialAuditLogger] = None,
    ):
        self.store = store
        self.refreshers = refreshers
        self.safety_margin = safety_margin
        self._clock = clock or _utcnow
        self.audit = audit or CredentialAuditLogger()

        # Only keys with a refresh in progress
        self._in_flight: Dict[CredentialKey, "asyncio.Task[ProviderCredential]"] = {}

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @staticmethod
    def credential_key(tenant_id: Optional[str], provider: ProviderType) -> CredentialKey:
        """Normalize process-wide providers to tenant_id=None."""
        if provider in PROCESS_WIDE_PROVIDERS:
            return CredentialKey(None, provider)
        return CredentialKey(tenant_id, provider)

    def _refresher_for(self, provider: ProviderType) -> TokenRefresher:
        refresher = self.refreshers.get(provider)
        if refresher is None:
            raise NotConfigured(f"No token refresher registered for {provider.value}", provider=provider.value)
        return refresher

    def is_refresh_in_flight(self, tenant_id: Optional[str], provider: ProviderType) -> bool:
        return self.credential_key(tenant_id, provider) in self._in_flight

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def get_valid_token(self, tenant_id: Optional[str], provider: ProviderType) -> str:
        """
        Return an access token that is valid for at least the safety margin.

        Raises:
            NotConfigured: No credential and no non-interactive way to get one
            AuthExpired: Refresh token rejected; the credential was cleared
            AuthTransientFailure: Network failure during refresh; retry later
        """
        key = self.credential_key(tenant_id, provider)
        credential = await self.store.get(key)

        if credential is None:
            refresher = self.refreshers.get(provider)
            if refresher is None or refresher.kind not in NON_INTERACTIVE_KINDS:
                raise NotConfigured(
                    f"No {provider.value} credential configured",
                    provider=provider.value,
                    details={"tenant_id": tenant_id},
                )
            credential = await self._single_flight(key, self._is_usable, operation="authenticate")
            return credential.access_token

        if credential.is_static:
            return credential.access_token

        if self._is_usable(credential):
            self.audit.log(
                event_type=AuditEventType.CREDENTIAL_ACCESSED,
                provider=provider.value,
                tenant_id=key.tenant_id,
                account_name=credential.account_name,
                level=logging.DEBUG,
            )
            return credential.access_token

        credential = await self._single_flight(key, self._is_usable, operation="refresh")
        return credential.access_token

    async def force_refresh(
        self,
        tenant_id: Optional[str],
        provider: ProviderType,
        rejected_token: str,
    ) -> str:
        """
        Replace a token the provider just rejected with HTTP 401.

        If another caller already replaced it, the stored token is returned
        without a new refresh.

        Raises:
            AuthRejected: The token is static and cannot be refreshed
            NotConfigured: The credential was cleared concurrently
            AuthExpired / AuthTransientFailure: as for get_valid_token
        """
        key = self.credential_key(tenant_id, provider)
        credential = await self.store.get(key)

        if credential is None:
            raise NotConfigured(f"No {provider.value} credential configured", provider=provider.value)

        if credential.access_token != rejected_token:
            return credential.access_token

        refresher = self._refresher_for(provider)
        if credential.is_static or not refresher.supports_refresh:
            raise AuthRejected(
                f"{provider.value} rejected a token that cannot be refreshed",
                provider=provider.value,
            )

        def replaced(current: Optional[ProviderCredential]) -> bool:
            return current is not None and current.access_token != rejected_token

        logger.info(
            "Forcing token refresh after rejection",
            extra={"provider": provider.value, "tenant_id": key.tenant_id}
        )
        credential = await self._single_flight(key, replaced, operation="refresh")
        return credential.access_token

    async def exchange_authorization_code(
        self,
        tenant_id: Optional[str],
        provider: ProviderType,
        code: str,
        verifier: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        account_name: Optional[str] = None,
    ) -> ProviderCredential:
        """
        Complete an OAuth authorization-code flow and store the result.

        Raises:
            InvalidGrant: The code is invalid, expired or already used
        """
        key = self.credential_key(tenant_id, provider)
        refresher = self._refresher_for(provider)

        grant = await refresher.exchange_code(
            code,
            self._clock(),
            code_verifier=verifier,
            redirect_uri=redirect_uri,
        )
        credential = ProviderCredential.from_grant(key, refresher.kind, grant, account_name=account_name)
        await self.store.save(credential)

        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_STORED,
            provider=provider.value,
            tenant_id=key.tenant_id,
            account_name=account_name,
            metadata={"action": "authorization_code"},
        )
        return credential

    async def authenticate(self, tenant_id: Optional[str], provider: ProviderType) -> ProviderCredential:
        """
        Run the provider's non-interactive grant (CJ login, eBay client
        credentials) and store the result, replacing any existing credential.
        """
        key = self.credential_key(tenant_id, provider)
        return await self._single_flight(key, lambda current: False, operation="authenticate")

    async def store_static_token(
        self,
        tenant_id: Optional[str],
        provider: ProviderType,
        access_token: str,
        account_name: Optional[str] = None,
    ) -> ProviderCredential:
        """Record a non-expiring bearer token (Shopify Admin token, SerpAPI key)."""
        if not access_token:
            raise NotConfigured(f"Empty {provider.value} token", provider=provider.value)

        key = self.credential_key(tenant_id, provider)
        credential = ProviderCredential(
            provider=provider,
            kind=CredentialKind.STATIC_BEARER,
            access_token=access_token,
            tenant_id=key.tenant_id,
            issued_at=self._clock(),
            account_name=account_name,
        )
        await self.store.save(credential)

        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_STORED,
            provider=provider.value,
            tenant_id=key.tenant_id,
            account_name=account_name,
            metadata={"action": "static_token"},
        )
        return credential

    async def clear(self, tenant_id: Optional[str], provider: ProviderType, revoke: bool = True) -> bool:
        """
        Remove the credential (explicit logout or uninstall).

        When revoke is set the provider is asked to invalidate the token
        first, where it supports that. Returns True if a credential existed.
        """
        key = self.credential_key(tenant_id, provider)
        credential = await self.store.get(key)
        if credential is None:
            return False

        if revoke and provider in self.refreshers:
            await self.refreshers[provider].revoke(credential)

        await self.store.delete(key)
        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_CLEARED,
            provider=provider.value,
            tenant_id=key.tenant_id,
            account_name=credential.account_name,
            metadata={"reason": "logout" if revoke else "uninstall"},
        )
        return True

    # ------------------------------------------------------------------
    # Single-flight refresh
    # ------------------------------------------------------------------

    def _is_usable(self, credential: Optional[ProviderCredential]) -> bool:
        return credential is not None and credential.is_access_token_valid(self._clock(), self.safety_margin)

    async def _single_flight(
        self,
        key: CredentialKey,
        is_satisfied: CredentialCheck,
        operation: str,
    ) -> ProviderCredential:
        """
        Join the in-flight refresh for key, or start one.

        The check and the insert into the in-flight map happen without an
        await in between, so no lock is needed. The task re-reads the stored
        credential first; a caller that lost the race to a refresh that has
        already finished reuses its result instead of refreshing again.
        Finished tasks are removed from the map, so it only holds keys with a
        refresh in progress.
        """
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh_unless_satisfied(key, is_satisfied, operation))
            task.add_done_callback(_consume_task_exception)
            self._in_flight[key] = task

        # shield: a cancelled caller must not cancel the refresh others await
        return await asyncio.shield(task)

    async def _refresh_unless_satisfied(
        self,
        key: CredentialKey,
        is_satisfied: CredentialCheck,
        operation: str,
    ) -> ProviderCredential:
        try:
            current = await self.store.get(key)
            if is_satisfied(current):
                return current
            return await self._run_refresh(key, current, operation)
        finally:
            self._in_flight.pop(key, None)

    async def _run_refresh(
        self,
        key: CredentialKey,
        credential: Optional[ProviderCredential],
        operation: str,
    ) -> ProviderCredential:
        provider = key.provider
        refresher = self._refresher_for(provider)
        now = self._clock()

        try:
            if credential is None or operation == "authenticate":
                grant = await refresher.authenticate(now)
                account_name = credential.account_name if credential else None
                refreshed = ProviderCredential.from_grant(key, refresher.kind, grant, account_name=account_name)
            else:
                grant = await refresher.refresh(credential, now)
                refreshed = credential.with_grant(grant)
        except AuthExpired as e:
            self.audit.log_refresh_failed(provider.value, key.tenant_id, e.kind.value, e.message)
            if credential is not None:
                await self.store.delete(key)
                self.audit.log(
                    event_type=AuditEventType.CREDENTIAL_CLEARED,
                    provider=provider.value,
                    tenant_id=key.tenant_id,
                    account_name=credential.account_name,
                    metadata={"reason": "refresh_rejected"},
                )
            raise
        except GatewayError as e:
            # Transient and malformed failures keep the stored credential
            self.audit.log_refresh_failed(provider.value, key.tenant_id, e.kind.value, e.message)
            raise

        await self.store.save(refreshed)
        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_REFRESHED,
            provider=provider.value,
            tenant_id=key.tenant_id,
            account_name=refreshed.account_name,
            metadata={
                "operation": operation,
                "expires_at": refreshed.expires_at.isoformat() if refreshed.expires_at else None,
            },
        )
        return refreshed


def _consume_task_exception(task: "asyncio.Task") -> None:
    """Mark a failed refresh's exception as retrieved when every waiter was cancelled."""
    if not task.cancelled():
        task.exception()
