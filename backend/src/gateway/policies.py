"""
Per-provider dispatch policies.

A ProviderPolicy fixes how the RateLimitedDispatcher paces, retries and
authenticates requests for one provider. Policies are constants; tests and
deployments may pass their own registry.

Pacing scope:
- PROVIDER: one pacing state shared by every tenant (Shopify store, CJ
  account, eBay application token and SerpAPI key are process-wide quotas)
- TENANT:   one pacing state per (tenant, provider) (Etsy quotas are per
  OAuth application user)
"""

import random
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from src.models.provider_credential import ProviderType


class PacingScope(str, Enum):
    PROVIDER = "provider"
    TENANT = "tenant"


@dataclass(frozen=True)
class ProviderPolicy:
    """Pacing, retry and auth-injection constants for one provider."""
    provider: ProviderType
    min_interval: float
    max_retries: int = 3
    base_backoff: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff: float = 30.0
    jitter_factor: float = 0.0
    honor_retry_after: bool = True
    pacing_scope: PacingScope = PacingScope.PROVIDER

    # Shopify reports "current/max" bucket usage; at or above this ratio the
    # pacing interval is doubled
    usage_throttle_ratio: Optional[float] = None
    rate_limit_header: Optional[str] = None

    # Where the token goes: a header (optionally with a scheme prefix) or a
    # query parameter
    auth_header: Optional[str] = "Authorization"
    auth_scheme: Optional[str] = "Bearer"
    auth_query_param: Optional[str] = None

    def calculate_backoff(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Delay before the next attempt.

        Args:
            attempt: Current attempt number (0-indexed)
            retry_after: Retry-After header value in seconds, if any

        Returns:
            Delay in seconds, never above max_backoff
        """
        if retry_after is not None and self.honor_retry_after:
            return max(0.0, min(retry_after, self.max_backoff))

        base_delay = self.base_backoff * (self.backoff_multiplier ** attempt)
        jitter = random.uniform(0, base_delay * self.jitter_factor) if self.jitter_factor else 0.0
        return min(base_delay + jitter, self.max_backoff)

    def pacing_key(self, tenant_id: Optional[str]) -> Tuple[str, Optional[str]]:
        if self.pacing_scope == PacingScope.TENANT:
            return (self.provider.value, tenant_id)
        return (self.provider.value, None)

    def apply_auth(self, headers: Dict[str, str], params: Dict[str, str], token: str) -> None:
        """Inject the token into headers or params in place."""
        if self.auth_query_param:
            params[self.auth_query_param] = token
            return
        if self.auth_header:
            headers[self.auth_header] = f"{self.auth_scheme} {token}" if self.auth_scheme else token


SHOPIFY_POLICY = ProviderPolicy(
    provider=ProviderType.SHOPIFY,
    min_interval=0.5,
    pacing_scope=PacingScope.PROVIDER,
    usage_throttle_ratio=0.9,
    rate_limit_header="X-Shopify-Shop-Api-Call-Limit",
    auth_header="X-Shopify-Access-Token",
    auth_scheme=None,
)

ETSY_POLICY = ProviderPolicy(
    provider=ProviderType.ETSY,
    min_interval=0.1,
    pacing_scope=PacingScope.TENANT,
)

CJ_POLICY = ProviderPolicy(
    provider=ProviderType.CJ,
    min_interval=1.0,
    pacing_scope=PacingScope.PROVIDER,
    auth_header="CJ-Access-Token",
    auth_scheme=None,
)

EBAY_POLICY = ProviderPolicy(
    provider=ProviderType.EBAY,
    min_interval=0.2,
    pacing_scope=PacingScope.PROVIDER,
)

GOOGLE_SHOPPING_POLICY = ProviderPolicy(
    provider=ProviderType.GOOGLE_SHOPPING,
    min_interval=1.0,
    pacing_scope=PacingScope.PROVIDER,
    auth_header=None,
    auth_scheme=None,
    auth_query_param="api_key",
)

DEFAULT_POLICIES: Dict[ProviderType, ProviderPolicy] = {
    policy.provider: policy
    for policy in (SHOPIFY_POLICY, ETSY_POLICY, CJ_POLICY, EBAY_POLICY, GOOGLE_SHOPPING_POLICY)
}
