"""
RateLimitedDispatcher - the single outbound path to every provider API.

For each request:
1. Pace:   under the pacing key's lock, wait until min_interval has passed
           since the previous request (doubled while Shopify reports its
           bucket at or above the throttle ratio, and never before a
           Retry-After block has passed)
2. Issue:  inject the token from TokenManager per the provider policy
3. 429:    sleep Retry-After (capped) or exponential backoff, retry;
           RateLimitExceeded after max_retries retries
4. Network failure: exponential backoff retry; NetworkExhausted after max_retries
5. 401:    one forced refresh and retry, outside the retry budget;
           AuthRejected on a second 401
6. Other non-2xx: ProviderError, no retry
7. 2xx:    JSON body (empty -> None); MalformedResponse if it does not parse

Provider clients own no retry or concurrency logic; they build RequestSpecs
and call send().

SECURITY: tokens and query strings are never logged.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

import httpx

from src.credentials.token_manager import TokenManager
from src.gateway.errors import (
    AuthRejected,
    GatewayTimeout,
    MalformedResponse,
    NetworkExhausted,
    NotConfigured,
    ProviderError,
    RateLimitExceeded,
)
from src.gateway.policies import DEFAULT_POLICIES, ProviderPolicy
from src.models.provider_credential import ProviderType

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0


# =============================================================================
# Request / Response Types
# =============================================================================

@dataclass
class RequestSpec:
    """One outbound request, without credentials."""
    method: str
    url: str
    params: Optional[Dict[str, Any]] = None
    json: Any = None
    data: Optional[Dict[str, Any]] = None
    headers: Optional[Dict[str, str]] = None


@dataclass
class ParsedResponse:
    """A successful provider response."""
    status_code: int
    headers: Mapping[str, str]
    data: Any
    rate_limit: Optional[Tuple[int, int]] = None  # (current, max) when reported


@dataclass
class RateLimitState:
    """Pacing state for one pacing key. Mutated only under lock."""
    last_request_at: Optional[float] = None
    current_usage: Optional[int] = None
    max_usage: Optional[int] = None
    retry_after_hint: Optional[float] = None
    blocked_until: Optional[float] = None
    active: int = 0  # sends currently holding this state
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def usage_ratio(self) -> Optional[float]:
        if self.current_usage is None or not self.max_usage:
            return None
        return self.current_usage / self.max_usage

    def is_idle(self, now: float, min_interval: float) -> bool:
        """True when dropping this state cannot change when the next request goes out."""
        if self.active or self.lock.locked():
            return False
        if self.blocked_until is not None and self.blocked_until > now:
            return False
        # 2x covers the doubled interval under bucket pressure
        return self.last_request_at is None or now >= self.last_request_at + 2 * min_interval


# =============================================================================
# Header Parsing
# =============================================================================

def parse_call_limit(value: Optional[str]) -> Optional[Tuple[int, int]]:
    """Parse a "current/max" usage header, e.g. X-Shopify-Shop-Api-Call-Limit: 32/40."""
    if not value or "/" not in value:
        return None
    current, _, maximum = value.partition("/")
    try:
        return int(current.strip()), int(maximum.strip())
    except ValueError:
        return None


def parse_retry_after(value: Optional[str], now: datetime) -> Optional[float]:
    """
    Parse a Retry-After header.

    Accepts delta-seconds ("2", "1.5") or an HTTP date. Returns seconds from
    now, never negative, or None if absent or unparseable.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at is None:
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max(0.0, (retry_at - now).total_seconds())


# =============================================================================
# Dispatcher
# =============================================================================

class RateLimitedDispatcher:
    """
    Paces, authenticates and retries outbound provider requests.

    clock/sleep are injectable so pacing and backoff can be tested on a
    virtual clock. clock must be monotonic; wall_clock is only used to
    resolve HTTP-date Retry-After values.
    """

    def __init__(
        self,
        token_manager: TokenManager,
        http_client: httpx.AsyncClient,
        policies: Optional[Dict[ProviderType, ProviderPolicy]] = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        wall_clock: Optional[Callable[[], datetime]] = None,
    ):
        self.token_manager = token_manager
        self.http = http_client
        self.policies = policies if policies is not None else dict(DEFAULT_POLICIES)
        self.timeout = httpx.Timeout(request_timeout)
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._wall_clock = wall_clock or (lambda: datetime.now(timezone.utc))
        self._states: Dict[Tuple[str, Optional[str]], RateLimitState] = {}

    def policy_for(self, provider: ProviderType) -> ProviderPolicy:
        policy = self.policies.get(provider)
        if policy is None:
            raise NotConfigured(f"No dispatch policy for {provider.value}", provider=provider.value)
        return policy

    def rate_limit_state(self, tenant_id: Optional[str], provider: ProviderType) -> RateLimitState:
        """Pacing state for the key this (tenant, provider) pair is paced under."""
        key = self.policy_for(provider).pacing_key(tenant_id)
        state = self._states.get(key)
        if state is None:
            self._prune_idle_states()
            state = RateLimitState()
            self._states[key] = state
        return state

    def _prune_idle_states(self) -> None:
        """Forget pacing keys that have gone quiet so per-tenant state stays bounded."""
        now = self._clock()
        for key, state in list(self._states.items()):
            policy = self.policies.get(ProviderType(key[0]))
            if policy is None or state.is_idle(now, policy.min_interval):
                del self._states[key]

    async def send(
        self,
        tenant_id: Optional[str],
        provider: ProviderType,
        spec: RequestSpec,
        deadline: Optional[float] = None,
    ) -> ParsedResponse:
        """
        Send a request with pacing, auth injection and bounded retry.

        Args:
            tenant_id: Tenant whose credential is used (ignored for
                process-wide providers)
            provider: Target provider
            spec: Request to send
            deadline: Optional seconds after which the whole operation,
                including retries, is abandoned

        Raises:
            GatewayTimeout, RateLimitExceeded, NetworkExhausted, AuthRejected,
            ProviderError, MalformedResponse, plus TokenManager errors
        """
        if deadline is None:
            return await self._send(tenant_id, provider, spec)

        try:
            return await asyncio.wait_for(self._send(tenant_id, provider, spec), timeout=deadline)
        except asyncio.TimeoutError:
            logger.warning(
                "Provider request abandoned at caller deadline",
                extra={"provider": provider.value, "method": spec.method, "url": spec.url, "deadline_seconds": deadline}
            )
            raise GatewayTimeout(
                f"{provider.value} request did not complete within {deadline}s",
                provider=provider.value,
                details={"deadline_seconds": deadline},
            )

    async def _send(self, tenant_id: Optional[str], provider: ProviderType, spec: RequestSpec) -> ParsedResponse:
        policy = self.policy_for(provider)
        state = self.rate_limit_state(tenant_id, provider)
        state.active += 1
        try:
            return await self._send_paced(tenant_id, provider, spec, policy, state)
        finally:
            state.active -= 1

    async def _send_paced(
        self,
        tenant_id: Optional[str],
        provider: ProviderType,
        spec: RequestSpec,
        policy: ProviderPolicy,
        state: RateLimitState,
    ) -> ParsedResponse:
        token = await self.token_manager.get_valid_token(tenant_id, provider)

        attempt = 0
        auth_retried = False

        while True:
            await self._pace(policy, state)

            try:
                response = await self._issue(policy, spec, token)
            except httpx.TransportError as e:
                if attempt >= policy.max_retries:
                    logger.error(
                        "Provider unreachable, retries exhausted",
                        extra={
                            "provider": provider.value,
                            "url": spec.url,
                            "attempts": attempt + 1,
                            "error_type": type(e).__name__,
                        }
                    )
                    raise NetworkExhausted(
                        f"{provider.value} unreachable after {attempt + 1} attempts",
                        provider=provider.value,
                        attempts=attempt + 1,
                    ) from e

                delay = policy.calculate_backoff(attempt)
                logger.warning(
                    "Provider request failed, retrying after delay",
                    extra={
                        "provider": provider.value,
                        "url": spec.url,
                        "attempt": attempt + 1,
                        "delay_seconds": delay,
                        "error_type": type(e).__name__,
                    }
                )
                await self._sleep(delay)
                attempt += 1
                continue

            usage = self._record_usage(policy, state, response)
            status_code = response.status_code

            if status_code == 429:
                retry_after = parse_retry_after(response.headers.get("Retry-After"), self._wall_clock())
                if retry_after is not None:
                    state.retry_after_hint = retry_after
                    state.blocked_until = self._clock() + min(retry_after, policy.max_backoff)

                if attempt >= policy.max_retries:
                    logger.error(
                        "Provider rate limit, retries exhausted",
                        extra={"provider": provider.value, "url": spec.url, "attempts": attempt + 1}
                    )
                    raise RateLimitExceeded(
                        f"{provider.value} rate limit exceeded after {attempt + 1} attempts",
                        provider=provider.value,
                        attempts=attempt + 1,
                        retry_after=retry_after,
                    )

                delay = policy.calculate_backoff(attempt, retry_after)
                logger.warning(
                    "Provider rate limited request, retrying after delay",
                    extra={
                        "provider": provider.value,
                        "url": spec.url,
                        "attempt": attempt + 1,
                        "delay_seconds": delay,
                        "retry_after_seconds": retry_after,
                    }
                )
                await self._sleep(delay)
                attempt += 1
                continue

            if status_code == 401:
                if auth_retried:
                    logger.error(
                        "Provider rejected refreshed token",
                        extra={"provider": provider.value, "url": spec.url}
                    )
                    raise AuthRejected(
                        f"{provider.value} rejected the request after a token refresh",
                        provider=provider.value,
                    )
                auth_retried = True
                token = await self.token_manager.force_refresh(tenant_id, provider, rejected_token=token)
                continue

            if not 200 <= status_code < 300:
                logger.warning(
                    "Provider returned an error response",
                    extra={"provider": provider.value, "url": spec.url, "status_code": status_code}
                )
                raise ProviderError(status_code, response.text, provider=provider.value)

            logger.debug(
                "Provider request succeeded",
                extra={
                    "provider": provider.value,
                    "method": spec.method,
                    "url": spec.url,
                    "status_code": status_code,
                    "attempt": attempt + 1,
                }
            )
            return ParsedResponse(
                status_code=status_code,
                headers=response.headers,
                data=self._parse_body(provider, response),
                rate_limit=usage,
            )

    async def _pace(self, policy: ProviderPolicy, state: RateLimitState) -> None:
        async with state.lock:
            now = self._clock()
            interval = policy.min_interval
            ratio = state.usage_ratio
            if policy.usage_throttle_ratio is not None and ratio is not None and ratio >= policy.usage_throttle_ratio:
                interval *= 2

            ready_at = now
            if state.last_request_at is not None:
                ready_at = max(ready_at, state.last_request_at + interval)
            if state.blocked_until is not None:
                ready_at = max(ready_at, state.blocked_until)

            wait = ready_at - now
            if wait > 0:
                await self._sleep(wait)

            state.last_request_at = self._clock()

    async def _issue(self, policy: ProviderPolicy, spec: RequestSpec, token: str) -> httpx.Response:
        headers = dict(spec.headers or {})
        params = dict(spec.params or {})
        policy.apply_auth(headers, params, token)

        return await self.http.request(
            spec.method,
            spec.url,
            params=params or None,
            json=spec.json,
            data=spec.data,
            headers=headers,
            timeout=self.timeout,
        )

    @staticmethod
    def _record_usage(
        policy: ProviderPolicy,
        state: RateLimitState,
        response: httpx.Response,
    ) -> Optional[Tuple[int, int]]:
        if not policy.rate_limit_header:
            return None
        usage = parse_call_limit(response.headers.get(policy.rate_limit_header))
        if usage is not None:
            state.current_usage, state.max_usage = usage
        return usage

    @staticmethod
    def _parse_body(provider: ProviderType, response: httpx.Response) -> Any:
        if not response.content.strip():
            return None
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponse(
                f"{provider.value} returned a body that is not valid JSON",
                provider=provider.value,
                details={"status_code": response.status_code, "content_type": response.headers.get("content-type")},
            ) from e
