"""
Shared plumbing for provider clients.

Clients build RequestSpecs and hand them to the RateLimitedDispatcher; they
own no retry, pacing or token logic. Responses are mapped into dataclasses
whose optional fields carry an explicit default policy, documented once per
entity.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Optional, TypeVar

from src.gateway.dispatcher import ParsedResponse, RateLimitedDispatcher, RequestSpec
from src.gateway.errors import MalformedResponse
from src.models.provider_credential import ProviderType

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PaginatedResult(Generic[T]):
    """One page of results plus the provider-reported total, when known."""
    items: List[T]
    page: int
    limit: int
    total: Optional[int] = None

    @property
    def total_pages(self) -> Optional[int]:
        if self.total is None or self.limit <= 0:
            return None
        return math.ceil(self.total / self.limit)


@dataclass
class SyncItemResult:
    """Outcome of one item in a bulk inventory sync."""
    sku: Optional[str]
    success: bool
    error: Optional[str] = None
    listing_id: Optional[int] = None


@dataclass
class SyncResult:
    """Outcome of a bulk inventory sync. One failing item never aborts the rest."""
    results: List[SyncItemResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results)

    @property
    def failed(self) -> List[SyncItemResult]:
        return [r for r in self.results if not r.success]


class ProviderClient:
    """Base class for provider API clients."""

    provider: ProviderType
    base_url: str = ""

    def __init__(self, dispatcher: RateLimitedDispatcher, tenant_id: Optional[str] = None):
        self.dispatcher = dispatcher
        self.tenant_id = tenant_id

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _default_headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}

    async def _send(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        deadline: Optional[float] = None,
    ) -> ParsedResponse:
        request_headers = self._default_headers()
        if headers:
            request_headers.update(headers)

        spec = RequestSpec(
            method=method,
            url=self._url(path),
            params={k: v for k, v in (params or {}).items() if v is not None} or None,
            json=json,
            data=data,
            headers=request_headers,
        )
        return await self.dispatcher.send(self.tenant_id, self.provider, spec, deadline=deadline)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send and return the parsed JSON body."""
        response = await self._send(method, path, **kwargs)
        return response.data

    def _require_key(self, body: Any, key: str) -> Any:
        """Return body[key] or raise MalformedResponse if the envelope is wrong."""
        if not isinstance(body, dict) or key not in body:
            raise MalformedResponse(
                f"{self.provider.value} response is missing '{key}'",
                provider=self.provider.value,
            )
        return body[key]
