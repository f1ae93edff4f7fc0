"""
Typed error taxonomy for the provider gateway.

Every failure raised by the TokenManager, the RateLimitedDispatcher or the
WebhookVerifier is one of these kinds. Callers branch on ``error.kind`` (or
the subclass), never on the message text.

Kinds:
- not_configured:          no credential present (configuration error)
- auth_expired:            refresh token rejected/expired, re-authenticate
- invalid_grant:           authorization code invalid, expired or reused
- auth_transient_failure:  network failure during refresh, retry later
- rate_limit_exceeded:     retry budget exhausted against 429
- network_exhausted:       retry budget exhausted against transport errors
- auth_rejected:           401 persisted after one forced refresh
- provider_error:          semantic 4xx/5xx, surfaced verbatim
- malformed_response:      2xx body failed to parse
- signature_mismatch:      webhook HMAC rejected
- timeout:                 caller deadline elapsed while still sending

SECURITY: details must never carry token values. Response bodies are
truncated before they are attached.
"""

from enum import Enum
from typing import Any, Optional

MAX_BODY_CHARS = 2000


class ErrorKind(str, Enum):
    """Discriminator for gateway failures."""
    NOT_CONFIGURED = "not_configured"
    AUTH_EXPIRED = "auth_expired"
    INVALID_GRANT = "invalid_grant"
    AUTH_TRANSIENT_FAILURE = "auth_transient_failure"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    NETWORK_EXHAUSTED = "network_exhausted"
    AUTH_REJECTED = "auth_rejected"
    PROVIDER_ERROR = "provider_error"
    MALFORMED_RESPONSE = "malformed_response"
    SIGNATURE_MISMATCH = "signature_mismatch"
    TIMEOUT = "timeout"


class GatewayError(Exception):
    """
    Base gateway error.

    Subclasses fix ``kind`` and ``retryable``. Provider clients may add
    context through ``add_context`` but must not change the kind.
    """

    kind: ErrorKind = ErrorKind.PROVIDER_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.details = details or {}

    def add_context(self, **context: Any) -> "GatewayError":
        """Attach provider-specific context and return self for re-raising."""
        self.details.update(context)
        return self

    def to_dict(self) -> dict:
        """Convert to dictionary for logging and API responses."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "provider": self.provider,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, provider={self.provider!r}, message={self.message!r})"


class NotConfigured(GatewayError):
    """No credential (or provider configuration) is present."""
    kind = ErrorKind.NOT_CONFIGURED


class AuthExpired(GatewayError):
    """Refresh token rejected or expired. The caller must re-authenticate."""
    kind = ErrorKind.AUTH_EXPIRED


class InvalidGrant(GatewayError):
    """Authorization code (or PKCE state) invalid, expired or already consumed."""
    kind = ErrorKind.INVALID_GRANT


class AuthTransientFailure(GatewayError):
    """Network-level failure while refreshing. Retryable by the caller after backoff."""
    kind = ErrorKind.AUTH_TRANSIENT_FAILURE
    retryable = True


class RateLimitExceeded(GatewayError):
    """Retry budget exhausted against HTTP 429. Retryable later, not immediately."""
    kind = ErrorKind.RATE_LIMIT_EXCEEDED
    retryable = True

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        attempts: int = 0,
        retry_after: Optional[float] = None,
    ):
        details: dict[str, Any] = {"attempts": attempts}
        if retry_after is not None:
            details["retry_after_seconds"] = retry_after
        super().__init__(message, provider=provider, details=details)
        self.attempts = attempts
        self.retry_after = retry_after


class NetworkExhausted(GatewayError):
    """Retry budget exhausted against connection failures."""
    kind = ErrorKind.NETWORK_EXHAUSTED
    retryable = True

    def __init__(self, message: str, provider: Optional[str] = None, attempts: int = 0):
        super().__init__(message, provider=provider, details={"attempts": attempts})
        self.attempts = attempts


class AuthRejected(AuthExpired):
    """401 persisted after one forced refresh. Terminal, treated as AuthExpired."""
    kind = ErrorKind.AUTH_REJECTED


class ProviderError(GatewayError):
    """Semantic non-2xx response. Not retried; status and body are preserved."""
    kind = ErrorKind.PROVIDER_ERROR

    def __init__(
        self,
        status_code: int,
        body: str,
        provider: Optional[str] = None,
        message: Optional[str] = None,
    ):
        body = body or ""
        super().__init__(
            message or f"Provider returned HTTP {status_code}",
            provider=provider,
            details={"status_code": status_code, "body": body[:MAX_BODY_CHARS]},
        )
        self.status_code = status_code
        self.body = body


class MalformedResponse(GatewayError):
    """A 2xx body failed to parse. Treated as a provider contract violation."""
    kind = ErrorKind.MALFORMED_RESPONSE


class SignatureMismatch(GatewayError):
    """Inbound webhook signature did not verify."""
    kind = ErrorKind.SIGNATURE_MISMATCH


class GatewayTimeout(GatewayError):
    """The caller's deadline elapsed while the request was still in progress."""
    kind = ErrorKind.TIMEOUT
    retryable = True
