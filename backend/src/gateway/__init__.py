"""
Provider gateway: typed errors, dispatch policies and inbound webhook
verification.

The dispatcher is imported from src.gateway.dispatcher directly; it depends
on src.credentials, which itself raises the errors defined here.
"""

from src.gateway.errors import (
    AuthExpired,
    AuthRejected,
    AuthTransientFailure,
    ErrorKind,
    GatewayError,
    GatewayTimeout,
    InvalidGrant,
    MalformedResponse,
    NetworkExhausted,
    NotConfigured,
    ProviderError,
    RateLimitExceeded,
    SignatureMismatch,
)
from src.gateway.policies import DEFAULT_POLICIES, PacingScope, ProviderPolicy
from src.gateway.webhooks import MissingSecretPolicy, WebhookVerifier

__all__ = [
    "AuthExpired",
    "AuthRejected",
    "AuthTransientFailure",
    "DEFAULT_POLICIES",
    "ErrorKind",
    "GatewayError",
    "GatewayTimeout",
    "InvalidGrant",
    "MalformedResponse",
    "MissingSecretPolicy",
    "NetworkExhausted",
    "NotConfigured",
    "PacingScope",
    "ProviderError",
    "ProviderPolicy",
    "RateLimitExceeded",
    "SignatureMismatch",
    "WebhookVerifier",
]
