"""
Credential redaction and audit logging utilities.

SECURITY REQUIREMENTS:
- Tokens NEVER appear in logs (access_token, refresh_token, client secrets,
  PKCE code verifiers, webhook shared secrets)
- ALLOWED in logs per PII policy: account_name, shop_name, store_name
- All credential lifecycle operations logged for audit trail

Audit Events:
- credential.stored
- credential.refreshed
- credential.refresh_failed
- credential.cleared
- credential.accessed

Usage:
    from src.credentials.redaction import CredentialAuditLogger, AuditEventType

    audit = CredentialAuditLogger()
    audit.log(
        event_type=AuditEventType.CREDENTIAL_STORED,
        provider="etsy",
        tenant_id="tenant-1",
        account_name="My Shop",
    )
"""

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

REDACTED_VALUE = "[REDACTED]"

AUDIT_LOGGER_NAME = "credentials.audit"


class AuditEventType(str, Enum):
    """Credential audit event types."""
    CREDENTIAL_STORED = "credential.stored"
    CREDENTIAL_REFRESHED = "credential.refreshed"
    CREDENTIAL_REFRESH_FAILED = "credential.refresh_failed"
    CREDENTIAL_CLEARED = "credential.cleared"
    CREDENTIAL_ACCESSED = "credential.accessed"


# Token-shaped values that must never survive into a log line
CREDENTIAL_SECRET_PATTERNS = [
    re.compile(r"shpat_[a-fA-F0-9]+"),  # Shopify Admin API access tokens
    re.compile(r"shpss_[a-zA-Z0-9]+"),  # Shopify shared secrets
    re.compile(r"(?i)bearer\s+[A-Za-z0-9._~+/=-]+"),
    re.compile(r"Basic [A-Za-z0-9+/]{16,}={0,2}"),
    re.compile(
        r"(?i)((?:access_token|refresh_token|client_secret|code_verifier|api_key|password)"
        r"[\"']?\s*[:=]\s*[\"']?)[^\s\"'&,}]+"
    ),
    re.compile(r"\beyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*"),  # JWT-shaped (CJ tokens)
]

# Key-name fragments that mark a secret regardless of the value
SECRET_KEY_FRAGMENTS = (
    "token", "secret", "credential", "authorization", "bearer",
    "api_key", "apikey", "password", "verifier", "hmac", "signature",
)

# Key names that are allowed through unredacted per PII policy
ALLOWED_KEYS = ("account_name", "shop_name", "store_name")


def is_credential_secret_key(key: str) -> bool:
    """
    Check if a key name indicates a credential secret.

    Args:
        key: The key name to check

    Returns:
        True if the key likely contains a secret
    """
    key_lower = key.lower()
    return any(fragment in key_lower for fragment in SECRET_KEY_FRAGMENTS)


def redact_credential_value(value: Any) -> Any:
    """
    Redact token-shaped substrings from a string value.

    Non-string values are returned unchanged.
    """
    if not isinstance(value, str):
        return value

    result = value
    for pattern in CREDENTIAL_SECRET_PATTERNS:
        if pattern.groups:
            result = pattern.sub(lambda m: m.group(1) + REDACTED_VALUE, result)
        else:
            result = pattern.sub(REDACTED_VALUE, result)
    return result


def redact_credential_data(data: Any, _depth: int = 0) -> Any:
    """
    Recursively redact credential secrets from a data structure.

    SECURITY:
    - Always use this before logging credential-related data
    - account_name, shop_name and store_name are NOT redacted

    Usage:
        safe_data = redact_credential_data({"access_token": "shpat_xxx", "name": "test"})
        logger.info("Credential data", extra=safe_data)
    """
    # Prevent infinite recursion
    if _depth > 10:
        return data

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if key in ALLOWED_KEYS:
                result[key] = value
            elif isinstance(key, str) and is_credential_secret_key(key):
                result[key] = REDACTED_VALUE
            else:
                result[key] = redact_credential_data(value, _depth + 1)
        return result

    if isinstance(data, (list, tuple)):
        return [redact_credential_data(item, _depth + 1) for item in data]

    if isinstance(data, str):
        return redact_credential_value(data)

    return data


class CredentialAuditLogger:
    """
    Structured audit logger for credential lifecycle events.

    SECURITY:
    - Tokens are NEVER logged
    - account_name IS logged (allowed per PII policy)
    """

    def __init__(self, logger_name: str = AUDIT_LOGGER_NAME):
        self.logger = logging.getLogger(logger_name)

    def log(
        self,
        event_type: AuditEventType,
        provider: str,
        tenant_id: Optional[str] = None,
        account_name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        level: int = logging.INFO,
    ) -> None:
        """
        Log an audit event.

        SECURITY:
        - metadata is automatically redacted
        - Tokens must NEVER be passed in metadata
        """
        safe_metadata = redact_credential_data(metadata) if metadata else {}

        audit_record = {
            "event_type": event_type.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "tenant_id": tenant_id,
            "provider": provider,
            "account_name": account_name,  # Allowed per PII policy
            **safe_metadata,
        }

        self.logger.log(
            level,
            f"Credential audit: {event_type.value}",
            extra=audit_record
        )

    def log_refresh_failed(
        self,
        provider: str,
        tenant_id: Optional[str],
        error_kind: str,
        error: str,
    ) -> None:
        """Log a failed refresh. The error message is redacted."""
        self.log(
            event_type=AuditEventType.CREDENTIAL_REFRESH_FAILED,
            provider=provider,
            tenant_id=tenant_id,
            metadata={"error_kind": error_kind, "error": redact_credential_value(error)},
            level=logging.WARNING,
        )


class CredentialLoggingFilter(logging.Filter):
    """
    Logging filter that redacts credential secrets from log records.

    Usage:
        logger.addFilter(CredentialLoggingFilter())
    """

    # Standard LogRecord attributes are never treated as extra fields
    _RESERVED = frozenset(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime"}

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_credential_value(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = redact_credential_data(record.args)
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    redact_credential_value(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )

        for key in list(record.__dict__.keys()):
            if key in self._RESERVED or key in ALLOWED_KEYS:
                continue
            value = record.__dict__[key]
            if is_credential_secret_key(key):
                setattr(record, key, REDACTED_VALUE)
            elif isinstance(value, (str, dict, list, tuple)):
                setattr(record, key, redact_credential_data(value))

        return True


# Loggers that handle credentials or provider traffic
CREDENTIAL_LOGGERS = [
    AUDIT_LOGGER_NAME,
    "src.credentials",
    "src.credentials.store",
    "src.credentials.refreshers",
    "src.credentials.token_manager",
    "src.credentials.pkce",
    "src.gateway",
    "src.gateway.dispatcher",
    "src.gateway.webhooks",
    "src.integrations.base",
    "src.integrations.shopify.client",
    "src.integrations.etsy.client",
    "src.integrations.cj.client",
    "src.integrations.ebay.client",
    "src.integrations.google_shopping.client",
    "src.platform.errors",
    "src.api.routes.webhooks_shopify",
    "src.api.routes.etsy_oauth",
]


def setup_credential_logging() -> CredentialLoggingFilter:
    """
    Configure credential-safe logging.

    Call this during application startup so every credential and gateway
    logger has the redaction filter applied. Safe to call more than once.
    """
    redaction_filter = CredentialLoggingFilter()

    for logger_name in CREDENTIAL_LOGGERS:
        log = logging.getLogger(logger_name)
        if not any(isinstance(f, CredentialLoggingFilter) for f in log.filters):
            log.addFilter(redaction_filter)

    logger.info("Credential logging configured with redaction filter")
    return redaction_filter
