"""
Credentials module for provider authentication material.

This module provides:
- TokenManager: valid tokens per (tenant, provider) with single-flight refresh
- Token refreshers for each provider family (Etsy, CJ, eBay, static tokens)
- PKCE challenge generation and pending authorization tracking
- In-memory and encrypted SQL credential stores
- Audit logging with automatic redaction

SECURITY:
- Tokens are encrypted at rest using CREDENTIAL_ENCRYPTION_KEY
- No plaintext tokens outside process memory
- Tokens NEVER appear in logs or API responses
- Allowed in logs: account_name

Usage:
    from src.credentials import TokenManager, InMemoryCredentialStore

    manager = TokenManager(InMemoryCredentialStore(), refreshers)
    token = await manager.get_valid_token(tenant_id, ProviderType.ETSY)
"""

from src.credentials.encryption import (
    CredentialEncryptionError,
    InvalidKeyError,
    TokenCipher,
)
from src.credentials.pkce import PendingAuthorizationStore, PKCEChallenge
from src.credentials.redaction import (
    AuditEventType,
    CredentialAuditLogger,
    CredentialLoggingFilter,
    redact_credential_data,
    setup_credential_logging,
)
from src.credentials.refreshers import (
    CJRefresher,
    EbayRefresher,
    EtsyRefresher,
    StaticTokenRefresher,
    TokenRefresher,
)
from src.credentials.store import (
    CredentialStore,
    CredentialStoreError,
    InMemoryCredentialStore,
    SqlCredentialStore,
)
from src.credentials.token_manager import TokenManager

__all__ = [
    # Store
    "CredentialStore",
    "CredentialStoreError",
    "InMemoryCredentialStore",
    "SqlCredentialStore",
    # Encryption
    "TokenCipher",
    "CredentialEncryptionError",
    "InvalidKeyError",
    # Token lifecycle
    "TokenManager",
    "TokenRefresher",
    "StaticTokenRefresher",
    "EtsyRefresher",
    "CJRefresher",
    "EbayRefresher",
    "PKCEChallenge",
    "PendingAuthorizationStore",
    # Redaction & Audit
    "redact_credential_data",
    "CredentialAuditLogger",
    "CredentialLoggingFilter",
    "AuditEventType",
    "setup_credential_logging",
]
