"""Persisted and in-process data models."""

from src.models.provider_credential import (
    GLOBAL_TENANT_ID,
    CredentialKey,
    CredentialKind,
    ProviderCredential,
    ProviderCredentialRecord,
    ProviderType,
    TokenGrant,
)

__all__ = [
    "GLOBAL_TENANT_ID",
    "CredentialKey",
    "CredentialKind",
    "ProviderCredential",
    "ProviderCredentialRecord",
    "ProviderType",
    "TokenGrant",
]
