"""
ProviderCredential - authentication material for one (tenant, provider) pair.

Two representations live here:
- ProviderCredential: the in-process value object handed around by the
  TokenManager and the credential stores. Immutable; replaced wholesale on
  refresh.
- ProviderCredentialRecord: the SQLAlchemy row used by SqlCredentialStore.
  Token columns hold AES-GCM ciphertext only.

SECURITY REQUIREMENTS:
- Tokens are NEVER included in repr() or to_safe_dict()
- account_name is display metadata and is allowed in logs
- Process-wide providers (CJ, eBay application token, Google Shopping) are
  keyed with tenant_id=None and persisted under GLOBAL_TENANT_ID
"""

import enum
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import Column, DateTime, Enum, Index, String, Text, UniqueConstraint

from src.db_base import Base
from src.models.base import TimestampMixin, TenantScopedMixin, generate_uuid

# Stored in tenant_id for credentials that belong to the whole process
GLOBAL_TENANT_ID = "__global__"


class ProviderType(str, enum.Enum):
    """Supported upstream providers."""
    SHOPIFY = "shopify"
    ETSY = "etsy"
    CJ = "cj"
    EBAY = "ebay"
    GOOGLE_SHOPPING = "google_shopping"


class CredentialKind(str, enum.Enum):
    """How a credential is obtained and renewed."""
    STATIC_BEARER = "static_bearer"  # Shopify Admin token, SerpAPI key
    OAUTH2_REFRESHABLE = "oauth2_refreshable"  # CJ access + refresh token
    OAUTH2_PKCE = "oauth2_pkce"  # Etsy authorization code + PKCE
    CLIENT_CREDENTIALS = "client_credentials"  # eBay application token


@dataclass(frozen=True)
class CredentialKey:
    """Store and single-flight key. tenant_id is None for process-wide providers."""
    tenant_id: Optional[str]
    provider: ProviderType

    def __str__(self) -> str:
        return f"{self.provider.value}:{self.tenant_id or GLOBAL_TENANT_ID}"


@dataclass(frozen=True)
class TokenGrant:
    """Result of a successful token endpoint call."""
    access_token: str
    issued_at: datetime
    expires_at: Optional[datetime] = None
    refresh_token: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None
    scopes: tuple = ()

    @classmethod
    def from_expires_in(
        cls,
        access_token: str,
        now: datetime,
        expires_in: Optional[float],
        refresh_token: Optional[str] = None,
        refresh_lifetime: Optional[timedelta] = None,
        scopes: tuple = (),
    ) -> "TokenGrant":
        """Build a grant from a relative lifetime in seconds (Etsy, eBay)."""
        return cls(
            access_token=access_token,
            issued_at=now,
            expires_at=now + timedelta(seconds=float(expires_in)) if expires_in is not None else None,
            refresh_token=refresh_token,
            refresh_expires_at=now + refresh_lifetime if refresh_token and refresh_lifetime else None,
            scopes=tuple(scopes),
        )

    def __repr__(self) -> str:
        return f"<TokenGrant(expires_at={self.expires_at}, has_refresh_token={self.refresh_token is not None})>"


@dataclass(frozen=True)
class ProviderCredential:
    """
    Authentication material for one (tenant, provider) pair.

    Invariant: a refreshable token is only handed out while
    now < expires_at - margin. Static bearer tokens have no expiry.
    """

    provider: ProviderType
    kind: CredentialKind
    access_token: str = field(repr=False)
    tenant_id: Optional[str] = None
    refresh_token: Optional[str] = field(default=None, repr=False)
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    refresh_expires_at: Optional[datetime] = None
    scopes: tuple = ()
    account_name: Optional[str] = None

    @property
    def key(self) -> CredentialKey:
        return CredentialKey(self.tenant_id, self.provider)

    @property
    def is_static(self) -> bool:
        return self.kind == CredentialKind.STATIC_BEARER

    def is_access_token_valid(self, now: datetime, margin: timedelta) -> bool:
        """True when the access token may be used without refreshing."""
        if not self.access_token:
            return False
        if self.expires_at is None:
            return True
        return now < self.expires_at - margin

    def is_refresh_token_valid(self, now: datetime) -> bool:
        """True when a refresh token exists and has not passed its own expiry."""
        if not self.refresh_token:
            return False
        if self.refresh_expires_at is None:
            return True
        return now < self.refresh_expires_at

    def with_grant(self, grant: TokenGrant) -> "ProviderCredential":
        """
        Return a new credential with the grant applied.

        Providers that do not rotate the refresh token keep the existing one.
        """
        return replace(
            self,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or self.refresh_token,
            issued_at=grant.issued_at,
            expires_at=grant.expires_at,
            refresh_expires_at=grant.refresh_expires_at or (
                self.refresh_expires_at if not grant.refresh_token else None
            ),
            scopes=grant.scopes or self.scopes,
        )

    @classmethod
    def from_grant(
        cls,
        key: CredentialKey,
        kind: CredentialKind,
        grant: TokenGrant,
        account_name: Optional[str] = None,
    ) -> "ProviderCredential":
        return cls(
            provider=key.provider,
            kind=kind,
            access_token=grant.access_token,
            tenant_id=key.tenant_id,
            refresh_token=grant.refresh_token,
            issued_at=grant.issued_at,
            expires_at=grant.expires_at,
            refresh_expires_at=grant.refresh_expires_at,
            scopes=grant.scopes,
            account_name=account_name,
        )

    def to_safe_dict(self) -> dict:
        """
        Return dictionary safe for logging/API responses.

        SECURITY: Excludes all token values.
        """
        return {
            "provider": self.provider.value,
            "tenant_id": self.tenant_id,
            "kind": self.kind.value,
            "account_name": self.account_name,  # Allowed per PII policy
            "has_refresh_token": self.refresh_token is not None,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "refresh_expires_at": self.refresh_expires_at.isoformat() if self.refresh_expires_at else None,
            "scopes": list(self.scopes),
        }


class ProviderCredentialRecord(Base, TimestampMixin, TenantScopedMixin):
    """
    Persisted provider credential.

    SECURITY:
    - access_token_encrypted and refresh_token_encrypted hold ciphertext only
    - One row per (tenant_id, provider)
    """

    __tablename__ = "provider_credentials"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    provider = Column(
        Enum(ProviderType),
        nullable=False,
        comment="Upstream provider (shopify, etsy, cj, ebay, google_shopping)"
    )
    kind = Column(
        Enum(CredentialKind),
        nullable=False,
        comment="How the credential is obtained and renewed"
    )

    # Encrypted tokens - NEVER log these values
    access_token_encrypted = Column(
        Text,
        nullable=False,
        comment="Encrypted access token - NEVER log plaintext"
    )
    refresh_token_encrypted = Column(
        Text,
        nullable=True,
        comment="Encrypted refresh token - NEVER log plaintext"
    )

    # Token metadata (safe to log)
    issued_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Access token expiry, NULL for static bearer tokens"
    )
    refresh_expires_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Refresh token expiry (CJ: 180 days)"
    )
    scopes = Column(
        Text,
        nullable=True,
        comment="JSON array of granted scopes"
    )

    # Display metadata (ALLOWED in logs per PII policy)
    account_name = Column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", name="uq_provider_credentials_tenant_provider"),
        Index("ix_provider_credentials_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        """Safe repr - NEVER include token values."""
        return (
            f"<ProviderCredentialRecord("
            f"id={self.id}, "
            f"tenant_id={self.tenant_id}, "
            f"provider={self.provider}, "
            f"account_name={self.account_name})>"
        )

    @staticmethod
    def encode_scopes(scopes: tuple) -> Optional[str]:
        return json.dumps(list(scopes)) if scopes else None

    @staticmethod
    def decode_scopes(raw: Optional[str]) -> tuple:
        return tuple(json.loads(raw)) if raw else ()
