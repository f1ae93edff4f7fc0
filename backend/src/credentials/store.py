"""
Credential storage keyed by (tenant_id, provider).

SECURITY REQUIREMENTS:
- Tokens are encrypted at rest before storage (SqlCredentialStore)
- No plaintext tokens outside process memory
- tenant_id comes from the authenticated session or is None for
  process-wide providers, never from request payloads

Two implementations:
- InMemoryCredentialStore: process-local dict, the default
- SqlCredentialStore: SQLAlchemy rows in provider_credentials, tokens sealed
  with TokenCipher

Usage:
    store = SqlCredentialStore(SessionLocal, TokenCipher.from_env())

    await store.save(credential)
    credential = await store.get(CredentialKey("tenant-1", ProviderType.ETSY))
    await store.delete(CredentialKey("tenant-1", ProviderType.ETSY))
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Optional

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from src.credentials.encryption import TokenCipher
from src.models.provider_credential import (
    GLOBAL_TENANT_ID,
    CredentialKey,
    ProviderCredential,
    ProviderCredentialRecord,
)

logger = logging.getLogger(__name__)


class CredentialStoreError(Exception):
    """Base exception for credential store errors."""
    pass


class CredentialStore(ABC):
    """
    Async credential storage interface.

    save() replaces any existing credential for the same key atomically.
    """

    @abstractmethod
    async def get(self, key: CredentialKey) -> Optional[ProviderCredential]:
        """Return the credential for key, or None."""

    @abstractmethod
    async def save(self, credential: ProviderCredential) -> None:
        """Insert or replace the credential for credential.key."""

    @abstractmethod
    async def delete(self, key: CredentialKey) -> bool:
        """Remove the credential for key. Returns True if one existed."""


class InMemoryCredentialStore(CredentialStore):
    """Process-local credential store."""

    def __init__(self, credentials: Iterable[ProviderCredential] = ()):
        self._credentials: Dict[CredentialKey, ProviderCredential] = {
            credential.key: credential for credential in credentials
        }

    async def get(self, key: CredentialKey) -> Optional[ProviderCredential]:
        return self._credentials.get(key)

    async def save(self, credential: ProviderCredential) -> None:
        self._credentials[credential.key] = credential

    async def delete(self, key: CredentialKey) -> bool:
        return self._credentials.pop(key, None) is not None

    def __len__(self) -> int:
        return len(self._credentials)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; stored values are always UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class SqlCredentialStore(CredentialStore):
    """
    SQLAlchemy-backed credential store.

    Each operation opens its own session from session_factory on a worker
    thread and commits before returning. The credential key is bound into the ciphertext as
    associated data.
    """

    def __init__(self, session_factory: Callable[[], Session], cipher: TokenCipher):
        self._session_factory = session_factory
        self._cipher = cipher

    @staticmethod
    def _tenant_column(key: CredentialKey) -> str:
        return key.tenant_id if key.tenant_id is not None else GLOBAL_TENANT_ID

    @staticmethod
    def _associated_data(key: CredentialKey) -> bytes:
        return str(key).encode("utf-8")

    def _find(self, session: Session, key: CredentialKey) -> Optional[ProviderCredentialRecord]:
        return session.query(ProviderCredentialRecord).filter(
            ProviderCredentialRecord.tenant_id == self._tenant_column(key),
            ProviderCredentialRecord.provider == key.provider,
        ).first()

    def _to_credential(self, key: CredentialKey, record: ProviderCredentialRecord) -> ProviderCredential:
        aad = self._associated_data(key)
        refresh_token = None
        if record.refresh_token_encrypted:
            refresh_token = self._cipher.decrypt_token(record.refresh_token_encrypted, aad)

        return ProviderCredential(
            provider=record.provider,
            kind=record.kind,
            access_token=self._cipher.decrypt_token(record.access_token_encrypted, aad),
            tenant_id=key.tenant_id,
            refresh_token=refresh_token,
            issued_at=_as_utc(record.issued_at),
            expires_at=_as_utc(record.expires_at),
            refresh_expires_at=_as_utc(record.refresh_expires_at),
            scopes=ProviderCredentialRecord.decode_scopes(record.scopes),
            account_name=record.account_name,
        )

    async def get(self, key: CredentialKey) -> Optional[ProviderCredential]:
        return await run_in_threadpool(self._get_sync, key)

    async def save(self, credential: ProviderCredential) -> None:
        await run_in_threadpool(self._save_sync, credential)

    async def delete(self, key: CredentialKey) -> bool:
        return await run_in_threadpool(self._delete_sync, key)

    # Session work runs on a worker thread; the event loop never waits on the database.

    def _get_sync(self, key: CredentialKey) -> Optional[ProviderCredential]:
        with self._session_factory() as session:
            record = self._find(session, key)
            if record is None:
                return None
            return self._to_credential(key, record)

    def _save_sync(self, credential: ProviderCredential) -> None:
        key = credential.key
        aad = self._associated_data(key)
        access_token_encrypted = self._cipher.encrypt_token(credential.access_token, aad)
        refresh_token_encrypted = None
        if credential.refresh_token:
            refresh_token_encrypted = self._cipher.encrypt_token(credential.refresh_token, aad)

        with self._session_factory() as session:
            record = self._find(session, key)
            if record is None:
                record = ProviderCredentialRecord(
                    tenant_id=self._tenant_column(key),
                    provider=key.provider,
                )
                session.add(record)

            record.kind = credential.kind
            record.access_token_encrypted = access_token_encrypted
            record.refresh_token_encrypted = refresh_token_encrypted
            record.issued_at = credential.issued_at
            record.expires_at = credential.expires_at
            record.refresh_expires_at = credential.refresh_expires_at
            record.scopes = ProviderCredentialRecord.encode_scopes(credential.scopes)
            record.account_name = credential.account_name
            session.commit()

        logger.info(
            "Credential persisted",
            extra={
                "tenant_id": key.tenant_id,
                "provider": key.provider.value,
                "account_name": credential.account_name,  # Allowed per PII policy
            }
        )

    def _delete_sync(self, key: CredentialKey) -> bool:
        with self._session_factory() as session:
            record = self._find(session, key)
            if record is None:
                return False
            session.delete(record)
            session.commit()

        logger.info(
            "Credential deleted",
            extra={"tenant_id": key.tenant_id, "provider": key.provider.value}
        )
        return True
