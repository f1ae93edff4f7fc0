"""
Token encryption for credentials persisted at rest.

Implements AES-256-GCM encryption for access and refresh tokens stored by
SqlCredentialStore.

SECURITY:
- Uses AES-256-GCM for authenticated encryption
- Each encryption uses a unique random nonce
- The credential key (tenant + provider) is bound as associated data, so a
  ciphertext copied onto another row fails to decrypt
- Key must be exactly 32 bytes (256 bits), read from CREDENTIAL_ENCRYPTION_KEY

Usage:
    from src.credentials.encryption import TokenCipher

    cipher = TokenCipher.from_env()
    stored = cipher.encrypt_token(access_token, associated_data=b"shopify:tenant-1")
    plaintext = cipher.decrypt_token(stored, associated_data=b"shopify:tenant-1")
"""

import base64
import logging
import os
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)


# AES-GCM constants
NONCE_SIZE = 12  # 96 bits, recommended for AES-GCM
KEY_SIZE = 32    # 256 bits for AES-256

ENCRYPTION_KEY_ENV = "CREDENTIAL_ENCRYPTION_KEY"


class CredentialEncryptionError(Exception):
    """Raised when credential encryption/decryption fails."""

    def __init__(self, message: str, operation: str = "unknown"):
        self.operation = operation
        super().__init__(message)


class InvalidKeyError(CredentialEncryptionError):
    """Raised when the encryption key is missing or has the wrong size."""

    def __init__(self, message: str):
        super().__init__(message, operation="load_key")


def decode_key_string(key_string: str) -> bytes:
    """
    Decode a key from string format.

    Supports:
    - Base64 encoding
    - Hex encoding
    - Raw UTF-8 (if exactly 32 bytes)
    """
    try:
        decoded = base64.b64decode(key_string, validate=True)
        if len(decoded) == KEY_SIZE:
            return decoded
    except ValueError:
        pass

    try:
        decoded = bytes.fromhex(key_string)
        if len(decoded) == KEY_SIZE:
            return decoded
    except ValueError:
        pass

    raw = key_string.encode("utf-8")
    if len(raw) == KEY_SIZE:
        return raw

    raise InvalidKeyError(
        f"Could not decode key string. Expected {KEY_SIZE} bytes after decoding."
    )


class TokenCipher:
    """
    AES-256-GCM cipher for individual token strings.

    Stored format is base64(nonce || ciphertext || tag), safe for a Text column.

    SECURITY:
    - Never reuse nonces with the same key
    - Input and output are never logged
    """

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise InvalidKeyError(
                f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}"
            )
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_key_string(cls, key_string: str) -> "TokenCipher":
        return cls(decode_key_string(key_string))

    @classmethod
    def from_env(cls, env_var: str = ENCRYPTION_KEY_ENV) -> "TokenCipher":
        """
        Build a cipher from the environment.

        Raises:
            InvalidKeyError: If the variable is unset or not a 32-byte key
        """
        key_string = os.getenv(env_var)
        if not key_string:
            logger.error(
                "Encryption not configured",
                extra={"operation": "load_key", "env_var": env_var}
            )
            raise InvalidKeyError(
                f"Encryption key not configured. Set {env_var} environment variable."
            )
        return cls.from_key_string(key_string)

    @staticmethod
    def generate_key_string() -> str:
        """Generate a new random key as a base64 string."""
        return base64.b64encode(secrets.token_bytes(KEY_SIZE)).decode("utf-8")

    def encrypt_token(self, plaintext: str, associated_data: Optional[bytes] = None) -> str:
        """
        Encrypt a token for storage.

        Raises:
            ValueError: If plaintext is empty
            CredentialEncryptionError: If encryption fails
        """
        if not plaintext:
            raise ValueError("Cannot encrypt empty token")

        nonce = secrets.token_bytes(NONCE_SIZE)
        try:
            sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), associated_data)
        except (TypeError, ValueError, OverflowError) as e:
            logger.error(
                "Token encryption failed",
                extra={"operation": "encrypt_token", "error_type": type(e).__name__}
            )
            raise CredentialEncryptionError("Failed to encrypt token", operation="encrypt") from e

        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt_token(self, stored: str, associated_data: Optional[bytes] = None) -> str:
        """
        Decrypt a stored token (in memory only).

        Raises:
            CredentialEncryptionError: If the value was tampered with, was
                sealed for another key, or is not valid ciphertext
        """
        if not stored:
            raise ValueError("Cannot decrypt empty value")

        try:
            blob = base64.b64decode(stored, validate=True)
        except ValueError as e:
            raise CredentialEncryptionError("Stored token is not valid base64", operation="decrypt") from e

        if len(blob) <= NONCE_SIZE:
            raise CredentialEncryptionError("Stored token is truncated", operation="decrypt")

        nonce, sealed = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, sealed, associated_data)
        except InvalidTag as e:
            logger.error("Decryption failed: authentication tag mismatch")
            raise CredentialEncryptionError(
                "Decryption failed: data may have been tampered with",
                operation="decrypt",
            ) from e

        return plaintext.decode("utf-8")
