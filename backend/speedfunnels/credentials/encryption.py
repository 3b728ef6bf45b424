"""
Encryption at rest for provider tokens.

access_token and refresh_token columns only ever hold Fernet ciphertext;
the key comes from ENCRYPTION_KEY via the platform secrets module.
Plaintext tokens exist in process memory only and are never logged.
"""

import logging
from typing import Optional

from speedfunnels.platform.secrets import (
    encrypt_secret,
    decrypt_secret,
    EncryptionError,
    validate_encryption_configured,
)

logger = logging.getLogger(__name__)

MISSING_KEY_MESSAGE = "Encryption key not configured. Set ENCRYPTION_KEY environment variable."


class CredentialEncryptionError(Exception):
    """A token could not be encrypted or decrypted."""

    def __init__(self, message: str, operation: str = "unknown"):
        self.operation = operation
        super().__init__(message)


def _require_key(operation: str) -> None:
    if not validate_encryption_configured():
        logger.error("ENCRYPTION_KEY missing", extra={"operation": operation})
        raise CredentialEncryptionError(MISSING_KEY_MESSAGE, operation=operation)


async def encrypt_token(plaintext: str) -> str:
    """
    Encrypt a provider token for the credential store.

    Raises:
        ValueError: Empty token
        CredentialEncryptionError: Key missing or Fernet failure
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty token")
    _require_key("encrypt")

    try:
        return await encrypt_secret(plaintext)
    except EncryptionError as e:
        logger.error("Token encryption failed", extra={"error_type": type(e).__name__})
        raise CredentialEncryptionError("Failed to encrypt token", operation="encrypt") from e


async def decrypt_token(ciphertext: str) -> str:
    """
    Decrypt a stored token. A failure usually means ENCRYPTION_KEY was rotated.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty ciphertext")
    _require_key("decrypt")

    try:
        return await decrypt_secret(ciphertext)
    except EncryptionError as e:
        logger.error("Token decryption failed", extra={"error_type": type(e).__name__})
        raise CredentialEncryptionError(
            "Stored token could not be decrypted with the current ENCRYPTION_KEY",
            operation="decrypt",
        ) from e


async def encrypt_optional(plaintext: Optional[str]) -> Optional[str]:
    """Meta credentials carry no refresh token; None passes through."""
    if not plaintext:
        return None
    return await encrypt_token(plaintext)


async def decrypt_optional(ciphertext: Optional[str]) -> Optional[str]:
    if not ciphertext:
        return None
    return await decrypt_token(ciphertext)


def validate_encryption_ready() -> bool:
    """Fail fast at startup when tokens could not be stored."""
    if not validate_encryption_configured():
        raise CredentialEncryptionError(
            "ENCRYPTION_KEY environment variable is required for credential storage.",
            operation="validate",
        )
    logger.info("Credential encryption validated successfully")
    return True
