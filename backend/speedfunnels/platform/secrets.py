"""
Platform secrets handling: symmetric encryption and secret detection.

Encryption uses Fernet (AES-128-CBC + HMAC-SHA256) keyed by the
ENCRYPTION_KEY environment variable. A value that is not already a valid
Fernet key is stretched with SHA-256, so operators may supply any
sufficiently long passphrase.

SECURITY:
- Plaintext is never logged
- Key material is read per call so rotation only needs an env update
"""

import base64
import binascii
import hashlib
import logging
import os
import re
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

REDACTED_VALUE = "[REDACTED]"

# Key names that always hold secrets
SECRET_PATTERNS = [
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"secret", re.IGNORECASE),
    re.compile(r"api[_-]?key", re.IGNORECASE),
    re.compile(r"access[_-]?token", re.IGNORECASE),
    re.compile(r"refresh[_-]?token", re.IGNORECASE),
    re.compile(r"authorization", re.IGNORECASE),
    re.compile(r"encryption[_-]?key", re.IGNORECASE),
]

# Values that look like secrets regardless of their key
SECRET_VALUE_PATTERNS = [
    re.compile(r"(?i)bearer\s+[a-z0-9._~+/=-]+"),
    re.compile(r"(?i)(access_token|refresh_token|client_secret)=[^&\s]+"),
]


class EncryptionError(Exception):
    """Raised when encryption or decryption fails."""
    pass


def _load_key() -> Optional[bytes]:
    raw = os.getenv("ENCRYPTION_KEY")
    if not raw:
        return None

    candidate = raw.encode("utf-8")
    try:
        if len(base64.urlsafe_b64decode(candidate)) == 32:
            return candidate
    except (binascii.Error, ValueError):
        pass

    return base64.urlsafe_b64encode(hashlib.sha256(candidate).digest())


def validate_encryption_configured() -> bool:
    """Return True when ENCRYPTION_KEY is set."""
    return _load_key() is not None


def _fernet() -> Fernet:
    key = _load_key()
    if key is None:
        raise EncryptionError("ENCRYPTION_KEY is not configured")
    return Fernet(key)


async def encrypt_secret(plaintext: str) -> str:
    """Encrypt a string and return URL-safe base64 ciphertext."""
    try:
        return _fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")
    except EncryptionError:
        raise
    except (TypeError, ValueError) as e:
        raise EncryptionError("Encryption failed") from e


async def decrypt_secret(ciphertext: str) -> str:
    """Decrypt ciphertext produced by encrypt_secret."""
    try:
        return _fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except EncryptionError:
        raise
    except (InvalidToken, TypeError, ValueError) as e:
        raise EncryptionError("Decryption failed") from e


def is_secret_key(key: str) -> bool:
    """Check whether a dict key names a secret."""
    return any(pattern.search(key) for pattern in SECRET_PATTERNS)

