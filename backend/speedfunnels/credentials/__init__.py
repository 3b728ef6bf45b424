"""
Credentials module for third-party OAuth token lifecycle management.

This module provides:
- Encrypted durable storage for OAuth tokens (CredentialStore)
- A Redis access-token cache with refresh lock and CSRF state (TokenCache)
- Provider code exchange and refresh (OAuthExchanger)
- The TokenBroker that ties them together with single-flight refresh
- Audit logging with automatic redaction

SECURITY:
- Tokens are encrypted at rest using ENCRYPTION_KEY
- No plaintext tokens outside process memory
- Tokens NEVER appear in logs or API responses

Usage:
    from speedfunnels.credentials import TokenBroker, IntegrationRequired

    try:
        token = await broker.get_valid_access_token(user_id, provider)
    except IntegrationRequired:
        ...  # prompt the user to reconnect
"""

from speedfunnels.credentials.broker import TokenBroker
from speedfunnels.credentials.cache import CachedToken, TokenCache
from speedfunnels.credentials.encryption import (
    encrypt_token,
    decrypt_token,
    CredentialEncryptionError,
)
from speedfunnels.credentials.errors import (
    ErrorKind,
    TokenLifecycleError,
    IntegrationRequired,
    InvalidGrant,
    ConfigurationError,
    UpstreamUnavailable,
    RateLimited,
    StorageError,
    AuthorizationStateError,
    ProviderTokenRejected,
)
from speedfunnels.credentials.exchanger import (
    OAuthExchanger,
    ProviderOAuthClient,
    MetaOAuthClient,
    GoogleOAuthClient,
    TokenGrant,
)
from speedfunnels.credentials.redaction import (
    redact_credential_data,
    CredentialAuditLogger,
    AuditEventType,
)
from speedfunnels.credentials.store import Credential, CredentialStore

__all__ = [
    # Broker
    "TokenBroker",
    # Store & cache
    "Credential",
    "CredentialStore",
    "CachedToken",
    "TokenCache",
    # Exchange
    "OAuthExchanger",
    "ProviderOAuthClient",
    "MetaOAuthClient",
    "GoogleOAuthClient",
    "TokenGrant",
    # Errors
    "ErrorKind",
    "TokenLifecycleError",
    "IntegrationRequired",
    "InvalidGrant",
    "ConfigurationError",
    "UpstreamUnavailable",
    "RateLimited",
    "StorageError",
    "AuthorizationStateError",
    "ProviderTokenRejected",
    # Encryption
    "encrypt_token",
    "decrypt_token",
    "CredentialEncryptionError",
    # Redaction & Audit
    "redact_credential_data",
    "CredentialAuditLogger",
    "AuditEventType",
]
