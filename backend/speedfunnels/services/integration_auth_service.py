"""
Integration authorization service.

Orchestrates the user-facing OAuth flows for Meta Ads and Google Analytics:

1. start_authorization: issue a CSRF state and the provider consent URL
2. complete_authorization: verify and consume the state, exchange the code
3. disconnect: drop the credential from both the cache and the store
4. get_status: connection metadata for the UI (never token values)

SECURITY:
- user_id MUST come from the authenticated request, never client input
- The state is single-use, bound to (user_id, provider) and compared in
  constant time
- Every flow step emits an audit event

Usage:
    service = IntegrationAuthService(broker)
    request = await service.start_authorization(user_id, IntegrationProvider.META_ADS)
    credential = await service.complete_authorization(user_id, provider, code, state)
"""

import hmac
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Tuple

from speedfunnels.credentials.broker import TokenBroker
from speedfunnels.credentials.errors import AuthorizationStateError
from speedfunnels.credentials.redaction import AuditEventType, CredentialAuditLogger
from speedfunnels.credentials.store import Credential
from speedfunnels.models.integration_credential import IntegrationProvider

logger = logging.getLogger(__name__)

STATE_BYTES = 32


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class AuthorizationRequest:
    """Where to send the user, and the state the callback must echo."""

    url: str
    state: str = field(repr=False)


@dataclass
class IntegrationStatus:
    """Connection metadata for one provider. Contains no token values."""

    provider: IntegrationProvider
    is_connected: bool
    expires_at: Optional[datetime] = None
    scopes: Tuple[str, ...] = ()
    has_refresh_token: bool = False
    last_refreshed_at: Optional[datetime] = None

    @property
    def needs_reconnect(self) -> bool:
        """Expired and not refreshable; the next use will ask the user to reconnect."""
        if not self.is_connected or self.has_refresh_token or self.expires_at is None:
            return False
        return self.expires_at <= datetime.now(timezone.utc)


# =============================================================================
# Integration Auth Service
# =============================================================================


class IntegrationAuthService:
    """
    User-facing connect/disconnect flows built on the TokenBroker.
    """

    def __init__(self, broker: TokenBroker):
        self.broker = broker

    async def start_authorization(
        self,
        user_id: int,
        provider: IntegrationProvider,
        redirect_uri: Optional[str] = None,
    ) -> AuthorizationRequest:
        """
        Begin an authorization attempt.

        A new attempt replaces any pending state for the same pair.

        Raises:
            ConfigurationError: Provider client id/secret not configured
            StorageError: State store unavailable
        """
        exchanger = self.broker.exchanger
        redirect_uri = redirect_uri or exchanger.default_redirect_uri(provider)
        state = secrets.token_urlsafe(STATE_BYTES)

        # Build first so a misconfigured provider never leaves state behind
        url = exchanger.build_authorization_url(provider, state, redirect_uri)
        await self.broker.cache.store_state(
            user_id,
            provider,
            state,
            redirect_uri,
            ttl_seconds=self.broker.settings.auth_state_ttl_seconds,
        )

        CredentialAuditLogger(user_id).log(
            event_type=AuditEventType.AUTHORIZATION_STARTED,
            provider=provider.value,
        )
        return AuthorizationRequest(url=url, state=state)

    async def complete_authorization(
        self,
        user_id: int,
        provider: IntegrationProvider,
        code: str,
        state: str,
    ) -> Credential:
        """
        Finish an authorization attempt started by start_authorization.

        The pending state is consumed whether or not it matches.

        Raises:
            AuthorizationStateError: State missing, expired, reused or mismatched
            InvalidGrant: Provider rejected the code
            ConfigurationError, UpstreamUnavailable, RateLimited, StorageError
        """
        pending = await self.broker.cache.pop_state(user_id, provider)
        if pending is None:
            logger.warning(
                "Authorization callback without pending state",
                extra={"user_id": user_id, "provider": provider.value},
            )
            raise AuthorizationStateError(
                "Authorization state expired or already used", provider=provider.value
            )

        expected = str(pending.get("state") or "")
        if not state or not hmac.compare_digest(expected.encode("utf-8"), state.encode("utf-8")):
            logger.warning(
                "Authorization state mismatch",
                extra={"user_id": user_id, "provider": provider.value},
            )
            raise AuthorizationStateError(
                "Authorization state mismatch", provider=provider.value
            )

        if not code:
            raise AuthorizationStateError(
                "Authorization code missing", provider=provider.value
            )

        redirect_uri = pending.get("redirect_uri") or self.broker.exchanger.default_redirect_uri(provider)
        credential = await self.broker.exchange_code_for_token(user_id, provider, code, redirect_uri)

        CredentialAuditLogger(user_id).log(
            event_type=AuditEventType.AUTHORIZATION_COMPLETED,
            provider=provider.value,
            metadata={
                "scopes": list(credential.scopes),
                "has_refresh_token": credential.can_refresh,
            },
        )
        return credential

    async def disconnect(self, user_id: int, provider: IntegrationProvider) -> None:
        """
        Remove the credential from cache and store. Idempotent.

        Raises:
            StorageError: Credential store unavailable
        """
        await self.broker.cache.invalidate(user_id, provider)
        deleted = await self.broker.store.delete(user_id, provider)

        logger.info(
            "Integration disconnected",
            extra={
                "user_id": user_id,
                "provider": provider.value,
                "outcome": "deleted" if deleted else "not_connected",
            },
        )

    async def get_status(self, user_id: int, provider: IntegrationProvider) -> IntegrationStatus:
        """Return connection metadata from the durable store."""
        credential = await self.broker.store.find(user_id, provider)
        if credential is None:
            return IntegrationStatus(provider=provider, is_connected=False)

        return IntegrationStatus(
            provider=provider,
            is_connected=True,
            expires_at=credential.expires_at,
            scopes=credential.scopes,
            has_refresh_token=credential.can_refresh,
            last_refreshed_at=credential.last_refreshed_at,
        )
