"""
Token broker: the single entry point for obtaining a usable access token.

Implements the credential lifecycle on top of the durable store, the
Redis cache and the provider exchanger:
1. Cache hit with an unexpired envelope is returned directly
2. Otherwise the store is consulted; an unexpired row re-populates the cache
3. An expired row is refreshed (when the provider supports it) and persisted
4. A rejected refresh token deletes the row; the user must reconnect

Concurrent requests for the same (user_id, provider) share one in-flight
task, and a Redis marker keeps other processes from refreshing the same
pair at the same time.

Usage:
    broker = TokenBroker(store, cache, exchanger)

    token = await broker.get_valid_access_token(user_id, IntegrationProvider.META_ADS)
    accounts = await broker.call_with_token(user_id, provider, client.list_ad_accounts)
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from speedfunnels.config.oauth import TokenSettings, load_token_settings
from speedfunnels.credentials.cache import CachedToken, TokenCache
from speedfunnels.credentials.errors import (
    IntegrationRequired,
    InvalidGrant,
    ProviderTokenRejected,
    StorageError,
    UpstreamUnavailable,
)
from speedfunnels.credentials.exchanger import OAuthExchanger
from speedfunnels.credentials.redaction import AuditEventType, CredentialAuditLogger
from speedfunnels.credentials.store import Credential, CredentialStore
from speedfunnels.models.integration_credential import IntegrationProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

PairKey = Tuple[int, IntegrationProvider]

# Backoff while another process holds the refresh lock
LOCK_POLL_INITIAL_SECONDS = 0.05
LOCK_POLL_MAX_SECONDS = 1.0


class TokenBroker:
    """
    Returns valid access tokens, refreshing and persisting them as needed.

    Raises only TokenLifecycleError subclasses; callers branch on ``exc.kind``.
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: TokenCache,
        exchanger: OAuthExchanger,
        settings: Optional[TokenSettings] = None,
    ):
        self.store = store
        self.cache = cache
        self.exchanger = exchanger
        self.settings = settings or load_token_settings()
        self._inflight: Dict[PairKey, "asyncio.Task[Credential]"] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_valid_access_token(
        self,
        user_id: int,
        provider: IntegrationProvider,
    ) -> str:
        """
        Return an access token that is valid for at least the expiry skew.

        Raises:
            IntegrationRequired: No credential, or it can no longer be refreshed
            UpstreamUnavailable / RateLimited: Refresh failed transiently
            StorageError: Credential store unreachable
            ConfigurationError: Client credentials or encryption misconfigured
        """
        cached = await self.cache.get(user_id, provider)
        if cached is not None and not cached.is_expired(self.settings.expiry_skew_seconds):
            return cached.access_token

        credential = await self._single_flight(user_id, provider, self._resolve)
        return credential.access_token

    async def exchange_code_for_token(
        self,
        user_id: int,
        provider: IntegrationProvider,
        code: str,
        redirect_uri: str,
    ) -> Credential:
        """
        Complete an authorization: exchange the code, persist and cache the tokens.

        A refresh already in flight for the pair is allowed to finish first so
        its write cannot overwrite the newly granted token.
        """
        grant = await self.exchanger.exchange_authorization_code(provider, code, redirect_uri)

        inflight = self._inflight.get((user_id, provider))
        if inflight is not None:
            # Its outcome belongs to the old grant; _forget retrieves any exception
            await asyncio.wait([inflight])

        now = datetime.now(timezone.utc)

        stored = await self.store.upsert(Credential(
            user_id=user_id,
            provider=provider,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at(now),
            scopes=grant.scopes,
            token_type=grant.token_type,
            last_refreshed_at=now,
        ))
        await self._populate_cache(stored)

        logger.info("Authorization code exchanged", extra=stored.to_safe_dict())
        return stored

    async def invalidate(
        self,
        user_id: int,
        provider: IntegrationProvider,
        *,
        rejected: bool = False,
    ) -> None:
        """
        Drop the cached token for a pair.

        Args:
            rejected: The provider refused the token before its recorded
                expiry; the stored row is also marked expired so the next
                request refreshes rather than re-serving it.
        """
        await self.cache.invalidate(user_id, provider)
        if rejected:
            await self.store.mark_expired(user_id, provider)

        CredentialAuditLogger(user_id).log(
            event_type=AuditEventType.CREDENTIAL_INVALIDATED,
            provider=provider.value,
            metadata={"outcome": "rejected" if rejected else "evicted"},
        )

    async def refresh(
        self,
        user_id: int,
        provider: IntegrationProvider,
    ) -> Credential:
        """
        Refresh a credential regardless of its remaining lifetime.

        Used by the scheduled refresh job. Joins an in-flight request for
        the same pair instead of starting a second refresh.
        """
        return await self._single_flight(user_id, provider, self._forced_refresh)

    async def call_with_token(
        self,
        user_id: int,
        provider: IntegrationProvider,
        operation: Callable[[str], Awaitable[T]],
    ) -> T:
        """
        Run a provider API call with a valid token.

        If the provider rejects the token, it is invalidated and the call
        is retried once with a fresh token.

        Raises:
            IntegrationRequired: The fresh token was rejected as well
        """
        token = await self.get_valid_access_token(user_id, provider)
        try:
            return await operation(token)
        except ProviderTokenRejected:
            logger.info(
                "Provider rejected access token; retrying with a fresh one",
                extra={"user_id": user_id, "provider": provider.value},
            )
            await self.invalidate(user_id, provider, rejected=True)

        token = await self.get_valid_access_token(user_id, provider)
        try:
            return await operation(token)
        except ProviderTokenRejected as e:
            await self.invalidate(user_id, provider, rejected=True)
            raise IntegrationRequired(
                "Provider rejected a freshly issued token", provider=provider.value
            ) from e

    # ------------------------------------------------------------------
    # Single flight
    # ------------------------------------------------------------------

    async def _single_flight(
        self,
        user_id: int,
        provider: IntegrationProvider,
        factory: Callable[[int, IntegrationProvider], Awaitable[Credential]],
    ) -> Credential:
        key = (user_id, provider)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory(user_id, provider))
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._forget(key, done))
        # One caller's cancellation must not cancel the shared refresh
        return await asyncio.shield(task)

    def _forget(self, key: PairKey, task: "asyncio.Task[Credential]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Mark the exception retrieved when every waiter was cancelled
            task.exception()

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def _resolve(self, user_id: int, provider: IntegrationProvider) -> Credential:
        credential = await self._require_credential(user_id, provider)

        if not credential.is_expired(self.settings.expiry_skew_seconds):
            await self._populate_cache(credential)
            return credential

        return await self._refresh_coordinated(credential)

    async def _forced_refresh(self, user_id: int, provider: IntegrationProvider) -> Credential:
        credential = await self._require_credential(user_id, provider)
        return await self._refresh_coordinated(credential, force=True)

    async def _require_credential(
        self,
        user_id: int,
        provider: IntegrationProvider,
    ) -> Credential:
        credential = await self.store.find(user_id, provider)
        if credential is None:
            raise IntegrationRequired(
                f"No {provider.value} integration connected", provider=provider.value
            )
        return credential

    async def _refresh_coordinated(
        self,
        credential: Credential,
        force: bool = False,
    ) -> Credential:
        """Refresh under the cross-process lock, deferring to a peer that holds it."""
        user_id, provider = credential.user_id, credential.provider

        if not credential.can_refresh or not self.exchanger.supports_refresh(provider):
            await self.cache.invalidate(user_id, provider)
            logger.info(
                "Credential expired and cannot be refreshed",
                extra={
                    "user_id": user_id,
                    "provider": provider.value,
                    "has_refresh_token": credential.can_refresh,
                },
            )
            raise IntegrationRequired(
                f"{provider.value} credential expired; reconnect required",
                provider=provider.value,
            )

        owner = await self.cache.acquire_refresh_lock(
            user_id, provider, self.settings.refresh_lock_ttl_seconds
        )
        if owner is None:
            peer, owner = await self._wait_for_peer_refresh(credential, force)
            if peer is not None:
                return peer

        try:
            return await self._do_refresh(credential)
        finally:
            await self.cache.release_refresh_lock(user_id, provider, owner)

    async def _wait_for_peer_refresh(
        self,
        credential: Credential,
        force: bool,
    ) -> Tuple[Optional[Credential], Optional[str]]:
        """
        Poll (exponential backoff) while another process holds the refresh lock.

        The cache and the store are re-read on every pass. The wait never
        outlasts the lock's own TTL, which is what frees a lock left by a
        crashed refresh.

        Returns:
            (credential produced by the peer, None), or (None, owner id) once
            this process holds the lock and the peer produced nothing usable

        Raises:
            UpstreamUnavailable: The lock was still held when its TTL elapsed
        """
        user_id, provider = credential.user_id, credential.provider
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.refresh_lock_ttl_seconds
        delay = LOCK_POLL_INITIAL_SECONDS

        logger.debug(
            "Refresh lock held elsewhere; waiting",
            extra={"user_id": user_id, "provider": provider.value},
        )

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(
                    "Refresh lock still held after its TTL",
                    extra={"user_id": user_id, "provider": provider.value},
                )
                raise UpstreamUnavailable(
                    f"{provider.value} refresh in progress elsewhere",
                    provider=provider.value,
                    retry_after=LOCK_POLL_MAX_SECONDS,
                )
            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * 2, LOCK_POLL_MAX_SECONDS)

            peer = await self._peer_result(credential, force)
            if peer is not None:
                return peer, None

            owner = await self.cache.acquire_refresh_lock(
                user_id, provider, self.settings.refresh_lock_ttl_seconds
            )
            if owner is None:
                continue

            # The peer may have persisted between the read above and its release
            peer = await self._peer_result(credential, force)
            if peer is not None:
                await self.cache.release_refresh_lock(user_id, provider, owner)
                return peer, None

            logger.info(
                "Refresh lock released without a new token; refreshing locally",
                extra={"user_id": user_id, "provider": provider.value},
            )
            return None, owner

    async def _peer_result(self, credential: Credential, force: bool) -> Optional[Credential]:
        """Return a token another process produced since ``credential`` was read."""
        user_id, provider = credential.user_id, credential.provider

        cached = await self.cache.get(user_id, provider)
        if cached is not None and self._is_fresher(cached, credential, force):
            return replace(
                credential,
                access_token=cached.access_token,
                expires_at=cached.expires_at,
                scopes=cached.scopes or credential.scopes,
            )

        latest = await self.store.find(user_id, provider)
        if latest is None:
            # The peer's refresh token was rejected and the row deleted
            raise IntegrationRequired(
                f"No {provider.value} integration connected", provider=provider.value
            )
        if latest.is_expired(self.settings.expiry_skew_seconds):
            return None
        if force and latest.access_token == credential.access_token:
            return None
        await self._populate_cache(latest)
        return latest

    def _is_fresher(self, cached: CachedToken, credential: Credential, force: bool) -> bool:
        if cached.is_expired(self.settings.expiry_skew_seconds):
            return False
        # A forced refresh only accepts a token other than the one it started with
        return not force or cached.access_token != credential.access_token

    async def _do_refresh(self, credential: Credential) -> Credential:
        user_id, provider = credential.user_id, credential.provider
        audit = CredentialAuditLogger(user_id)

        try:
            grant = await self.exchanger.refresh_access_token(provider, credential.refresh_token)
        except InvalidGrant as e:
            await self._discard_revoked(credential)
            audit.log_error(provider.value, str(e), kind=e.kind.value)
            raise IntegrationRequired(
                f"{provider.value} refresh token rejected; reconnect required",
                provider=provider.value,
            ) from e

        now = datetime.now(timezone.utc)
        refreshed = replace(
            credential,
            access_token=grant.access_token,
            # Google omits refresh_token on most refresh responses
            refresh_token=grant.refresh_token or credential.refresh_token,
            expires_at=grant.expires_at(now),
            scopes=grant.scopes or credential.scopes,
            token_type=grant.token_type,
            last_refreshed_at=now,
        )

        # Cache first so the new token is usable even if persistence fails
        await self._populate_cache(refreshed)
        stored = await self.store.upsert(refreshed)

        audit.log(
            event_type=AuditEventType.CREDENTIAL_REFRESHED,
            provider=provider.value,
            metadata={
                "new_expires_at": stored.expires_at.isoformat() if stored.expires_at else None,
            },
        )
        logger.info(
            "Credential refreshed",
            extra={
                "user_id": user_id,
                "provider": provider.value,
                "new_expires_at": stored.expires_at.isoformat() if stored.expires_at else None,
            },
        )
        return stored

    async def _discard_revoked(self, credential: Credential) -> None:
        user_id, provider = credential.user_id, credential.provider
        await self.cache.invalidate(user_id, provider)
        try:
            await self.store.delete(user_id, provider)
        except StorageError:
            # The next request retries the refresh and lands here again
            logger.error(
                "Failed to delete revoked credential",
                extra={"user_id": user_id, "provider": provider.value},
                exc_info=True,
            )

    async def _populate_cache(self, credential: Credential) -> None:
        """Cache a credential's access token for the rest of its lifetime."""
        if not credential.access_token or credential.expires_at is None:
            return
        await self.cache.set(
            credential.user_id,
            credential.provider,
            CachedToken(
                access_token=credential.access_token,
                expires_at=credential.expires_at,
                scopes=credential.scopes,
            ),
            ttl_seconds=credential.remaining_seconds() or 0,
        )
