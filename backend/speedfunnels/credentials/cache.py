"""
Redis-backed cache for short-lived OAuth access tokens.

Provides:
- Access-token envelopes with TTL bounded by the token's real lifetime
- A refresh-lock marker so only one process refreshes a (user, provider) pair
- Single-use authorization ``state`` envelopes for CSRF protection

The access-token cache is advisory: every Redis failure is logged and
treated as a miss, never raised. Authorization state has no durable
fallback, so its failures surface as StorageError.

Key schema:
- oauth:access_token:{provider}:{user_id} -> JSON {access_token, expires_at, scopes}
- oauth:refresh_lock:{provider}:{user_id} -> owner id (TTL = safety timeout)
- oauth:state:{provider}:{user_id}        -> JSON {state, redirect_uri} (TTL 10 min)
"""

import json
import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Tuple

import redis.asyncio as redis

from speedfunnels.models.integration_credential import IntegrationProvider
from speedfunnels.credentials.errors import StorageError

logger = logging.getLogger(__name__)

KEY_PREFIX = "oauth"

# Returned when Redis is down: the caller proceeds as if it held the lock
LOCK_UNAVAILABLE = "lock-unavailable"


@dataclass
class CachedToken:
    """Cached access-token envelope."""
    access_token: str = field(repr=False)
    expires_at: datetime
    scopes: Tuple[str, ...] = ()

    def remaining_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (self.expires_at - now).total_seconds()

    def is_expired(self, skew_seconds: int = 0, now: Optional[datetime] = None) -> bool:
        return self.remaining_seconds(now) <= skew_seconds

    def to_json(self) -> str:
        return json.dumps({
            "access_token": self.access_token,
            "expires_at": self.expires_at.isoformat(),
            "scopes": list(self.scopes),
        })

    @classmethod
    def from_json(cls, raw) -> "CachedToken":
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
        expires_at = datetime.fromisoformat(data["expires_at"])
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return cls(
            access_token=data["access_token"],
            expires_at=expires_at,
            scopes=tuple(data.get("scopes") or ()),
        )


def _key(kind: str, user_id: int, provider: IntegrationProvider) -> str:
    return f"{KEY_PREFIX}:{kind}:{provider.value}:{user_id}"


class TokenCache:
    """
    Cache-aside layer for access tokens in front of the CredentialStore.
    """

    def __init__(self, redis_client: redis.Redis):
        self._redis = redis_client

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    async def get(
        self,
        user_id: int,
        provider: IntegrationProvider,
    ) -> Optional[CachedToken]:
        """Return the cached envelope, or None on miss, corruption or Redis failure."""
        key = _key("access_token", user_id, provider)
        try:
            raw = await self._redis.get(key)
        except Exception:
            logger.warning(
                "Token cache read failed; treating as miss",
                extra={"user_id": user_id, "provider": provider.value},
                exc_info=True,
            )
            return None

        if not raw:
            return None

        try:
            return CachedToken.from_json(raw)
        except (ValueError, KeyError, TypeError):
            logger.warning(
                "Discarding malformed token cache entry",
                extra={"user_id": user_id, "provider": provider.value},
            )
            await self.invalidate(user_id, provider)
            return None

    async def set(
        self,
        user_id: int,
        provider: IntegrationProvider,
        token: CachedToken,
        ttl_seconds: float,
    ) -> bool:
        """
        Cache a token for at most ttl_seconds and never past its own expiry.

        A non-positive effective TTL is a no-op (expired tokens are not cached).

        Returns:
            True if the entry was written
        """
        ttl = math.floor(min(ttl_seconds, token.remaining_seconds()))
        if ttl <= 0:
            return False

        try:
            await self._redis.set(
                _key("access_token", user_id, provider), token.to_json(), ex=ttl
            )
        except Exception:
            logger.warning(
                "Token cache write failed",
                extra={"user_id": user_id, "provider": provider.value},
                exc_info=True,
            )
            return False

        logger.debug(
            "Cached access token",
            extra={"user_id": user_id, "provider": provider.value, "ttl_seconds": ttl},
        )
        return True

    async def invalidate(self, user_id: int, provider: IntegrationProvider) -> None:
        """Drop the cached token. Failures are logged, never raised."""
        try:
            await self._redis.delete(_key("access_token", user_id, provider))
        except Exception:
            logger.warning(
                "Token cache invalidation failed",
                extra={"user_id": user_id, "provider": provider.value},
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Refresh lock
    # ------------------------------------------------------------------

    async def acquire_refresh_lock(
        self,
        user_id: int,
        provider: IntegrationProvider,
        ttl_seconds: int,
    ) -> Optional[str]:
        """
        Try to take the cross-process refresh lock for a pair.

        Returns:
            An owner id when acquired (LOCK_UNAVAILABLE if Redis is down),
            or None when another process holds the lock
        """
        owner = uuid.uuid4().hex
        try:
            acquired = await self._redis.set(
                _key("refresh_lock", user_id, provider), owner, nx=True, ex=ttl_seconds
            )
        except Exception:
            logger.warning(
                "Refresh lock unavailable; proceeding without it",
                extra={"user_id": user_id, "provider": provider.value},
                exc_info=True,
            )
            return LOCK_UNAVAILABLE
        return owner if acquired else None

    async def release_refresh_lock(
        self,
        user_id: int,
        provider: IntegrationProvider,
        owner: str,
    ) -> None:
        """Release the lock if this owner still holds it."""
        if owner == LOCK_UNAVAILABLE:
            return
        key = _key("refresh_lock", user_id, provider)
        try:
            current = await self._redis.get(key)
            if isinstance(current, bytes):
                current = current.decode("utf-8")
            if current == owner:
                await self._redis.delete(key)
        except Exception:
            logger.warning(
                "Refresh lock release failed; it will expire on its own",
                extra={"user_id": user_id, "provider": provider.value},
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Authorization state
    # ------------------------------------------------------------------

    async def store_state(
        self,
        user_id: int,
        provider: IntegrationProvider,
        state: str,
        redirect_uri: str,
        ttl_seconds: int,
    ) -> None:
        """
        Store the pending authorization state, replacing any earlier attempt.

        Raises:
            StorageError: If Redis is unavailable
        """
        payload = json.dumps({"state": state, "redirect_uri": redirect_uri})
        try:
            await self._redis.set(_key("state", user_id, provider), payload, ex=ttl_seconds)
        except Exception as e:
            logger.error(
                "Failed to store authorization state",
                extra={"user_id": user_id, "provider": provider.value},
                exc_info=True,
            )
            raise StorageError(
                "Authorization state store unavailable", provider=provider.value
            ) from e

    async def pop_state(
        self,
        user_id: int,
        provider: IntegrationProvider,
    ) -> Optional[dict]:
        """
        Atomically read and delete the pending authorization state.

        Raises:
            StorageError: If Redis is unavailable
        """
        try:
            raw = await self._redis.getdel(_key("state", user_id, provider))
        except Exception as e:
            logger.error(
                "Failed to read authorization state",
                extra={"user_id": user_id, "provider": provider.value},
                exc_info=True,
            )
            raise StorageError(
                "Authorization state store unavailable", provider=provider.value
            ) from e

        if not raw:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return json.loads(raw)
        except ValueError:
            return None


def create_redis_client(redis_url: str) -> redis.Redis:
    """Create the shared async Redis client."""
    return redis.Redis.from_url(redis_url, decode_responses=True)
