"""
Token cache tests.

Tests cover:
- Envelope round-trip and key schema
- TTL never exceeds the token's remaining lifetime
- Non-positive TTL is a no-op
- Redis failures degrade to a miss (never raise) for access tokens
- Refresh lock ownership
- Authorization state is single-use and fails loudly when Redis is down
"""

import json
import pytest
from datetime import datetime, timedelta, timezone

from speedfunnels.credentials.cache import LOCK_UNAVAILABLE, CachedToken, TokenCache
from speedfunnels.credentials.errors import StorageError
from speedfunnels.models.integration_credential import IntegrationProvider

GOOGLE = IntegrationProvider.GOOGLE_ANALYTICS
META = IntegrationProvider.META_ADS

ACCESS_KEY = "oauth:access_token:google_analytics:7"


def make_token(expires_in: float = 3600, access_token: str = "cached_token_value") -> CachedToken:
    return CachedToken(
        access_token=access_token,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        scopes=("scope.a",),
    )


class TestAccessTokenCache:
    """get/set/invalidate of access-token envelopes."""

    @pytest.mark.asyncio
    async def test_set_then_get(self, token_cache):
        token = make_token()

        assert await token_cache.set(7, GOOGLE, token, ttl_seconds=3600) is True
        cached = await token_cache.get(7, GOOGLE)

        assert cached.access_token == "cached_token_value"
        assert cached.scopes == ("scope.a",)
        assert cached.expires_at == token.expires_at

    @pytest.mark.asyncio
    async def test_envelope_shape(self, token_cache, fake_redis):
        """The cache always stores one JSON envelope shape."""
        await token_cache.set(7, GOOGLE, make_token(), ttl_seconds=3600)

        payload = json.loads(await fake_redis.get(ACCESS_KEY))

        assert set(payload) == {"access_token", "expires_at", "scopes"}

    @pytest.mark.asyncio
    async def test_ttl_clamped_to_remaining_lifetime(self, token_cache, fake_redis):
        """CRITICAL: A cached entry never outlives the token."""
        await token_cache.set(7, GOOGLE, make_token(expires_in=120), ttl_seconds=86400)

        assert fake_redis.ttl(ACCESS_KEY) <= 120

    @pytest.mark.asyncio
    async def test_ttl_is_floored_to_whole_seconds(self, token_cache, fake_redis):
        await token_cache.set(7, GOOGLE, make_token(expires_in=3600), ttl_seconds=99.9)

        assert fake_redis.ttl(ACCESS_KEY) <= 99

    @pytest.mark.asyncio
    async def test_expired_token_is_not_cached(self, token_cache, fake_redis):
        assert await token_cache.set(7, GOOGLE, make_token(expires_in=-5), ttl_seconds=3600) is False
        assert await token_cache.set(7, GOOGLE, make_token(), ttl_seconds=0) is False
        assert fake_redis.keys() == []

    @pytest.mark.asyncio
    async def test_invalidate(self, token_cache):
        await token_cache.set(7, GOOGLE, make_token(), ttl_seconds=3600)

        await token_cache.invalidate(7, GOOGLE)

        assert await token_cache.get(7, GOOGLE) is None

    @pytest.mark.asyncio
    async def test_malformed_entry_is_a_miss_and_dropped(self, token_cache, fake_redis):
        await fake_redis.set(ACCESS_KEY, "not-json")

        assert await token_cache.get(7, GOOGLE) is None
        assert fake_redis.keys() == []


class TestRedisUnavailable:
    """Graceful degradation when Redis is down."""

    @pytest.mark.asyncio
    async def test_get_returns_none(self, token_cache, fake_redis):
        fake_redis.fail = True

        assert await token_cache.get(7, GOOGLE) is None

    @pytest.mark.asyncio
    async def test_set_and_invalidate_do_not_raise(self, token_cache, fake_redis):
        fake_redis.fail = True

        assert await token_cache.set(7, GOOGLE, make_token(), ttl_seconds=60) is False
        await token_cache.invalidate(7, GOOGLE)

    @pytest.mark.asyncio
    async def test_lock_counts_as_acquired(self, token_cache, fake_redis):
        fake_redis.fail = True

        owner = await token_cache.acquire_refresh_lock(7, GOOGLE, ttl_seconds=30)

        assert owner == LOCK_UNAVAILABLE
        await token_cache.release_refresh_lock(7, GOOGLE, owner)

    @pytest.mark.asyncio
    async def test_state_operations_raise_storage_error(self, token_cache, fake_redis):
        fake_redis.fail = True

        with pytest.raises(StorageError):
            await token_cache.store_state(7, META, "state", "http://cb", ttl_seconds=600)
        with pytest.raises(StorageError):
            await token_cache.pop_state(7, META)


class TestRefreshLock:
    """Cross-process refresh lock."""

    @pytest.mark.asyncio
    async def test_second_acquire_fails_until_released(self, token_cache):
        owner = await token_cache.acquire_refresh_lock(7, GOOGLE, ttl_seconds=30)

        assert owner is not None
        assert await token_cache.acquire_refresh_lock(7, GOOGLE, ttl_seconds=30) is None

        await token_cache.release_refresh_lock(7, GOOGLE, owner)

        assert await token_cache.acquire_refresh_lock(7, GOOGLE, ttl_seconds=30) is not None

    @pytest.mark.asyncio
    async def test_release_by_non_owner_keeps_lock(self, token_cache):
        await token_cache.acquire_refresh_lock(7, GOOGLE, ttl_seconds=30)

        await token_cache.release_refresh_lock(7, GOOGLE, "someone-else")

        assert await token_cache.acquire_refresh_lock(7, GOOGLE, ttl_seconds=30) is None

    @pytest.mark.asyncio
    async def test_lock_has_safety_ttl(self, token_cache, fake_redis):
        await token_cache.acquire_refresh_lock(7, GOOGLE, ttl_seconds=30)

        assert 0 < fake_redis.ttl("oauth:refresh_lock:google_analytics:7") <= 30


class TestAuthorizationState:
    """Single-use CSRF state storage."""

    @pytest.mark.asyncio
    async def test_pop_is_single_use(self, token_cache):
        await token_cache.store_state(7, META, "abc", "http://cb", ttl_seconds=600)

        first = await token_cache.pop_state(7, META)
        second = await token_cache.pop_state(7, META)

        assert first == {"state": "abc", "redirect_uri": "http://cb"}
        assert second is None

    @pytest.mark.asyncio
    async def test_new_attempt_replaces_pending_state(self, token_cache):
        await token_cache.store_state(7, META, "first", "http://cb", ttl_seconds=600)
        await token_cache.store_state(7, META, "second", "http://cb", ttl_seconds=600)

        assert (await token_cache.pop_state(7, META))["state"] == "second"

    @pytest.mark.asyncio
    async def test_state_is_scoped_per_user(self, token_cache):
        await token_cache.store_state(7, META, "abc", "http://cb", ttl_seconds=600)

        assert await token_cache.pop_state(8, META) is None
