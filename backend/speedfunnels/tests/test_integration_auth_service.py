"""
Integration authorization service tests.

Tests cover:
- start_authorization issues a single-use state bound to (user_id, provider)
- complete_authorization rejects missing, reused and mismatched state
- Successful completion persists and caches the credential
- disconnect removes cache and store entries and is idempotent
- get_status never exposes token values
"""

import pytest
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import httpx

from speedfunnels.credentials.errors import (
    AuthorizationStateError,
    ConfigurationError,
    IntegrationRequired,
    InvalidGrant,
    StorageError,
)
from speedfunnels.credentials.store import Credential
from speedfunnels.models.integration_credential import IntegrationProvider
from speedfunnels.services.integration_auth_service import IntegrationAuthService

META = IntegrationProvider.META_ADS
GOOGLE = IntegrationProvider.GOOGLE_ANALYTICS

USER_ID = 11


@pytest.fixture
def auth_service(broker):
    return IntegrationAuthService(broker)


def state_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


def meta_token_ok(request):
    return httpx.Response(200, json={"access_token": "meta_access", "expires_in": 5184000})


class TestStartAuthorization:
    """start_authorization."""

    @pytest.mark.asyncio
    async def test_returns_url_with_state(self, auth_service, fake_redis):
        request = await auth_service.start_authorization(USER_ID, META)

        assert state_from(request.url) == request.state
        assert len(request.state) >= 32
        assert "oauth:state:meta_ads:11" in fake_redis.keys()

    @pytest.mark.asyncio
    async def test_state_not_in_repr(self, auth_service):
        request = await auth_service.start_authorization(USER_ID, META)

        assert request.state not in repr(request)

    @pytest.mark.asyncio
    async def test_default_redirect_uri(self, auth_service, meta_settings):
        request = await auth_service.start_authorization(USER_ID, META)

        params = parse_qs(urlparse(request.url).query)
        assert params["redirect_uri"] == [meta_settings.redirect_uri]

    @pytest.mark.asyncio
    async def test_states_are_unique(self, auth_service):
        first = await auth_service.start_authorization(USER_ID, META)
        second = await auth_service.start_authorization(USER_ID, META)

        assert first.state != second.state

    @pytest.mark.asyncio
    async def test_redis_down_is_storage_error(self, auth_service, fake_redis):
        fake_redis.fail = True

        with pytest.raises(StorageError):
            await auth_service.start_authorization(USER_ID, META)

    @pytest.mark.asyncio
    async def test_unconfigured_provider_leaves_no_state(self, auth_service, broker, fake_redis):
        client = broker.exchanger.client_for(META)
        client.settings = replace(client.settings, client_id=None, client_secret=None)

        with pytest.raises(ConfigurationError):
            await auth_service.start_authorization(USER_ID, META)

        assert fake_redis.keys() == []


class TestCompleteAuthorization:
    """complete_authorization."""

    @pytest.mark.asyncio
    async def test_happy_path_persists_and_caches(self, auth_service, provider_http, credential_store, token_cache):
        provider_http.handler = meta_token_ok
        request = await auth_service.start_authorization(USER_ID, META, redirect_uri="http://cb/meta")

        credential = await auth_service.complete_authorization(USER_ID, META, "auth-code", request.state)

        assert credential.access_token == "meta_access"
        assert (await credential_store.find(USER_ID, META)).access_token == "meta_access"
        assert (await token_cache.get(USER_ID, META)).access_token == "meta_access"
        # Code is exchanged against the redirect URI the flow started with
        assert provider_http.requests[0].url.params["redirect_uri"] == "http://cb/meta"

    @pytest.mark.asyncio
    async def test_state_is_single_use(self, auth_service, provider_http):
        """CRITICAL: A replayed callback is rejected."""
        provider_http.handler = meta_token_ok
        request = await auth_service.start_authorization(USER_ID, META)
        await auth_service.complete_authorization(USER_ID, META, "code", request.state)

        with pytest.raises(AuthorizationStateError):
            await auth_service.complete_authorization(USER_ID, META, "code", request.state)

    @pytest.mark.asyncio
    async def test_without_start_is_rejected(self, auth_service, provider_http):
        with pytest.raises(AuthorizationStateError) as exc_info:
            await auth_service.complete_authorization(USER_ID, META, "code", "forged")

        assert exc_info.value.requires_reauthorization is True
        assert provider_http.requests == []

    @pytest.mark.asyncio
    async def test_mismatch_consumes_pending_state(self, auth_service, provider_http):
        request = await auth_service.start_authorization(USER_ID, META)

        with pytest.raises(AuthorizationStateError):
            await auth_service.complete_authorization(USER_ID, META, "code", "wrong-state")
        with pytest.raises(AuthorizationStateError):
            await auth_service.complete_authorization(USER_ID, META, "code", request.state)

        assert provider_http.requests == []

    @pytest.mark.asyncio
    async def test_state_bound_to_user(self, auth_service):
        request = await auth_service.start_authorization(USER_ID, META)

        with pytest.raises(AuthorizationStateError):
            await auth_service.complete_authorization(USER_ID + 1, META, "code", request.state)

    @pytest.mark.asyncio
    async def test_state_bound_to_provider(self, auth_service):
        request = await auth_service.start_authorization(USER_ID, META)

        with pytest.raises(AuthorizationStateError):
            await auth_service.complete_authorization(USER_ID, GOOGLE, "code", request.state)

    @pytest.mark.asyncio
    async def test_empty_code_is_rejected(self, auth_service, provider_http):
        request = await auth_service.start_authorization(USER_ID, META)

        with pytest.raises(AuthorizationStateError):
            await auth_service.complete_authorization(USER_ID, META, "", request.state)

        assert provider_http.requests == []

    @pytest.mark.asyncio
    async def test_rejected_code_is_invalid_grant(self, auth_service, provider_http, credential_store):
        provider_http.handler = lambda request: httpx.Response(400, json={"error": "invalid_grant"})
        request = await auth_service.start_authorization(USER_ID, GOOGLE)

        with pytest.raises(InvalidGrant):
            await auth_service.complete_authorization(USER_ID, GOOGLE, "bad-code", request.state)

        assert await credential_store.find(USER_ID, GOOGLE) is None


class TestDisconnectAndStatus:
    """disconnect and get_status."""

    @pytest.mark.asyncio
    async def test_disconnect_removes_credential(self, auth_service, broker, credential_store, token_cache, provider_http):
        provider_http.handler = meta_token_ok
        request = await auth_service.start_authorization(USER_ID, META)
        await auth_service.complete_authorization(USER_ID, META, "code", request.state)

        await auth_service.disconnect(USER_ID, META)

        assert await credential_store.find(USER_ID, META) is None
        assert await token_cache.get(USER_ID, META) is None
        with pytest.raises(IntegrationRequired):
            await broker.get_valid_access_token(USER_ID, META)

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, auth_service):
        await auth_service.disconnect(USER_ID, META)
        await auth_service.disconnect(USER_ID, META)

    @pytest.mark.asyncio
    async def test_status_not_connected(self, auth_service):
        status = await auth_service.get_status(USER_ID, GOOGLE)

        assert status.is_connected is False
        assert status.needs_reconnect is False

    @pytest.mark.asyncio
    async def test_status_connected(self, auth_service, credential_store):
        expires_at = datetime.now(timezone.utc) + timedelta(hours=1)
        await credential_store.upsert(Credential(
            user_id=USER_ID,
            provider=GOOGLE,
            access_token="secret_access",
            refresh_token="secret_refresh",
            expires_at=expires_at,
            scopes=("scope.a",),
        ))

        status = await auth_service.get_status(USER_ID, GOOGLE)

        assert status.is_connected is True
        assert status.has_refresh_token is True
        assert status.scopes == ("scope.a",)
        assert "secret" not in repr(status)

    @pytest.mark.asyncio
    async def test_expired_meta_needs_reconnect(self, auth_service, credential_store):
        await credential_store.upsert(Credential(
            user_id=USER_ID,
            provider=META,
            access_token="meta_access",
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=5),
        ))

        status = await auth_service.get_status(USER_ID, META)

        assert status.needs_reconnect is True
