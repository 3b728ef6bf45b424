"""
OAuth exchanger tests.

Provider HTTP is mocked with httpx.MockTransport. Tests cover:
- Authorization URLs carry state, scopes and offline access
- Code exchange and refresh parse provider responses
- Provider errors normalize to the credential error kinds
- Timeouts and transport failures are UpstreamUnavailable
- Missing client configuration is ConfigurationError
"""

import pytest
from dataclasses import replace
from urllib.parse import parse_qs, urlparse

import httpx

from speedfunnels.config.oauth import ProviderSettings
from speedfunnels.credentials.errors import (
    ConfigurationError,
    ErrorKind,
    InvalidGrant,
    RateLimited,
    UpstreamUnavailable,
)
from speedfunnels.credentials.exchanger import MetaOAuthClient, OAuthExchanger
from speedfunnels.models.integration_credential import IntegrationProvider

META = IntegrationProvider.META_ADS
GOOGLE = IntegrationProvider.GOOGLE_ANALYTICS


def form(request: httpx.Request) -> dict:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


class TestAuthorizationUrls:
    """build_authorization_url."""

    def test_google_url_requests_offline_consent(self, exchanger):
        url = exchanger.build_authorization_url(GOOGLE, "state-123", "http://cb/google")
        parsed = urlparse(url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}

        assert parsed.netloc == "accounts.google.com"
        assert params["state"] == "state-123"
        assert params["access_type"] == "offline"
        assert params["prompt"] == "consent"
        assert params["redirect_uri"] == "http://cb/google"
        assert params["scope"] == "https://www.googleapis.com/auth/analytics.readonly"

    def test_meta_url_uses_graph_version_and_comma_scopes(self, exchanger):
        url = exchanger.build_authorization_url(META, "state-456", "http://cb/meta")
        parsed = urlparse(url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}

        assert parsed.path == "/v17.0/dialog/oauth"
        assert params["state"] == "state-456"
        assert params["scope"] == "ads_management,ads_read,business_management"
        assert params["response_type"] == "code"

    def test_unconfigured_provider_is_configuration_error(self, http_client):
        settings = ProviderSettings(
            provider=META,
            client_id=None,
            client_secret=None,
            redirect_uri="http://cb",
            scopes=("ads_read",),
        )
        exchanger = OAuthExchanger({META: MetaOAuthClient(settings, http_client)})

        with pytest.raises(ConfigurationError):
            exchanger.build_authorization_url(META, "s", "http://cb")


class TestGoogleExchange:
    """Google token endpoint."""

    @pytest.mark.asyncio
    async def test_exchange_authorization_code(self, exchanger, provider_http):
        provider_http.handler = lambda request: httpx.Response(200, json={
            "access_token": "google_access",
            "refresh_token": "google_refresh",
            "expires_in": 3599,
            "scope": "https://www.googleapis.com/auth/analytics.readonly",
            "token_type": "Bearer",
        })

        grant = await exchanger.exchange_authorization_code(GOOGLE, "auth-code", "http://cb")

        request = provider_http.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://oauth2.googleapis.com/token"
        assert form(request)["grant_type"] == "authorization_code"
        assert form(request)["code"] == "auth-code"
        assert grant.access_token == "google_access"
        assert grant.refresh_token == "google_refresh"
        assert grant.expires_in_seconds == 3599

    @pytest.mark.asyncio
    async def test_refresh_without_new_refresh_token(self, exchanger, provider_http):
        provider_http.handler = lambda request: httpx.Response(200, json={
            "access_token": "google_access_2",
            "expires_in": 3599,
        })

        grant = await exchanger.refresh_access_token(GOOGLE, "google_refresh")

        assert form(provider_http.requests[0])["grant_type"] == "refresh_token"
        assert grant.access_token == "google_access_2"
        assert grant.refresh_token is None
        assert grant.scopes == ("https://www.googleapis.com/auth/analytics.readonly",)

    @pytest.mark.asyncio
    async def test_invalid_grant(self, exchanger, provider_http):
        provider_http.handler = lambda request: httpx.Response(400, json={
            "error": "invalid_grant",
            "error_description": "Token has been expired or revoked.",
        })

        with pytest.raises(InvalidGrant) as exc_info:
            await exchanger.refresh_access_token(GOOGLE, "revoked")

        assert exc_info.value.kind == ErrorKind.INVALID_GRANT
        assert exc_info.value.requires_reauthorization is True

    @pytest.mark.parametrize("error", ["invalid_client", "unauthorized_client", "redirect_uri_mismatch"])
    @pytest.mark.asyncio
    async def test_client_errors_are_configuration_errors(self, exchanger, provider_http, error):
        provider_http.handler = lambda request: httpx.Response(401, json={"error": error})

        with pytest.raises(ConfigurationError):
            await exchanger.exchange_authorization_code(GOOGLE, "code", "http://cb")


class TestMetaExchange:
    """Meta Graph API token endpoint."""

    @pytest.mark.asyncio
    async def test_exchange_has_no_refresh_token(self, exchanger, provider_http):
        provider_http.handler = lambda request: httpx.Response(200, json={
            "access_token": "meta_access",
            "token_type": "bearer",
            "expires_in": 5183944,
        })

        grant = await exchanger.exchange_authorization_code(META, "meta-code", "http://cb")

        request = provider_http.requests[0]
        assert request.method == "GET"
        assert request.url.path == "/v17.0/oauth/access_token"
        assert request.url.params["code"] == "meta-code"
        assert grant.refresh_token is None
        assert grant.expires_in_seconds == 5183944
        assert exchanger.supports_refresh(META) is False

    @pytest.mark.asyncio
    async def test_long_lived_upgrade(self, http_client, provider_http, meta_settings):
        settings = replace(meta_settings, exchange_long_lived=True)
        exchanger = OAuthExchanger({META: MetaOAuthClient(settings, http_client)})

        def handler(request):
            if request.url.params.get("grant_type") == "fb_exchange_token":
                assert request.url.params["fb_exchange_token"] == "short_lived"
                return httpx.Response(200, json={"access_token": "long_lived", "expires_in": 5184000})
            return httpx.Response(200, json={"access_token": "short_lived", "expires_in": 3600})

        provider_http.handler = handler

        grant = await exchanger.exchange_authorization_code(META, "code", "http://cb")

        assert grant.access_token == "long_lived"
        assert grant.expires_in_seconds == 5184000
        assert len(provider_http.requests) == 2

    @pytest.mark.asyncio
    async def test_long_lived_upgrade_outage_keeps_short_lived(self, http_client, provider_http, meta_settings):
        settings = replace(meta_settings, exchange_long_lived=True)
        exchanger = OAuthExchanger({META: MetaOAuthClient(settings, http_client)})

        def handler(request):
            if request.url.params.get("grant_type") == "fb_exchange_token":
                return httpx.Response(503)
            return httpx.Response(200, json={"access_token": "short_lived", "expires_in": 3600})

        provider_http.handler = handler

        grant = await exchanger.exchange_authorization_code(META, "code", "http://cb")

        assert grant.access_token == "short_lived"

    @pytest.mark.asyncio
    async def test_refresh_is_invalid_grant_without_http(self, exchanger, provider_http):
        with pytest.raises(InvalidGrant):
            await exchanger.refresh_access_token(META, "anything")

        assert provider_http.requests == []

    @pytest.mark.parametrize("code,error_type,expected", [
        (190, "OAuthException", InvalidGrant),
        (100, "OAuthException", InvalidGrant),
        (4, "OAuthException", RateLimited),
        (17, "OAuthException", RateLimited),
        (80004, "OAuthException", RateLimited),
        (2, "OAuthException", UpstreamUnavailable),
        (101, "OAuthException", ConfigurationError),
        (191, "OAuthException", ConfigurationError),
    ])
    @pytest.mark.asyncio
    async def test_graph_error_codes(self, exchanger, provider_http, code, error_type, expected):
        provider_http.handler = lambda request: httpx.Response(400, json={
            "error": {"message": "error", "type": error_type, "code": code, "fbtrace_id": "x"},
        })

        with pytest.raises(expected):
            await exchanger.exchange_authorization_code(META, "code", "http://cb")


class TestTransportFailures:
    """Network-level failures."""

    @pytest.mark.asyncio
    async def test_timeout_is_upstream_unavailable(self, exchanger, provider_http):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        provider_http.handler = handler

        with pytest.raises(UpstreamUnavailable) as exc_info:
            await exchanger.refresh_access_token(GOOGLE, "refresh")

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_connect_error_is_upstream_unavailable(self, exchanger, provider_http):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        provider_http.handler = handler

        with pytest.raises(UpstreamUnavailable):
            await exchanger.exchange_authorization_code(GOOGLE, "code", "http://cb")

    @pytest.mark.asyncio
    async def test_server_error_is_upstream_unavailable(self, exchanger, provider_http):
        provider_http.handler = lambda request: httpx.Response(502, text="bad gateway")

        with pytest.raises(UpstreamUnavailable) as exc_info:
            await exchanger.refresh_access_token(GOOGLE, "refresh")

        assert exc_info.value.retry_after is None

    @pytest.mark.asyncio
    async def test_server_error_carries_retry_after(self, exchanger, provider_http):
        provider_http.handler = lambda request: httpx.Response(503, headers={"Retry-After": "45"})

        with pytest.raises(UpstreamUnavailable) as exc_info:
            await exchanger.refresh_access_token(GOOGLE, "refresh")

        assert exc_info.value.retry_after == 45.0

    @pytest.mark.asyncio
    async def test_429_carries_retry_after(self, exchanger, provider_http):
        provider_http.handler = lambda request: httpx.Response(429, headers={"Retry-After": "17"})

        with pytest.raises(RateLimited) as exc_info:
            await exchanger.refresh_access_token(GOOGLE, "refresh")

        assert exc_info.value.retry_after == 17.0

    @pytest.mark.asyncio
    async def test_success_without_access_token_is_upstream_unavailable(self, exchanger, provider_http):
        provider_http.handler = lambda request: httpx.Response(200, json={"unexpected": True})

        with pytest.raises(UpstreamUnavailable):
            await exchanger.refresh_access_token(GOOGLE, "refresh")
