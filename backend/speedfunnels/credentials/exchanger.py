"""
OAuth code exchange and token refresh against provider endpoints.

One ProviderOAuthClient per provider, behind a common interface:
- MetaOAuthClient: Graph API, no refresh tokens, optional long-lived upgrade
- GoogleOAuthClient: oauth2.googleapis.com, offline access with refresh tokens

Provider HTTP statuses and error JSON are normalized here into the
credential error kinds; nothing above this module inspects them.

SECURITY:
- Client secrets, codes and tokens are never logged
- Provider error bodies are redacted before logging

Usage:
    exchanger = OAuthExchanger.from_environment(http_client)
    grant = await exchanger.exchange_authorization_code(provider, code, redirect_uri)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx

from speedfunnels.config.oauth import (
    ProviderSettings,
    TokenSettings,
    load_provider_settings,
    load_token_settings,
    parse_scopes,
)
from speedfunnels.credentials.errors import (
    ConfigurationError,
    InvalidGrant,
    RateLimited,
    TokenLifecycleError,
    UpstreamUnavailable,
)
from speedfunnels.credentials.redaction import redact_credential_data
from speedfunnels.models.integration_credential import IntegrationProvider

logger = logging.getLogger(__name__)


@dataclass
class TokenGrant:
    """
    Tokens returned by a provider token endpoint.

    SECURITY: token fields are excluded from repr.
    """
    access_token: str = field(repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_in_seconds: Optional[int] = None
    scopes: Tuple[str, ...] = ()
    token_type: str = "Bearer"

    def expires_at(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """Absolute expiry, or None when the provider did not report one."""
        if self.expires_in_seconds is None:
            return None
        now = now or datetime.now(timezone.utc)
        return now + timedelta(seconds=self.expires_in_seconds)


def parse_retry_after(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


def _json_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _parse_expires_in(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class ProviderOAuthClient(ABC):
    """
    Common interface for one provider's OAuth endpoints.

    Stateless apart from configuration; holds no tokens.
    """

    provider: IntegrationProvider
    supports_refresh: bool = True

    def __init__(
        self,
        settings: ProviderSettings,
        http_client: httpx.AsyncClient,
        timeout_seconds: float = 10.0,
    ):
        self.settings = settings
        self._http = http_client
        self._timeout = timeout_seconds

    @abstractmethod
    def build_authorization_url(self, state: str, redirect_uri: str) -> str:
        """Return the provider consent URL carrying the given state."""

    @abstractmethod
    async def exchange_authorization_code(self, code: str, redirect_uri: str) -> TokenGrant:
        """Exchange a one-time authorization code for tokens."""

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Obtain a new access token from a refresh token."""

    @abstractmethod
    def _raise_for_error(self, response: httpx.Response) -> None:
        """Map a non-success provider response to a TokenLifecycleError."""

    def _require_configured(self) -> None:
        if not self.settings.is_configured:
            logger.error(
                "OAuth client credentials not configured",
                extra={"provider": self.provider.value},
            )
            raise ConfigurationError(
                f"OAuth client id/secret not configured for {self.provider.value}",
                provider=self.provider.value,
            )

    async def _send(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        """
        Call a token endpoint and return its JSON body.

        Raises:
            UpstreamUnavailable: Timeout, transport failure, 5xx or malformed body
            RateLimited: HTTP 429 or provider throttling
            InvalidGrant / ConfigurationError: Provider rejected the request
        """
        provider = self.provider.value
        try:
            response = await self._http.request(method, url, timeout=self._timeout, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("OAuth token endpoint timed out", extra={"provider": provider})
            raise UpstreamUnavailable("Token endpoint timed out", provider=provider) from e
        except httpx.TransportError as e:
            logger.warning(
                "OAuth token endpoint unreachable",
                extra={"provider": provider, "error_type": type(e).__name__},
            )
            raise UpstreamUnavailable("Token endpoint unreachable", provider=provider) from e

        if response.status_code == 429:
            raise RateLimited(
                "Token endpoint rate limited",
                provider=provider,
                retry_after=parse_retry_after(response),
            )
        if response.status_code >= 500:
            logger.warning(
                "OAuth token endpoint returned server error",
                extra={"provider": provider, "status_code": response.status_code},
            )
            raise UpstreamUnavailable(
                f"Token endpoint returned HTTP {response.status_code}",
                provider=provider,
                retry_after=parse_retry_after(response),
            )
        if response.status_code >= 400:
            self._raise_for_error(response)
            # Subclasses always raise; this covers an unmapped body
            raise InvalidGrant(
                f"Token endpoint rejected request (HTTP {response.status_code})",
                provider=provider,
            )

        body = _json_body(response)
        if not body.get("access_token"):
            logger.warning(
                "OAuth token response missing access_token",
                extra={"provider": provider, "body": redact_credential_data(body)},
            )
            raise UpstreamUnavailable("Malformed token response", provider=provider)
        return body


class MetaOAuthClient(ProviderOAuthClient):
    """
    Facebook Login for the Meta Marketing API.

    Meta issues no refresh tokens. A short-lived user token may be upgraded
    to a long-lived (~60 day) token, after which the user must reconnect.
    """

    provider = IntegrationProvider.META_ADS
    supports_refresh = False

    AUTHORIZE_URL = "https://www.facebook.com/{version}/dialog/oauth"
    TOKEN_URL = "https://graph.facebook.com/{version}/oauth/access_token"

    # Graph API error codes
    TOKEN_ERROR_CODES = frozenset({190})
    THROTTLE_ERROR_CODES = frozenset({4, 17, 32, 613}) | frozenset(range(80000, 80015))
    TRANSIENT_ERROR_CODES = frozenset({1, 2})
    APP_ERROR_CODES = frozenset({101, 191})

    @property
    def token_url(self) -> str:
        return self.TOKEN_URL.format(version=self.settings.graph_api_version)

    def build_authorization_url(self, state: str, redirect_uri: str) -> str:
        self._require_configured()
        params = {
            "client_id": self.settings.client_id,
            "redirect_uri": redirect_uri,
            "state": state,
            "scope": ",".join(self.settings.scopes),
            "response_type": "code",
        }
        base = self.AUTHORIZE_URL.format(version=self.settings.graph_api_version)
        return f"{base}?{urlencode(params)}"

    async def exchange_authorization_code(self, code: str, redirect_uri: str) -> TokenGrant:
        self._require_configured()
        body = await self._send(
            "GET",
            self.token_url,
            params={
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
                "redirect_uri": redirect_uri,
                "code": code,
            },
        )
        grant = self._grant_from(body)

        if self.settings.exchange_long_lived:
            grant = await self._exchange_long_lived(grant)
        return grant

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        raise InvalidGrant(
            "Meta does not issue refresh tokens; reauthorization required",
            provider=self.provider.value,
        )

    async def _exchange_long_lived(self, short_lived: TokenGrant) -> TokenGrant:
        """Upgrade a short-lived token; keep the short-lived one if Meta is unavailable."""
        try:
            body = await self._send(
                "GET",
                self.token_url,
                params={
                    "grant_type": "fb_exchange_token",
                    "client_id": self.settings.client_id,
                    "client_secret": self.settings.client_secret,
                    "fb_exchange_token": short_lived.access_token,
                },
            )
        except (UpstreamUnavailable, RateLimited) as e:
            logger.warning(
                "Long-lived token exchange failed; keeping short-lived token",
                extra={"provider": self.provider.value, "error_kind": e.kind.value},
            )
            return short_lived

        long_lived = self._grant_from(body)
        if not long_lived.scopes:
            long_lived.scopes = short_lived.scopes
        return long_lived

    def _grant_from(self, body: Dict[str, Any]) -> TokenGrant:
        return TokenGrant(
            access_token=body["access_token"],
            refresh_token=None,
            expires_in_seconds=_parse_expires_in(body.get("expires_in")),
            scopes=self.settings.scopes,
            token_type=body.get("token_type") or "Bearer",
        )

    def _raise_for_error(self, response: httpx.Response) -> None:
        provider = self.provider.value
        error = _json_body(response).get("error") or {}
        if not isinstance(error, dict):
            error = {}
        code = error.get("code")
        error_type = error.get("type")

        logger.warning(
            "Meta token endpoint returned error",
            extra={
                "provider": provider,
                "status_code": response.status_code,
                "error_code": code,
                "error_subcode": error.get("error_subcode"),
                "error_type": error_type,
            },
        )

        if code in self.TOKEN_ERROR_CODES or (code == 100 and error_type == "OAuthException"):
            raise InvalidGrant("Meta rejected the authorization grant", provider=provider)
        if code in self.THROTTLE_ERROR_CODES:
            raise RateLimited(
                "Meta is throttling requests",
                provider=provider,
                retry_after=parse_retry_after(response),
            )
        if code in self.TRANSIENT_ERROR_CODES:
            raise UpstreamUnavailable("Meta reported a transient error", provider=provider)
        if code in self.APP_ERROR_CODES:
            logger.error("Meta rejected the app configuration", extra={"provider": provider})
            raise ConfigurationError("Meta rejected the app configuration", provider=provider)
        raise InvalidGrant(
            f"Meta rejected the request (HTTP {response.status_code})", provider=provider
        )


class GoogleOAuthClient(ProviderOAuthClient):
    """
    Google OAuth 2.0 for the Analytics Admin/Data APIs.

    Requests offline access with forced consent so a refresh token is
    issued; later refresh responses may omit it.
    """

    provider = IntegrationProvider.GOOGLE_ANALYTICS
    supports_refresh = True

    AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"

    CONFIGURATION_ERRORS = frozenset({"invalid_client", "unauthorized_client", "redirect_uri_mismatch"})

    def build_authorization_url(self, state: str, redirect_uri: str) -> str:
        self._require_configured()
        params = {
            "client_id": self.settings.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.settings.scopes),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{self.AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_authorization_code(self, code: str, redirect_uri: str) -> TokenGrant:
        self._require_configured()
        body = await self._send(
            "POST",
            self.TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
            },
        )
        return self._grant_from(body)

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        self._require_configured()
        body = await self._send(
            "POST",
            self.TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
            },
        )
        return self._grant_from(body)

    def _grant_from(self, body: Dict[str, Any]) -> TokenGrant:
        return TokenGrant(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or None,
            expires_in_seconds=_parse_expires_in(body.get("expires_in")),
            scopes=parse_scopes(body.get("scope")) or self.settings.scopes,
            token_type=body.get("token_type") or "Bearer",
        )

    def _raise_for_error(self, response: httpx.Response) -> None:
        provider = self.provider.value
        error = _json_body(response).get("error")
        if isinstance(error, dict):
            # Some Google endpoints nest {"error": {"status": ...}}
            error = str(error.get("status", "")).lower()

        logger.warning(
            "Google token endpoint returned error",
            extra={
                "provider": provider,
                "status_code": response.status_code,
                "error_code": error,
            },
        )

        if error == "invalid_grant":
            raise InvalidGrant("Google rejected the authorization grant", provider=provider)
        if error in self.CONFIGURATION_ERRORS:
            logger.error(
                "Google rejected the client configuration",
                extra={"provider": provider, "error_code": error},
            )
            raise ConfigurationError(
                f"Google rejected the client configuration ({error})", provider=provider
            )
        raise InvalidGrant(
            f"Google rejected the request (HTTP {response.status_code})", provider=provider
        )


PROVIDER_CLIENTS = {
    IntegrationProvider.META_ADS: MetaOAuthClient,
    IntegrationProvider.GOOGLE_ANALYTICS: GoogleOAuthClient,
}


class OAuthExchanger:
    """
    Dispatches token operations to the registered provider client.
    """

    def __init__(self, clients: Dict[IntegrationProvider, ProviderOAuthClient]):
        self._clients = dict(clients)

    @classmethod
    def from_environment(
        cls,
        http_client: httpx.AsyncClient,
        token_settings: Optional[TokenSettings] = None,
    ) -> "OAuthExchanger":
        """Build clients for every supported provider from environment settings."""
        token_settings = token_settings or load_token_settings()
        clients = {
            provider: client_cls(
                load_provider_settings(provider),
                http_client,
                timeout_seconds=token_settings.http_timeout_seconds,
            )
            for provider, client_cls in PROVIDER_CLIENTS.items()
        }
        return cls(clients)

    def client_for(self, provider: IntegrationProvider) -> ProviderOAuthClient:
        client = self._clients.get(provider)
        if client is None:
            logger.error("No OAuth client registered", extra={"provider": provider.value})
            raise ConfigurationError(
                f"No OAuth client registered for {provider.value}", provider=provider.value
            )
        return client

    def supports_refresh(self, provider: IntegrationProvider) -> bool:
        return self.client_for(provider).supports_refresh

    def default_redirect_uri(self, provider: IntegrationProvider) -> str:
        return self.client_for(provider).settings.redirect_uri

    def build_authorization_url(
        self,
        provider: IntegrationProvider,
        state: str,
        redirect_uri: str,
    ) -> str:
        return self.client_for(provider).build_authorization_url(state, redirect_uri)

    async def exchange_authorization_code(
        self,
        provider: IntegrationProvider,
        code: str,
        redirect_uri: str,
    ) -> TokenGrant:
        """
        Exchange an authorization code for tokens.

        Raises:
            InvalidGrant: Code expired, already used or redirect mismatch
            ConfigurationError: Client id/secret missing or rejected
            UpstreamUnavailable: Network failure, timeout or 5xx
            RateLimited: Provider throttling
        """
        return await self._call(
            provider, "exchange", self.client_for(provider).exchange_authorization_code(code, redirect_uri)
        )

    async def refresh_access_token(
        self,
        provider: IntegrationProvider,
        refresh_token: str,
    ) -> TokenGrant:
        """
        Obtain a new access token.

        Raises:
            InvalidGrant: Refresh token revoked or expired
            ConfigurationError, UpstreamUnavailable, RateLimited: as above
        """
        return await self._call(
            provider, "refresh", self.client_for(provider).refresh_access_token(refresh_token)
        )

    async def _call(self, provider: IntegrationProvider, operation: str, coro) -> TokenGrant:
        try:
            grant = await coro
        except TokenLifecycleError as e:
            logger.info(
                "OAuth token operation failed",
                extra={
                    "provider": provider.value,
                    "operation": operation,
                    "error_kind": e.kind.value,
                },
            )
            raise
        logger.info(
            "OAuth token operation succeeded",
            extra={
                "provider": provider.value,
                "operation": operation,
                "expires_in_seconds": grant.expires_in_seconds,
                "has_refresh_token": bool(grant.refresh_token),
            },
        )
        return grant
