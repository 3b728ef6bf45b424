"""
Shared fixtures for credential lifecycle tests.

- ENCRYPTION_KEY is set for every test
- Redis is replaced by an in-memory async fake with TTL bookkeeping
- The credential store runs against in-memory SQLite through aiosqlite
- Provider HTTP is served by httpx.MockTransport handlers
"""

import time
from typing import Callable, Dict, List, Optional, Tuple

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from speedfunnels.config.oauth import ProviderSettings, TokenSettings
from speedfunnels.credentials.broker import TokenBroker
from speedfunnels.credentials.cache import TokenCache
from speedfunnels.credentials.exchanger import (
    GoogleOAuthClient,
    MetaOAuthClient,
    OAuthExchanger,
)
from speedfunnels.credentials.store import CredentialStore
from speedfunnels.database.session import create_session_factory, create_tables
from speedfunnels.models.integration_credential import IntegrationProvider


# ============================================================================
# FAKES
# ============================================================================

class FakeRedis:
    """
    Minimal async Redis stand-in supporting the commands TokenCache uses.

    Set ``fail = True`` to make every command raise a connection error.
    """

    def __init__(self):
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self.fail = False
        self.calls: List[str] = []

    def _check(self, command: str) -> None:
        self.calls.append(command)
        if self.fail:
            raise RedisConnectionError("redis unavailable")

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        self._check("get")
        return self._live(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None, nx: bool = False):
        self._check("set")
        if nx and self._live(key) is not None:
            return None
        expires_at = time.monotonic() + ex if ex else None
        self._data[key] = (value, expires_at)
        return True

    async def delete(self, *keys: str) -> int:
        self._check("delete")
        removed = 0
        for key in keys:
            if self._data.pop(key, None) is not None:
                removed += 1
        return removed

    async def getdel(self, key: str) -> Optional[str]:
        self._check("getdel")
        value = self._live(key)
        self._data.pop(key, None)
        return value

    async def aclose(self) -> None:
        pass

    # Test helpers (not Redis commands)

    def ttl(self, key: str) -> Optional[float]:
        entry = self._data.get(key)
        if entry is None or entry[1] is None:
            return None
        return entry[1] - time.monotonic()

    def keys(self) -> List[str]:
        return [key for key in list(self._data) if self._live(key) is not None]


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture(autouse=True)
def encryption_key(monkeypatch):
    """Set up encryption key for testing."""
    monkeypatch.setenv("ENCRYPTION_KEY", "test-credential-encryption-key-32!")
    return "test-credential-encryption-key-32!"


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def token_cache(fake_redis):
    return TokenCache(fake_redis)


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_tables(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def credential_store(session_factory):
    return CredentialStore(session_factory)


@pytest.fixture
def token_settings():
    """Fast timings so lock waits do not slow the suite."""
    return TokenSettings(
        http_timeout_seconds=2.0,
        expiry_skew_seconds=30,
        refresh_lock_ttl_seconds=30,
        auth_state_ttl_seconds=600,
        refresh_window_minutes=30,
    )


@pytest.fixture
def meta_settings():
    return ProviderSettings(
        provider=IntegrationProvider.META_ADS,
        client_id="meta-app-id",
        client_secret="meta-app-secret",
        redirect_uri="http://localhost:3000/connect-meta/callback",
        scopes=("ads_management", "ads_read", "business_management"),
        graph_api_version="v17.0",
        exchange_long_lived=False,
    )


@pytest.fixture
def google_settings():
    return ProviderSettings(
        provider=IntegrationProvider.GOOGLE_ANALYTICS,
        client_id="google-client-id",
        client_secret="google-client-secret",
        redirect_uri="http://localhost:8000/api/google-analytics/callback",
        scopes=("https://www.googleapis.com/auth/analytics.readonly",),
    )


class ProviderHTTP:
    """
    Routes MockTransport requests to a per-test handler and records them.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.handler: Callable[[httpx.Request], httpx.Response] = (
            lambda request: httpx.Response(500, json={"error": "no handler configured"})
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def token_requests(self) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if r.url.path.endswith("/token") or r.url.path.endswith("/oauth/access_token")
        ]


@pytest.fixture
def provider_http():
    return ProviderHTTP()


@pytest.fixture
async def http_client(provider_http):
    client = httpx.AsyncClient(transport=httpx.MockTransport(provider_http))
    yield client
    await client.aclose()


@pytest.fixture
def exchanger(http_client, meta_settings, google_settings):
    return OAuthExchanger({
        IntegrationProvider.META_ADS: MetaOAuthClient(meta_settings, http_client, timeout_seconds=2.0),
        IntegrationProvider.GOOGLE_ANALYTICS: GoogleOAuthClient(google_settings, http_client, timeout_seconds=2.0),
    })


@pytest.fixture
def broker(credential_store, token_cache, exchanger, token_settings):
    return TokenBroker(credential_store, token_cache, exchanger, settings=token_settings)
