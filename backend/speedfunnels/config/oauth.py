"""
OAuth integration configuration loaded from environment variables.

Client id/secret are NOT validated here; a missing value is reported as a
ConfigurationError when a token exchange is attempted, so the rest of the
application can start without every provider provisioned.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional, Tuple

from speedfunnels.models.integration_credential import IntegrationProvider

logger = logging.getLogger(__name__)

DEFAULT_FRONTEND_URL = "http://localhost:3000"
DEFAULT_API_URL = "http://localhost:8000"
DEFAULT_META_GRAPH_API_VERSION = "v17.0"
DEFAULT_META_SCOPES = ("ads_management", "ads_read", "business_management")
DEFAULT_GOOGLE_SCOPES = ("https://www.googleapis.com/auth/analytics.readonly",)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(
            "Invalid integer in environment, using default",
            extra={"variable": name, "default": default},
        )
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(
            "Invalid number in environment, using default",
            extra={"variable": name, "default": default},
        )
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def parse_scopes(raw: Optional[str]) -> Tuple[str, ...]:
    """Split a space- or comma-delimited scope string, dropping blanks and duplicates."""
    if not raw:
        return ()
    seen = []
    for part in raw.replace(",", " ").split():
        if part not in seen:
            seen.append(part)
    return tuple(seen)


@dataclass(frozen=True)
class ProviderSettings:
    """Client registration for one OAuth provider."""
    provider: IntegrationProvider
    client_id: Optional[str]
    client_secret: Optional[str]
    redirect_uri: str
    scopes: Tuple[str, ...]
    # Meta only
    graph_api_version: str = DEFAULT_META_GRAPH_API_VERSION
    exchange_long_lived: bool = True

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass(frozen=True)
class TokenSettings:
    """Timing knobs for the token broker, cache and HTTP calls."""
    http_timeout_seconds: float = 10.0
    expiry_skew_seconds: int = 30
    refresh_lock_ttl_seconds: int = 30
    auth_state_ttl_seconds: int = 600
    refresh_window_minutes: int = 30


def load_provider_settings(provider: IntegrationProvider) -> ProviderSettings:
    """Build ProviderSettings for a provider from the environment."""
    frontend_url = os.getenv("FRONTEND_URL", DEFAULT_FRONTEND_URL).rstrip("/")
    api_url = os.getenv("API_URL", DEFAULT_API_URL).rstrip("/")

    if provider == IntegrationProvider.META_ADS:
        return ProviderSettings(
            provider=provider,
            client_id=os.getenv("META_APP_ID"),
            client_secret=os.getenv("META_APP_SECRET"),
            redirect_uri=os.getenv(
                "META_REDIRECT_URI", f"{frontend_url}/connect-meta/callback"
            ),
            scopes=parse_scopes(os.getenv("META_SCOPES")) or DEFAULT_META_SCOPES,
            graph_api_version=os.getenv(
                "META_GRAPH_API_VERSION", DEFAULT_META_GRAPH_API_VERSION
            ),
            exchange_long_lived=_env_bool("META_EXCHANGE_LONG_LIVED", True),
        )

    if provider == IntegrationProvider.GOOGLE_ANALYTICS:
        return ProviderSettings(
            provider=provider,
            client_id=os.getenv("GOOGLE_CLIENT_ID"),
            client_secret=os.getenv("GOOGLE_CLIENT_SECRET"),
            redirect_uri=os.getenv(
                "GOOGLE_REDIRECT_URI", f"{api_url}/api/google-analytics/callback"
            ),
            scopes=parse_scopes(os.getenv("GOOGLE_SCOPES")) or DEFAULT_GOOGLE_SCOPES,
        )

    raise ValueError(f"Unsupported provider: {provider}")


def load_token_settings() -> TokenSettings:
    """Build TokenSettings from the environment."""
    return TokenSettings(
        http_timeout_seconds=_env_float("OAUTH_HTTP_TIMEOUT_SECONDS", 10.0),
        expiry_skew_seconds=_env_int("TOKEN_EXPIRY_SKEW_SECONDS", 30),
        refresh_lock_ttl_seconds=_env_int("REFRESH_LOCK_TTL_SECONDS", 30),
        auth_state_ttl_seconds=_env_int("AUTH_STATE_TTL_SECONDS", 600),
        refresh_window_minutes=_env_int("TOKEN_REFRESH_WINDOW_MINUTES", 30),
    )


def get_redis_url() -> str:
    return os.getenv("REDIS_URL", "redis://localhost:6379/0")


def get_database_url() -> str:
    """
    Return DATABASE_URL rewritten for the asyncpg driver.

    Raises:
        ValueError: If DATABASE_URL is not set
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    elif database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url
