"""Configuration module for backend services."""

from speedfunnels.config.oauth import (
    ProviderSettings,
    TokenSettings,
    get_database_url,
    get_redis_url,
    load_provider_settings,
    load_token_settings,
    parse_scopes,
)

__all__ = [
    "ProviderSettings",
    "TokenSettings",
    "get_database_url",
    "get_redis_url",
    "load_provider_settings",
    "load_token_settings",
    "parse_scopes",
]
