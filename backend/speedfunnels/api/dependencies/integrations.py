"""
FastAPI dependencies for the integrations API.

Shared clients (broker, provider data clients) are created once in the
application lifespan and read from ``app.state``.
"""

import logging

from fastapi import Depends, Request

from speedfunnels.credentials.broker import TokenBroker
from speedfunnels.models.integration_credential import IntegrationProvider
from speedfunnels.platform.errors import AuthenticationError, NotFoundError
from speedfunnels.services.integration_auth_service import IntegrationAuthService
from speedfunnels.services.provider_api import GoogleAnalyticsAdminClient, MetaAdsClient

logger = logging.getLogger(__name__)

# Path segments accepted for each provider
PROVIDER_ALIASES = {
    "meta": IntegrationProvider.META_ADS,
    "meta-ads": IntegrationProvider.META_ADS,
    "meta_ads": IntegrationProvider.META_ADS,
    "google-analytics": IntegrationProvider.GOOGLE_ANALYTICS,
    "google_analytics": IntegrationProvider.GOOGLE_ANALYTICS,
}


def get_current_user_id(request: Request) -> int:
    """
    Return the authenticated user id set by the auth middleware.

    SECURITY: never read from the request body or query.
    """
    user_id = getattr(request.state, "user_id", None)
    if user_id is None:
        raise AuthenticationError()
    try:
        return int(user_id)
    except (TypeError, ValueError):
        logger.warning("Non-integer user id on request state")
        raise AuthenticationError()


def get_provider(provider: str) -> IntegrationProvider:
    """Resolve the {provider} path segment."""
    resolved = PROVIDER_ALIASES.get(provider.lower())
    if resolved is None:
        raise NotFoundError("Integration provider", provider)
    return resolved


def get_token_broker(request: Request) -> TokenBroker:
    return request.app.state.token_broker


def get_integration_auth_service(
    broker: TokenBroker = Depends(get_token_broker),
) -> IntegrationAuthService:
    return IntegrationAuthService(broker)


def get_meta_ads_client(request: Request) -> MetaAdsClient:
    return request.app.state.meta_ads_client


def get_google_analytics_client(request: Request) -> GoogleAnalyticsAdminClient:
    return request.app.state.google_analytics_client
