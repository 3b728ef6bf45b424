"""
Integrations API: connect, disconnect and inspect Meta Ads and Google Analytics.

Routes:
- GET    /api/integrations/{provider}/authorize  -> consent URL + state
- POST   /api/integrations/{provider}/callback   -> complete authorization
- GET    /api/integrations/{provider}/status     -> connection metadata
- GET    /api/integrations/{provider}/accounts   -> ad accounts / GA4 properties
- DELETE /api/integrations/{provider}            -> disconnect

SECURITY: user_id always comes from the authenticated request state.
Tokens never appear in responses. Credential lifecycle errors are mapped
to HTTP by the platform error handlers (409 RECONNECT_REQUIRED, 429, 503).
"""

import logging

from fastapi import APIRouter, Depends, status

from speedfunnels.api.dependencies.integrations import (
    get_current_user_id,
    get_google_analytics_client,
    get_integration_auth_service,
    get_meta_ads_client,
    get_provider,
)
from speedfunnels.api.schemas.integrations import (
    AccountListResponse,
    AdAccountSummary,
    AnalyticsPropertySummary,
    AuthorizationCallbackRequest,
    AuthorizationUrlResponse,
    DisconnectResponse,
    IntegrationStatusResponse,
)
from speedfunnels.models.integration_credential import IntegrationProvider
from speedfunnels.services.integration_auth_service import IntegrationAuthService
from speedfunnels.services.provider_api import GoogleAnalyticsAdminClient, MetaAdsClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/integrations", tags=["integrations"])


@router.get(
    "/{provider}/authorize",
    response_model=AuthorizationUrlResponse,
)
async def authorize(
    provider: IntegrationProvider = Depends(get_provider),
    user_id: int = Depends(get_current_user_id),
    service: IntegrationAuthService = Depends(get_integration_auth_service),
):
    """Start an authorization attempt and return the provider consent URL."""
    auth_request = await service.start_authorization(user_id, provider)

    logger.info(
        "Authorization URL issued",
        extra={"user_id": user_id, "provider": provider.value},
    )
    return AuthorizationUrlResponse(auth_url=auth_request.url, state=auth_request.state)


@router.post(
    "/{provider}/callback",
    response_model=IntegrationStatusResponse,
)
async def callback(
    body: AuthorizationCallbackRequest,
    provider: IntegrationProvider = Depends(get_provider),
    user_id: int = Depends(get_current_user_id),
    service: IntegrationAuthService = Depends(get_integration_auth_service),
):
    """
    Complete authorization with the code and state from the provider redirect.

    A missing, expired or mismatched state returns 409 RECONNECT_REQUIRED.
    """
    await service.complete_authorization(user_id, provider, body.code, body.state)
    integration_status = await service.get_status(user_id, provider)

    logger.info(
        "Integration connected",
        extra={"user_id": user_id, "provider": provider.value},
    )
    return IntegrationStatusResponse.from_status(integration_status)


@router.get(
    "/{provider}/status",
    response_model=IntegrationStatusResponse,
)
async def get_status(
    provider: IntegrationProvider = Depends(get_provider),
    user_id: int = Depends(get_current_user_id),
    service: IntegrationAuthService = Depends(get_integration_auth_service),
):
    integration_status = await service.get_status(user_id, provider)
    return IntegrationStatusResponse.from_status(integration_status)


@router.get(
    "/{provider}/accounts",
    response_model=AccountListResponse,
)
async def list_accounts(
    provider: IntegrationProvider = Depends(get_provider),
    user_id: int = Depends(get_current_user_id),
    service: IntegrationAuthService = Depends(get_integration_auth_service),
    meta_client: MetaAdsClient = Depends(get_meta_ads_client),
    google_client: GoogleAnalyticsAdminClient = Depends(get_google_analytics_client),
):
    """
    List the ad accounts (Meta) or GA4 properties (Google) the user can read.

    A token rejected by the provider is refreshed and the call retried once.
    """
    broker = service.broker

    if provider == IntegrationProvider.META_ADS:
        accounts = await broker.call_with_token(user_id, provider, meta_client.list_ad_accounts)
        return AccountListResponse(
            provider=provider.value,
            ad_accounts=[AdAccountSummary.from_account(a) for a in accounts],
            total=len(accounts),
        )

    properties = await broker.call_with_token(
        user_id, provider, google_client.list_account_summaries
    )
    return AccountListResponse(
        provider=provider.value,
        properties=[AnalyticsPropertySummary.from_property(p) for p in properties],
        total=len(properties),
    )


@router.delete(
    "/{provider}",
    response_model=DisconnectResponse,
    status_code=status.HTTP_200_OK,
)
async def disconnect(
    provider: IntegrationProvider = Depends(get_provider),
    user_id: int = Depends(get_current_user_id),
    service: IntegrationAuthService = Depends(get_integration_auth_service),
):
    """Disconnect the integration. Idempotent."""
    await service.disconnect(user_id, provider)
    return DisconnectResponse(provider=provider.value, is_connected=False)
