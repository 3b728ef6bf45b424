"""
FastAPI application factory for the integrations backend.

Shared resources (database engine, Redis client, HTTP client) are created
in the lifespan and torn down on shutdown. Authentication middleware that
sets ``request.state.user_id`` is installed by the hosting application.

Run locally:
    uvicorn speedfunnels.main:create_app --factory
"""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from speedfunnels import __version__
from speedfunnels.api.routes.integrations import router as integrations_router
from speedfunnels.config.oauth import (
    get_redis_url,
    load_provider_settings,
    load_token_settings,
)
from speedfunnels.credentials.broker import TokenBroker
from speedfunnels.credentials.cache import TokenCache, create_redis_client
from speedfunnels.credentials.encryption import validate_encryption_ready
from speedfunnels.credentials.exchanger import OAuthExchanger
from speedfunnels.credentials.redaction import setup_credential_logging
from speedfunnels.credentials.store import CredentialStore
from speedfunnels.database.session import create_engine, create_session_factory
from speedfunnels.models.integration_credential import IntegrationProvider
from speedfunnels.platform.errors import register_exception_handlers
from speedfunnels.services.provider_api import GoogleAnalyticsAdminClient, MetaAdsClient

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_credential_logging()
    validate_encryption_ready()

    token_settings = load_token_settings()
    meta_settings = load_provider_settings(IntegrationProvider.META_ADS)

    engine = create_engine()
    redis_client = create_redis_client(get_redis_url())
    http_client = httpx.AsyncClient(timeout=token_settings.http_timeout_seconds)

    app.state.token_broker = TokenBroker(
        store=CredentialStore(create_session_factory(engine)),
        cache=TokenCache(redis_client),
        exchanger=OAuthExchanger.from_environment(http_client, token_settings),
        settings=token_settings,
    )
    app.state.meta_ads_client = MetaAdsClient(
        http_client,
        timeout_seconds=token_settings.http_timeout_seconds,
        graph_api_version=meta_settings.graph_api_version,
    )
    app.state.google_analytics_client = GoogleAnalyticsAdminClient(
        http_client,
        timeout_seconds=token_settings.http_timeout_seconds,
    )

    logger.info("Integrations backend started", extra={"version": __version__})
    try:
        yield
    finally:
        await http_client.aclose()
        await redis_client.aclose()
        await engine.dispose()
        logger.info("Integrations backend stopped")


def create_app() -> FastAPI:
    app = FastAPI(title="SpeedFunnels Integrations", version=__version__, lifespan=lifespan)
    register_exception_handlers(app)
    app.include_router(integrations_router)
    return app
