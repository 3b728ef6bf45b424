"""
Token refresh job: cron job that refreshes OAuth access tokens before expiry.

Scheduled complement to on-demand refresh in the TokenBroker: credentials
whose access token expires within TOKEN_REFRESH_WINDOW_MINUTES and that
hold a refresh token (Google Analytics) are refreshed proactively so user
requests rarely wait on a provider round-trip.

CONSTRAINTS:
- Operates across all users
- Respects TOKEN_REFRESH_DRY_RUN for safe rollout
- A revoked refresh token deletes the credential (user must reconnect)
- Transient provider failures leave the credential untouched for the next run

Run as a cron job (e.g. every 15 minutes):
    python -m speedfunnels.workers.token_refresh_job
"""

import asyncio
import logging
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from speedfunnels.config.oauth import get_redis_url, load_token_settings
from speedfunnels.credentials.broker import TokenBroker
from speedfunnels.credentials.cache import TokenCache, create_redis_client
from speedfunnels.credentials.errors import StorageError, TokenLifecycleError
from speedfunnels.credentials.exchanger import OAuthExchanger
from speedfunnels.credentials.redaction import setup_credential_logging
from speedfunnels.credentials.store import CredentialStore
from speedfunnels.database.session import create_engine, create_session_factory

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Configurable via environment variables
TOKEN_REFRESH_DRY_RUN = (
    os.getenv("TOKEN_REFRESH_DRY_RUN", "false").lower() == "true"
)


@dataclass
class RefreshStats:
    """Statistics from a token refresh run."""

    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    credentials_eligible: int = 0
    credentials_refreshed: int = 0
    reconnect_required: int = 0
    dry_run: bool = TOKEN_REFRESH_DRY_RUN
    errors: list = field(default_factory=list)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        duration = None
        if self.completed_at:
            duration = (self.completed_at - self.started_at).total_seconds()

        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "credentials_eligible": self.credentials_eligible,
            "credentials_refreshed": self.credentials_refreshed,
            "reconnect_required": self.reconnect_required,
            "dry_run": self.dry_run,
            "error_count": len(self.errors),
            "duration_seconds": duration,
        }


async def run_refresh(
    broker: TokenBroker,
    within: timedelta,
    dry_run: bool = TOKEN_REFRESH_DRY_RUN,
) -> RefreshStats:
    """
    Refresh every refreshable credential expiring within the window.

    One failing credential never stops the run; its error kind is recorded.

    Raises:
        StorageError: If expiring credentials cannot be listed
    """
    stats = RefreshStats(dry_run=dry_run)

    expiring = await broker.store.list_expiring(within)
    stats.credentials_eligible = len(expiring)

    if not expiring:
        logger.info("No credentials due for refresh")
        stats.completed_at = datetime.now(timezone.utc)
        return stats

    logger.info(
        "Credentials due for refresh",
        extra={"count": stats.credentials_eligible, "dry_run": dry_run},
    )

    if dry_run:
        logger.info(
            "[DRY RUN] Would refresh %d credentials",
            stats.credentials_eligible,
        )
        stats.completed_at = datetime.now(timezone.utc)
        return stats

    for user_id, provider in expiring:
        try:
            await broker.refresh(user_id, provider)
            stats.credentials_refreshed += 1
        except TokenLifecycleError as exc:
            if exc.requires_reauthorization:
                stats.reconnect_required += 1
            else:
                stats.errors.append(
                    {"user_id": user_id, "provider": provider.value, "error_kind": exc.kind.value}
                )
            logger.warning(
                "Scheduled refresh failed",
                extra={
                    "user_id": user_id,
                    "provider": provider.value,
                    "error_kind": exc.kind.value,
                },
            )

    stats.completed_at = datetime.now(timezone.utc)
    logger.info(
        "Token refresh completed",
        extra={
            "eligible": stats.credentials_eligible,
            "refreshed": stats.credentials_refreshed,
            "reconnect_required": stats.reconnect_required,
        },
    )
    return stats


async def _run(dry_run: bool) -> RefreshStats:
    settings = load_token_settings()
    engine = create_engine()
    redis_client = create_redis_client(get_redis_url())
    http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)

    try:
        broker = TokenBroker(
            store=CredentialStore(create_session_factory(engine)),
            cache=TokenCache(redis_client),
            exchanger=OAuthExchanger.from_environment(http_client, settings),
            settings=settings,
        )
        return await run_refresh(
            broker,
            within=timedelta(minutes=settings.refresh_window_minutes),
            dry_run=dry_run,
        )
    finally:
        await http_client.aclose()
        await redis_client.aclose()
        await engine.dispose()


def main():
    """Entry point for the token refresh job."""
    setup_credential_logging()
    logger.info(
        "Token Refresh Job starting",
        extra={"dry_run": TOKEN_REFRESH_DRY_RUN},
    )

    try:
        stats = asyncio.run(_run(TOKEN_REFRESH_DRY_RUN))
        logger.info("Token Refresh Job stats", extra=stats.to_dict())
    except (StorageError, ValueError) as exc:
        logger.error(
            "Token Refresh Job failed",
            extra={"error_type": type(exc).__name__},
            exc_info=True,
        )
        sys.exit(1)

    logger.info("Token Refresh Job finished")


if __name__ == "__main__":
    main()
