"""
Durable credential storage for third-party OAuth tokens.

SECURITY REQUIREMENTS:
- Tokens are encrypted at rest before storage
- No plaintext tokens outside process memory
- Access is always scoped by (user_id, provider)

Every write is a single statement inside its own transaction, so readers
never observe a half-written row. Connectivity failures surface as
StorageError.

Usage:
    store = CredentialStore(session_factory)

    await store.upsert(credential)
    credential = await store.find(user_id, IntegrationProvider.GOOGLE_ANALYTICS)
    await store.delete(user_id, IntegrationProvider.GOOGLE_ANALYTICS)
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone, timedelta
from typing import Optional, List, Tuple

from sqlalchemy import select, delete, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from speedfunnels.models.integration_credential import (
    IntegrationCredential,
    IntegrationProvider,
)
from speedfunnels.credentials.encryption import (
    CredentialEncryptionError,
    encrypt_optional,
    decrypt_optional,
)
from speedfunnels.credentials.errors import ConfigurationError, StorageError
from speedfunnels.credentials.redaction import CredentialAuditLogger, AuditEventType

logger = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class Credential:
    """
    Decrypted, in-memory view of an integration credential.

    SECURITY: token fields are excluded from repr; use to_safe_dict() for
    logging and API responses.
    """
    user_id: int
    provider: IntegrationProvider
    access_token: Optional[str] = field(default=None, repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    scopes: Tuple[str, ...] = ()
    token_type: str = "Bearer"
    last_refreshed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def can_refresh(self) -> bool:
        """False for providers that issue no refresh token (e.g. Meta)."""
        return bool(self.refresh_token)

    def remaining_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds until expiry, or None when no expiry is known."""
        if self.expires_at is None:
            return None
        now = now or datetime.now(timezone.utc)
        return (self.expires_at - now).total_seconds()

    def is_expired(self, skew_seconds: int = 0, now: Optional[datetime] = None) -> bool:
        """True when the access token is missing or expires within skew_seconds."""
        if not self.access_token:
            return True
        remaining = self.remaining_seconds(now)
        if remaining is None:
            return False
        return remaining <= skew_seconds

    def to_safe_dict(self) -> dict:
        """Dictionary safe for logging/API responses. Excludes all token values."""
        return {
            "user_id": self.user_id,
            "provider": self.provider.value,
            "token_type": self.token_type,
            "scopes": list(self.scopes),
            "has_refresh_token": self.can_refresh,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "last_refreshed_at": self.last_refreshed_at.isoformat() if self.last_refreshed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


def _insert_for(session: AsyncSession):
    """Return the dialect-specific insert() supporting ON CONFLICT."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
        return insert
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
        return insert
    raise StorageError(f"Unsupported database dialect for upsert: {dialect}")


class CredentialStore:
    """
    Durable CRUD over integration credentials keyed by (user_id, provider).
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def upsert(self, credential: Credential) -> Credential:
        """
        Insert or replace the credential for (user_id, provider).

        A credential without a refresh token keeps the one already stored,
        since providers such as Google only issue it on first consent.

        Returns:
            The credential as persisted (timestamps and effective refresh token)

        Raises:
            StorageError: If the database is unreachable
            ConfigurationError: If encryption is not configured
        """
        try:
            access_encrypted = await encrypt_optional(credential.access_token)
            refresh_encrypted = await encrypt_optional(credential.refresh_token)
        except CredentialEncryptionError as e:
            raise ConfigurationError(str(e), provider=credential.provider.value) from e

        now = datetime.now(timezone.utc)
        table = IntegrationCredential.__table__

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    insert = _insert_for(session)
                    stmt = insert(table).values(
                        id=str(uuid.uuid4()),
                        user_id=credential.user_id,
                        provider=credential.provider,
                        access_token_encrypted=access_encrypted,
                        refresh_token_encrypted=refresh_encrypted,
                        token_type=credential.token_type,
                        expires_at=credential.expires_at,
                        scopes=" ".join(credential.scopes) or None,
                        last_refreshed_at=credential.last_refreshed_at,
                        created_at=now,
                        updated_at=now,
                    )
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[table.c.user_id, table.c.provider],
                        set_={
                            "access_token_encrypted": stmt.excluded.access_token_encrypted,
                            "refresh_token_encrypted": func.coalesce(
                                stmt.excluded.refresh_token_encrypted,
                                table.c.refresh_token_encrypted,
                            ),
                            "token_type": stmt.excluded.token_type,
                            "expires_at": stmt.excluded.expires_at,
                            "scopes": stmt.excluded.scopes,
                            "last_refreshed_at": stmt.excluded.last_refreshed_at,
                            "updated_at": now,
                        },
                    ).returning(
                        table.c.refresh_token_encrypted,
                        table.c.created_at,
                        table.c.updated_at,
                    )
                    row = (await session.execute(stmt)).one()
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "Credential upsert failed",
                extra={
                    "user_id": credential.user_id,
                    "provider": credential.provider.value,
                    "error_type": type(e).__name__,
                },
            )
            raise StorageError(
                "Credential store unavailable", provider=credential.provider.value
            ) from e

        refresh_token = credential.refresh_token
        if refresh_token is None and row.refresh_token_encrypted:
            refresh_token = await self._decrypt(
                row.refresh_token_encrypted, credential.provider
            )

        stored = replace(
            credential,
            refresh_token=refresh_token,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

        CredentialAuditLogger(credential.user_id).log(
            event_type=AuditEventType.CREDENTIAL_STORED,
            provider=credential.provider.value,
            metadata={
                "expires_at": stored.expires_at.isoformat() if stored.expires_at else None,
                "has_refresh_token": stored.can_refresh,
            },
        )
        return stored

    async def find(
        self,
        user_id: int,
        provider: IntegrationProvider,
    ) -> Optional[Credential]:
        """
        Return the credential for (user_id, provider), or None if absent.

        Raises:
            StorageError: If the database is unreachable
            ConfigurationError: If stored tokens cannot be decrypted
        """
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(IntegrationCredential).where(
                        IntegrationCredential.user_id == user_id,
                        IntegrationCredential.provider == provider,
                    )
                )
                row = result.scalar_one_or_none()
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "Credential lookup failed",
                extra={
                    "user_id": user_id,
                    "provider": provider.value,
                    "error_type": type(e).__name__,
                },
            )
            raise StorageError("Credential store unavailable", provider=provider.value) from e

        if row is None:
            return None

        return Credential(
            user_id=row.user_id,
            provider=row.provider,
            access_token=await self._decrypt(row.access_token_encrypted, provider),
            refresh_token=await self._decrypt(row.refresh_token_encrypted, provider),
            expires_at=as_utc(row.expires_at),
            scopes=tuple((row.scopes or "").split()),
            token_type=row.token_type or "Bearer",
            last_refreshed_at=as_utc(row.last_refreshed_at),
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

    async def delete(self, user_id: int, provider: IntegrationProvider) -> bool:
        """
        Delete the credential. Idempotent.

        Returns:
            True if a row was removed, False if none existed
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(IntegrationCredential).where(
                            IntegrationCredential.user_id == user_id,
                            IntegrationCredential.provider == provider,
                        )
                    )
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "Credential delete failed",
                extra={
                    "user_id": user_id,
                    "provider": provider.value,
                    "error_type": type(e).__name__,
                },
            )
            raise StorageError("Credential store unavailable", provider=provider.value) from e

        deleted = (result.rowcount or 0) > 0
        if deleted:
            CredentialAuditLogger(user_id).log(
                event_type=AuditEventType.CREDENTIAL_DELETED,
                provider=provider.value,
            )
        return deleted

    async def mark_expired(self, user_id: int, provider: IntegrationProvider) -> None:
        """
        Force the stored access token to count as expired.

        Used when a provider rejects a token before its recorded expiry, so
        the next request refreshes instead of re-serving the stored token.
        """
        now = datetime.now(timezone.utc)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        update(IntegrationCredential)
                        .where(
                            IntegrationCredential.user_id == user_id,
                            IntegrationCredential.provider == provider,
                        )
                        .values(expires_at=now, updated_at=now)
                    )
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "Credential expiry update failed",
                extra={
                    "user_id": user_id,
                    "provider": provider.value,
                    "error_type": type(e).__name__,
                },
            )
            raise StorageError("Credential store unavailable", provider=provider.value) from e

    async def list_expiring(
        self,
        within: timedelta,
        limit: int = 500,
    ) -> List[Tuple[int, IntegrationProvider]]:
        """
        List refreshable credentials whose access token expires within the window.

        Returns:
            (user_id, provider) pairs, soonest expiry first
        """
        threshold = datetime.now(timezone.utc) + within
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(IntegrationCredential.user_id, IntegrationCredential.provider)
                    .where(
                        IntegrationCredential.expires_at.isnot(None),
                        IntegrationCredential.expires_at <= threshold,
                        IntegrationCredential.refresh_token_encrypted.isnot(None),
                    )
                    .order_by(IntegrationCredential.expires_at)
                    .limit(limit)
                )
                return [(row.user_id, row.provider) for row in result]
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "Expiring credential scan failed",
                extra={"error_type": type(e).__name__},
            )
            raise StorageError("Credential store unavailable") from e

    async def _decrypt(
        self,
        ciphertext: Optional[str],
        provider: IntegrationProvider,
    ) -> Optional[str]:
        try:
            return await decrypt_optional(ciphertext)
        except CredentialEncryptionError as e:
            logger.error(
                "Stored credential could not be decrypted",
                extra={"provider": provider.value, "operation": e.operation},
            )
            raise ConfigurationError(str(e), provider=provider.value) from e
