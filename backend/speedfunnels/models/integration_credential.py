"""
IntegrationCredential model - durable storage for third-party OAuth tokens.

SECURITY REQUIREMENTS:
- Tokens are encrypted at rest using ENCRYPTION_KEY env var
- No plaintext tokens outside process memory
- Exactly one row per (user_id, provider); upserts replace in place

Lifecycle:
- Created on the first successful authorization-code exchange
- Updated on every successful refresh
- Deleted on explicit disconnect or when the provider revokes the refresh token
"""

import uuid
import enum

from sqlalchemy import (
    Column, String, Integer, DateTime, Text, Enum, Index, UniqueConstraint
)

from speedfunnels.db_base import Base
from speedfunnels.models.base import TimestampMixin


class IntegrationProvider(str, enum.Enum):
    """Supported OAuth integration providers."""
    META_ADS = "meta_ads"
    GOOGLE_ANALYTICS = "google_analytics"


class IntegrationCredential(Base, TimestampMixin):
    """
    OAuth credential row for one user and one provider.

    SECURITY:
    - access_token_encrypted and refresh_token_encrypted are encrypted at rest
    - Tokens are NEVER exposed in API responses or logs
    """

    __tablename__ = "integration_credentials"

    id = Column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)"
    )
    user_id = Column(
        Integer,
        nullable=False,
        comment="Owning user"
    )
    provider = Column(
        Enum(
            IntegrationProvider,
            name="integration_provider",
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False,
        comment="OAuth provider (meta_ads, google_analytics)"
    )

    # Encrypted tokens - NEVER log these values
    access_token_encrypted = Column(
        Text,
        nullable=True,
        comment="Encrypted access token - NEVER log plaintext"
    )
    refresh_token_encrypted = Column(
        Text,
        nullable=True,
        comment="Encrypted refresh token; NULL when the provider issues none"
    )

    token_type = Column(
        String(50),
        default="Bearer",
        comment="Token type (Bearer, etc.)"
    )
    expires_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the access token expires"
    )
    scopes = Column(
        Text,
        nullable=True,
        comment="Space-delimited granted OAuth scopes"
    )
    last_refreshed_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When tokens were last refreshed"
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id", "provider",
            name="uq_integration_credentials_user_provider"
        ),
        Index("ix_integration_credentials_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        """Safe repr - NEVER include token values."""
        return (
            f"<IntegrationCredential("
            f"id={self.id}, "
            f"user_id={self.user_id}, "
            f"provider={self.provider}, "
            f"expires_at={self.expires_at})>"
        )
