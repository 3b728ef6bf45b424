"""
Database models for third-party integration credentials.
"""

from speedfunnels.models.base import TimestampMixin
from speedfunnels.models.integration_credential import (
    IntegrationCredential,
    IntegrationProvider,
)

__all__ = [
    "TimestampMixin",
    "IntegrationCredential",
    "IntegrationProvider",
]
