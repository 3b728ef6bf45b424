"""
Request/response schemas for the integrations API.

Fields are snake_case in Python and camelCase on the wire, matching the
dashboard frontend (authUrl, isConnected, ...).
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from speedfunnels.services.integration_auth_service import IntegrationStatus
from speedfunnels.services.provider_api import AdAccount, AnalyticsProperty


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Request Models
# =============================================================================

class AuthorizationCallbackRequest(CamelModel):
    """Code and state echoed back by the provider redirect."""

    code: str = Field(..., min_length=1, max_length=4096)
    state: str = Field(..., min_length=1, max_length=512)


# =============================================================================
# Response Models
# =============================================================================

class AuthorizationUrlResponse(CamelModel):
    auth_url: str
    state: str


class IntegrationStatusResponse(CamelModel):
    """Connection metadata. Never includes token values."""

    provider: str
    is_connected: bool
    expires_at: Optional[datetime] = None
    scopes: List[str] = []
    has_refresh_token: bool = False
    last_refreshed_at: Optional[datetime] = None
    needs_reconnect: bool = False

    @classmethod
    def from_status(cls, status: IntegrationStatus) -> "IntegrationStatusResponse":
        return cls(
            provider=status.provider.value,
            is_connected=status.is_connected,
            expires_at=status.expires_at,
            scopes=list(status.scopes),
            has_refresh_token=status.has_refresh_token,
            last_refreshed_at=status.last_refreshed_at,
            needs_reconnect=status.needs_reconnect,
        )


class DisconnectResponse(CamelModel):
    provider: str
    is_connected: bool = False


class AdAccountSummary(CamelModel):
    account_id: str
    name: Optional[str] = None
    account_status: Optional[int] = None
    currency: Optional[str] = None
    business_name: Optional[str] = None
    amount_spent: Optional[str] = None

    @classmethod
    def from_account(cls, account: AdAccount) -> "AdAccountSummary":
        return cls(
            account_id=account.account_id,
            name=account.name,
            account_status=account.account_status,
            currency=account.currency,
            business_name=account.business_name,
            amount_spent=account.amount_spent,
        )


class AnalyticsPropertySummary(CamelModel):
    account_id: str
    account_name: str
    property_id: str
    property_name: str

    @classmethod
    def from_property(cls, prop: AnalyticsProperty) -> "AnalyticsPropertySummary":
        return cls(
            account_id=prop.account_id,
            account_name=prop.account_name,
            property_id=prop.property_id,
            property_name=prop.property_name,
        )


class AccountListResponse(CamelModel):
    """Accounts (Meta) or properties (Google Analytics) reachable with the integration."""

    provider: str
    ad_accounts: List[AdAccountSummary] = []
    properties: List[AnalyticsPropertySummary] = []
    total: int
