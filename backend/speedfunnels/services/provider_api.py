"""
Provider data API clients for Meta Marketing API and Google Analytics Admin API.

The access token is an explicit argument on every call; clients hold no
OAuth state and are safe to share across users. Use them through
TokenBroker.call_with_token so a rejected token is refreshed and retried:

    accounts = await broker.call_with_token(
        user_id, IntegrationProvider.META_ADS, meta_client.list_ad_accounts
    )

Token rejection (HTTP 401, Graph code 190) raises ProviderTokenRejected;
throttling and outages raise the credential error kinds.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from speedfunnels.config.oauth import DEFAULT_META_GRAPH_API_VERSION
from speedfunnels.credentials.errors import (
    ProviderTokenRejected,
    RateLimited,
    UpstreamUnavailable,
)
from speedfunnels.credentials.exchanger import parse_retry_after
from speedfunnels.models.integration_credential import IntegrationProvider

logger = logging.getLogger(__name__)

META_THROTTLE_CODES = frozenset({4, 17, 32, 613}) | frozenset(range(80000, 80015))


class ProviderApiError(Exception):
    """Provider returned an error that is neither auth, throttling nor outage."""

    def __init__(self, message: str, provider: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


@dataclass
class AdAccount:
    """Meta ad account summary."""
    account_id: str
    name: Optional[str] = None
    account_status: Optional[int] = None
    currency: Optional[str] = None
    business_name: Optional[str] = None
    amount_spent: Optional[str] = None


@dataclass
class AnalyticsProperty:
    """GA4 property together with the account that owns it."""
    account_id: str
    account_name: str
    property_id: str
    property_name: str


def _json_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class _ProviderDataClient:
    provider: IntegrationProvider

    def __init__(self, http_client: httpx.AsyncClient, timeout_seconds: float = 10.0):
        self._http = http_client
        self._timeout = timeout_seconds

    async def _get(self, url: str, access_token: str, params: Optional[dict] = None) -> httpx.Response:
        provider = self.provider.value
        try:
            response = await self._http.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            raise UpstreamUnavailable("Provider API timed out", provider=provider) from e
        except httpx.TransportError as e:
            raise UpstreamUnavailable("Provider API unreachable", provider=provider) from e

        if response.status_code == 401:
            raise ProviderTokenRejected("Provider rejected the access token", provider=provider)
        if response.status_code == 429:
            raise RateLimited(
                "Provider API rate limited",
                provider=provider,
                retry_after=parse_retry_after(response),
            )
        if response.status_code >= 500:
            raise UpstreamUnavailable(
                f"Provider API returned HTTP {response.status_code}",
                provider=provider,
                retry_after=parse_retry_after(response),
            )
        return response


class MetaAdsClient(_ProviderDataClient):
    """Read-only client for the Meta Marketing API."""

    provider = IntegrationProvider.META_ADS

    BASE_URL = "https://graph.facebook.com/{version}"
    AD_ACCOUNT_FIELDS = "id,name,account_status,amount_spent,currency,business_name"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        timeout_seconds: float = 10.0,
        graph_api_version: str = DEFAULT_META_GRAPH_API_VERSION,
    ):
        super().__init__(http_client, timeout_seconds)
        self.base_url = self.BASE_URL.format(version=graph_api_version)

    async def list_ad_accounts(self, access_token: str) -> List[AdAccount]:
        """List the ad accounts visible to the token's user."""
        response = await self._get(
            f"{self.base_url}/me/adaccounts",
            access_token,
            params={"fields": self.AD_ACCOUNT_FIELDS},
        )
        body = _json_body(response)
        if response.status_code >= 400:
            self._raise_graph_error(response, body)

        accounts = [
            AdAccount(
                account_id=str(item.get("id", "")),
                name=item.get("name"),
                account_status=item.get("account_status"),
                currency=item.get("currency"),
                business_name=item.get("business_name"),
                amount_spent=item.get("amount_spent"),
            )
            for item in body.get("data") or []
            if item.get("id")
        ]
        logger.info(
            "Listed Meta ad accounts",
            extra={"provider": self.provider.value, "count": len(accounts)},
        )
        return accounts

    def _raise_graph_error(self, response: httpx.Response, body: Dict[str, Any]) -> None:
        provider = self.provider.value
        status_code = response.status_code
        error = body.get("error") or {}
        code = error.get("code") if isinstance(error, dict) else None
        if code == 190:
            raise ProviderTokenRejected("Meta rejected the access token", provider=provider)
        if code in META_THROTTLE_CODES:
            raise RateLimited(
                "Meta is throttling requests",
                provider=provider,
                retry_after=parse_retry_after(response),
            )
        logger.warning(
            "Meta API returned error",
            extra={"provider": provider, "status_code": status_code, "error_code": code},
        )
        raise ProviderApiError(
            f"Meta API error (HTTP {status_code})", provider=provider, status_code=status_code
        )


class GoogleAnalyticsAdminClient(_ProviderDataClient):
    """Read-only client for the Google Analytics Admin API (v1beta)."""

    provider = IntegrationProvider.GOOGLE_ANALYTICS

    ACCOUNT_SUMMARIES_URL = "https://analyticsadmin.googleapis.com/v1beta/accountSummaries"
    PAGE_SIZE = 200

    async def list_account_summaries(self, access_token: str) -> List[AnalyticsProperty]:
        """List every GA4 property the token's user can read, following pagination."""
        properties: List[AnalyticsProperty] = []
        page_token: Optional[str] = None

        while True:
            params = {"pageSize": self.PAGE_SIZE}
            if page_token:
                params["pageToken"] = page_token
            response = await self._get(self.ACCOUNT_SUMMARIES_URL, access_token, params=params)
            body = _json_body(response)
            if response.status_code >= 400:
                logger.warning(
                    "Google Analytics Admin API returned error",
                    extra={"provider": self.provider.value, "status_code": response.status_code},
                )
                raise ProviderApiError(
                    f"Google Analytics Admin API error (HTTP {response.status_code})",
                    provider=self.provider.value,
                    status_code=response.status_code,
                )

            for account in body.get("accountSummaries") or []:
                account_id = str(account.get("account", "")).split("/")[-1]
                account_name = account.get("displayName") or account_id
                for prop in account.get("propertySummaries") or []:
                    property_id = str(prop.get("property", "")).split("/")[-1]
                    if not property_id:
                        continue
                    properties.append(AnalyticsProperty(
                        account_id=account_id,
                        account_name=account_name,
                        property_id=property_id,
                        property_name=prop.get("displayName") or property_id,
                    ))

            page_token = body.get("nextPageToken")
            if not page_token:
                break

        logger.info(
            "Listed Google Analytics properties",
            extra={"provider": self.provider.value, "count": len(properties)},
        )
        return properties
