"""
Error taxonomy for the OAuth credential lifecycle.

Provider-specific HTTP statuses and error JSON are resolved into these
kinds at the exchanger boundary. Everything above the TokenBroker checks
``exc.kind``; it never inspects status codes or message text.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Kinds of credential lifecycle failure."""
    INTEGRATION_REQUIRED = "integration_required"
    INVALID_GRANT = "invalid_grant"
    CONFIGURATION_ERROR = "configuration_error"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    RATE_LIMITED = "rate_limited"
    STORAGE_ERROR = "storage_error"


RECONNECT_MESSAGE = "Please reconnect your account to continue."
TRY_AGAIN_MESSAGE = "The provider is temporarily unavailable. Please try again shortly."
GENERIC_MESSAGE = "An unexpected error occurred."


class TokenLifecycleError(Exception):
    """
    Base class for every credential lifecycle failure.

    Attributes:
        kind: The ErrorKind of the failure
        provider: Provider value (meta_ads, google_analytics) if known
        retry_after: Suggested delay in seconds before retrying, if any
    """

    kind: ErrorKind = ErrorKind.CONFIGURATION_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.retry_after = retry_after

    @property
    def requires_reauthorization(self) -> bool:
        return self.kind in (ErrorKind.INTEGRATION_REQUIRED, ErrorKind.INVALID_GRANT)

    @property
    def user_message(self) -> str:
        """Message safe to show an end user."""
        if self.requires_reauthorization:
            return RECONNECT_MESSAGE
        if self.retryable and self.kind != ErrorKind.STORAGE_ERROR:
            return TRY_AGAIN_MESSAGE
        return GENERIC_MESSAGE


class IntegrationRequired(TokenLifecycleError):
    """No usable credential exists; the authorization flow must restart."""
    kind = ErrorKind.INTEGRATION_REQUIRED


class InvalidGrant(TokenLifecycleError):
    """The provider rejected an authorization code or refresh token."""
    kind = ErrorKind.INVALID_GRANT


class ConfigurationError(TokenLifecycleError):
    """Client id/secret missing or rejected by the provider."""
    kind = ErrorKind.CONFIGURATION_ERROR


class UpstreamUnavailable(TokenLifecycleError):
    """Network failure, timeout or 5xx from the provider."""
    kind = ErrorKind.UPSTREAM_UNAVAILABLE
    retryable = True


class RateLimited(TokenLifecycleError):
    """The provider is throttling requests."""
    kind = ErrorKind.RATE_LIMITED
    retryable = True


class StorageError(TokenLifecycleError):
    """The durable credential store is unreachable."""
    kind = ErrorKind.STORAGE_ERROR
    retryable = True


class AuthorizationStateError(InvalidGrant):
    """The OAuth ``state`` on a callback is missing, expired, reused or mismatched."""


class ProviderTokenRejected(Exception):
    """
    A provider data API rejected an access token (HTTP 401, Graph code 190).

    Raised by provider data clients so the broker can invalidate the
    cached token and retry once with a fresh one.
    """

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider
