"""
Consistent error handling for the integrations API.

All API errors MUST use these standard error classes and shapes.
Stack traces are NEVER returned to clients.

Standard HTTP status codes:
- 400: Bad Request (validation errors)
- 401: Unauthorized (no authenticated user)
- 404: Not Found
- 409: Conflict (integration must be reconnected)
- 429: Too Many Requests (provider throttling)
- 500: Internal Server Error
- 502: Bad Gateway (provider API error)
- 503: Service Unavailable (provider or storage outage)
"""

import logging
import uuid
from typing import Any, Optional

from fastapi import FastAPI, Request, HTTPException, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from speedfunnels.credentials.errors import (
    ErrorKind,
    TokenLifecycleError,
    RECONNECT_MESSAGE,
    TRY_AGAIN_MESSAGE,
)
from speedfunnels.services.provider_api import ProviderApiError

logger = logging.getLogger(__name__)


class AppError(Exception):
    """
    Base application error with consistent error shape.

    All custom errors should inherit from this class.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.headers = headers or {}

    def to_dict(self) -> dict:
        """Convert to API error response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class AuthenticationError(AppError):
    """Authentication failure (401)."""

    def __init__(self, message: str = "Authentication required", details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="AUTHENTICATION_ERROR",
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            details=details,
        )


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(self, resource: str, identifier: Optional[str] = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} '{identifier}' not found"
        super().__init__(
            code="NOT_FOUND",
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
        )


class ReconnectRequiredError(AppError):
    """The integration must be re-authorized by the user (409)."""

    def __init__(self, provider: Optional[str] = None, reason: Optional[str] = None):
        details = {}
        if provider:
            details["provider"] = provider
        if reason:
            details["reason"] = reason
        super().__init__(
            code="RECONNECT_REQUIRED",
            message=RECONNECT_MESSAGE,
            status_code=status.HTTP_409_CONFLICT,
            details=details,
        )


class RateLimitError(AppError):
    """Rate limit exceeded (429)."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[int] = None):
        details = {}
        headers = {}
        if retry_after:
            details["retry_after_seconds"] = retry_after
            headers["Retry-After"] = str(retry_after)
        super().__init__(
            code="RATE_LIMIT_EXCEEDED",
            message=message,
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details=details,
            headers=headers,
        )


class BadGatewayError(AppError):
    """Upstream provider returned an unusable response (502)."""

    def __init__(self, message: str = "Upstream provider error", details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="BAD_GATEWAY",
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            details=details,
        )


class ServiceUnavailableError(AppError):
    """Service unavailable (503)."""

    def __init__(self, message: str = "Service temporarily unavailable"):
        super().__init__(
            code="SERVICE_UNAVAILABLE",
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


class InternalError(AppError):
    """Generic server-side failure (500). Never carries internal detail."""

    def __init__(self):
        super().__init__(
            code="INTERNAL_ERROR",
            message="An unexpected error occurred",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


def app_error_from_token_error(error: TokenLifecycleError) -> AppError:
    """Map a credential lifecycle error kind to its HTTP error."""
    if error.kind in (ErrorKind.INTEGRATION_REQUIRED, ErrorKind.INVALID_GRANT):
        return ReconnectRequiredError(provider=error.provider, reason=error.kind.value)
    if error.kind == ErrorKind.RATE_LIMITED:
        retry_after = int(error.retry_after) if error.retry_after else None
        return RateLimitError(message=TRY_AGAIN_MESSAGE, retry_after=retry_after)
    if error.kind == ErrorKind.UPSTREAM_UNAVAILABLE:
        return ServiceUnavailableError(message=TRY_AGAIN_MESSAGE)
    if error.kind == ErrorKind.STORAGE_ERROR:
        return ServiceUnavailableError()
    return InternalError()


def generate_correlation_id() -> str:
    """Generate a unique correlation ID for request tracing."""
    return str(uuid.uuid4())


def get_correlation_id(request: Request) -> str:
    """
    Get correlation ID from request or generate new one.

    Checks X-Correlation-ID header first, then request state.
    """
    # Check header first (from upstream services/load balancer)
    correlation_id = request.headers.get("X-Correlation-ID")
    if correlation_id:
        return correlation_id

    if hasattr(request.state, "correlation_id"):
        return request.state.correlation_id

    return generate_correlation_id()


def _error_response(error: AppError, correlation_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=error.status_code,
        content=error.to_dict(),
        headers={"X-Correlation-ID": correlation_id, **error.headers},
    )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    correlation_id = get_correlation_id(request)
    logger.warning(
        "Application error",
        extra={
            "correlation_id": correlation_id,
            "error_code": exc.code,
            "status_code": exc.status_code,
            "path": request.url.path,
            "method": request.method,
        },
    )
    return _error_response(exc, correlation_id)


async def token_error_handler(request: Request, exc: TokenLifecycleError) -> JSONResponse:
    correlation_id = get_correlation_id(request)
    app_error = app_error_from_token_error(exc)
    log = logger.error if exc.kind in (ErrorKind.CONFIGURATION_ERROR, ErrorKind.STORAGE_ERROR) else logger.warning
    log(
        "Credential lifecycle error",
        extra={
            "correlation_id": correlation_id,
            "error_kind": exc.kind.value,
            "provider": exc.provider,
            "status_code": app_error.status_code,
            "path": request.url.path,
            "method": request.method,
        },
    )
    return _error_response(app_error, correlation_id)


async def provider_api_error_handler(request: Request, exc: ProviderApiError) -> JSONResponse:
    correlation_id = get_correlation_id(request)
    logger.warning(
        "Provider API error",
        extra={
            "correlation_id": correlation_id,
            "provider": exc.provider,
            "upstream_status": exc.status_code,
            "path": request.url.path,
        },
    )
    return _error_response(BadGatewayError(details={"provider": exc.provider}), correlation_id)


def register_exception_handlers(app: FastAPI) -> None:
    """Install the error handlers and middleware on an application."""
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(TokenLifecycleError, token_error_handler)
    app.add_exception_handler(ProviderApiError, provider_api_error_handler)
    app.add_middleware(ErrorHandlerMiddleware)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Middleware that assigns correlation IDs and converts anything the
    exception handlers did not catch into the standard error shape.

    IMPORTANT: Stack traces are NEVER returned to clients.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = get_correlation_id(request)
        request.state.correlation_id = correlation_id

        try:
            response = await call_next(request)
            response.headers["X-Correlation-ID"] = correlation_id
            return response

        except AppError as e:
            return await app_error_handler(request, e)

        except TokenLifecycleError as e:
            return await token_error_handler(request, e)

        except HTTPException as e:
            logger.warning(
                "HTTP exception",
                extra={
                    "correlation_id": correlation_id,
                    "status_code": e.status_code,
                    "path": request.url.path,
                    "method": request.method,
                }
            )
            return JSONResponse(
                status_code=e.status_code,
                content={
                    "error": {
                        "code": "HTTP_ERROR",
                        "message": str(e.detail),
                        "details": {},
                    }
                },
                headers={"X-Correlation-ID": correlation_id},
            )

        except Exception as e:
            # Log full exception for debugging (server-side only)
            logger.exception(
                "Unhandled exception",
                extra={
                    "correlation_id": correlation_id,
                    "error_type": type(e).__name__,
                    "path": request.url.path,
                    "method": request.method,
                }
            )
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": {
                        "code": "INTERNAL_ERROR",
                        "message": "An unexpected error occurred",
                        "details": {"correlation_id": correlation_id},
                    }
                },
                headers={"X-Correlation-ID": correlation_id},
            )
