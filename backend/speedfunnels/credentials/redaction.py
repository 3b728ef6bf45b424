"""
Credential redaction and audit logging utilities.

SECURITY REQUIREMENTS:
- Tokens NEVER appear in logs (access_token, refresh_token, codes, state)
- All credential lifecycle operations are logged for the audit trail

Usage:
    audit = CredentialAuditLogger(user_id)
    audit.log(
        event_type=AuditEventType.CREDENTIAL_STORED,
        provider="google_analytics",
    )
"""

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Dict

from speedfunnels.platform.secrets import (
    is_secret_key,
    REDACTED_VALUE,
    SECRET_VALUE_PATTERNS,
)

logger = logging.getLogger(__name__)


class AuditEventType(str, Enum):
    """Credential audit event types."""
    CREDENTIAL_STORED = "credential.stored"
    CREDENTIAL_REFRESHED = "credential.refreshed"
    CREDENTIAL_DELETED = "credential.deleted"
    CREDENTIAL_INVALIDATED = "credential.invalidated"
    CREDENTIAL_ERROR = "credential.error"
    AUTHORIZATION_STARTED = "authorization.started"
    AUTHORIZATION_COMPLETED = "authorization.completed"


# Token shapes issued by the integrated providers
CREDENTIAL_SECRET_PATTERNS = [
    re.compile(r"(ya29\.[a-zA-Z0-9_-]+)"),  # Google access tokens
    re.compile(r"(1//[a-zA-Z0-9_-]{20,})"),  # Google refresh tokens
    re.compile(r"(EAA[a-zA-Z0-9]{20,})"),  # Meta tokens
]

# Keys that look secret by substring but are safe to log
SAFE_KEYS = frozenset({
    "provider", "user_id", "token_type", "expires_at", "expires_in_seconds",
    "scopes", "has_refresh_token", "new_expires_at", "outcome",
    "credentials_eligible", "credentials_refreshed",
})


def is_credential_secret_key(key: str) -> bool:
    """
    Check if a key name indicates a credential secret.

    Extends platform-level secret detection with OAuth-specific names.
    """
    if key in SAFE_KEYS:
        return False

    if is_secret_key(key):
        return True

    key_lower = key.lower()
    credential_patterns = [
        "token", "secret", "credential", "bearer", "oauth_code", "auth_code",
        "state_token", "password",
    ]
    return any(pattern in key_lower for pattern in credential_patterns)


def redact_credential_value(value: Any) -> Any:
    """Redact token-looking substrings from a value."""
    if not isinstance(value, str):
        return value

    result = value
    for pattern in CREDENTIAL_SECRET_PATTERNS:
        result = pattern.sub(REDACTED_VALUE, result)
    for pattern in SECRET_VALUE_PATTERNS:
        result = pattern.sub(REDACTED_VALUE, result)
    return result


def redact_credential_data(data: Any, _depth: int = 0) -> Any:
    """
    Recursively redact credential secrets from a data structure.

    Always use this before logging provider responses or credential data.
    """
    if _depth > 10:
        return data

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if is_credential_secret_key(str(key)):
                result[key] = REDACTED_VALUE
            else:
                result[key] = redact_credential_data(value, _depth + 1)
        return result

    if isinstance(data, list):
        return [redact_credential_data(item, _depth + 1) for item in data]

    if isinstance(data, str):
        return redact_credential_value(data)

    return data


class CredentialAuditLogger:
    """
    Structured audit logger for credential operations.

    SECURITY:
    - Tokens are NEVER logged
    - metadata is redacted before emission
    """

    def __init__(self, user_id: int):
        self.user_id = user_id
        self.logger = logging.getLogger("credentials.audit")

    def log(
        self,
        event_type: AuditEventType,
        provider: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Log an audit event.

        Args:
            event_type: Type of audit event
            provider: OAuth provider name
            metadata: Additional context (will be redacted)
        """
        safe_metadata = redact_credential_data(metadata) if metadata else {}

        audit_record = {
            "event_type": event_type.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "user_id": self.user_id,
            "provider": provider,
            **safe_metadata,
        }

        self.logger.info(
            f"Credential audit: {event_type.value}",
            extra=audit_record
        )

    def log_error(self, provider: str, error: str, kind: Optional[str] = None) -> None:
        """Log a credential error; the message is redacted first."""
        metadata: Dict[str, Any] = {"error": redact_credential_value(error)}
        if kind:
            metadata["error_kind"] = kind
        self.log(
            event_type=AuditEventType.CREDENTIAL_ERROR,
            provider=provider,
            metadata=metadata,
        )


class CredentialLoggingFilter(logging.Filter):
    """
    Logging filter that redacts credential secrets from log records.

    Usage:
        handler.addFilter(CredentialLoggingFilter())
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_credential_value(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = redact_credential_data(record.args)
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    redact_credential_value(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )

        for key in list(record.__dict__.keys()):
            if key in _LOG_RECORD_ATTRS:
                continue
            if is_credential_secret_key(key):
                setattr(record, key, REDACTED_VALUE)
            elif isinstance(getattr(record, key), str):
                setattr(record, key, redact_credential_value(getattr(record, key)))

        return True


# Standard LogRecord attributes never touched by the filter
_LOG_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


def setup_credential_logging() -> None:
    """
    Install the redaction filter on every credential logger.

    Call during application startup.
    """
    redaction_filter = CredentialLoggingFilter()

    # Logger filters do not propagate to children, so every module is listed
    credential_loggers = [
        "credentials.audit",
        "speedfunnels.credentials.store",
        "speedfunnels.credentials.cache",
        "speedfunnels.credentials.exchanger",
        "speedfunnels.credentials.broker",
        "speedfunnels.services.integration_auth_service",
        "speedfunnels.services.provider_api",
        "speedfunnels.api.routes.integrations",
        "speedfunnels.workers.token_refresh_job",
    ]

    for logger_name in credential_loggers:
        logging.getLogger(logger_name).addFilter(redaction_filter)

    logger.info("Credential logging configured with redaction filter")
