"""
Credential redaction and audit logging utilities.

SECURITY REQUIREMENTS:
- Tokens and client secrets NEVER appear in logs
- Identifiers (credential_id, tenant_id, ...) stay readable for operators
- All credential lifecycle transitions are logged for the audit trail

Audit Events:
- credential.stored
- credential.refreshed
- credential.needs_reauth
- credential.expired
- credential.revoked
- credential.error

Usage:
    from waygate.credentials.redaction import CredentialAuditLogger, AuditEventType

    audit = CredentialAuditLogger(tenant_id)
    audit.log(
        event_type=AuditEventType.CREDENTIAL_REFRESHED,
        credential_id=cred.id,
        credential_kind="shared",
    )
"""

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Dict

from waygate.platform.secrets import (
    is_secret_key,
    REDACTED_VALUE,
    SECRET_VALUE_PATTERNS,
)

logger = logging.getLogger(__name__)


class AuditEventType(str, Enum):
    """Credential audit event types."""
    CREDENTIAL_STORED = "credential.stored"
    CREDENTIAL_REFRESHED = "credential.refreshed"
    CREDENTIAL_NEEDS_REAUTH = "credential.needs_reauth"
    CREDENTIAL_EXPIRED = "credential.expired"
    CREDENTIAL_REVOKED = "credential.revoked"
    CREDENTIAL_ERROR = "credential.error"


# Keys that look secret by name but only ever hold identifiers or flags
SAFE_LOG_KEYS = frozenset({
    "credential_kind",
    "credential_type",
    "rotated_refresh_token",
    "token_type",
    "auth_type",
    "error_code",
})

# Token shapes issued by common OAuth providers
CREDENTIAL_SECRET_PATTERNS = [
    re.compile(r"(ya29\.[a-zA-Z0-9_-]+)"),  # Google access tokens
    re.compile(r"(1//[a-zA-Z0-9_-]{20,})"),  # Google refresh tokens
    re.compile(r"(xox[abpr]-[a-zA-Z0-9-]+)"),  # Slack tokens
    re.compile(r"(gh[opsu]_[a-zA-Z0-9]{20,})"),  # GitHub tokens
    re.compile(r"(EAA[a-zA-Z0-9]{20,})"),  # Facebook tokens
    re.compile(r"(eyJ[a-zA-Z0-9_-]+\.[a-zA-Z0-9_-]+\.[a-zA-Z0-9_-]+)"),  # JWTs
]


def is_credential_secret_key(key: str) -> bool:
    """
    Check if a key name indicates a credential secret.

    Identifier keys (ending in _id) and SAFE_LOG_KEYS are never secret.
    """
    if key in SAFE_LOG_KEYS or key.endswith("_id"):
        return False

    if is_secret_key(key):
        return True

    key_lower = key.lower()
    credential_patterns = [
        "token", "secret", "credential", "bearer",
        "oauth", "api_key", "apikey", "password",
    ]
    return any(pattern in key_lower for pattern in credential_patterns)


def redact_credential_value(value: Any) -> Any:
    """Redact secret patterns from a single value."""
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

    SECURITY:
    - Always use this before logging credential-related data

    Usage:
        safe_data = redact_credential_data({"access_token": "xxx", "credential_id": "c1"})
        logger.info("Credential data", extra=safe_data)
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
    - metadata is redacted before it reaches a handler
    """

    def __init__(self, tenant_id: Optional[str] = None):
        self.tenant_id = tenant_id
        self.logger = logging.getLogger("credentials.audit")

    def log(
        self,
        event_type: AuditEventType,
        credential_id: str,
        credential_kind: str,
        tenant_id: Optional[str] = None,
        integration_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Log an audit event.

        Args:
            event_type: Type of audit event
            credential_id: Credential ID
            credential_kind: "shared" or "user"
            tenant_id: Overrides the logger's tenant (batch jobs span tenants)
            integration_id: Integration the credential belongs to
            metadata: Additional context (will be redacted)
        """
        safe_metadata = redact_credential_data(metadata) if metadata else {}

        audit_record = {
            "event_type": event_type.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "tenant_id": tenant_id or self.tenant_id,
            "credential_id": credential_id,
            "credential_kind": credential_kind,
            "integration_id": integration_id,
            **safe_metadata,
        }

        self.logger.info(
            f"Credential audit: {event_type.value}",
            extra=audit_record
        )

    def log_error(
        self,
        credential_id: str,
        credential_kind: str,
        error: str,
        tenant_id: Optional[str] = None,
    ) -> None:
        """Log a credential error. The message is redacted first."""
        self.log(
            event_type=AuditEventType.CREDENTIAL_ERROR,
            credential_id=credential_id,
            credential_kind=credential_kind,
            tenant_id=tenant_id,
            metadata={"error": redact_credential_value(error)},
        )


class CredentialLoggingFilter(logging.Filter):
    """
    Logging filter that redacts credential secrets from log records.

    Usage:
        logger.addFilter(CredentialLoggingFilter())
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

        # Extra fields land on the record itself
        for key, value in list(record.__dict__.items()):
            if not isinstance(value, str):
                continue
            if is_credential_secret_key(key):
                setattr(record, key, REDACTED_VALUE)
            else:
                setattr(record, key, redact_credential_value(value))

        return True


def setup_credential_logging() -> None:
    """
    Attach the redaction filter to every credential logger.

    Called by the refresh worker at startup.
    """
    redaction_filter = CredentialLoggingFilter()

    credential_loggers = [
        "waygate.credentials.store",
        "waygate.credentials.refresh",
        "waygate.credentials.orchestrator",
        "waygate.credentials.oauth_client",
        "waygate.credentials.resolver",
        "waygate.token_refresh",
        "credentials.audit",
    ]

    for logger_name in credential_loggers:
        logging.getLogger(logger_name).addFilter(redaction_filter)

    logger.info("Credential logging configured with redaction filter")
