"""
Refresh event logging.

Every refresh attempt and every batch run produces a human-readable line
and a machine-parseable JSON record on the `waygate.token_refresh` logger.

Failures always emit the JSON record. Successes and skips emit it only in
production, to bound steady-state log volume.

SECURITY:
- Events are built from RefreshResult / RefreshBatchResult, which never
  hold token values
- Error messages are passed through credential redaction before output
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from waygate.models.credential import CredentialKind
from waygate.credentials.redaction import redact_credential_value
from waygate.credentials.results import (
    RefreshBatchResult,
    RefreshResult,
    RefreshStatus,
)

TOKEN_REFRESH_LOGGER = "waygate.token_refresh"
TOKEN_REFRESH_EVENT = "TOKEN_REFRESH"
TOKEN_REFRESH_BATCH_EVENT = "TOKEN_REFRESH_BATCH"

_LEVEL_NAMES = {
    logging.INFO: "info",
    logging.WARNING: "warn",
    logging.ERROR: "error",
}


def format_refresh_line(result: RefreshResult) -> str:
    """One-line human summary of a refresh attempt."""
    parts = [
        f"[TOKEN_REFRESH] {result.status.value.upper()} -",
        f"credential={result.credential_id}",
        f"integration={result.integration_id}",
    ]
    if result.connection_id:
        parts.append(f"connection={result.connection_id}")
    if result.app_user_id:
        parts.append(f"app_user={result.app_user_id}")
    if result.credential_kind == CredentialKind.USER:
        parts.append("[user-credential]")
    parts.append(f"retries={result.retry_count}")
    parts.append(f"duration={result.duration_ms}ms")
    if result.rotated_refresh_token:
        parts.append("(refresh token rotated)")
    if result.error:
        parts.append(f"error={result.error.code}")
    return " ".join(parts)


def format_batch_line(batch: RefreshBatchResult) -> str:
    return (
        f"[TOKEN_REFRESH_BATCH] {batch.successful}/{batch.total_processed} successful, "
        f"{batch.failed} failed, {batch.skipped} skipped in {batch.duration_ms}ms"
    )


class RefreshEventLogger:
    """Emits refresh and batch events."""

    def __init__(self, environment: str = "development", logger: Optional[logging.Logger] = None):
        self.environment = environment
        self.logger = logger or logging.getLogger(TOKEN_REFRESH_LOGGER)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    def _structured(self, level: int, message: str, event: str, context: Dict[str, Any]) -> str:
        return json.dumps({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": _LEVEL_NAMES.get(level, "info"),
            "message": message,
            "event": event,
            "context": context,
        })

    def log_refresh_event(self, result: RefreshResult) -> None:
        """Log one refresh attempt (success, failure or skip)."""
        level = logging.ERROR if result.status == RefreshStatus.FAILED else logging.INFO

        context: Dict[str, Any] = {
            "credential_id": result.credential_id,
            "integration_id": result.integration_id,
            "tenant_id": result.tenant_id,
            "credential_kind": result.credential_kind.value,
            "status": result.status.value,
            "retry_count": result.retry_count,
            "rotated_refresh_token": result.rotated_refresh_token,
            "duration_ms": result.duration_ms,
        }
        if result.connection_id:
            context["connection_id"] = result.connection_id
        if result.app_user_id:
            context["app_user_id"] = result.app_user_id
        if result.error:
            context["error_code"] = result.error.code
            context["error_message"] = redact_credential_value(result.error.message)

        self.logger.log(level, format_refresh_line(result), extra=context)

        if level == logging.ERROR or self.is_production:
            message = f"Token refresh {result.status.value} for credential {result.credential_id}"
            self.logger.log(level, self._structured(level, message, TOKEN_REFRESH_EVENT, context))

    def log_batch_summary(self, batch: RefreshBatchResult) -> None:
        """Log the outcome counts of a batch run."""
        level = logging.WARNING if batch.failed > 0 else logging.INFO

        context = {
            "total_processed": batch.total_processed,
            "successful": batch.successful,
            "failed": batch.failed,
            "skipped": batch.skipped,
            "duration_ms": batch.duration_ms,
            "started_at": batch.started_at.isoformat(),
            "completed_at": batch.completed_at.isoformat() if batch.completed_at else None,
        }

        self.logger.log(level, format_batch_line(batch), extra=context)

        if level == logging.WARNING or self.is_production:
            message = (
                f"Token refresh batch completed: "
                f"{batch.successful}/{batch.total_processed} successful"
            )
            self.logger.log(level, self._structured(level, message, TOKEN_REFRESH_BATCH_EVENT, context))
