"""
Result types for token refresh.

SECURITY: none of these types carry token values; they are safe to log
and to return from APIs.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from waygate.models.credential import CredentialKind


class RefreshStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class RefreshErrorCode(str, Enum):
    """Stable error codes reported in results and refresh events."""
    LOCK_NOT_ACQUIRED = "LOCK_NOT_ACQUIRED"
    NO_REFRESH_TOKEN = "NO_REFRESH_TOKEN"
    INVALID_AUTH_CONFIG = "INVALID_AUTH_CONFIG"
    CREDENTIAL_NOT_FOUND = "CREDENTIAL_NOT_FOUND"
    NOT_OAUTH2_CREDENTIAL = "NOT_OAUTH2_CREDENTIAL"
    DECRYPTION_FAILED = "DECRYPTION_FAILED"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    TOKEN_REFRESH_FAILED = "TOKEN_REFRESH_FAILED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


@dataclass
class RefreshErrorInfo:
    """Sanitized error code/message pair."""
    code: str
    message: str

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


@dataclass
class RefreshResult:
    """
    Outcome of one credential refresh attempt.

    SECURITY: Does NOT include token values.
    """
    credential_id: str
    integration_id: str
    tenant_id: str
    credential_kind: CredentialKind
    status: RefreshStatus
    connection_id: Optional[str] = None
    app_user_id: Optional[str] = None
    rotated_refresh_token: bool = False
    retry_count: int = 0
    duration_ms: int = 0
    error: Optional[RefreshErrorInfo] = None

    @property
    def success(self) -> bool:
        return self.status == RefreshStatus.SUCCESS

    def to_dict(self) -> dict:
        return {
            "credential_id": self.credential_id,
            "integration_id": self.integration_id,
            "tenant_id": self.tenant_id,
            "connection_id": self.connection_id,
            "app_user_id": self.app_user_id,
            "credential_kind": self.credential_kind.value,
            "status": self.status.value,
            "success": self.success,
            "rotated_refresh_token": self.rotated_refresh_token,
            "retry_count": self.retry_count,
            "duration_ms": self.duration_ms,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class RefreshBatchResult:
    """Summary of one batch refresh run."""
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    results: List[RefreshResult] = field(default_factory=list)

    def add(self, result: RefreshResult) -> None:
        self.results.append(result)
        if result.status == RefreshStatus.SUCCESS:
            self.successful += 1
        elif result.status == RefreshStatus.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1

    @property
    def duration_ms(self) -> int:
        if not self.completed_at:
            return 0
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "total_processed": self.total_processed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "duration_ms": self.duration_ms,
            "results": [r.to_dict() for r in self.results],
        }
