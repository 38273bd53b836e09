"""
Proactive token refresh orchestration.

Scans both credential pools for OAuth2 tokens about to expire and refreshes
each one under a per-credential lock. Safe to run from several server
instances at once: a worker that cannot take a credential's lock skips it.

Guarantees:
- A failure on one credential never stops the batch
- A lock that was acquired is always released
- A credential's writes are committed, or rolled back, before its lock
  is released
- Exactly one refresh event per credential and one summary per batch

Usage:
    orchestrator = TokenRefreshOrchestrator(store, locks, executor, events)

    # Scheduled run
    batch = await orchestrator.refresh_expiring_tokens(buffer_minutes=10)

    # Manual, tenant-checked refresh of one credential
    result = await orchestrator.refresh_credential(credential_id, tenant_id)
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from waygate.models.credential import CredentialKind, CredentialType
from waygate.config.settings import DEFAULT_BUFFER_MINUTES
from waygate.credentials.events import RefreshEventLogger
from waygate.credentials.locks import CredentialLockManager
from waygate.credentials.refresh import RefreshExecutor, build_result
from waygate.credentials.results import (
    RefreshBatchResult,
    RefreshErrorCode,
    RefreshErrorInfo,
    RefreshResult,
    RefreshStatus,
)
from waygate.credentials.redaction import redact_credential_value
from waygate.credentials.store import CredentialContext, CredentialStore

logger = logging.getLogger(__name__)

# Shared credentials first, then end-user credentials
REFRESH_POOL_ORDER = (CredentialKind.SHARED, CredentialKind.USER)


class TokenRefreshOrchestrator:
    """Batch and single-credential refresh entry points."""

    def __init__(
        self,
        store: CredentialStore,
        lock_manager: CredentialLockManager,
        executor: RefreshExecutor,
        event_logger: Optional[RefreshEventLogger] = None,
    ):
        self.store = store
        self.locks = lock_manager
        self.executor = executor
        self.event_logger = event_logger or executor.event_logger

    async def refresh_expiring_tokens(
        self,
        buffer_minutes: int = DEFAULT_BUFFER_MINUTES,
        deadline: Optional[float] = None,
    ) -> RefreshBatchResult:
        """
        Refresh every active OAuth2 credential expiring within the buffer.

        Args:
            buffer_minutes: Look-ahead window
            deadline: time.monotonic() value after which no further
                credential is started. The credential in flight finishes.

        Returns:
            RefreshBatchResult with one result per processed credential
        """
        batch = RefreshBatchResult()
        buffer = timedelta(minutes=buffer_minutes)

        logger.info(
            "Starting token refresh batch",
            extra={"buffer_minutes": buffer_minutes},
        )

        stopped = False
        for kind in REFRESH_POOL_ORDER:
            if stopped:
                break

            contexts = self.store.find_expiring(kind, buffer)
            logger.info(
                "Found expiring credentials",
                extra={"credential_kind": kind.value, "count": len(contexts)},
            )

            for context in contexts:
                if deadline is not None and time.monotonic() >= deadline:
                    logger.warning(
                        "Token refresh batch deadline reached",
                        extra={"total_processed": batch.total_processed},
                    )
                    stopped = True
                    break

                batch.total_processed += 1
                batch.add(await self._refresh_locked(context))

        batch.completed_at = datetime.now(timezone.utc)
        self.event_logger.log_batch_summary(batch)
        return batch

    async def refresh_credential(
        self,
        credential_id: str,
        tenant_id: str,
        kind: CredentialKind = CredentialKind.SHARED,
    ) -> RefreshResult:
        """
        Refresh one credential on demand.

        Goes through the same lock as the batch so a manual refresh cannot
        race a scheduled one. Credentials of another tenant are reported as
        not found.
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")

        context = self.store.get_context(kind, credential_id, tenant_id=tenant_id)
        if context is None:
            return RefreshResult(
                credential_id=credential_id,
                integration_id="",
                tenant_id=tenant_id,
                credential_kind=kind,
                status=RefreshStatus.FAILED,
                error=RefreshErrorInfo(
                    RefreshErrorCode.CREDENTIAL_NOT_FOUND.value,
                    "Credential not found",
                ),
            )

        if context.credential_type != CredentialType.OAUTH2 or not context.has_refresh_token:
            return build_result(
                context,
                RefreshStatus.FAILED,
                RefreshErrorInfo(
                    RefreshErrorCode.NOT_OAUTH2_CREDENTIAL.value,
                    "Credential is not an OAuth2 credential with a refresh token",
                ),
            )

        return await self._refresh_locked(context)

    async def _refresh_locked(self, context: CredentialContext) -> RefreshResult:
        """Take the lock, refresh, release. Never raises."""
        started = time.monotonic()
        try:
            async with self.locks.hold(context.id) as acquired:
                if not acquired:
                    result = build_result(
                        context,
                        RefreshStatus.SKIPPED,
                        RefreshErrorInfo(
                            RefreshErrorCode.LOCK_NOT_ACQUIRED.value,
                            "Credential is being refreshed by another process",
                        ),
                    )
                    self.event_logger.log_refresh_event(result)
                    return result

                try:
                    return await self.executor.refresh(self.store.refreshable(context))
                except Exception:
                    # Discard this credential's partial writes before the lock is released
                    self.store.rollback()
                    raise
        except Exception as e:
            logger.error(
                "Unexpected error refreshing credential",
                extra={
                    "credential_id": context.id,
                    "credential_kind": context.kind.value,
                    "error_type": type(e).__name__,
                },
                exc_info=True,
            )
            result = build_result(
                context,
                RefreshStatus.FAILED,
                RefreshErrorInfo(
                    RefreshErrorCode.UNKNOWN_ERROR.value,
                    redact_credential_value(str(e)) or type(e).__name__,
                ),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            self.event_logger.log_refresh_event(result)
            return result
