"""
Token refresh job: scheduled proactive refresh of expiring OAuth2 tokens.

Runs every few minutes from cron on every server instance. Each run scans
shared and end-user credentials expiring within the buffer window and
refreshes them; concurrent runs are coordinated by per-credential locks, so
overlapping schedules are safe.

CONSTRAINTS:
- Operates cross-tenant (no tenant_id scoping)
- Requires ENCRYPTION_KEY; exits non-zero if it is missing
- Each credential's writes are committed while its lock is held; the
  session stays on one connection so advisory locks survive those commits
- A failure after some credentials were refreshed keeps their rotated
  tokens; only the in-flight credential is rolled back

Run as a cron job:
    python -m waygate.workers.token_refresh_job
"""

import asyncio
import logging
import sys
from typing import Optional

import redis
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from waygate.config.settings import RefreshSettings
from waygate.credentials.encryption import validate_encryption_ready
from waygate.credentials.events import RefreshEventLogger
from waygate.credentials.locks import build_lock_manager
from waygate.credentials.oauth_client import OAuthTokenClient
from waygate.credentials.orchestrator import TokenRefreshOrchestrator
from waygate.credentials.redaction import setup_credential_logging
from waygate.credentials.refresh import RefreshExecutor
from waygate.credentials.resolver import DatabaseOAuthSources, OAuthClientResolver
from waygate.credentials.results import RefreshBatchResult
from waygate.credentials.store import CredentialStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _get_database_session(settings: RefreshSettings) -> Session:
    """
    Create database session for the refresh job.

    The session is bound to one checked-out connection rather than the
    engine, so per-credential commits never hand the advisory locks'
    connection back to the pool.
    """
    if not settings.database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    engine = create_engine(settings.database_url, pool_pre_ping=True)
    session_factory = sessionmaker(
        autocommit=False, autoflush=False, bind=engine.connect()
    )
    return session_factory()


def _close_database_session(session: Session) -> None:
    """Close the session and release its dedicated connection."""
    connection = session.get_bind()
    session.close()
    connection.close()


def build_orchestrator(
    db_session: Session,
    settings: RefreshSettings,
    redis_client: Optional[redis.Redis] = None,
) -> TokenRefreshOrchestrator:
    """Wire store, locks, resolver, token client and events for one run."""
    events = RefreshEventLogger(environment=settings.environment)
    sources = DatabaseOAuthSources(db_session)
    executor = RefreshExecutor(
        resolver=OAuthClientResolver(sources, sources, sources),
        token_client=OAuthTokenClient(timeout=settings.http_timeout_seconds),
        event_logger=events,
    )
    return TokenRefreshOrchestrator(
        store=CredentialStore(db_session),
        lock_manager=build_lock_manager(settings, db_session=db_session, redis_client=redis_client),
        executor=executor,
        event_logger=events,
    )


def run_token_refresh(
    db_session: Session,
    settings: RefreshSettings,
    orchestrator: Optional[TokenRefreshOrchestrator] = None,
) -> RefreshBatchResult:
    """
    Execute one refresh batch.

    Refreshed credentials are already committed one by one; the final
    commit ends the read transaction left open by the last scan.

    Args:
        db_session: Database session (not tenant-scoped)
        settings: Runtime settings
        orchestrator: Pre-built orchestrator (tests); built from settings if omitted

    Returns:
        RefreshBatchResult with per-credential results
    """
    orchestrator = orchestrator or build_orchestrator(db_session, settings)

    try:
        batch = asyncio.run(
            orchestrator.refresh_expiring_tokens(buffer_minutes=settings.buffer_minutes)
        )
        db_session.commit()
    except Exception:
        db_session.rollback()
        logger.error("Token refresh batch failed", exc_info=True)
        raise

    logger.info(
        "Token refresh batch committed",
        extra={
            "total_processed": batch.total_processed,
            "successful": batch.successful,
            "failed": batch.failed,
            "skipped": batch.skipped,
        },
    )
    return batch


def main():
    """Entry point for the token refresh job."""
    setup_credential_logging()

    try:
        settings = RefreshSettings.from_env()
        validate_encryption_ready()
        session = _get_database_session(settings)
    except Exception as exc:
        logger.error(
            "Token Refresh Job misconfigured",
            extra={"error": str(exc)},
        )
        sys.exit(1)

    logger.info(
        "Token Refresh Job starting",
        extra={
            "buffer_minutes": settings.buffer_minutes,
            "lock_backend": settings.lock_backend,
        },
    )

    try:
        run_token_refresh(session, settings)
    except Exception as exc:
        logger.error(
            "Token Refresh Job failed",
            extra={"error": str(exc)},
            exc_info=True,
        )
        sys.exit(1)
    finally:
        _close_database_session(session)

    logger.info("Token Refresh Job finished")


if __name__ == "__main__":
    main()
