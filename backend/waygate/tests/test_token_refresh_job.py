"""
Tests for the scheduled token refresh job.

Covers commit/rollback around a batch, the single-connection session,
rotations that survive a failed batch, orchestrator wiring from settings,
and non-zero exit when the job is misconfigured.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from sqlalchemy import text
from sqlalchemy.engine import Connection

from waygate.config.settings import RefreshSettings
from waygate.models import CredentialKind
from waygate.credentials.locks import InMemoryLockManager
from waygate.credentials.oauth_client import OAuthTokenClient
from waygate.credentials.orchestrator import TokenRefreshOrchestrator
from waygate.credentials.results import RefreshBatchResult
from waygate.credentials.store import CredentialStore
from waygate.workers import token_refresh_job
from waygate.workers.token_refresh_job import (
    _close_database_session,
    _get_database_session,
    build_orchestrator,
    main,
    run_token_refresh,
)

from conftest import TENANT_ID, make_integration


def _orchestrator_returning(batch=None, error=None):
    orchestrator = MagicMock()
    orchestrator.refresh_expiring_tokens = AsyncMock(
        return_value=batch or RefreshBatchResult(),
        side_effect=error,
    )
    return orchestrator


# =============================================================================
# run_token_refresh
# =============================================================================

class TestRunTokenRefresh:

    def test_commits_after_batch(self):
        session = MagicMock()
        batch = RefreshBatchResult(total_processed=2, successful=2)
        orchestrator = _orchestrator_returning(batch)

        result = run_token_refresh(session, RefreshSettings(buffer_minutes=7), orchestrator)

        assert result is batch
        orchestrator.refresh_expiring_tokens.assert_awaited_once_with(buffer_minutes=7)
        session.commit.assert_called_once()
        session.rollback.assert_not_called()

    def test_rolls_back_and_reraises_on_failure(self):
        session = MagicMock()
        orchestrator = _orchestrator_returning(error=RuntimeError("database unavailable"))

        with pytest.raises(RuntimeError, match="database unavailable"):
            run_token_refresh(session, RefreshSettings(), orchestrator)

        session.rollback.assert_called_once()
        session.commit.assert_not_called()


# =============================================================================
# Wiring
# =============================================================================

class TestBuildOrchestrator:

    def test_builds_from_settings(self, db_session):
        settings = RefreshSettings(lock_backend="memory", environment="production")

        orchestrator = build_orchestrator(db_session, settings)

        assert isinstance(orchestrator, TokenRefreshOrchestrator)
        assert isinstance(orchestrator.locks, InMemoryLockManager)
        assert orchestrator.event_logger.is_production
        assert orchestrator.executor.event_logger is orchestrator.event_logger

    def test_empty_database_runs_clean_batch(self, db_session):
        settings = RefreshSettings(lock_backend="memory")

        batch = run_token_refresh(db_session, settings)

        assert batch.total_processed == 0
        assert batch.completed_at is not None

    def test_database_url_required(self):
        with pytest.raises(ValueError, match="DATABASE_URL"):
            _get_database_session(RefreshSettings())

    def test_session_is_bound_to_one_connection(self):
        session = _get_database_session(RefreshSettings(database_url="sqlite://"))
        connection = session.get_bind()
        try:
            assert isinstance(connection, Connection)
            session.execute(text("SELECT 1"))
            session.commit()
            assert session.get_bind() is connection
            assert not connection.closed
        finally:
            _close_database_session(session)

        assert connection.closed

    def test_close_releases_bound_connection(self):
        session = MagicMock()

        _close_database_session(session)

        session.close.assert_called_once()
        session.get_bind.return_value.close.assert_called_once()


# =============================================================================
# Per-credential durability
# =============================================================================

async def _seed_expiring_credential(db_session) -> str:
    integration = await make_integration(db_session)
    cred = await CredentialStore(db_session).store_oauth2_credential(
        tenant_id=TENANT_ID,
        integration_id=integration.id,
        access_token="old",
        refresh_token="refresh-v1",
        expires_in=120,
    )
    return cred.id


class TestRunTokenRefreshAgainstDatabase:

    def test_later_pool_failure_keeps_earlier_rotations(self, db_session):
        cred_id = asyncio.run(_seed_expiring_credential(db_session))
        db_session.commit()
        settings = RefreshSettings(lock_backend="memory")
        orchestrator = build_orchestrator(db_session, settings)
        endpoint_body = {"access_token": "new", "refresh_token": "refresh-v2", "expires_in": 3600}
        orchestrator.executor.token_client = OAuthTokenClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=endpoint_body))
        )
        scan = orchestrator.store.find_expiring

        def scan_failing_on_user_pool(kind, buffer):
            if kind == CredentialKind.USER:
                raise RuntimeError("user pool scan failed")
            return scan(kind, buffer)

        orchestrator.store.find_expiring = scan_failing_on_user_pool

        with pytest.raises(RuntimeError, match="user pool scan failed"):
            run_token_refresh(db_session, settings, orchestrator)

        material = asyncio.run(CredentialStore(db_session).get_decrypted(CredentialKind.SHARED, cred_id))
        assert material.refresh_token == "refresh-v2"
        assert material.access_token == "new"
        assert material.version == 2


# =============================================================================
# Entry point
# =============================================================================

class TestMain:

    def test_exits_without_database_url(self, monkeypatch, encryption_key):
        monkeypatch.delenv("DATABASE_URL", raising=False)

        with pytest.raises(SystemExit) as exc_info:
            main()

        assert exc_info.value.code == 1

    def test_exits_without_encryption_key(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite://")
        monkeypatch.delenv("ENCRYPTION_KEY", raising=False)

        with pytest.raises(SystemExit) as exc_info:
            main()

        assert exc_info.value.code == 1

    def test_exits_when_batch_fails_and_closes_session(self, monkeypatch, encryption_key):
        session = MagicMock()
        monkeypatch.setenv("DATABASE_URL", "sqlite://")
        monkeypatch.setattr(token_refresh_job, "_get_database_session", lambda settings: session)
        monkeypatch.setattr(
            token_refresh_job, "run_token_refresh", MagicMock(side_effect=RuntimeError("boom"))
        )

        with pytest.raises(SystemExit) as exc_info:
            main()

        assert exc_info.value.code == 1
        session.close.assert_called_once()

    def test_successful_run(self, monkeypatch, encryption_key):
        session = MagicMock()
        run = MagicMock(return_value=RefreshBatchResult())
        monkeypatch.setenv("DATABASE_URL", "sqlite://")
        monkeypatch.setenv("TOKEN_REFRESH_BUFFER_MINUTES", "15")
        monkeypatch.setattr(token_refresh_job, "_get_database_session", lambda settings: session)
        monkeypatch.setattr(token_refresh_job, "run_token_refresh", run)

        main()

        settings = run.call_args[0][1]
        assert settings.buffer_minutes == 15
        session.close.assert_called_once()
