"""
Shared pytest fixtures for credential and token refresh tests.

Store-backed tests run against an in-memory SQLite database built from the
ORM metadata. Encryption uses a fixed test key.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from waygate.db_base import Base
from waygate.models import (
    App,
    AppIntegrationConfig,
    AuthType,
    Connection,
    ConnectorType,
    Integration,
    PlatformConnector,
)
from waygate.platform.secrets import encrypt_secret

TEST_ENCRYPTION_KEY = "test-credential-encryption-key-32!"
TENANT_ID = "tenant-refresh-test-001"
OTHER_TENANT_ID = "tenant-refresh-test-002"
TOKEN_URL = "https://provider.example.com/oauth/token"


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def encryption_key(monkeypatch):
    """Set up encryption key for testing."""
    monkeypatch.setenv("ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    return TEST_ENCRYPTION_KEY


@pytest.fixture
def db_session(encryption_key):
    """In-memory SQLite session with all tables created."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def sqlite_file_sessions(encryption_key, tmp_path):
    """
    Two sessions on separate connections to one on-disk SQLite database.

    The second session only sees what the first has committed.
    """
    engine = create_engine(f"sqlite:///{tmp_path / 'waygate.db'}")
    Base.metadata.create_all(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    writer, reader = factory(), factory()
    try:
        yield writer, reader
    finally:
        writer.close()
        reader.close()
        engine.dispose()


# ============================================================================
# FACTORIES
# ============================================================================

async def make_integration(
    db_session,
    tenant_id: str = TENANT_ID,
    name: str = "Example API",
    auth_type: AuthType = AuthType.OAUTH2,
    client_id: str = "integration-client-id",
    client_secret: str = "integration-client-secret",
    token_url: str = TOKEN_URL,
    scopes=None,
    **config_overrides,
) -> Integration:
    config = {
        "client_id": client_id,
        "client_secret_encrypted": await encrypt_secret(client_secret) if client_secret else None,
        "token_url": token_url,
        "authorization_url": "https://provider.example.com/oauth/authorize",
        "scopes": scopes if scopes is not None else ["read"],
    }
    config.update(config_overrides)
    integration = Integration(
        tenant_id=tenant_id,
        name=name,
        auth_type=auth_type,
        auth_config=json.dumps(config),
    )
    db_session.add(integration)
    db_session.flush()
    return integration


def make_app(db_session, tenant_id: str = TENANT_ID, name: str = "Consumer App") -> App:
    app = App(tenant_id=tenant_id, name=name)
    db_session.add(app)
    db_session.flush()
    return app


async def make_app_config(
    db_session,
    app: App,
    integration: Integration,
    client_id: str = "app-client-id",
    client_secret: str = "app-client-secret",
    scopes=None,
) -> AppIntegrationConfig:
    config = AppIntegrationConfig(
        app_id=app.id,
        integration_id=integration.id,
        client_id=client_id,
        client_secret_encrypted=await encrypt_secret(client_secret),
        scopes=json.dumps(scopes) if scopes else None,
    )
    db_session.add(config)
    db_session.flush()
    return config


async def make_platform_connector(
    db_session,
    slug: str = "example-platform",
    client_id: str = "platform-client-id",
    client_secret: str = "platform-client-secret",
    token_url: str = "https://platform.example.com/oauth/token",
) -> PlatformConnector:
    connector = PlatformConnector(
        slug=slug,
        client_id=client_id,
        client_secret_encrypted=await encrypt_secret(client_secret),
        token_url=token_url,
        scopes=json.dumps(["platform.read"]),
    )
    db_session.add(connector)
    db_session.flush()
    return connector


def make_connection(
    db_session,
    integration: Integration,
    tenant_id: str = TENANT_ID,
    app: App = None,
    platform_connector: PlatformConnector = None,
) -> Connection:
    connection = Connection(
        tenant_id=tenant_id,
        integration_id=integration.id,
        app_id=app.id if app else None,
        connector_type=ConnectorType.PLATFORM if platform_connector else ConnectorType.CUSTOM,
        platform_connector_id=platform_connector.id if platform_connector else None,
    )
    db_session.add(connection)
    db_session.flush()
    return connection


def expires_in_minutes(minutes: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(minutes=minutes)
