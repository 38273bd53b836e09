"""
Database models for credentials and the integration records they hang off.

Tenant-scoped models inherit from TenantScopedMixin.
"""

from waygate.models.base import TimestampMixin, TenantScopedMixin
from waygate.models.integration import (
    Integration, AuthType, PlatformConnector, PlatformConnectorStatus,
)
from waygate.models.connection import (
    Connection, ConnectorType, App, AppIntegrationConfig,
)
from waygate.models.credential import (
    Credential, CredentialType, CredentialStatus, CredentialKind,
)
from waygate.models.user_credential import UserCredential

__all__ = [
    "TimestampMixin",
    "TenantScopedMixin",
    "Integration",
    "AuthType",
    "PlatformConnector",
    "PlatformConnectorStatus",
    "Connection",
    "ConnectorType",
    "App",
    "AppIntegrationConfig",
    "Credential",
    "CredentialType",
    "CredentialStatus",
    "CredentialKind",
    "UserCredential",
]
