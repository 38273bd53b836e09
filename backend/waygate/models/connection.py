"""
Connection, App and AppIntegrationConfig models.

A Connection binds a tenant to an integration. Platform connections point
at a PlatformConnector; App-owned connections point at the consuming App
whose per-integration OAuth client is kept in AppIntegrationConfig.
"""

import enum
import json
from typing import List

from sqlalchemy import Column, String, Text, Enum, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from waygate.db_base import Base
from waygate.models.base import TimestampMixin, TenantScopedMixin, generate_uuid


class ConnectorType(str, enum.Enum):
    CUSTOM = "custom"
    PLATFORM = "platform"


class App(Base, TimestampMixin, TenantScopedMixin):
    """Consuming application that delegates end-user auth through Waygate."""

    __tablename__ = "apps"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )
    name = Column(
        String(255),
        nullable=False,
        comment="Display name"
    )


class AppIntegrationConfig(Base, TimestampMixin):
    """An App's own OAuth client registration for one integration."""

    __tablename__ = "app_integration_configs"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )
    app_id = Column(
        String(255),
        ForeignKey("apps.id", ondelete="CASCADE"),
        nullable=False,
        comment="Owning App"
    )
    integration_id = Column(
        String(255),
        ForeignKey("integrations.id", ondelete="CASCADE"),
        nullable=False,
        comment="Integration the client is registered for"
    )
    client_id = Column(
        String(255),
        nullable=False,
        comment="OAuth client id"
    )
    client_secret_encrypted = Column(
        Text,
        nullable=False,
        comment="Encrypted OAuth client secret - NEVER log plaintext"
    )
    scopes = Column(
        Text,
        nullable=True,
        comment="JSON array of scopes requested by the App"
    )

    __table_args__ = (
        UniqueConstraint("app_id", "integration_id", name="uq_app_integration_configs_app_integration"),
    )

    @property
    def scope_list(self) -> List[str]:
        if not self.scopes:
            return []
        return json.loads(self.scopes)


class Connection(Base, TimestampMixin, TenantScopedMixin):
    """Tenant connection to an integration."""

    __tablename__ = "connections"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )
    integration_id = Column(
        String(255),
        ForeignKey("integrations.id", ondelete="CASCADE"),
        nullable=False,
        comment="Integration this connection targets"
    )
    app_id = Column(
        String(255),
        ForeignKey("apps.id", ondelete="SET NULL"),
        nullable=True,
        comment="Consuming App that owns the connection (if any)"
    )
    connector_type = Column(
        Enum(ConnectorType),
        default=ConnectorType.CUSTOM,
        nullable=False,
        comment="custom or platform"
    )
    platform_connector_id = Column(
        String(255),
        ForeignKey("platform_connectors.id", ondelete="SET NULL"),
        nullable=True,
        comment="Platform connector used when connector_type is platform"
    )
    name = Column(
        String(255),
        nullable=True,
        comment="Display name"
    )

    integration = relationship("Integration", lazy="joined")

    @property
    def is_platform(self) -> bool:
        return (
            self.connector_type == ConnectorType.PLATFORM and
            self.platform_connector_id is not None
        )

    def __repr__(self) -> str:
        return (
            f"<Connection(id={self.id}, integration_id={self.integration_id}, "
            f"connector_type={self.connector_type})>"
        )
