"""
Integration and PlatformConnector models.

An Integration stores its own OAuth client config in auth_config (JSON).
Client secrets inside auth_config are stored encrypted under the
"client_secret_encrypted" key and decrypted on demand.

A PlatformConnector is a platform-registered OAuth app that tenants can
connect through without bringing their own client.
"""

import enum
import json
from typing import List

from sqlalchemy import Column, String, Text, Enum, UniqueConstraint

from waygate.db_base import Base
from waygate.models.base import TimestampMixin, TenantScopedMixin, generate_uuid


class AuthType(str, enum.Enum):
    """Authentication scheme an integration uses."""
    OAUTH2 = "oauth2"
    API_KEY = "api_key"
    BASIC = "basic"
    BEARER = "bearer"
    NONE = "none"


class PlatformConnectorStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DEPRECATED = "deprecated"


class Integration(Base, TimestampMixin, TenantScopedMixin):
    """Third-party API integration registered by a tenant."""

    __tablename__ = "integrations"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )
    name = Column(
        String(255),
        nullable=False,
        comment="Display name (allowed in logs)"
    )
    auth_type = Column(
        Enum(AuthType),
        nullable=False,
        comment="Authentication scheme"
    )
    auth_config = Column(
        Text,
        nullable=True,
        comment="JSON auth config; client secret stored encrypted"
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_integrations_tenant_name"),
    )

    @property
    def auth_config_dict(self) -> dict:
        if not self.auth_config:
            return {}
        return json.loads(self.auth_config)

    def __repr__(self) -> str:
        return f"<Integration(id={self.id}, name={self.name}, auth_type={self.auth_type})>"


class PlatformConnector(Base, TimestampMixin):
    """Platform-owned OAuth client registration."""

    __tablename__ = "platform_connectors"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )
    slug = Column(
        String(100),
        nullable=False,
        unique=True,
        comment="Stable connector identifier"
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
    token_url = Column(
        Text,
        nullable=False,
        comment="Provider token endpoint"
    )
    authorization_url = Column(
        Text,
        nullable=True,
        comment="Provider authorization endpoint"
    )
    scopes = Column(
        Text,
        nullable=True,
        comment="JSON array of default scopes"
    )
    status = Column(
        Enum(PlatformConnectorStatus),
        default=PlatformConnectorStatus.ACTIVE,
        nullable=False,
        comment="Connector availability"
    )

    @property
    def scope_list(self) -> List[str]:
        if not self.scopes:
            return []
        return json.loads(self.scopes)

    def __repr__(self) -> str:
        """Safe repr - NEVER include the client secret."""
        return f"<PlatformConnector(id={self.id}, slug={self.slug}, status={self.status})>"
