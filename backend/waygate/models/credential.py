"""
Credential model - encrypted, organisation-shared integration credentials.

SECURITY REQUIREMENTS:
- encrypted_data and encrypted_refresh_token are encrypted at rest
- Token values are NEVER exposed in repr, logs or API responses
- All access is tenant-scoped

Concurrency:
- version is bumped on every write and is the compare-and-swap token
  for optimistic updates
"""

import enum
import json
from datetime import datetime, timezone
from typing import List

from sqlalchemy import (
    Column, String, DateTime, Text, Integer, Enum, Index, ForeignKey
)
from sqlalchemy.orm import relationship

from waygate.db_base import Base
from waygate.models.base import (
    TimestampMixin, TenantScopedMixin, generate_uuid, as_utc
)


class CredentialType(str, enum.Enum):
    """Kind of auth material stored in a credential."""
    OAUTH2 = "oauth2"
    API_KEY = "api_key"
    BASIC = "basic"
    BEARER = "bearer"


class CredentialStatus(str, enum.Enum):
    """Credential lifecycle status."""
    ACTIVE = "active"
    EXPIRED = "expired"  # Access token lapsed, refresh still possible
    REVOKED = "revoked"  # Explicitly revoked, retained for audit
    NEEDS_REAUTH = "needs_reauth"  # Refresh failed, user must reconnect


class CredentialKind(str, enum.Enum):
    """Which credential population a row belongs to."""
    SHARED = "shared"
    USER = "user"


class CredentialColumnsMixin:
    """Columns shared by both credential populations."""

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )
    credential_type = Column(
        Enum(CredentialType),
        nullable=False,
        comment="oauth2, api_key, basic or bearer"
    )
    status = Column(
        Enum(CredentialStatus),
        default=CredentialStatus.ACTIVE,
        nullable=False,
        index=True,
        comment="Current credential status"
    )

    # Encrypted material - NEVER log these values
    encrypted_data = Column(
        Text,
        nullable=False,
        comment="Encrypted JSON payload (access token, token type, ...)"
    )
    encrypted_refresh_token = Column(
        Text,
        nullable=True,
        comment="Encrypted refresh token - NEVER log plaintext"
    )

    expires_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the access token expires (oauth2 only)"
    )
    scopes = Column(
        Text,
        nullable=True,
        comment="JSON array of granted OAuth scopes"
    )
    version = Column(
        Integer,
        default=1,
        nullable=False,
        comment="Optimistic concurrency token, bumped on every write"
    )

    @property
    def scope_list(self) -> List[str]:
        if not self.scopes:
            return []
        return json.loads(self.scopes)

    @property
    def is_token_expired(self) -> bool:
        """Check if access token is past its expiry."""
        if not self.expires_at:
            return False
        return datetime.now(timezone.utc) >= as_utc(self.expires_at)

    @property
    def can_refresh(self) -> bool:
        """Only active oauth2 credentials holding a refresh token refresh."""
        return (
            self.credential_type == CredentialType.OAUTH2 and
            self.status in (CredentialStatus.ACTIVE, CredentialStatus.EXPIRED) and
            self.encrypted_refresh_token is not None
        )

    def _safe_fields(self) -> dict:
        expires_at = as_utc(self.expires_at)
        return {
            "id": self.id,
            "credential_type": self.credential_type.value if self.credential_type else None,
            "status": self.status.value if self.status else None,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "scopes": self.scope_list,
            "has_refresh_token": self.encrypted_refresh_token is not None,
            "version": self.version,
        }


class Credential(Base, CredentialColumnsMixin, TimestampMixin, TenantScopedMixin):
    """
    Organisation-shared credential for an integration.

    One credential acts on behalf of the whole tenant. connection_id groups
    credentials when a tenant runs several connections for one integration.
    """

    __tablename__ = "credentials"

    integration_id = Column(
        String(255),
        ForeignKey("integrations.id", ondelete="CASCADE"),
        nullable=False,
        comment="Integration this credential authenticates"
    )
    connection_id = Column(
        String(255),
        ForeignKey("connections.id", ondelete="CASCADE"),
        nullable=True,
        comment="Optional connection grouping"
    )

    connection = relationship("Connection")

    __table_args__ = (
        Index("ix_credentials_tenant_integration", "tenant_id", "integration_id"),
        Index("ix_credentials_refresh_scan", "status", "credential_type", "expires_at"),
    )

    def __repr__(self) -> str:
        """Safe repr - NEVER include token values."""
        return (
            f"<Credential("
            f"id={self.id}, "
            f"integration_id={self.integration_id}, "
            f"type={self.credential_type}, "
            f"status={self.status})>"
        )

    def to_safe_dict(self) -> dict:
        """
        Return dictionary safe for logging/API responses.

        SECURITY: Excludes all token values.
        """
        return {
            **self._safe_fields(),
            "tenant_id": self.tenant_id,
            "integration_id": self.integration_id,
            "connection_id": self.connection_id,
            "credential_kind": CredentialKind.SHARED.value,
        }
