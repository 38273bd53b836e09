"""
UserCredential model - per-end-user delegated credentials.

Each end user that connects their own account through a consuming App gets
exactly one row per connection. Reconnecting replaces the row.

SECURITY: same encryption and redaction rules as Credential.
"""

from sqlalchemy import Column, String, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship

from waygate.db_base import Base
from waygate.models.base import TimestampMixin
from waygate.models.credential import CredentialColumnsMixin, CredentialKind


class UserCredential(Base, CredentialColumnsMixin, TimestampMixin):
    """
    End-user credential, always linked to a Connection.

    Tenant and integration are owned by the connection.
    """

    __tablename__ = "user_credentials"

    connection_id = Column(
        String(255),
        ForeignKey("connections.id", ondelete="CASCADE"),
        nullable=False,
        comment="Connection the end user authorised"
    )
    app_user_id = Column(
        String(255),
        nullable=False,
        comment="End-user identifier supplied by the consuming App"
    )

    connection = relationship("Connection", lazy="joined")

    __table_args__ = (
        UniqueConstraint(
            "connection_id", "app_user_id",
            name="uq_user_credentials_connection_user"
        ),
        Index("ix_user_credentials_refresh_scan", "status", "credential_type", "expires_at"),
    )

    def __repr__(self) -> str:
        """Safe repr - NEVER include token values."""
        return (
            f"<UserCredential("
            f"id={self.id}, "
            f"connection_id={self.connection_id}, "
            f"app_user_id={self.app_user_id}, "
            f"status={self.status})>"
        )

    def to_safe_dict(self) -> dict:
        """SECURITY: Excludes all token values."""
        return {
            **self._safe_fields(),
            "connection_id": self.connection_id,
            "app_user_id": self.app_user_id,
            "credential_kind": CredentialKind.USER.value,
        }
