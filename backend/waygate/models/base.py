"""
Shared column mixins for ORM models.

TimestampMixin adds created_at/updated_at.
TenantScopedMixin adds an indexed tenant_id that services always filter on.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String


def generate_uuid() -> str:
    """Generate a string UUID primary key."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    """Adds created_at and updated_at columns."""

    created_at = Column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
        comment="Row creation time (UTC)"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
        comment="Last modification time (UTC)"
    )


class TenantScopedMixin:
    """Adds the tenant_id column used for tenant isolation."""

    tenant_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Owning tenant"
    )


def as_utc(value):
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
