"""
Common mixins for persisted models.

- TimestampMixin: created_at / updated_at maintained by the database layer
- TenantScopedMixin: tenant_id column, indexed, never taken from client input
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String


def generate_uuid() -> str:
    """Generate a string UUID primary key."""
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    """Adds created_at and updated_at columns."""

    created_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
        comment="Row creation time (UTC)"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
        comment="Last modification time (UTC)"
    )


class TenantScopedMixin:
    """
    Adds a tenant_id column.

    SECURITY: tenant_id is resolved server-side from the authenticated
    session (or fixed for process-wide credentials), never from a payload.
    """

    tenant_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Owning tenant (store/account)"
    )
