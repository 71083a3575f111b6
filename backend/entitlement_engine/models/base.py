"""
Base mixins for database models.

Provides common functionality:
- TimestampMixin: created_at, updated_at timestamps
- AccountScopedMixin: account_id foreign key with cascade delete
- generate_uuid: UUID generation for primary keys
- UTCDateTime: Timezone-aware datetime type that always round-trips as UTC
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, String, DateTime, ForeignKey, func, TypeDecorator
from sqlalchemy.orm import declared_attr

from entitlement_engine.db_base import Base

__all__ = [
    "Base",
    "UTCDateTime",
    "ensure_utc",
    "generate_uuid",
    "utcnow",
    "TimestampMixin",
    "AccountScopedMixin",
]


class UTCDateTime(TypeDecorator):
    """
    Platform-independent timezone-aware datetime.

    PostgreSQL stores timestamptz natively. SQLite drops tzinfo, so values are
    normalised to UTC on the way in and re-attached to UTC on the way out.
    Lifecycle and period math compare against aware datetimes only.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return ensure_utc(value)
        return value

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def generate_uuid() -> str:
    """Generate a UUID4 string for use as a primary key default."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="Timestamp when record was created"
    )

    updated_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        comment="Timestamp when record was last updated"
    )


class AccountScopedMixin:
    """
    Mixin that adds account_id for rows owned 1:1 by an Account.

    Rows are destroyed only when the owning Account is deleted (cascade),
    never independently.
    """

    @declared_attr
    def account_id(cls):
        return Column(
            String(36),
            ForeignKey("entitlement_accounts.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
            comment="Owning entitlement account"
        )
