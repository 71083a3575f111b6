"""
BillingUpdateEvent model for billing-provider update deduplication.

CRITICAL: This table is APPEND-ONLY. Each provider event id is applied at
most once; duplicates and retries are recognised by provider_event_id.
"""

from enum import Enum

from sqlalchemy import Column, String, Text, UniqueConstraint

from entitlement_engine.models.base import (
    Base,
    UTCDateTime,
    generate_uuid,
    utcnow,
)


class BillingUpdateStatus(str, Enum):
    """Status values a billing provider may push."""
    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"


class BillingUpdateEvent(Base):
    """
    Processed billing-provider update.

    Stores the payload hash for debugging, not the payload itself.
    """

    __tablename__ = "billing_update_events"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    provider_event_id = Column(
        String(255),
        nullable=False,
        comment="Event id from the billing provider"
    )
    account_id = Column(String(36), nullable=False, index=True)
    tier = Column(String(32), nullable=True)
    status = Column(String(32), nullable=True)
    payload_hash = Column(String(64), nullable=True)
    outcome = Column(Text, nullable=True)
    processed_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("provider_event_id", name="uq_billing_update_event_provider_id"),
    )

    def __repr__(self) -> str:
        return f"<BillingUpdateEvent(provider_event_id={self.provider_event_id}, status={self.status})>"
