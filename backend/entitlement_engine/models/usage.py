"""
Usage tracking model for per-period feature metering.

UsageRecord: one counter per (account, feature, period_key).

Rows are created lazily on the first committed use in a period and are never
deleted: a new period key starts a new row, the old one stays for audit.
"""

from sqlalchemy import (
    Column, String, Integer, CheckConstraint, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship

from entitlement_engine.models.base import (
    Base,
    TimestampMixin,
    AccountScopedMixin,
    generate_uuid,
)


class UsageRecord(Base, TimestampMixin, AccountScopedMixin):
    """
    Per-period usage counter.

    count only ever increases within a period. Increments happen through a
    conditional UPDATE (count < usage_limit) inside the commit transaction.
    """

    __tablename__ = "usage_records"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    feature = Column(
        String(64),
        nullable=False,
        comment="Gated feature key (e.g. AI_GRADING)"
    )
    period_key = Column(
        String(32),
        nullable=False,
        comment="Derived from the account's period anchor and commit time"
    )
    count = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Committed uses in this period"
    )

    account = relationship("Account", back_populates="usage_records")

    __table_args__ = (
        UniqueConstraint(
            "account_id", "feature", "period_key",
            name="uq_usage_record_period"
        ),
        CheckConstraint("count >= 0", name="ck_usage_record_count_non_negative"),
        Index("ix_usage_records_account_period", "account_id", "period_key"),
    )

    def __repr__(self) -> str:
        return (
            f"<UsageRecord(account_id={self.account_id}, feature={self.feature}, "
            f"period={self.period_key}, count={self.count})>"
        )
