"""
EntitlementCommit model: the recorded outcome of every applied commit.

One row per (account_id, idempotency_key). A retried commit with the same key
returns this row's result instead of charging again.
"""

from sqlalchemy import Column, String, Integer, Boolean, UniqueConstraint
from sqlalchemy.orm import relationship

from entitlement_engine.models.base import (
    Base,
    AccountScopedMixin,
    UTCDateTime,
    generate_uuid,
    utcnow,
)


class EntitlementCommit(Base, AccountScopedMixin):
    """Append-only record of a committed feature use."""

    __tablename__ = "entitlement_commits"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    idempotency_key = Column(String(255), nullable=False)
    feature = Column(String(64), nullable=False)
    credit_cost = Column(Integer, nullable=False, default=0)
    usage_count = Column(
        Integer,
        nullable=True,
        comment="Usage counter after this commit (NULL for admin bypass)"
    )
    balance_after = Column(Integer, nullable=True)
    period_key = Column(String(32), nullable=True)
    transaction_id = Column(
        String(36),
        nullable=True,
        comment="Ledger entry for the debit, if any"
    )
    admin_bypass = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    account = relationship("Account", back_populates="commits")

    __table_args__ = (
        UniqueConstraint(
            "account_id", "idempotency_key",
            name="uq_entitlement_commit_idempotency"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<EntitlementCommit(account_id={self.account_id}, feature={self.feature}, "
            f"key={self.idempotency_key})>"
        )
