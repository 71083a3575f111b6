"""
Account model: the entitlement subject.

CRITICAL DESIGN:
- Owned by exactly ONE billing subject (a user or an organization)
- Tier and subscription dates are externally supplied facts (billing webhook,
  admin tier override). The engine never infers them.
- canceled_at is an explicit CANCELED signal and beats every date rule
- Usage records, credit account, ledger and commits cascade on delete
"""

from sqlalchemy import Column, String, Enum, UniqueConstraint
from sqlalchemy.orm import relationship

from entitlement_engine.models.base import (
    Base,
    TimestampMixin,
    UTCDateTime,
    generate_uuid,
    utcnow,
)


class Account(Base, TimestampMixin):
    """
    Entitlement subject for one user or one organization.

    role is the user type (ADMIN/PROFESSOR/STUDENT); tier is the paid plan
    (FREE/BASIC/PREMIUM/ENTERPRISE). Both gates are always checked
    independently at evaluation time.
    """

    __tablename__ = "entitlement_accounts"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    # Ownership
    owner_type = Column(
        Enum("USER", "ORGANIZATION", name="account_owner_type"),
        nullable=False,
        comment="Billing subject that pays for this account"
    )
    owner_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="User or organization identifier"
    )

    role = Column(
        Enum("ADMIN", "PROFESSOR", "STUDENT", name="account_role"),
        nullable=False,
        default="PROFESSOR",
    )
    tier = Column(
        Enum("FREE", "BASIC", "PREMIUM", "ENTERPRISE", name="account_tier"),
        nullable=False,
        default="FREE",
        index=True,
    )

    # Lifecycle facts
    subscription_expires_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="End of the paid term; NULL means manually managed"
    )
    trial_expires_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="End of the free trial; NULL means open-ended trial"
    )
    canceled_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="Set only by an explicit billing CANCELED signal"
    )
    period_anchor = Column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        comment="Start of the first usage/credit period"
    )

    credit_account = relationship(
        "CreditAccount",
        uselist=False,
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    credit_transactions = relationship(
        "CreditTransaction",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    usage_records = relationship(
        "UsageRecord",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    commits = relationship(
        "EntitlementCommit",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint("owner_type", "owner_id", name="uq_entitlement_account_owner"),
    )

    @property
    def is_canceled(self) -> bool:
        return self.canceled_at is not None

    def __repr__(self) -> str:
        return f"<Account(id={self.id}, role={self.role}, tier={self.tier})>"
