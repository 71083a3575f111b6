"""
Credit models: materialized balance plus append-only ledger.

CRITICAL: credit_transactions is APPEND-ONLY and is the source of truth.
credit_accounts.balance is a cache that must always equal the sum of the
account's transaction deltas. Never update or delete transactions and never
overwrite a balance directly; every change goes through CreditLedger.
"""

from sqlalchemy import (
    Column, String, Integer, Boolean, Text, ForeignKey,
    CheckConstraint, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship

from entitlement_engine.models.base import (
    Base,
    TimestampMixin,
    AccountScopedMixin,
    UTCDateTime,
    generate_uuid,
    utcnow,
)


class CreditReason:
    """Non-feature reasons recorded on credit transactions."""
    MONTHLY_RESET = "MONTHLY_RESET"
    MANUAL_ADJUSTMENT = "MANUAL_ADJUSTMENT"
    REFUND = "REFUND"


class CreditAccount(Base, TimestampMixin):
    """
    Spendable balance for one Account.

    version is bumped by every write and doubles as the account's
    serialization point: a conditional UPDATE on this row is how commits for
    the same account queue behind each other.
    """

    __tablename__ = "credit_accounts"

    account_id = Column(
        String(36),
        ForeignKey("entitlement_accounts.id", ondelete="CASCADE"),
        primary_key=True,
    )
    balance = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Cached sum of transaction deltas"
    )
    monthly_allotment = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Credits granted at each period reset"
    )
    last_reset_at = Column(UTCDateTime(), nullable=True)
    last_reset_period_key = Column(String(32), nullable=True)

    writes_halted = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Set when the cached balance diverges from the ledger"
    )
    halted_reason = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=0)

    account = relationship("Account", back_populates="credit_account")

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_account_balance_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<CreditAccount(account_id={self.account_id}, balance={self.balance})>"


class CreditTransaction(Base, AccountScopedMixin):
    """
    Immutable ledger entry.

    idempotency_key is unique per account so a retried debit or credit is
    applied at most once.

    NOTE: Does not include TimestampMixin; entries are never updated.
    """

    __tablename__ = "credit_transactions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    delta = Column(
        Integer,
        nullable=False,
        comment="Signed change in credits"
    )
    reason = Column(
        String(64),
        nullable=False,
        comment="Feature tag, MONTHLY_RESET, MANUAL_ADJUSTMENT or REFUND"
    )
    idempotency_key = Column(String(255), nullable=False)
    balance_after = Column(Integer, nullable=False)
    sequence = Column(
        Integer,
        nullable=False,
        comment="CreditAccount.version after this write; orders the log"
    )
    period_key = Column(
        String(32),
        nullable=True,
        comment="Period the entry belongs to (set for resets)"
    )
    actor = Column(
        String(255),
        nullable=True,
        comment="Who initiated a manual adjustment"
    )
    created_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        index=True
    )

    account = relationship("Account", back_populates="credit_transactions")

    __table_args__ = (
        UniqueConstraint(
            "account_id", "idempotency_key",
            name="uq_credit_transaction_idempotency"
        ),
        UniqueConstraint(
            "account_id", "sequence",
            name="uq_credit_transaction_sequence"
        ),
        Index("ix_credit_transactions_account_created", "account_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<CreditTransaction(account_id={self.account_id}, delta={self.delta}, "
            f"reason={self.reason})>"
        )
