"""
Database models for accounts, usage metering and the credit ledger.

Account-owned models inherit from AccountScopedMixin and are removed only by
cascade when their Account is deleted.
"""

from entitlement_engine.models.base import TimestampMixin, AccountScopedMixin
from entitlement_engine.models.account import Account
from entitlement_engine.models.usage import UsageRecord
from entitlement_engine.models.credit import CreditAccount, CreditTransaction, CreditReason
from entitlement_engine.models.entitlement_commit import EntitlementCommit
from entitlement_engine.models.billing_event import BillingUpdateEvent, BillingUpdateStatus

__all__ = [
    "TimestampMixin",
    "AccountScopedMixin",
    "Account",
    "UsageRecord",
    "CreditAccount",
    "CreditTransaction",
    "CreditReason",
    "EntitlementCommit",
    "BillingUpdateEvent",
    "BillingUpdateStatus",
]
