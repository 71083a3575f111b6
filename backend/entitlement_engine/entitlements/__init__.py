"""
Entitlement and credit enforcement.

This module provides:
- PolicyRegistry: versioned (tier, feature) -> FeaturePolicy table
- SubscriptionLifecycle: point-in-time subscription status
- UsageTracker: per-period usage counters
- CreditLedger: append-only credit ledger with materialized balance
- EntitlementEvaluator: evaluate (read-only) and commit (atomic)
- EntitlementAuditLogger: audit trail for denials and admin bypasses

Decision order: role -> lifecycle -> tier policy -> usage cap -> credits
"""

from entitlement_engine.entitlements.models import (
    UNLIMITED,
    CommitResult,
    Decision,
    DenialReason,
    Feature,
    OwnerType,
    Role,
    SubscriptionStatus,
    Tier,
    UsageSnapshot,
)
from entitlement_engine.entitlements.errors import (
    EntitlementError,
    EntitlementDeniedError,
    InsufficientCreditsError,
    InvalidIdempotencyReplayError,
    LedgerInconsistencyError,
    StorageUnavailableError,
)
from entitlement_engine.entitlements.policy import (
    FeaturePolicy,
    PolicyRegistry,
    get_policy_registry,
)
from entitlement_engine.entitlements.loader import (
    EntitlementConfig,
    get_entitlement_config,
)
from entitlement_engine.entitlements.lifecycle import SubscriptionLifecycle
from entitlement_engine.entitlements.usage import UsageTracker, period_key
from entitlement_engine.entitlements.ledger import CreditLedger, LedgerResult
from entitlement_engine.entitlements.evaluator import EntitlementEvaluator
from entitlement_engine.entitlements.audit import EntitlementAuditLogger, EntitlementAuditEvent

__all__ = [
    "UNLIMITED",
    "CommitResult",
    "Decision",
    "DenialReason",
    "Feature",
    "OwnerType",
    "Role",
    "SubscriptionStatus",
    "Tier",
    "UsageSnapshot",
    "EntitlementError",
    "EntitlementDeniedError",
    "InsufficientCreditsError",
    "InvalidIdempotencyReplayError",
    "LedgerInconsistencyError",
    "StorageUnavailableError",
    "FeaturePolicy",
    "PolicyRegistry",
    "get_policy_registry",
    "EntitlementConfig",
    "get_entitlement_config",
    "SubscriptionLifecycle",
    "UsageTracker",
    "period_key",
    "CreditLedger",
    "LedgerResult",
    "EntitlementEvaluator",
    "EntitlementAuditLogger",
    "EntitlementAuditEvent",
]
