"""
Entitlement models: canonical types for the entitlement and credit engine.

Provides:
- Role, Tier, OwnerType, Feature: account and catalogue enums
- SubscriptionStatus: point-in-time lifecycle status
- DenialReason: machine-readable denial taxonomy
- Decision: result of a read-only evaluation
- CommitResult: result of the mutating commit
- UsageSnapshot: read-only view of a usage counter

All value objects are frozen dataclasses: safe to cache, share across
threads and serialise from APIs.
"""

from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

# usage_limit sentinel meaning "no cap"
UNLIMITED = -1


# ---------------------------------------------------------------------------
# Canonical enums: single source of truth, import from here
# ---------------------------------------------------------------------------

class Role(str, Enum):
    """User type. Independent from the paid tier."""
    ADMIN = "ADMIN"
    PROFESSOR = "PROFESSOR"
    STUDENT = "STUDENT"


class Tier(str, Enum):
    """Subscription plan, cheapest first."""
    FREE = "FREE"
    BASIC = "BASIC"
    PREMIUM = "PREMIUM"
    ENTERPRISE = "ENTERPRISE"


class OwnerType(str, Enum):
    """Billing subject that owns an account."""
    USER = "USER"
    ORGANIZATION = "ORGANIZATION"


class Feature(str, Enum):
    """Known gated capabilities. The policy table may define more."""
    COURSE_CREATION = "COURSE_CREATION"
    ASSIGNMENT_CREATION = "ASSIGNMENT_CREATION"
    DISCUSSION_CREATION = "DISCUSSION_CREATION"
    CUSTOM_RUBRICS = "CUSTOM_RUBRICS"
    AI_GRADING = "AI_GRADING"
    ADVANCED_ANALYTICS = "ADVANCED_ANALYTICS"
    BULK_OPERATIONS = "BULK_OPERATIONS"
    API_ACCESS = "API_ACCESS"
    PROFESSOR_STYLE_LEARNING = "PROFESSOR_STYLE_LEARNING"
    ORGANIZATION_MANAGEMENT = "ORGANIZATION_MANAGEMENT"
    CREDIT_SYSTEM = "CREDIT_SYSTEM"
    CUSTOM_PROMPTS = "CUSTOM_PROMPTS"


class SubscriptionStatus(str, Enum):
    """Point-in-time subscription status derived by SubscriptionLifecycle."""
    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    EXPIRED = "EXPIRED"
    CANCELED = "CANCELED"

    def may_transact(self) -> bool:
        return self in (
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.TRIALING,
            SubscriptionStatus.PAST_DUE,
        )


class DenialReason(str, Enum):
    """Why a decision or commit was denied."""
    ROLE_RESTRICTED = "ROLE_RESTRICTED"
    SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_INACTIVE"
    FEATURE_NOT_IN_TIER = "FEATURE_NOT_IN_TIER"
    USAGE_LIMIT_REACHED = "USAGE_LIMIT_REACHED"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    INVALID_IDEMPOTENCY_REPLAY = "INVALID_IDEMPOTENCY_REPLAY"

    @property
    def is_transient(self) -> bool:
        """Only storage failures may be retried (with the same key)."""
        return self is DenialReason.STORAGE_UNAVAILABLE


FeatureLike = Union[Feature, str]


def feature_key(feature: FeatureLike) -> str:
    """Normalise a Feature or raw string to the policy table key."""
    if isinstance(feature, Feature):
        return feature.value
    return str(feature).strip().upper()


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


# ---------------------------------------------------------------------------
# Value objects (frozen dataclasses)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UsageSnapshot:
    """Read-only view of one usage counter."""
    feature: str
    period_key: str
    count: int
    usage_limit: Optional[int] = None

    @property
    def unlimited(self) -> bool:
        return self.usage_limit is None or self.usage_limit == UNLIMITED

    @property
    def capped(self) -> bool:
        return not self.unlimited and self.count >= self.usage_limit

    @property
    def remaining(self) -> Optional[int]:
        """Uses left this period; None when unlimited."""
        if self.unlimited:
            return None
        return max(0, self.usage_limit - self.count)


@dataclass(frozen=True)
class Decision:
    """
    Outcome of EntitlementEvaluator.evaluate.

    Never use a Decision as authorization: commit re-validates.
    """
    allowed: bool
    feature: str
    reason: Optional[DenialReason] = None
    credit_cost: int = 0
    usage_remaining: Optional[int] = None
    subscription_status: Optional[SubscriptionStatus] = None
    tier: Optional[str] = None
    upgrade_hint: Optional[str] = None
    balance: Optional[int] = None
    warnings: Tuple[str, ...] = field(default_factory=tuple)
    admin_bypass: bool = False

    @classmethod
    def deny(cls, feature: str, reason: DenialReason, **kwargs) -> "Decision":
        return cls(allowed=False, feature=feature, reason=reason, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["reason"] = _enum_value(self.reason)
        d["subscription_status"] = _enum_value(self.subscription_status)
        d["warnings"] = list(self.warnings)
        return d


@dataclass(frozen=True)
class CommitResult:
    """
    Outcome of EntitlementEvaluator.commit.

    replayed is True when the idempotency key had already been applied and
    the recorded result is returned unchanged.
    """
    ok: bool
    feature: str
    idempotency_key: str
    reason: Optional[DenialReason] = None
    credit_cost: int = 0
    usage_count: Optional[int] = None
    balance_after: Optional[int] = None
    commit_id: Optional[str] = None
    replayed: bool = False
    detail: Optional[str] = None
    admin_bypass: bool = False

    @classmethod
    def denied(
        cls,
        feature: str,
        idempotency_key: str,
        reason: DenialReason,
        detail: Optional[str] = None,
    ) -> "CommitResult":
        return cls(
            ok=False,
            feature=feature,
            idempotency_key=idempotency_key,
            reason=reason,
            detail=detail,
        )

    def same_outcome(self, other: "CommitResult") -> bool:
        """Equal apart from the replay marker."""
        return (
            self.ok == other.ok
            and self.feature == other.feature
            and self.credit_cost == other.credit_cost
            and self.usage_count == other.usage_count
            and self.balance_after == other.balance_after
            and self.commit_id == other.commit_id
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["reason"] = _enum_value(self.reason)
        return d
