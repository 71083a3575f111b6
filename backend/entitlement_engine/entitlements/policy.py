"""
Policy registry: (tier, feature) -> FeaturePolicy.

Pure data, no per-account state. The whole table is replaced atomically by
swapping one reference, so concurrent lookups never observe a half-updated
table. Missing entries resolve to a maximally restrictive policy: an
incomplete configuration fails closed, not open.

CRITICAL: This is the only place tier math lives. Do NOT hardcode
tier/feature conditionals elsewhere.
"""

import logging
import sys
from dataclasses import dataclass, replace, field
from threading import Lock
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Tuple

from entitlement_engine.entitlements.models import (
    UNLIMITED,
    FeatureLike,
    Tier,
    feature_key,
)

logger = logging.getLogger(__name__)

# Cost reported for features with no policy; no balance can cover it.
UNAVAILABLE_COST = sys.maxsize

DEFAULT_TIER_ORDER: Tuple[str, ...] = tuple(t.value for t in Tier)


@dataclass(frozen=True)
class FeaturePolicy:
    """Immutable policy for one feature in one tier."""

    tier: str
    feature: str
    enabled: bool
    usage_limit: Optional[int] = None
    credit_cost: int = 0
    upgrade_hint: Optional[str] = None

    def __post_init__(self):
        if self.credit_cost < 0:
            raise ValueError(f"credit_cost must be >= 0 for {self.tier}/{self.feature}")
        if self.usage_limit is not None and self.usage_limit < UNLIMITED:
            raise ValueError(f"usage_limit must be >= -1 for {self.tier}/{self.feature}")

    def is_unlimited(self) -> bool:
        """Check if feature has no usage cap (None or -1)."""
        return self.usage_limit is None or self.usage_limit == UNLIMITED

    def is_capped(self, count: int) -> bool:
        return not self.is_unlimited() and count >= self.usage_limit


def deny_policy(tier: str, feature: str, upgrade_hint: Optional[str] = None) -> FeaturePolicy:
    """The fail-closed default for an unknown (tier, feature)."""
    return FeaturePolicy(
        tier=tier,
        feature=feature,
        enabled=False,
        usage_limit=0,
        credit_cost=UNAVAILABLE_COST,
        upgrade_hint=upgrade_hint,
    )


@dataclass(frozen=True)
class PolicyTable:
    """One complete, versioned policy set."""

    version: str
    tier_order: Tuple[str, ...] = DEFAULT_TIER_ORDER
    policies: Mapping[Tuple[str, str], FeaturePolicy] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def features(self) -> Tuple[str, ...]:
        return tuple(sorted({feature for _, feature in self.policies}))


def _with_upgrade_hints(
    policies: Dict[Tuple[str, str], FeaturePolicy],
    tier_order: Tuple[str, ...],
) -> Dict[Tuple[str, str], FeaturePolicy]:
    """
    Fill upgrade_hint with the cheapest higher tier that enables the feature
    with a larger (or no) cap. Explicit hints from configuration win.
    """
    result = dict(policies)
    for (tier, feature), policy in policies.items():
        if policy.upgrade_hint is not None or tier not in tier_order:
            continue
        needs_upgrade = not policy.enabled or not policy.is_unlimited()
        if not needs_upgrade:
            continue
        for higher in tier_order[tier_order.index(tier) + 1:]:
            candidate = policies.get((higher, feature))
            if candidate is None or not candidate.enabled:
                continue
            if policy.enabled and not candidate.is_unlimited() and (
                candidate.usage_limit <= (policy.usage_limit or 0)
            ):
                continue
            result[(tier, feature)] = replace(policy, upgrade_hint=higher)
            break
    return result


class PolicyRegistry:
    """
    Atomically swappable policy table.

    Usage:
        registry = PolicyRegistry()
        registry.register(policies, version="2025-03-01")
        policy = registry.lookup("FREE", "AI_GRADING")
        if policy.enabled:
            ...
    """

    def __init__(self, table: Optional[PolicyTable] = None):
        self._table = table or PolicyTable(version="empty")
        self._write_lock = Lock()

    @property
    def version(self) -> str:
        return self._table.version

    @property
    def tier_order(self) -> Tuple[str, ...]:
        return self._table.tier_order

    def snapshot(self) -> PolicyTable:
        """The current table; stays consistent even if a swap follows."""
        return self._table

    def register(
        self,
        policies: Iterable[FeaturePolicy],
        version: str,
        tier_order: Optional[Iterable[str]] = None,
    ) -> PolicyTable:
        """
        Replace the whole policy set.

        The new table is fully built before the reference is swapped, so
        readers see either the old table or the new one, never a mix.
        """
        order = tuple(tier_order) if tier_order is not None else DEFAULT_TIER_ORDER
        built: Dict[Tuple[str, str], FeaturePolicy] = {}
        for policy in policies:
            key = (policy.tier, policy.feature)
            if key in built:
                raise ValueError(f"Duplicate policy for {policy.tier}/{policy.feature}")
            built[key] = policy

        table = PolicyTable(
            version=version,
            tier_order=order,
            policies=MappingProxyType(_with_upgrade_hints(built, order)),
        )

        with self._write_lock:
            previous = self._table.version
            self._table = table

        logger.info("Policy table registered", extra={
            "version": version,
            "previous_version": previous,
            "policy_count": len(built),
        })
        return table

    def lookup(self, tier: str, feature: FeatureLike) -> FeaturePolicy:
        """
        Resolve the policy for (tier, feature).

        Never raises for unknown keys: returns the deny policy instead.
        """
        table = self._table
        key = feature_key(feature)
        tier_value = tier.value if isinstance(tier, Tier) else str(tier)
        policy = table.policies.get((tier_value, key))
        if policy is None:
            logger.debug("No policy configured, failing closed", extra={
                "tier": tier_value,
                "feature": key,
                "policy_version": table.version,
            })
            return deny_policy(tier_value, key, self._first_enabling_tier(table, key))
        return policy

    def _first_enabling_tier(self, table: PolicyTable, feature: str) -> Optional[str]:
        for tier in table.tier_order:
            policy = table.policies.get((tier, feature))
            if policy is not None and policy.enabled:
                return tier
        return None

    def reload(self, config_path: Optional[str] = None) -> PolicyTable:
        """
        Re-read the configuration source and swap.

        A failed reload keeps the previous table.
        """
        from entitlement_engine.entitlements.loader import load_entitlement_config

        try:
            config = load_entitlement_config(config_path)
        except Exception:
            logger.error("Policy reload failed, keeping previous table", exc_info=True, extra={
                "version": self.version,
            })
            raise
        return self.register(config.policies, config.version, config.tier_order)


_registry: Optional[PolicyRegistry] = None
_registry_lock = Lock()


def get_policy_registry() -> PolicyRegistry:
    """Get the process-wide registry, loaded from configuration on first use."""
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:
                from entitlement_engine.entitlements.loader import get_entitlement_config

                config = get_entitlement_config()
                registry = PolicyRegistry()
                registry.register(config.policies, config.version, config.tier_order)
                _registry = registry
    return _registry


def reset_policy_registry() -> None:
    """
    Reset the singleton registry (for testing).

    WARNING: Only use in tests!
    """
    global _registry
    _registry = None
