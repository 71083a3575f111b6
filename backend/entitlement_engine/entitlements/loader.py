"""
Entitlement config loader: load the versioned policy document.

Provides:
- LifecycleConfig / CreditConfig / UsageConfig: typed settings sections
- EntitlementConfig: complete parsed configuration including policies
- EntitlementConfigLoader: thread-safe singleton with atomic reload

Source: entitlement_engine/config/entitlements.json, overridable with the
ENTITLEMENTS_CONFIG_PATH environment variable.

CRITICAL: This is the source of truth for feature policies.
Do NOT hardcode feature access elsewhere.
"""

import json
import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from entitlement_engine.entitlements.models import UNLIMITED, feature_key
from entitlement_engine.entitlements.policy import DEFAULT_TIER_ORDER, FeaturePolicy

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "ENTITLEMENTS_CONFIG_PATH"
DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "entitlements.json"

PERIOD_UNIT_MONTH = "month"
PERIOD_UNIT_DAYS = "days"


@dataclass(frozen=True)
class LifecycleConfig:
    """Subscription lifecycle settings."""

    grace_period_days: int = 3


@dataclass(frozen=True)
class CreditConfig:
    """Monthly allotments and rollover policy."""

    monthly_allotment: Dict[str, int] = field(default_factory=dict)
    rollover_cap: int = 0

    def allotment_for(self, tier: str) -> int:
        return int(self.monthly_allotment.get(tier, 0))


@dataclass(frozen=True)
class UsageConfig:
    """How usage/credit periods are cut."""

    period_unit: str = PERIOD_UNIT_MONTH
    period_length_days: int = 30

    def __post_init__(self):
        if self.period_unit not in (PERIOD_UNIT_MONTH, PERIOD_UNIT_DAYS):
            raise ValueError(f"Unknown period_unit: {self.period_unit}")
        if self.period_length_days <= 0:
            raise ValueError("period_length_days must be positive")


@dataclass(frozen=True)
class EntitlementConfig:
    """Complete parsed entitlement configuration."""

    version: str
    tier_order: Tuple[str, ...] = DEFAULT_TIER_ORDER
    student_features: FrozenSet[str] = frozenset()
    policies: Tuple[FeaturePolicy, ...] = ()
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    credits: CreditConfig = field(default_factory=CreditConfig)
    usage: UsageConfig = field(default_factory=UsageConfig)
    feature_descriptions: Dict[str, str] = field(default_factory=dict)


def _parse_limit(value: Any) -> Optional[int]:
    if value is None:
        return None
    limit = int(value)
    return UNLIMITED if limit == UNLIMITED else limit


def _parse_policies(raw: Dict[str, Any], tier_order: Tuple[str, ...]) -> List[FeaturePolicy]:
    policies: List[FeaturePolicy] = []
    for tier, features in raw.items():
        if tier not in tier_order:
            raise ValueError(f"Policy references unknown tier '{tier}'")
        for name, spec in features.items():
            # Shorthand: "FEATURE": false
            if isinstance(spec, bool):
                spec = {"enabled": spec}
            policies.append(FeaturePolicy(
                tier=tier,
                feature=feature_key(name),
                enabled=bool(spec.get("enabled", False)),
                usage_limit=_parse_limit(spec.get("usage_limit")),
                credit_cost=int(spec.get("credit_cost", 0)),
                upgrade_hint=spec.get("upgrade_hint"),
            ))
    return policies


def parse_entitlement_config(raw: Dict[str, Any]) -> EntitlementConfig:
    """Parse a raw configuration document. Raises ValueError on bad input."""
    version = raw.get("version")
    if not version:
        raise ValueError("Entitlement config must declare a version")

    tier_order = tuple(raw.get("tiers") or DEFAULT_TIER_ORDER)

    lifecycle_data = raw.get("lifecycle", {})
    credits_data = raw.get("credits", {})
    usage_data = raw.get("usage", {})

    return EntitlementConfig(
        version=str(version),
        tier_order=tier_order,
        student_features=frozenset(
            feature_key(f) for f in raw.get("student_features", [])
        ),
        policies=tuple(_parse_policies(raw.get("policies", {}), tier_order)),
        lifecycle=LifecycleConfig(
            grace_period_days=int(lifecycle_data.get("grace_period_days", 3)),
        ),
        credits=CreditConfig(
            monthly_allotment={
                tier: int(amount)
                for tier, amount in credits_data.get("monthly_allotment", {}).items()
            },
            rollover_cap=int(credits_data.get("rollover_cap", 0)),
        ),
        usage=UsageConfig(
            period_unit=usage_data.get("period_unit", PERIOD_UNIT_MONTH),
            period_length_days=int(usage_data.get("period_length_days", 30)),
        ),
        feature_descriptions=dict(raw.get("feature_descriptions", {})),
    )


def _resolve_config_path(config_path: Optional[str] = None) -> Path:
    if config_path:
        return Path(config_path)
    env_path = os.getenv(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def load_entitlement_config(config_path: Optional[str] = None) -> EntitlementConfig:
    """Read and parse the configuration file without touching the singleton."""
    path = _resolve_config_path(config_path)
    logger.info(f"Loading entitlements from {path}")
    with open(path, "r") as f:
        raw = json.load(f)
    config = parse_entitlement_config(raw)
    logger.info("Loaded entitlement config", extra={
        "version": config.version,
        "policy_count": len(config.policies),
    })
    return config


class EntitlementConfigLoader:
    """
    Singleton holder for the parsed entitlement configuration.

    Thread-safe with lazy loading and reload support.

    Usage:
        config = EntitlementConfigLoader().config
        grace = config.lifecycle.grace_period_days
    """

    _instance: Optional['EntitlementConfigLoader'] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        """Singleton pattern implementation."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path
        self._load_lock = Lock()
        self._config = load_entitlement_config(config_path)
        self._initialized = True

    @property
    def config(self) -> EntitlementConfig:
        return self._config

    def reload(self) -> EntitlementConfig:
        """
        Reload configuration from disk (atomic swap).

        The new config is parsed completely before the reference is swapped,
        so concurrent readers never see a partial state. On failure the
        previous config is kept.
        """
        logger.info("Reloading entitlement configuration")
        with self._load_lock:
            try:
                new_config = load_entitlement_config(self._config_path)
            except Exception:
                logger.error("Config reload failed, keeping previous config", exc_info=True)
                raise
            self._config = new_config
        return new_config


def get_entitlement_config(config_path: Optional[str] = None) -> EntitlementConfig:
    """Get the singleton configuration."""
    return EntitlementConfigLoader(config_path).config


def reset_entitlement_config() -> None:
    """
    Reset the singleton instance (for testing).

    WARNING: Only use in tests!
    """
    EntitlementConfigLoader._instance = None
