"""
Tests for the policy registry and the entitlement config loader.

Tests cover:
- Fail-closed lookups for unknown (tier, feature)
- Atomic table swaps and failed reloads
- Upgrade hint derivation
- Config parsing (shorthand, validation, reload)
"""

import json
import threading

import pytest

from entitlement_engine.entitlements.loader import (
    EntitlementConfigLoader,
    get_entitlement_config,
    load_entitlement_config,
    parse_entitlement_config,
    reset_entitlement_config,
)
from entitlement_engine.entitlements.models import UNLIMITED, Feature, Tier
from entitlement_engine.entitlements.policy import (
    UNAVAILABLE_COST,
    FeaturePolicy,
    PolicyRegistry,
    get_policy_registry,
)


@pytest.fixture
def minimal_config_json():
    return {
        "version": "test-1",
        "tiers": ["FREE", "BASIC", "PREMIUM", "ENTERPRISE"],
        "student_features": ["ai_grading"],
        "lifecycle": {"grace_period_days": 5},
        "usage": {"period_unit": "days", "period_length_days": 7},
        "credits": {"monthly_allotment": {"FREE": 10, "BASIC": 20}, "rollover_cap": 4},
        "policies": {
            "FREE": {
                "AI_GRADING": {"enabled": True, "usage_limit": 3, "credit_cost": 1},
                "BULK_OPERATIONS": False,
            },
            "BASIC": {
                "AI_GRADING": {"enabled": True, "usage_limit": -1, "credit_cost": 1},
                "BULK_OPERATIONS": True,
            },
        },
    }


@pytest.fixture
def config_file(tmp_path, minimal_config_json):
    path = tmp_path / "entitlements.json"
    path.write_text(json.dumps(minimal_config_json))
    return str(path)


# =============================================================================
# PolicyRegistry
# =============================================================================

class TestPolicyRegistry:
    """Lookup and swap semantics."""

    def test_lookup_configured_policy(self, registry):
        policy = registry.lookup("FREE", Feature.AI_GRADING)

        assert policy.enabled is True
        assert policy.usage_limit == 10
        assert policy.credit_cost == 1

    def test_lookup_normalises_feature_and_tier(self, registry):
        assert registry.lookup(Tier.FREE, "ai_grading") == registry.lookup("FREE", "AI_GRADING")

    def test_unknown_feature_fails_closed(self, registry):
        policy = registry.lookup("PREMIUM", "TIME_TRAVEL")

        assert policy.enabled is False
        assert policy.usage_limit == 0
        assert policy.credit_cost == UNAVAILABLE_COST
        assert policy.upgrade_hint is None

    def test_unknown_tier_fails_closed_with_hint(self, registry):
        policy = registry.lookup("PLATINUM", Feature.BULK_OPERATIONS)

        assert policy.enabled is False
        assert policy.upgrade_hint == "PREMIUM"

    def test_empty_registry_denies_everything(self):
        registry = PolicyRegistry()

        assert registry.version == "empty"
        assert registry.lookup("ENTERPRISE", "AI_GRADING").enabled is False

    def test_upgrade_hint_is_cheapest_enabling_tier(self, registry):
        assert registry.lookup("FREE", Feature.BULK_OPERATIONS).upgrade_hint == "PREMIUM"
        assert registry.lookup("FREE", Feature.ADVANCED_ANALYTICS).upgrade_hint == "BASIC"

    def test_upgrade_hint_for_capped_feature_points_at_larger_cap(self, registry):
        # FREE caps AI_GRADING at 10, BASIC at 100
        assert registry.lookup("FREE", Feature.AI_GRADING).upgrade_hint == "BASIC"
        # PREMIUM is unlimited, nothing to upgrade to
        assert registry.lookup("PREMIUM", Feature.AI_GRADING).upgrade_hint is None

    def test_explicit_upgrade_hint_wins(self):
        registry = PolicyRegistry()
        registry.register([
            FeaturePolicy("FREE", "API_ACCESS", enabled=False, upgrade_hint="ENTERPRISE"),
            FeaturePolicy("BASIC", "API_ACCESS", enabled=True),
        ], version="v1")

        assert registry.lookup("FREE", "API_ACCESS").upgrade_hint == "ENTERPRISE"

    def test_register_swaps_whole_table(self, registry):
        old = registry.snapshot()

        registry.register(
            [FeaturePolicy("FREE", "AI_GRADING", enabled=False)],
            version="v2",
        )

        assert registry.version == "v2"
        assert registry.lookup("FREE", "AI_GRADING").enabled is False
        # Features missing from the new table fail closed
        assert registry.lookup("BASIC", "AI_GRADING").enabled is False
        # A snapshot taken before the swap is unaffected
        assert old.policies[("FREE", "AI_GRADING")].enabled is True

    def test_register_rejects_duplicates_and_keeps_table(self, registry):
        version = registry.version

        with pytest.raises(ValueError):
            registry.register([
                FeaturePolicy("FREE", "AI_GRADING", enabled=True),
                FeaturePolicy("FREE", "AI_GRADING", enabled=False),
            ], version="broken")

        assert registry.version == version

    def test_concurrent_lookups_see_whole_tables(self):
        registry = PolicyRegistry()
        tables = {
            "a": [FeaturePolicy(t, "X", enabled=True, credit_cost=1) for t in ("FREE", "BASIC")],
            "b": [FeaturePolicy(t, "X", enabled=True, credit_cost=2) for t in ("FREE", "BASIC")],
        }
        registry.register(tables["a"], version="a")
        mixed = []
        stop = threading.Event()

        def reader():
            while not stop.is_set():
                table = registry.snapshot()
                costs = {table.policies[(t, "X")].credit_cost for t in ("FREE", "BASIC")}
                if len(costs) != 1:
                    mixed.append(costs)

        threads = [threading.Thread(target=reader) for _ in range(4)]
        for t in threads:
            t.start()
        for i in range(200):
            name = "b" if i % 2 else "a"
            registry.register(tables[name], version=name)
        stop.set()
        for t in threads:
            t.join()

        assert mixed == []

    def test_features_listing(self, registry, config):
        features = registry.snapshot().features()

        assert "AI_GRADING" in features
        assert list(features) == sorted(features)

    def test_reload_from_file(self, config_file):
        registry = PolicyRegistry()
        registry.reload(config_file)

        assert registry.version == "test-1"
        assert registry.lookup("BASIC", "BULK_OPERATIONS").enabled is True

    def test_failed_reload_keeps_previous_table(self, registry, tmp_path):
        broken = tmp_path / "broken.json"
        broken.write_text("{not json")
        version = registry.version

        with pytest.raises(ValueError):
            registry.reload(str(broken))

        assert registry.version == version
        assert registry.lookup("FREE", "AI_GRADING").enabled is True

    def test_singleton_loads_packaged_config(self):
        registry = get_policy_registry()

        assert registry is get_policy_registry()
        assert registry.version == get_entitlement_config().version


class TestFeaturePolicy:
    """Policy value validation."""

    def test_unlimited_variants(self):
        assert FeaturePolicy("FREE", "X", True, usage_limit=None).is_unlimited()
        assert FeaturePolicy("FREE", "X", True, usage_limit=UNLIMITED).is_unlimited()
        assert not FeaturePolicy("FREE", "X", True, usage_limit=0).is_unlimited()

    def test_is_capped(self):
        policy = FeaturePolicy("FREE", "X", True, usage_limit=2)

        assert not policy.is_capped(1)
        assert policy.is_capped(2)
        assert not FeaturePolicy("FREE", "X", True).is_capped(10_000)

    def test_negative_cost_rejected(self):
        with pytest.raises(ValueError):
            FeaturePolicy("FREE", "X", True, credit_cost=-1)

    def test_invalid_limit_rejected(self):
        with pytest.raises(ValueError):
            FeaturePolicy("FREE", "X", True, usage_limit=-2)


# =============================================================================
# Config loader
# =============================================================================

class TestEntitlementConfigLoader:
    """Parsing and the loader singleton."""

    def test_parse_sections(self, minimal_config_json):
        config = parse_entitlement_config(minimal_config_json)

        assert config.version == "test-1"
        assert config.student_features == frozenset({"AI_GRADING"})
        assert config.lifecycle.grace_period_days == 5
        assert config.usage.period_unit == "days"
        assert config.usage.period_length_days == 7
        assert config.credits.allotment_for("BASIC") == 20
        assert config.credits.allotment_for("ENTERPRISE") == 0
        assert config.credits.rollover_cap == 4

    def test_boolean_shorthand(self, minimal_config_json):
        config = parse_entitlement_config(minimal_config_json)
        policies = {(p.tier, p.feature): p for p in config.policies}

        assert policies[("FREE", "BULK_OPERATIONS")].enabled is False
        assert policies[("BASIC", "BULK_OPERATIONS")].enabled is True
        assert policies[("BASIC", "AI_GRADING")].usage_limit == UNLIMITED

    def test_missing_version_rejected(self, minimal_config_json):
        del minimal_config_json["version"]

        with pytest.raises(ValueError):
            parse_entitlement_config(minimal_config_json)

    def test_unknown_tier_rejected(self, minimal_config_json):
        minimal_config_json["policies"]["GOLD"] = {"AI_GRADING": True}

        with pytest.raises(ValueError):
            parse_entitlement_config(minimal_config_json)

    def test_unknown_period_unit_rejected(self, minimal_config_json):
        minimal_config_json["usage"]["period_unit"] = "fortnight"

        with pytest.raises(ValueError):
            parse_entitlement_config(minimal_config_json)

    def test_env_path_override(self, config_file, monkeypatch):
        monkeypatch.setenv("ENTITLEMENTS_CONFIG_PATH", config_file)

        assert load_entitlement_config().version == "test-1"

    def test_packaged_config(self, config):
        assert config.credits.allotment_for("FREE") == 50
        assert config.credits.rollover_cap == 100
        assert "AI_GRADING" in config.student_features
        assert config.tier_order == ("FREE", "BASIC", "PREMIUM", "ENTERPRISE")

    def test_singleton_and_reload(self, config_file, minimal_config_json):
        reset_entitlement_config()
        loader = EntitlementConfigLoader(config_file)

        assert EntitlementConfigLoader() is loader
        assert loader.config.version == "test-1"

        minimal_config_json["version"] = "test-2"
        with open(config_file, "w") as f:
            json.dump(minimal_config_json, f)

        assert loader.reload().version == "test-2"
        assert get_entitlement_config().version == "test-2"

    def test_failed_reload_keeps_config(self, config_file):
        reset_entitlement_config()
        loader = EntitlementConfigLoader(config_file)

        with open(config_file, "w") as f:
            f.write("{}")

        with pytest.raises(ValueError):
            loader.reload()
        assert loader.config.version == "test-1"
