"""
Tests for the plan catalog.

Covers plan limits, module tier limits, module key normalization, credit
costs and config loading/validation.
"""

import json

import pytest

from trackbliss.entitlements.catalog import PlanCatalog, get_plan_catalog, reset_plan_catalog
from trackbliss.entitlements.models import UNLIMITED


@pytest.fixture
def minimal_config():
    return {
        "default_plan": "free",
        "plans": [
            {"id": "free", "tier": 0, "limits": {"product": 2}},
            {"id": "pro", "tier": 1, "limits": {"product": None}},
        ],
        "modules": [
            {
                "id": "returns_hub",
                "display_name": "Returns Hub",
                "primary_quota": "returns_per_month",
                "tiers": [
                    {"id": "starter", "limits": {"returns_per_month": 10}},
                    {"id": "business", "limits": {"returns_per_month": None}},
                ],
            }
        ],
        "credit_costs": {"chat_message": 1},
    }


class TestPlanLimits:

    def test_free_plan_limits(self, catalog):
        assert catalog.limit_for("free", "product") == 5
        assert catalog.limit_for("free", "batch") == 3
        assert catalog.limit_for("free", "document") == 10
        assert catalog.limit_for("free", "admin_user") == 1
        assert catalog.limit_for("free", "supply_chain_entry") == 5

    def test_pro_plan_limits(self, catalog):
        assert catalog.limit_for("pro", "product") == 50
        assert catalog.limit_for("pro", "document") == 200
        assert catalog.limit_for("pro", "admin_user") == 5

    def test_enterprise_is_unlimited_except_admins(self, catalog):
        assert catalog.limit_for("enterprise", "product") == UNLIMITED
        assert catalog.limit_for("enterprise", "document") == UNLIMITED
        assert catalog.limit_for("enterprise", "admin_user") == 25

    def test_unknown_plan_uses_default(self, catalog):
        assert catalog.normalize_plan("platinum") == "free"
        assert catalog.normalize_plan(None) == "free"
        assert catalog.limit_for("platinum", "product") == 5

    def test_unlisted_resource_has_zero_limit(self, catalog):
        assert catalog.limit_for("pro", "returns_per_month") == 0

    def test_plan_resources(self, catalog):
        assert catalog.plan_resources() == [
            "product", "batch", "document", "admin_user", "supply_chain_entry",
        ]

    def test_monthly_ai_credits(self, catalog):
        assert catalog.get_plan("free").monthly_ai_credits == 3
        assert catalog.get_plan("pro").monthly_ai_credits == 25
        assert catalog.get_plan("enterprise").monthly_ai_credits == 100


class TestPlanFeatures:

    def test_free_plan_has_no_premium_features(self, catalog):
        features = catalog.features_for("free")

        assert features["custom_branding"] is False
        assert not any(features.values())

    def test_pro_plan_features(self, catalog):
        features = catalog.features_for("pro")

        assert features["custom_branding"] is True
        assert features["compliance_full"] is True
        assert features["white_label"] is False
        assert features["custom_css"] is False

    def test_enterprise_has_every_feature(self, catalog):
        assert all(catalog.features_for("enterprise").values())

    def test_unknown_plan_gets_default_features(self, catalog):
        assert catalog.features_for("platinum") == catalog.features_for("free")

    def test_unlisted_flag_is_off(self, minimal_config):
        minimal_config["plans"][1]["features"] = {"white_label": True}
        catalog = PlanCatalog(config=minimal_config)

        assert catalog.feature_names() == ["white_label"]
        assert catalog.features_for("free") == {"white_label": False}
        assert catalog.features_for("pro") == {"white_label": True}


class TestModuleLimits:

    def test_returns_hub_tiers(self, catalog):
        assert catalog.tiers_for("returns_hub") == ["starter", "professional", "business"]
        assert catalog.module_limit_for("returns_hub", "starter", "returns_per_month") == 50
        assert catalog.module_limit_for("returns_hub", "professional", "returns_per_month") == 300
        assert catalog.module_limit_for("returns_hub", "business", "returns_per_month") == UNLIMITED

    def test_warehouse_tiers(self, catalog):
        assert catalog.module_limit_for("warehouse", "starter", "warehouse_location") == 1
        assert catalog.module_limit_for("warehouse", "professional", "shipments_per_month") == 1000
        assert catalog.module_limit_for("warehouse", "business", "stock_transactions_per_month") == UNLIMITED

    def test_unknown_module_or_tier_is_zero(self, catalog):
        assert catalog.module_limit_for("teleporter", "starter", "returns_per_month") == 0
        assert catalog.module_limit_for("returns_hub", "gold", "returns_per_month") == 0
        assert catalog.module_limits("returns_hub", "gold") == {}

    def test_owning_module(self, catalog):
        assert catalog.owning_module("returns_per_month") == "returns_hub"
        assert catalog.owning_module("email_template") == "returns_hub"
        assert catalog.owning_module("shipments_per_month") == "warehouse"
        assert catalog.owning_module("product") is None

    def test_primary_quota(self, catalog):
        assert catalog.primary_quota("returns_hub") == "returns_per_month"
        assert catalog.primary_quota("warehouse") == "shipments_per_month"
        assert catalog.primary_quota("supplier_portal") is None

    def test_display_name(self, catalog):
        assert catalog.display_name("returns_hub") == "Returns Hub"
        assert catalog.display_name("mystery_box") == "Mystery Box"


class TestModuleKeys:

    def test_separate_tier_column(self, catalog):
        assert catalog.split_module_key("returns_hub", "professional") == ("returns_hub", "professional")

    def test_combined_id(self, catalog):
        assert catalog.split_module_key("returns_hub_starter") == ("returns_hub", "starter")
        assert catalog.split_module_key("warehouse_business") == ("warehouse", "business")

    def test_family_without_tier_gets_lowest(self, catalog):
        assert catalog.split_module_key("returns_hub") == ("returns_hub", "starter")
        assert catalog.split_module_key("supplier_portal") == ("supplier_portal", "standard")

    def test_unknown_id_returned_as_is(self, catalog):
        assert catalog.split_module_key("teleporter_pro") == ("teleporter_pro", None)

    def test_pick_highest_tier(self, catalog):
        assert catalog.pick_highest_tier("returns_hub", ["starter", "business", "professional"]) == "business"
        assert catalog.pick_highest_tier("returns_hub", ["gold", None]) is None
        assert catalog.pick_highest_tier("teleporter", ["starter"]) is None


class TestCreditCosts:

    def test_configured_costs(self, catalog):
        assert catalog.credit_cost("compliance_check") == 3
        assert catalog.credit_cost("chat_message") == 1
        assert catalog.credit_cost("pdf_report") == 0

    def test_unknown_operation_raises(self, catalog):
        with pytest.raises(ValueError, match="No credit cost"):
            catalog.credit_cost("time_travel")

    def test_resource_labels(self, catalog):
        assert catalog.resource_label("returns_per_month") == "Return"
        assert catalog.resource_label("product") == "Product"
        assert catalog.resource_label("widget_count") == "Widget count"


class TestCatalogLoading:

    def test_inline_config_null_is_unlimited(self, minimal_config):
        catalog = PlanCatalog(config=minimal_config)
        assert catalog.limit_for("pro", "product") == UNLIMITED
        assert catalog.module_limit_for("returns_hub", "business", "returns_per_month") == UNLIMITED

    def test_undefined_default_plan_rejected(self, minimal_config):
        minimal_config["default_plan"] = "starter"
        with pytest.raises(ValueError, match="default_plan"):
            PlanCatalog(config=minimal_config)

    def test_resource_claimed_by_two_modules_rejected(self, minimal_config):
        minimal_config["modules"].append({
            "id": "warehouse",
            "tiers": [{"id": "starter", "limits": {"returns_per_month": 5}}],
        })
        with pytest.raises(ValueError, match="claimed by modules"):
            PlanCatalog(config=minimal_config)

    def test_module_without_tiers_rejected(self, minimal_config):
        minimal_config["modules"].append({"id": "empty", "tiers": []})
        with pytest.raises(ValueError, match="defines no tiers"):
            PlanCatalog(config=minimal_config)

    def test_loads_from_env_path(self, tmp_path, monkeypatch, minimal_config):
        path = tmp_path / "plans.json"
        path.write_text(json.dumps(minimal_config))
        monkeypatch.setenv("TRACKBLISS_PLANS_PATH", str(path))

        catalog = PlanCatalog()

        assert catalog.limit_for("free", "product") == 2

    def test_failed_reload_keeps_previous_catalog(self, tmp_path, minimal_config):
        path = tmp_path / "plans.json"
        path.write_text(json.dumps(minimal_config))
        catalog = PlanCatalog(config_path=str(path))

        path.write_text("{not json")
        with pytest.raises(json.JSONDecodeError):
            catalog.reload()

        assert catalog.limit_for("free", "product") == 2

    def test_reload_picks_up_changes(self, tmp_path, minimal_config):
        path = tmp_path / "plans.json"
        path.write_text(json.dumps(minimal_config))
        catalog = PlanCatalog(config_path=str(path))

        minimal_config["plans"][0]["limits"]["product"] = 7
        path.write_text(json.dumps(minimal_config))
        catalog.reload()

        assert catalog.limit_for("free", "product") == 7

    def test_singleton(self):
        reset_plan_catalog()
        try:
            assert get_plan_catalog() is get_plan_catalog()
        finally:
            reset_plan_catalog()
