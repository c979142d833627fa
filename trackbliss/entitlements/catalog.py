"""
Plan Catalog - Load plan and module limits from config/plans.json.

Provides:
- PlanDefinition / ModuleDefinition / ModuleTier: parsed catalog rows
- PlanCatalog: lookup of numeric limits per (plan, resource) and
  (module, tier, resource), plus per-plan feature flags

CRITICAL: This is the source of truth for limits.
Do NOT hardcode plan or module limits elsewhere. Adding a plan, a module
or a tier is a change to plans.json, not to code.
"""

import json
import os
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple
from threading import Lock

from trackbliss.entitlements.models import UNLIMITED

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "plans.json"


@dataclass(frozen=True)
class PlanDefinition:
    """Limits of a single base plan."""

    plan_id: str
    display_name: str
    tier: int
    limits: Dict[str, int] = field(default_factory=dict)
    monthly_ai_credits: int = 0
    features: Dict[str, bool] = field(default_factory=dict)


@dataclass(frozen=True)
class ModuleTier:
    """One purchasable tier of an add-on module."""

    tier_id: str
    rank: int
    limits: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ModuleDefinition:
    """An add-on module family and its tiers, lowest first."""

    module_id: str
    display_name: str
    tiers: Tuple[ModuleTier, ...]
    primary_quota: Optional[str] = None

    def get_tier(self, tier_id: Optional[str]) -> Optional[ModuleTier]:
        for tier in self.tiers:
            if tier.tier_id == tier_id:
                return tier
        return None

    @property
    def resources(self) -> List[str]:
        seen: List[str] = []
        for tier in self.tiers:
            for resource in tier.limits:
                if resource not in seen:
                    seen.append(resource)
        return seen


class PlanCatalog:
    """
    Static table of plan and module limits.

    Thread-safe reload; lookups never raise and never touch I/O.

    Usage:
        catalog = get_plan_catalog()
        catalog.limit_for("free", "product")                           # 5
        catalog.module_limit_for("returns_hub", "starter", "returns_per_month")  # 50
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize the catalog.

        Args:
            config_path: Optional path to plans.json
            config: Optional already-parsed config (takes precedence over the path)
        """
        self._config_path = config_path
        self._inline_config = config
        self._plans: Dict[str, PlanDefinition] = {}
        self._modules: Dict[str, ModuleDefinition] = {}
        self._resource_owner: Dict[str, str] = {}
        self._credit_costs: Dict[str, int] = {}
        self._resource_labels: Dict[str, str] = {}
        self._default_plan = "free"
        self._load_lock = Lock()

        self._load_config()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _resolve_config_path(self) -> Path:
        """Resolve the config file path."""
        if self._config_path:
            return Path(self._config_path)
        env_path = os.getenv("TRACKBLISS_PLANS_PATH")
        if env_path:
            return Path(env_path)
        return DEFAULT_CONFIG_PATH

    def _read_raw_config(self) -> Dict[str, Any]:
        if self._inline_config is not None:
            return self._inline_config
        config_path = self._resolve_config_path()
        logger.info(f"Loading plan catalog from {config_path}")
        with open(config_path, "r") as f:
            return json.load(f)

    def _load_config(self) -> None:
        """Load and parse the catalog, then swap it in atomically."""
        with self._load_lock:
            raw = self._read_raw_config()

            plans = self._parse_plans(raw)
            modules = self._parse_modules(raw)
            default_plan = raw.get("default_plan", "free")
            if default_plan not in plans:
                raise ValueError(f"default_plan '{default_plan}' is not a defined plan")

            resource_owner: Dict[str, str] = {}
            for module in modules.values():
                for resource in module.resources:
                    owner = resource_owner.get(resource)
                    if owner is not None and owner != module.module_id:
                        raise ValueError(
                            f"Resource '{resource}' is claimed by modules "
                            f"'{owner}' and '{module.module_id}'"
                        )
                    resource_owner[resource] = module.module_id

            # Swap references so concurrent readers never see a half-built catalog
            self._plans = plans
            self._modules = modules
            self._resource_owner = resource_owner
            self._default_plan = default_plan
            self._credit_costs = dict(raw.get("credit_costs", {}))
            self._resource_labels = dict(raw.get("resource_labels", {}))

            logger.info(
                f"Loaded {len(plans)} plans and {len(modules)} modules into catalog"
            )

    @staticmethod
    def _parse_limits(data: Dict[str, Any]) -> Dict[str, int]:
        limits: Dict[str, int] = {}
        for resource, value in data.items():
            # null in JSON is another spelling of unlimited
            limits[resource] = UNLIMITED if value is None else int(value)
        return limits

    def _parse_plans(self, raw: Dict[str, Any]) -> Dict[str, PlanDefinition]:
        plans: Dict[str, PlanDefinition] = {}
        for plan_data in raw.get("plans", []):
            plan_id = plan_data["id"]
            plans[plan_id] = PlanDefinition(
                plan_id=plan_id,
                display_name=plan_data.get("display_name", plan_id),
                tier=plan_data.get("tier", 0),
                limits=self._parse_limits(plan_data.get("limits", {})),
                monthly_ai_credits=plan_data.get("monthly_ai_credits", 0),
                features={
                    name: bool(enabled)
                    for name, enabled in plan_data.get("features", {}).items()
                },
            )
        return plans

    def _parse_modules(self, raw: Dict[str, Any]) -> Dict[str, ModuleDefinition]:
        modules: Dict[str, ModuleDefinition] = {}
        for module_data in raw.get("modules", []):
            module_id = module_data["id"]
            tiers = tuple(
                ModuleTier(
                    tier_id=tier_data["id"],
                    rank=rank,
                    limits=self._parse_limits(tier_data.get("limits", {})),
                )
                for rank, tier_data in enumerate(module_data.get("tiers", []))
            )
            if not tiers:
                raise ValueError(f"Module '{module_id}' defines no tiers")
            modules[module_id] = ModuleDefinition(
                module_id=module_id,
                display_name=module_data.get("display_name", module_id),
                tiers=tiers,
                primary_quota=module_data.get("primary_quota"),
            )
        return modules

    def reload(self) -> None:
        """
        Reload configuration from disk.

        On failure the previous catalog stays in place.
        """
        logger.info("Reloading plan catalog")
        try:
            self._load_config()
        except Exception:
            logger.error("Catalog reload failed, keeping previous catalog", exc_info=True)
            raise

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    @property
    def default_plan(self) -> str:
        return self._default_plan

    def has_plan(self, plan: Optional[str]) -> bool:
        return plan in self._plans

    def normalize_plan(self, plan: Optional[str]) -> str:
        """Unknown or missing plans fall back to the default (free) plan."""
        if plan in self._plans:
            return plan
        return self._default_plan

    def get_plan(self, plan: str) -> Optional[PlanDefinition]:
        return self._plans.get(plan)

    def plan_resources(self) -> List[str]:
        """Every resource type limited by at least one plan."""
        seen: List[str] = []
        for plan in sorted(self._plans.values(), key=lambda p: p.tier):
            for resource in plan.limits:
                if resource not in seen:
                    seen.append(resource)
        return seen

    def features_for(self, plan: Optional[str]) -> Dict[str, bool]:
        """
        Feature flags of a plan, with every flag any plan declares.

        Flags the plan does not list are off.
        """
        definition = self._plans[self.normalize_plan(plan)]
        flags = {name: False for name in self.feature_names()}
        flags.update(definition.features)
        return flags

    def feature_names(self) -> List[str]:
        seen: List[str] = []
        for plan in sorted(self._plans.values(), key=lambda p: p.tier):
            for name in plan.features:
                if name not in seen:
                    seen.append(name)
        return seen

    def limit_for(self, plan: str, resource: str) -> int:
        """
        Limit of a resource under a base plan.

        Unknown plans use the default plan; resources a plan does not list
        have a limit of 0.
        """
        definition = self._plans[self.normalize_plan(plan)]
        return definition.limits.get(resource, 0)

    # ------------------------------------------------------------------
    # Modules
    # ------------------------------------------------------------------

    def module_ids(self) -> List[str]:
        return list(self._modules)

    def is_known_module(self, module_id: Optional[str]) -> bool:
        return module_id in self._modules

    def get_module(self, module_id: str) -> Optional[ModuleDefinition]:
        return self._modules.get(module_id)

    def tiers_for(self, module_id: str) -> List[str]:
        module = self._modules.get(module_id)
        if module is None:
            return []
        return [t.tier_id for t in module.tiers]

    def display_name(self, module_id: str) -> str:
        module = self._modules.get(module_id)
        if module is None:
            return module_id.replace("_", " ").title()
        return module.display_name

    def primary_quota(self, module_id: str) -> Optional[str]:
        module = self._modules.get(module_id)
        return module.primary_quota if module else None

    def owning_module(self, resource: str) -> Optional[str]:
        """Module family whose tiers limit this resource, if any."""
        return self._resource_owner.get(resource)

    def module_limit_for(self, module_id: str, tier: Optional[str], resource: str) -> int:
        """Limit of a module sub-quota for a tier; 0 when unknown."""
        module = self._modules.get(module_id)
        if module is None:
            return 0
        module_tier = module.get_tier(tier)
        if module_tier is None:
            return 0
        return module_tier.limits.get(resource, 0)

    def module_limits(self, module_id: str, tier: Optional[str]) -> Dict[str, int]:
        """Copy of every sub-quota limit of a module tier."""
        module = self._modules.get(module_id)
        if module is None:
            return {}
        module_tier = module.get_tier(tier)
        if module_tier is None:
            return {}
        return dict(module_tier.limits)

    def split_module_key(
        self,
        module_id: str,
        tier: Optional[str] = None,
    ) -> Tuple[str, Optional[str]]:
        """
        Normalize a module row to (family, tier).

        Rows may carry the tier in a separate column ("returns_hub",
        "starter") or fold it into the id ("returns_hub_starter").
        A known family without a tier gets its lowest tier.
        """
        if module_id in self._modules:
            module = self._modules[module_id]
            if tier is None:
                return module_id, module.tiers[0].tier_id
            return module_id, tier

        if tier is None:
            for family, module in self._modules.items():
                for module_tier in module.tiers:
                    if module_id == f"{family}_{module_tier.tier_id}":
                        return family, module_tier.tier_id

        return module_id, tier

    def pick_highest_tier(self, module_id: str, tiers: Iterable[Optional[str]]) -> Optional[str]:
        """Highest-ranked known tier among the given ones."""
        module = self._modules.get(module_id)
        if module is None:
            return None
        best: Optional[ModuleTier] = None
        for tier_id in tiers:
            candidate = module.get_tier(tier_id)
            if candidate is not None and (best is None or candidate.rank > best.rank):
                best = candidate
        return best.tier_id if best else None

    # ------------------------------------------------------------------
    # Credits and labels
    # ------------------------------------------------------------------

    def credit_cost(self, operation: str) -> int:
        """
        Credits charged for one AI operation.

        Raises:
            ValueError: If the operation has no configured cost
        """
        if operation not in self._credit_costs:
            raise ValueError(f"No credit cost configured for operation '{operation}'")
        return int(self._credit_costs[operation])

    def resource_label(self, resource: str) -> str:
        return self._resource_labels.get(resource, resource.replace("_", " ").capitalize())


# Module-level singleton
_catalog_instance: Optional[PlanCatalog] = None
_catalog_lock = Lock()


def get_plan_catalog(config_path: Optional[str] = None) -> PlanCatalog:
    """Get the singleton PlanCatalog instance."""
    global _catalog_instance
    if _catalog_instance is None:
        with _catalog_lock:
            if _catalog_instance is None:
                _catalog_instance = PlanCatalog(config_path)
    return _catalog_instance


def reset_plan_catalog() -> None:
    """
    Reset the singleton instance (for testing).

    WARNING: Only use in tests!
    """
    global _catalog_instance
    with _catalog_lock:
        _catalog_instance = None
