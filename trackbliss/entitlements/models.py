"""
Entitlement models - canonical value types for the quota engine.

Provides:
- ResourceType: canonical enum, import from here
- CreditBalance: two-bucket credit snapshot
- Entitlements: resolved, immutable snapshot of what a tenant may do
- QuotaVerdict / ModuleCheck / ConsumptionResult: results handed to callers

CRITICAL: Entitlements snapshots are never mutated. The resolver builds a
fresh one on every cache miss and the cache replaces entries wholesale.
"""

import json
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Mapping, Optional

UNLIMITED = -1


def is_unlimited(limit: Optional[int]) -> bool:
    """A limit of -1 (or a missing limit row marked unlimited) has no ceiling."""
    return limit == UNLIMITED


class ResourceType(str, Enum):
    """Every resource the engine can count and cap."""
    # Plan-scoped
    PRODUCT = "product"
    BATCH = "batch"
    DOCUMENT = "document"
    ADMIN_USER = "admin_user"
    SUPPLY_CHAIN_ENTRY = "supply_chain_entry"
    # Returns hub module
    RETURNS_PER_MONTH = "returns_per_month"
    WORKFLOW_RULE = "workflow_rule"
    EMAIL_TEMPLATE = "email_template"
    # Warehouse module
    WAREHOUSE_LOCATION = "warehouse_location"
    SHIPMENTS_PER_MONTH = "shipments_per_month"
    STOCK_TRANSACTIONS_PER_MONTH = "stock_transactions_per_month"


@dataclass(frozen=True)
class CreditBalance:
    """Credit balance split by bucket."""
    monthly_allowance: int = 0
    monthly_used: int = 0
    purchased_balance: int = 0
    total_consumed: int = 0

    @property
    def monthly_available(self) -> int:
        return max(0, self.monthly_allowance - self.monthly_used)

    @property
    def total_available(self) -> int:
        return self.monthly_available + self.purchased_balance

    def to_dict(self) -> Dict[str, int]:
        d = asdict(self)
        d["monthly_available"] = self.monthly_available
        d["total_available"] = self.total_available
        return d


@dataclass(frozen=True)
class Entitlements:
    """
    Complete resolved entitlement snapshot for a tenant.

    Immutable, so safe to cache and share across threads. The resolver
    hands out read-only mappings (MappingProxyType) for every collection.
    """
    tenant_id: str
    plan: str
    status: str
    limits: Mapping[str, int]
    active_modules: Mapping[str, str]
    module_limits: Mapping[str, Mapping[str, int]]
    credits: CreditBalance
    features: Mapping[str, bool] = field(default_factory=dict)
    cancel_at_period_end: bool = False
    resolved_at: str = ""

    @property
    def credits_available(self) -> int:
        return self.credits.total_available

    def can_use_feature(self, feature: str) -> bool:
        """Unknown flags are off."""
        return bool(self.features.get(feature, False))

    def has_module(self, module_id: str) -> bool:
        return module_id in self.active_modules

    def module_tier(self, module_id: str) -> Optional[str]:
        return self.active_modules.get(module_id)

    def module_limit(self, module_id: str, resource: str) -> int:
        """Limit of a module sub-quota; 0 when the module is not active."""
        return self.module_limits.get(module_id, {}).get(resource, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "plan": self.plan,
            "status": self.status,
            "limits": dict(self.limits),
            "active_modules": dict(self.active_modules),
            "module_limits": {k: dict(v) for k, v in self.module_limits.items()},
            "credits": self.credits.to_dict(),
            "features": dict(self.features),
            "credits_available": self.credits_available,
            "cancel_at_period_end": self.cancel_at_period_end,
            "resolved_at": self.resolved_at,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass(frozen=True)
class QuotaVerdict:
    """Allow/deny decision with the current/limit pair for paywall display."""
    allowed: bool
    resource: str
    current: int
    limit: int

    @property
    def unlimited(self) -> bool:
        return is_unlimited(self.limit)

    @property
    def remaining(self) -> Optional[int]:
        if self.unlimited:
            return None
        return max(0, self.limit - self.current)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ModuleCheck:
    """
    Result of a module gate check.

    Callers MUST check `active` first and stop if it is False; only then
    is `verdict` meaningful.
    """
    module_id: str
    active: bool
    tier: Optional[str] = None
    verdict: Optional[QuotaVerdict] = None

    @property
    def allowed(self) -> bool:
        if not self.active:
            return False
        return self.verdict is None or self.verdict.allowed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "module_id": self.module_id,
            "active": self.active,
            "tier": self.tier,
            "verdict": self.verdict.to_dict() if self.verdict else None,
        }


@dataclass(frozen=True)
class ConsumptionResult:
    """Outcome of a credit draw or refund."""
    success: bool
    remaining: int
    from_monthly: int = 0
    from_purchased: int = 0
    transaction_ids: tuple = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "remaining": self.remaining}
