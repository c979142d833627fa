"""
Entitlement and quota enforcement for multi-tenant billing.

This module provides:
- EntitlementEngine: Facade for every entitlement operation
- PlanCatalog: Plan and module limits from config/plans.json
- EntitlementResolver: Folds billing rows into an Entitlements snapshot
- EntitlementCache: In-process TTL cache with synchronous invalidation
- QuotaEnforcer / ModuleGate: Count-based quota and module checks
- CreditLedger: Atomic two-bucket AI credit consumption
- Guards: require_module / require_quota / require_credits
- EntitlementAuditLogger: Structured log of every policy denial

Fail-closed: store failures raise StoreUnavailableError and the guarded
operation is denied. Policy denials are verdict values.
"""

from trackbliss.entitlements.models import (
    UNLIMITED,
    is_unlimited,
    ResourceType,
    CreditBalance,
    Entitlements,
    QuotaVerdict,
    ModuleCheck,
    ConsumptionResult,
)
from trackbliss.entitlements.errors import (
    EntitlementError,
    StoreUnavailableError,
    ConcurrentWriteConflict,
    EntitlementDeniedError,
)
from trackbliss.entitlements.catalog import PlanCatalog, get_plan_catalog, reset_plan_catalog
from trackbliss.entitlements.cache import EntitlementCache
from trackbliss.entitlements.counters import CountSpec, ResourceCounter
from trackbliss.entitlements.resolver import EntitlementResolver
from trackbliss.entitlements.enforcer import QuotaEnforcer
from trackbliss.entitlements.module_gate import ModuleGate
from trackbliss.entitlements.ledger import CreditLedger
from trackbliss.entitlements.invalidation import BillingInvalidationHooks, install_invalidation_hooks
from trackbliss.entitlements.audit import EntitlementAuditLogger, QuotaDenialEvent
from trackbliss.entitlements.settings import EngineSettings
from trackbliss.entitlements.service import (
    EntitlementEngine,
    get_entitlement_engine,
    reset_entitlement_engine,
    check_quota,
    check_module,
    consume_credits,
    invalidate_entitlement_cache,
)
from trackbliss.entitlements.guards import require_module, require_quota, require_credits

__all__ = [
    "UNLIMITED",
    "is_unlimited",
    "ResourceType",
    "CreditBalance",
    "Entitlements",
    "QuotaVerdict",
    "ModuleCheck",
    "ConsumptionResult",
    "EntitlementError",
    "StoreUnavailableError",
    "ConcurrentWriteConflict",
    "EntitlementDeniedError",
    "PlanCatalog",
    "get_plan_catalog",
    "reset_plan_catalog",
    "EntitlementCache",
    "CountSpec",
    "ResourceCounter",
    "EntitlementResolver",
    "QuotaEnforcer",
    "ModuleGate",
    "CreditLedger",
    "BillingInvalidationHooks",
    "install_invalidation_hooks",
    "EntitlementAuditLogger",
    "QuotaDenialEvent",
    "EngineSettings",
    "EntitlementEngine",
    "get_entitlement_engine",
    "reset_entitlement_engine",
    "check_quota",
    "check_module",
    "consume_credits",
    "invalidate_entitlement_cache",
    "require_module",
    "require_quota",
    "require_credits",
]
