"""
Entitlement Engine - single entry point for all entitlement operations.

Provides:
- check_quota(resource, tenant_id)          → QuotaVerdict
- check_module(module_id, tenant_id)        → ModuleCheck
- consume_credits(amount, tenant_id, op)    → ConsumptionResult
- refund_credits / get_credit_balance / usage_summary / get_entitlements
- can_use_feature(feature, tenant_id)       → bool
- invalidate_entitlement_cache(tenant_id=None)

Architecture:
- Fail-CLOSED: store failures raise StoreUnavailableError, never a verdict
- Policy denials are values (allowed=False / success=False), never exceptions
- One cache per engine, shared by reference with every component

CRITICAL: Feature code should go through this facade (or guards.py).
Do NOT build resolvers, enforcers or ledgers with private caches; a second
cache would not see the invalidations of the first.
"""

import logging
from threading import Lock
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from trackbliss.entitlements.audit import EntitlementAuditLogger, get_audit_logger
from trackbliss.entitlements.cache import EntitlementCache
from trackbliss.entitlements.catalog import PlanCatalog, get_plan_catalog
from trackbliss.entitlements.counters import CountSpec, ResourceCounter
from trackbliss.entitlements.enforcer import QuotaEnforcer, ResourceLike
from trackbliss.entitlements.invalidation import BillingInvalidationHooks
from trackbliss.entitlements.ledger import CreditLedger
from trackbliss.entitlements.models import (
    ConsumptionResult,
    CreditBalance,
    Entitlements,
    ModuleCheck,
    QuotaVerdict,
)
from trackbliss.entitlements.module_gate import ModuleGate
from trackbliss.entitlements.resolver import EntitlementResolver
from trackbliss.entitlements.settings import EngineSettings

logger = logging.getLogger(__name__)


def _catalog_for(plans_path: Optional[str]) -> PlanCatalog:
    """An explicit path gets its own catalog; otherwise share the process singleton."""
    if plans_path:
        return PlanCatalog(plans_path)
    return get_plan_catalog()


class EntitlementEngine:
    """
    Wires catalog, cache, resolver, enforcer, gate and ledger together.

    Usage:
        engine = EntitlementEngine(session_factory)
        verdict = engine.check_quota(ResourceType.PRODUCT, tenant_id)
        if not verdict.allowed:
            ...  # show paywall with verdict.current / verdict.limit
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        catalog: Optional[PlanCatalog] = None,
        cache: Optional[EntitlementCache] = None,
        settings: Optional[EngineSettings] = None,
        count_specs: Optional[Dict[str, CountSpec]] = None,
        audit_logger: Optional[EntitlementAuditLogger] = None,
        install_hooks: bool = False,
    ):
        """
        Build an engine.

        Args:
            session_factory: Factory for short-lived sessions, one per operation
            catalog: Plan catalog (default: settings.plans_path, else process singleton)
            cache: Entitlement cache (default: new cache sized from settings)
            settings: Engine tunables (default: EngineSettings())
            count_specs: Override the resource → table mapping
            audit_logger: Denial audit sink (default: process singleton)
            install_hooks: Attach write-path invalidation to session_factory
        """
        self._settings = settings or EngineSettings()
        self._session_factory = session_factory
        if catalog is None:
            catalog = _catalog_for(self._settings.plans_path)
        self._catalog = catalog
        if cache is None:
            cache = EntitlementCache(
                ttl_seconds=self._settings.cache_ttl_seconds,
                max_size=self._settings.cache_max_size,
            )
        self._cache = cache
        audit = audit_logger if audit_logger is not None else get_audit_logger()

        self._resolver = EntitlementResolver(session_factory, self._cache, self._catalog)
        self._counter = ResourceCounter(session_factory, specs=count_specs)
        self._enforcer = QuotaEnforcer(
            self._resolver,
            self._counter,
            audit_logger=audit,
            advisory_count_unlimited=self._settings.advisory_count_unlimited,
        )
        self._gate = ModuleGate(self._resolver, self._enforcer, audit_logger=audit)
        self._ledger = CreditLedger(
            session_factory,
            self._cache,
            catalog=self._catalog,
            audit_logger=audit,
            max_attempts=self._settings.ledger_max_attempts,
        )
        self._hooks: Optional[BillingInvalidationHooks] = None
        if install_hooks:
            self._hooks = BillingInvalidationHooks(self._cache).install(session_factory)

    @classmethod
    def from_settings(cls, settings: Optional[EngineSettings] = None) -> "EntitlementEngine":
        """Build from the environment: DATABASE_URL, ENTITLEMENT_* and plans path."""
        from trackbliss.database.session import get_session_factory

        settings = settings or EngineSettings.from_env()
        return cls(
            get_session_factory(),
            catalog=_catalog_for(settings.plans_path),
            settings=settings,
            install_hooks=True,
        )

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def catalog(self) -> PlanCatalog:
        return self._catalog

    @property
    def cache(self) -> EntitlementCache:
        return self._cache

    @property
    def ledger(self) -> CreditLedger:
        return self._ledger

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def get_entitlements(self, tenant_id: str) -> Entitlements:
        return self._resolver.resolve(tenant_id)

    def check_quota(
        self,
        resource: ResourceLike,
        tenant_id: str,
        scope_id: Optional[str] = None,
    ) -> QuotaVerdict:
        return self._enforcer.check_quota(resource, tenant_id, scope_id=scope_id)

    def check_module(
        self,
        module_id: str,
        tenant_id: str,
        resource: Optional[ResourceLike] = None,
    ) -> ModuleCheck:
        return self._gate.check_module(module_id, tenant_id, resource=resource)

    def usage_summary(self, tenant_id: str) -> Dict[str, QuotaVerdict]:
        return self._enforcer.usage_summary(tenant_id)

    def can_use_feature(self, feature: str, tenant_id: str) -> bool:
        """Whether the tenant's effective plan enables a feature flag."""
        return self._resolver.resolve(tenant_id).can_use_feature(feature)

    # ------------------------------------------------------------------
    # Credits
    # ------------------------------------------------------------------

    def consume_credits(
        self,
        amount: int,
        tenant_id: str,
        operation_type: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> ConsumptionResult:
        return self._ledger.consume_credits(
            amount, tenant_id, operation_type, metadata=metadata, user_id=user_id,
        )

    def consume_for_operation(
        self,
        operation: str,
        tenant_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> ConsumptionResult:
        return self._ledger.consume_for_operation(
            operation, tenant_id, metadata=metadata, user_id=user_id,
        )

    def refund_credits(
        self,
        amount: int,
        tenant_id: str,
        operation_type: str,
        user_id: Optional[str] = None,
    ) -> ConsumptionResult:
        return self._ledger.refund_credits(amount, tenant_id, operation_type, user_id=user_id)

    def get_credit_balance(self, tenant_id: str) -> CreditBalance:
        return self._ledger.get_balance(tenant_id)

    def list_credit_transactions(
        self,
        tenant_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        return self._ledger.list_transactions(tenant_id, limit=limit, offset=offset)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate_entitlement_cache(self, tenant_id: Optional[str] = None) -> int:
        """
        Drop cached entitlements for one tenant, or for everyone.

        Returns:
            Number of entries removed
        """
        if tenant_id is None:
            return self._cache.invalidate_all(reason="manual")
        return 1 if self._cache.invalidate(tenant_id, reason="manual") else 0

    def on_billing_change(self, tenant_id: str, reason: str = "billing_change") -> None:
        """
        Hook for writers outside this engine (payment webhooks, admin tools).

        Call after the billing write commits and before acknowledging it.
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")
        self._cache.invalidate(tenant_id, reason=reason)
        logger.info("Billing change received", extra={
            "tenant_id": tenant_id,
            "reason": reason,
        })

    def reload_catalog(self) -> None:
        """Re-read plans.json and drop every snapshot built from the old limits."""
        self._catalog.reload()
        self._cache.invalidate_all(reason="catalog_reload")

    def close(self) -> None:
        if self._hooks is not None:
            self._hooks.remove()
            self._hooks = None


# ---------------------------------------------------------------------------
# Module-level convenience functions
# ---------------------------------------------------------------------------

_engine_instance: Optional[EntitlementEngine] = None
_engine_lock = Lock()


def get_entitlement_engine() -> EntitlementEngine:
    """Get the process-wide engine, built from the environment on first use."""
    global _engine_instance
    if _engine_instance is None:
        with _engine_lock:
            if _engine_instance is None:
                _engine_instance = EntitlementEngine.from_settings()
    return _engine_instance


def reset_entitlement_engine() -> None:
    """
    Forget the process-wide engine (for testing).

    WARNING: Only use in tests!
    """
    global _engine_instance
    with _engine_lock:
        if _engine_instance is not None:
            _engine_instance.close()
        _engine_instance = None


def check_quota(resource: ResourceLike, tenant_id: str, scope_id: Optional[str] = None) -> QuotaVerdict:
    """Module-level convenience for check_quota on the process-wide engine."""
    return get_entitlement_engine().check_quota(resource, tenant_id, scope_id=scope_id)


def check_module(module_id: str, tenant_id: str, resource: Optional[ResourceLike] = None) -> ModuleCheck:
    """Module-level convenience for check_module on the process-wide engine."""
    return get_entitlement_engine().check_module(module_id, tenant_id, resource=resource)


def consume_credits(amount: int, tenant_id: str, operation_type: str) -> ConsumptionResult:
    """Module-level convenience for consume_credits on the process-wide engine."""
    return get_entitlement_engine().consume_credits(amount, tenant_id, operation_type)


def invalidate_entitlement_cache(tenant_id: Optional[str] = None) -> int:
    """
    Module-level convenience for cache invalidation.

    No-op before the process-wide engine exists: there is nothing cached yet.
    """
    if _engine_instance is None:
        return 0
    return _engine_instance.invalidate_entitlement_cache(tenant_id)
