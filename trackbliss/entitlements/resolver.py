"""
Entitlement Resolver - folds billing rows and the catalog into a snapshot.

resolve(tenant_id):
1. Cache hit → return it
2. Acquire single-flight lock (prevents stampede)
3. Re-check cache (another thread may have populated it)
4. Read subscription, active module rows and credit account
5. Normalize: any status other than active resolves to the free plan
6. Fold plan limits, feature flags, module tier limits and credit buckets
7. Cache with the generation observed before step 4, return

Fail-CLOSED: any store error raises StoreUnavailableError. A partially
built or last-known-good snapshot is never returned, because a stale
snapshot that overstates entitlements leaks paid capacity.
"""

import logging
from collections import defaultdict
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from trackbliss.entitlements.cache import EntitlementCache
from trackbliss.entitlements.catalog import PlanCatalog
from trackbliss.entitlements.errors import StoreUnavailableError
from trackbliss.entitlements.locks import LockTimeout, TenantLockRegistry
from trackbliss.entitlements.models import CreditBalance, Entitlements
from trackbliss.models.credit import CreditAccount
from trackbliss.models.module_subscription import ModuleSubscription
from trackbliss.models.subscription import BillingSubscription, SubscriptionStatus
from trackbliss.repositories.billing_repo import BillingRepository

logger = logging.getLogger(__name__)

SINGLE_FLIGHT_TIMEOUT_SECONDS = 5.0


class EntitlementResolver:
    """
    Resolves the effective entitlements of a tenant.

    Stateless between calls except for the injected cache and catalog.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        cache: EntitlementCache,
        catalog: PlanCatalog,
    ):
        self._session_factory = session_factory
        self._cache = cache
        self._catalog = catalog
        # Prevents N concurrent cache misses for the same tenant from all
        # hitting the database; followers wait and then read from cache.
        self._single_flight = TenantLockRegistry()

    @property
    def cache(self) -> EntitlementCache:
        return self._cache

    @property
    def catalog(self) -> PlanCatalog:
        return self._catalog

    def resolve(self, tenant_id: str) -> Entitlements:
        """
        Resolve the current entitlements for a tenant.

        Raises:
            ValueError: If tenant_id is empty
            StoreUnavailableError: If any billing read fails (caller must deny)
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")

        cached = self._cache.get(tenant_id)
        if cached is not None:
            return cached

        try:
            with self._single_flight.hold(tenant_id, timeout=SINGLE_FLIGHT_TIMEOUT_SECONDS):
                cached = self._cache.get(tenant_id)
                if cached is not None:
                    return cached

                generation = self._cache.generation(tenant_id)
                entitlements = self._compute(tenant_id)
                self._cache.put(tenant_id, entitlements, generation=generation)
                return entitlements
        except LockTimeout as exc:
            raise StoreUnavailableError(tenant_id, "resolve (single-flight timeout)", cause=exc) from exc

    def resolve_fresh(self, tenant_id: str) -> Entitlements:
        """Bypass the cache entirely (diagnostics and billing pages)."""
        if not tenant_id:
            raise ValueError("tenant_id is required")
        return self._compute(tenant_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _compute(self, tenant_id: str) -> Entitlements:
        try:
            with self._session_factory() as session:
                repo = BillingRepository(session, tenant_id)
                subscription = repo.get_subscription()
                module_rows = repo.list_active_modules()
                account = repo.get_credit_account()
        except SQLAlchemyError as exc:
            self._emit_support_alert(tenant_id, exc)
            raise StoreUnavailableError(tenant_id, "resolve", cause=exc) from exc

        plan, status = self._effective_plan(tenant_id, subscription)
        limits = {
            resource: self._catalog.limit_for(plan, resource)
            for resource in self._catalog.plan_resources()
        }
        active_modules = self._fold_modules(tenant_id, module_rows)
        module_limits = {
            module_id: self._catalog.module_limits(module_id, tier)
            for module_id, tier in active_modules.items()
        }

        entitlements = Entitlements(
            tenant_id=tenant_id,
            plan=plan,
            status=status,
            limits=MappingProxyType(limits),
            active_modules=MappingProxyType(active_modules),
            module_limits=MappingProxyType({
                module_id: MappingProxyType(tier_limits)
                for module_id, tier_limits in module_limits.items()
            }),
            credits=self._credit_balance(account),
            features=MappingProxyType(self._catalog.features_for(plan)),
            cancel_at_period_end=bool(subscription.cancel_at_period_end) if subscription else False,
            resolved_at=datetime.now(timezone.utc).isoformat(),
        )

        logger.debug("Resolved entitlements", extra={
            "tenant_id": tenant_id,
            "plan": plan,
            "status": status,
            "modules": sorted(active_modules),
            "credits_available": entitlements.credits_available,
        })
        return entitlements

    def _effective_plan(
        self,
        tenant_id: str,
        subscription: Optional[BillingSubscription],
    ) -> tuple:
        """(plan, status) after normalization; no row means free/active."""
        if subscription is None:
            return self._catalog.default_plan, SubscriptionStatus.ACTIVE.value

        status = subscription.status
        if status != SubscriptionStatus.ACTIVE.value:
            return self._catalog.default_plan, status

        if not self._catalog.has_plan(subscription.plan):
            logger.warning("Subscription references unknown plan, using default", extra={
                "tenant_id": tenant_id,
                "plan": subscription.plan,
            })
        return self._catalog.normalize_plan(subscription.plan), status

    def _fold_modules(
        self,
        tenant_id: str,
        module_rows: List[ModuleSubscription],
    ) -> Dict[str, str]:
        """Group active rows by family; the highest tier of each family wins."""
        tiers_by_family: Dict[str, List[Optional[str]]] = defaultdict(list)
        for row in module_rows:
            family, tier = self._catalog.split_module_key(row.module_id, row.tier)
            if not self._catalog.is_known_module(family):
                logger.warning("Ignoring unknown module subscription", extra={
                    "tenant_id": tenant_id,
                    "module_id": row.module_id,
                    "tier": row.tier,
                })
                continue
            tiers_by_family[family].append(tier)

        active: Dict[str, str] = {}
        for family, tiers in tiers_by_family.items():
            best = self._catalog.pick_highest_tier(family, tiers)
            if best is None:
                logger.warning("Module subscription has no known tier", extra={
                    "tenant_id": tenant_id,
                    "module_id": family,
                    "tiers": tiers,
                })
                continue
            active[family] = best
        return active

    @staticmethod
    def _credit_balance(account: Optional[CreditAccount]) -> CreditBalance:
        if account is None:
            return CreditBalance()
        return CreditBalance(
            monthly_allowance=account.monthly_allowance or 0,
            monthly_used=account.monthly_used or 0,
            purchased_balance=account.purchased_balance or 0,
            total_consumed=account.total_consumed or 0,
        )

    def _emit_support_alert(self, tenant_id: str, exc: Exception) -> None:
        """
        Log a store failure during resolution at CRITICAL level with a
        structured payload so monitoring can page on it.
        """
        logger.critical(
            "ENTITLEMENT_STORE_UNAVAILABLE: support alert",
            extra={
                "alert_type": "entitlement_store_unavailable",
                "tenant_id": tenant_id,
                "error_type": type(exc).__name__,
                "error_detail": str(exc),
            },
        )
