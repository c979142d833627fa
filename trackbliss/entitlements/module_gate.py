"""
Module Gate - is an add-on module active, and is its sub-quota left?

check_module(module_id, tenant_id):
1. entitlements = resolve(tenant_id)
2. module not in active modules → ModuleCheck(active=False), nothing else
3. module has a sub-quota (returns_per_month, shipments_per_month, ...) →
   delegate to the enforcer with the module tier's limit; month-scoped
   quotas only count rows created this billing month

Calling convention: check `active` first and stop if False. Only when the
module is active does `verdict.allowed` mean anything.
"""

import logging
from typing import Optional

from trackbliss.entitlements.audit import EntitlementAuditLogger, QuotaDenialEvent, get_audit_logger
from trackbliss.entitlements.enforcer import QuotaEnforcer, ResourceLike, resource_key
from trackbliss.entitlements.models import ModuleCheck
from trackbliss.entitlements.resolver import EntitlementResolver

logger = logging.getLogger(__name__)


class ModuleGate:
    """Module activation check plus module-scoped quota."""

    def __init__(
        self,
        resolver: EntitlementResolver,
        enforcer: QuotaEnforcer,
        audit_logger: Optional[EntitlementAuditLogger] = None,
    ):
        self._resolver = resolver
        self._enforcer = enforcer
        self._audit = audit_logger if audit_logger is not None else get_audit_logger()

    def check_module(
        self,
        module_id: str,
        tenant_id: str,
        resource: Optional[ResourceLike] = None,
    ) -> ModuleCheck:
        """
        Check that a module is active and its sub-quota is not exhausted.

        Args:
            module_id: Module family (returns_hub, warehouse, supplier_portal, ...)
            tenant_id: Tenant identifier
            resource: Sub-quota to check; defaults to the module's primary quota

        Raises:
            ValueError: If resource does not belong to module_id
            StoreUnavailableError: Resolution or counting failed (caller must deny)
        """
        catalog = self._resolver.catalog
        module_id, _ = catalog.split_module_key(module_id)
        entitlements = self._resolver.resolve(tenant_id)

        if not entitlements.has_module(module_id):
            self._audit.log_denial(QuotaDenialEvent(
                tenant_id=tenant_id,
                kind="module",
                resource=module_id,
                plan=entitlements.plan,
                module_id=module_id,
            ))
            return ModuleCheck(module_id=module_id, active=False)

        tier = entitlements.module_tier(module_id)
        key = resource_key(resource) if resource is not None else catalog.primary_quota(module_id)
        if key is None:
            return ModuleCheck(module_id=module_id, active=True, tier=tier)

        owner = catalog.owning_module(key)
        if owner != module_id:
            raise ValueError(f"Resource '{key}' is not a quota of module '{module_id}'")

        verdict = self._enforcer.evaluate(
            key,
            tenant_id,
            entitlements.module_limit(module_id, key),
            plan=entitlements.plan,
            module_id=module_id,
        )
        return ModuleCheck(module_id=module_id, active=True, tier=tier, verdict=verdict)
