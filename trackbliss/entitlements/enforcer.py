"""
Quota Enforcer - compare live usage against the resolved limit.

check_quota(resource, tenant_id):
1. entitlements = resolve(tenant_id)
2. limit = plan limit, or the owning module's tier limit (0 if inactive)
3. unlimited → allowed; the count is advisory only
4. otherwise count the tenant's rows live and allow iff current < limit

This is a pure read-and-compare. It runs BEFORE the caller's insert, so
count-based quotas accept a check-then-act race (worst case: one unit of
over-admission under concurrent creation). Metered credits do not go
through here; see ledger.py.
"""

import logging
from typing import Dict, Optional, Union

from trackbliss.entitlements.audit import EntitlementAuditLogger, QuotaDenialEvent, get_audit_logger
from trackbliss.entitlements.counters import ResourceCounter
from trackbliss.entitlements.models import Entitlements, QuotaVerdict, ResourceType, is_unlimited
from trackbliss.entitlements.resolver import EntitlementResolver

logger = logging.getLogger(__name__)

ResourceLike = Union[ResourceType, str]


def resource_key(resource: ResourceLike) -> str:
    """Accept ResourceType members or their string values."""
    return resource.value if isinstance(resource, ResourceType) else str(resource)


class QuotaEnforcer:
    """Count-based quota checks for plan and module resources."""

    def __init__(
        self,
        resolver: EntitlementResolver,
        counter: ResourceCounter,
        audit_logger: Optional[EntitlementAuditLogger] = None,
        advisory_count_unlimited: bool = True,
    ):
        self._resolver = resolver
        self._counter = counter
        self._audit = audit_logger if audit_logger is not None else get_audit_logger()
        self._advisory_count_unlimited = advisory_count_unlimited

    @property
    def counter(self) -> ResourceCounter:
        return self._counter

    def check_quota(
        self,
        resource: ResourceLike,
        tenant_id: str,
        scope_id: Optional[str] = None,
    ) -> QuotaVerdict:
        """
        Check whether the tenant may create one more unit of a resource.

        Args:
            resource: Resource type (product, document, admin_user, ...)
            tenant_id: Tenant identifier
            scope_id: Parent id for per-product resources (batch, supply_chain_entry)

        Raises:
            ValueError: Unknown resource, or missing scope_id under a finite limit
            StoreUnavailableError: Resolution or counting failed (caller must deny)
        """
        key = resource_key(resource)
        self._counter.spec_for(key)

        entitlements = self._resolver.resolve(tenant_id)
        limit = self.limit_for(entitlements, key)
        return self.evaluate(
            key,
            tenant_id,
            limit,
            scope_id=scope_id,
            plan=entitlements.plan,
            module_id=self._resolver.catalog.owning_module(key),
        )

    def limit_for(self, entitlements: Entitlements, resource: str) -> int:
        """Plan limit, else the owning module's limit, else 0."""
        if resource in entitlements.limits:
            return entitlements.limits[resource]
        module_id = self._resolver.catalog.owning_module(resource)
        if module_id is not None:
            return entitlements.module_limit(module_id, resource)
        return 0

    def evaluate(
        self,
        resource: str,
        tenant_id: str,
        limit: int,
        scope_id: Optional[str] = None,
        plan: Optional[str] = None,
        module_id: Optional[str] = None,
    ) -> QuotaVerdict:
        """Count and compare against an already-resolved limit."""
        if is_unlimited(limit):
            current = 0
            # Scoped resources have no tenant-wide total to report without a scope
            scoped_without_id = self._counter.requires_scope(resource) and not scope_id
            if self._advisory_count_unlimited and not scoped_without_id:
                current = self._counter.count(resource, tenant_id, scope_id)
            return QuotaVerdict(allowed=True, resource=resource, current=current, limit=limit)

        current = self._counter.count(resource, tenant_id, scope_id)
        verdict = QuotaVerdict(
            allowed=current < limit,
            resource=resource,
            current=current,
            limit=limit,
        )

        if not verdict.allowed:
            self._audit.log_denial(QuotaDenialEvent(
                tenant_id=tenant_id,
                kind="quota",
                resource=resource,
                current=current,
                limit=limit,
                plan=plan,
                module_id=module_id,
            ))
        return verdict

    def usage_summary(self, tenant_id: str) -> Dict[str, QuotaVerdict]:
        """
        Current usage of every tenant-wide plan resource.

        Per-product resources are skipped; they have no tenant-wide total.
        """
        entitlements = self._resolver.resolve(tenant_id)
        summary: Dict[str, QuotaVerdict] = {}
        for resource, limit in entitlements.limits.items():
            if self._counter.requires_scope(resource):
                continue
            current = self._counter.count(resource, tenant_id)
            summary[resource] = QuotaVerdict(
                allowed=is_unlimited(limit) or current < limit,
                resource=resource,
                current=current,
                limit=limit,
            )
        return summary
