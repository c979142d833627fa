"""
Write-path invalidation hooks.

Billing rows are written by webhook handlers and admin tools that know
nothing about the entitlement cache. These SQLAlchemy session events make
every such write invalidate the affected tenants:

- after_flush: collect tenant_ids of new/dirty/deleted billing rows and
  invalidate them at once (readers in the window see a miss, not the old
  snapshot)
- after_commit / after_rollback: invalidate the collected tenants again so a
  snapshot computed from pre-commit state can never be cached

Usage:
    hooks = BillingInvalidationHooks(engine.cache)
    hooks.install(get_session_factory())
"""

import logging
from typing import Any, List, Set

from sqlalchemy import event
from sqlalchemy.orm import Session

from trackbliss.entitlements.cache import EntitlementCache
from trackbliss.models.credit import CreditAccount
from trackbliss.models.module_subscription import ModuleSubscription
from trackbliss.models.subscription import BillingSubscription

logger = logging.getLogger(__name__)

WATCHED_MODELS = (BillingSubscription, ModuleSubscription, CreditAccount)

_PENDING_KEY = "trackbliss_entitlement_tenants"


def _touched_tenants(session: Session) -> Set[str]:
    tenants: Set[str] = set()
    for collection in (session.new, session.dirty, session.deleted):
        for obj in collection:
            if isinstance(obj, WATCHED_MODELS) and obj.tenant_id:
                tenants.add(obj.tenant_id)
    return tenants


class BillingInvalidationHooks:
    """Session event listeners bound to one EntitlementCache."""

    def __init__(self, cache: EntitlementCache):
        self._cache = cache
        self._targets: List[Any] = []

    def install(self, target: Any) -> "BillingInvalidationHooks":
        """
        Attach the listeners to a sessionmaker, Session subclass or session.

        Installing twice on the same target is a no-op.
        """
        if any(existing is target for existing in self._targets):
            return self
        event.listen(target, "after_flush", self._after_flush)
        event.listen(target, "after_commit", self._after_commit)
        event.listen(target, "after_rollback", self._after_rollback)
        self._targets.append(target)
        logger.info("Installed entitlement invalidation hooks", extra={
            "target": type(target).__name__,
        })
        return self

    def remove(self) -> None:
        """Detach from every target (tests)."""
        for target in self._targets:
            event.remove(target, "after_flush", self._after_flush)
            event.remove(target, "after_commit", self._after_commit)
            event.remove(target, "after_rollback", self._after_rollback)
        self._targets = []

    def _after_flush(self, session: Session, flush_context: Any) -> None:
        tenants = _touched_tenants(session)
        if not tenants:
            return
        session.info.setdefault(_PENDING_KEY, set()).update(tenants)
        for tenant_id in tenants:
            self._cache.invalidate(tenant_id, reason="billing_row_flushed")

    def _after_commit(self, session: Session) -> None:
        self._drain(session, "billing_row_committed")

    def _after_rollback(self, session: Session) -> None:
        self._drain(session, "billing_row_rolled_back")

    def _drain(self, session: Session, reason: str) -> None:
        tenants = session.info.pop(_PENDING_KEY, None)
        if not tenants:
            return
        for tenant_id in tenants:
            self._cache.invalidate(tenant_id, reason=reason)


def install_invalidation_hooks(target: Any, cache: EntitlementCache) -> BillingInvalidationHooks:
    """Convenience wrapper: build hooks for `cache` and install them on `target`."""
    return BillingInvalidationHooks(cache).install(target)
