"""
Caller-facing guards: turn verdicts into EntitlementDeniedError.

Feature handlers call these before performing the guarded operation:

    require_module(engine, "returns_hub", tenant_id)      # before creating a return
    require_quota(engine, ResourceType.PRODUCT, tenant_id)
    require_credits(engine, 3, tenant_id)                 # before an AI call

Messages are stable; the presentation layer shows them verbatim in the
paywall. StoreUnavailableError is never converted here: infrastructure
failures stay "try again", not "upgrade".
"""

import logging
from typing import Optional

from fastapi import status

from trackbliss.entitlements.enforcer import ResourceLike, resource_key
from trackbliss.entitlements.errors import EntitlementDeniedError
from trackbliss.entitlements.models import ModuleCheck, QuotaVerdict

logger = logging.getLogger(__name__)


def _quota_error(
    label: str,
    verdict: QuotaVerdict,
    module_id: Optional[str] = None,
) -> EntitlementDeniedError:
    return EntitlementDeniedError(
        code=EntitlementDeniedError.QUOTA_EXCEEDED,
        message=f"{label} limit reached ({verdict.current}/{verdict.limit}). Please upgrade your plan.",
        resource=verdict.resource,
        current=verdict.current,
        limit=verdict.limit,
        module_id=module_id,
        http_status=status.HTTP_402_PAYMENT_REQUIRED,
    )


def require_module(
    engine,
    module_id: str,
    tenant_id: str,
    resource: Optional[ResourceLike] = None,
) -> ModuleCheck:
    """
    Require an active module with sub-quota left.

    Raises:
        EntitlementDeniedError: module_inactive (403) or quota_exceeded (402)
        StoreUnavailableError: If the check could not be evaluated
    """
    check = engine.check_module(module_id, tenant_id, resource=resource)
    catalog = engine.catalog

    if not check.active:
        display = catalog.display_name(check.module_id)
        raise EntitlementDeniedError(
            code=EntitlementDeniedError.MODULE_INACTIVE,
            message=f"{display} module not active. Please activate it in Billing settings.",
            module_id=check.module_id,
            http_status=status.HTTP_403_FORBIDDEN,
        )

    if check.verdict is not None and not check.verdict.allowed:
        label = catalog.resource_label(check.verdict.resource)
        raise _quota_error(label, check.verdict, module_id=check.module_id)

    return check


def require_quota(
    engine,
    resource: ResourceLike,
    tenant_id: str,
    scope_id: Optional[str] = None,
) -> QuotaVerdict:
    """
    Require room for one more unit of a plan resource.

    Raises:
        EntitlementDeniedError: quota_exceeded (402)
        StoreUnavailableError: If the check could not be evaluated
    """
    verdict = engine.check_quota(resource, tenant_id, scope_id=scope_id)
    if not verdict.allowed:
        label = engine.catalog.resource_label(resource_key(resource))
        raise _quota_error(label, verdict)
    return verdict


def require_credits(engine, amount: int, tenant_id: str) -> int:
    """
    Require at least `amount` credits before starting an AI call.

    Advisory only: the balance may change before consume_credits runs, which
    remains the authoritative check.

    Returns:
        Credits available at the time of the check

    Raises:
        EntitlementDeniedError: insufficient_credits (402)
    """
    remaining = engine.get_credit_balance(tenant_id).total_available
    if remaining < amount:
        raise EntitlementDeniedError(
            code=EntitlementDeniedError.INSUFFICIENT_CREDITS,
            message=f"Insufficient AI credits ({remaining}/{amount})",
            resource="ai_credit",
            current=remaining,
            limit=amount,
            http_status=status.HTTP_402_PAYMENT_REQUIRED,
        )
    return remaining
