"""
Tests for the caller-facing guards and their paywall messages.
"""

import pytest
from fastapi import status

from trackbliss.entitlements.errors import EntitlementDeniedError, StoreUnavailableError
from trackbliss.entitlements.guards import require_credits, require_module, require_quota
from trackbliss.entitlements.service import EntitlementEngine


def create_return(engine, tenant_id: str) -> str:
    """Stand-in for the returns hub handler: guard, then create."""
    require_module(engine, "returns_hub", tenant_id)
    return "created"


class TestRequireModule:

    def test_inactive_module_message(self, engine, tenant_id):
        with pytest.raises(EntitlementDeniedError) as exc_info:
            create_return(engine, tenant_id)

        error = exc_info.value
        assert "module not active" in error.message
        assert error.message == "Returns Hub module not active. Please activate it in Billing settings."
        assert error.code == EntitlementDeniedError.MODULE_INACTIVE
        assert error.http_status == status.HTTP_403_FORBIDDEN
        assert error.module_id == "returns_hub"

    def test_49_returns_succeeds(self, engine, tenant_id, make_module, add_usage):
        make_module(tenant_id, "returns_hub_starter", None)
        add_usage("rh_returns", tenant_id, 49)

        assert create_return(engine, tenant_id) == "created"

    def test_50_returns_limit_reached(self, engine, tenant_id, make_module, add_usage):
        make_module(tenant_id, "returns_hub_starter", None)
        add_usage("rh_returns", tenant_id, 50)

        with pytest.raises(EntitlementDeniedError) as exc_info:
            create_return(engine, tenant_id)

        error = exc_info.value
        assert "limit reached" in error.message
        assert error.message == "Return limit reached (50/50). Please upgrade your plan."
        assert error.code == EntitlementDeniedError.QUOTA_EXCEEDED
        assert error.http_status == status.HTTP_402_PAYMENT_REQUIRED

    def test_to_dict(self, engine, tenant_id, make_module, add_usage):
        make_module(tenant_id, "returns_hub", "starter")
        add_usage("rh_returns", tenant_id, 50)

        with pytest.raises(EntitlementDeniedError) as exc_info:
            require_module(engine, "returns_hub", tenant_id)

        payload = exc_info.value.to_dict()
        assert payload["error"] == "entitlement_denied"
        assert payload["machine_readable"] == {
            "code": "quota_exceeded",
            "resource": "returns_per_month",
            "module_id": "returns_hub",
            "current": 50,
            "limit": 50,
        }


class TestRequireQuota:

    def test_below_limit_returns_verdict(self, engine, tenant_id, add_usage):
        add_usage("products", tenant_id, 2)

        assert require_quota(engine, "product", tenant_id).current == 2

    def test_at_limit_raises(self, engine, tenant_id, add_usage):
        add_usage("products", tenant_id, 5)

        with pytest.raises(EntitlementDeniedError, match=r"Product limit reached \(5/5\)"):
            require_quota(engine, "product", tenant_id)

    def test_store_failure_not_converted(self, broken_session_factory, catalog, cache, tenant_id):
        broken = EntitlementEngine(broken_session_factory, catalog=catalog, cache=cache)

        with pytest.raises(StoreUnavailableError):
            require_quota(broken, "product", tenant_id)


class TestRequireCredits:

    def test_enough_credits(self, engine, tenant_id, make_credit_account):
        make_credit_account(tenant_id, monthly_allowance=3, monthly_used=0, purchased_balance=0)

        assert require_credits(engine, 3, tenant_id) == 3

    def test_insufficient_credits(self, engine, tenant_id, make_credit_account):
        make_credit_account(tenant_id, monthly_allowance=3, monthly_used=1, purchased_balance=0)

        with pytest.raises(EntitlementDeniedError) as exc_info:
            require_credits(engine, 3, tenant_id)

        error = exc_info.value
        assert error.message == "Insufficient AI credits (2/3)"
        assert error.code == EntitlementDeniedError.INSUFFICIENT_CREDITS
        assert error.http_status == status.HTTP_402_PAYMENT_REQUIRED
