"""
Tests for write-path cache invalidation.

External writers (payment webhooks, admin tools) change billing rows through
their own sessions; the next resolve must see the change immediately.
"""

import pytest

from trackbliss.entitlements.invalidation import BillingInvalidationHooks, install_invalidation_hooks
from trackbliss.entitlements.service import EntitlementEngine
from trackbliss.models import BillingSubscription, CreditTransaction, ModuleSubscription


@pytest.fixture
def hooked_engine(session_factory, catalog, cache, audit):
    engine = EntitlementEngine(
        session_factory,
        catalog=catalog,
        cache=cache,
        audit_logger=audit,
        install_hooks=True,
    )
    yield engine
    engine.close()


class TestSessionHooks:

    def test_subscription_update_invalidates(self, hooked_engine, session_factory, tenant_id, make_subscription):
        make_subscription(tenant_id, plan="free")
        assert hooked_engine.get_entitlements(tenant_id).plan == "free"

        with session_factory() as session:
            row = session.query(BillingSubscription).filter(BillingSubscription.tenant_id == tenant_id).one()
            row.plan = "pro"
            session.commit()

        assert hooked_engine.get_entitlements(tenant_id).plan == "pro"

    def test_module_insert_invalidates(self, hooked_engine, session_factory, tenant_id):
        assert not hooked_engine.get_entitlements(tenant_id).has_module("warehouse")

        with session_factory() as session:
            session.add(ModuleSubscription(tenant_id=tenant_id, module_id="warehouse", tier="starter"))
            session.commit()

        assert hooked_engine.get_entitlements(tenant_id).module_tier("warehouse") == "starter"

    def test_module_cancel_invalidates(self, hooked_engine, session_factory, tenant_id, make_module):
        make_module(tenant_id, "returns_hub", "starter")
        assert hooked_engine.check_module("returns_hub", tenant_id).active is True

        with session_factory() as session:
            row = session.query(ModuleSubscription).filter(ModuleSubscription.tenant_id == tenant_id).one()
            row.status = "canceled"
            session.commit()

        assert hooked_engine.check_module("returns_hub", tenant_id).active is False

    def test_rolled_back_write_invalidates_without_changing_state(
        self, hooked_engine, session_factory, cache, tenant_id, make_subscription,
    ):
        make_subscription(tenant_id, plan="pro")
        hooked_engine.get_entitlements(tenant_id)

        with session_factory() as session:
            row = session.query(BillingSubscription).filter(BillingSubscription.tenant_id == tenant_id).one()
            row.plan = "enterprise"
            session.flush()
            session.rollback()

        assert cache.get(tenant_id) is None
        assert hooked_engine.get_entitlements(tenant_id).plan == "pro"

    def test_unrelated_rows_do_not_invalidate(self, hooked_engine, session_factory, cache, tenant_id):
        snapshot = hooked_engine.get_entitlements(tenant_id)

        with session_factory() as session:
            session.add(CreditTransaction(
                tenant_id=tenant_id,
                type="consume",
                amount=-1,
                source="monthly",
                balance_after=0,
                operation_type="import",
            ))
            session.commit()

        assert cache.get(tenant_id) is snapshot

    def test_other_tenants_untouched(self, hooked_engine, session_factory, cache, tenant_id):
        snapshot = hooked_engine.get_entitlements(tenant_id)

        with session_factory() as session:
            session.add(BillingSubscription(tenant_id="other-tenant", plan="pro"))
            session.commit()

        assert cache.get(tenant_id) is snapshot


class TestHookLifecycle:

    def test_remove_detaches(self, session_factory, cache, catalog, tenant_id, make_subscription):
        engine = EntitlementEngine(session_factory, catalog=catalog, cache=cache)
        hooks = install_invalidation_hooks(session_factory, cache)
        hooks.remove()
        make_subscription(tenant_id, plan="free")
        snapshot = engine.get_entitlements(tenant_id)

        with session_factory() as session:
            row = session.query(BillingSubscription).filter(BillingSubscription.tenant_id == tenant_id).one()
            row.plan = "pro"
            session.commit()

        assert cache.get(tenant_id) is snapshot

    def test_install_twice_is_noop(self, session_factory, cache):
        hooks = BillingInvalidationHooks(cache)
        hooks.install(session_factory)
        hooks.install(session_factory)
        try:
            assert len(hooks._targets) == 1
        finally:
            hooks.remove()


class TestManualInvalidation:

    def test_on_billing_change(self, engine, session_factory, tenant_id, make_subscription):
        make_subscription(tenant_id, plan="free")
        engine.get_entitlements(tenant_id)

        with session_factory() as session:
            row = session.query(BillingSubscription).filter(BillingSubscription.tenant_id == tenant_id).one()
            row.status = "past_due"
            row.plan = "enterprise"
            session.commit()
        engine.on_billing_change(tenant_id, reason="stripe:customer.subscription.updated")

        entitlements = engine.get_entitlements(tenant_id)
        assert entitlements.plan == "free"
        assert entitlements.status == "past_due"

    def test_invalidate_all(self, engine, tenant_id):
        engine.get_entitlements(tenant_id)
        engine.get_entitlements("another-tenant")

        assert engine.invalidate_entitlement_cache() == 2
        assert len(engine.cache) == 0

    def test_invalidate_one(self, engine, tenant_id):
        engine.get_entitlements(tenant_id)

        assert engine.invalidate_entitlement_cache(tenant_id) == 1
        assert engine.invalidate_entitlement_cache(tenant_id) == 0

    def test_on_billing_change_requires_tenant(self, engine):
        with pytest.raises(ValueError):
            engine.on_billing_change("")
