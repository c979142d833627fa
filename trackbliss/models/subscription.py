"""
Billing subscription model (mirror of the payment processor's subscription).

CRITICAL: One subscription per tenant.
Rows are written exclusively by the payment-processor integration (webhook
handlers). The entitlement engine only reads them.
"""

from enum import Enum

from sqlalchemy import Column, String, Boolean, DateTime, UniqueConstraint

from trackbliss.models.base import Base, TimestampMixin, TenantScopedMixin, generate_uuid


class SubscriptionStatus(str, Enum):
    """Subscription status values as reported by the payment processor."""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    PAUSED = "paused"


class BillingSubscription(Base, TimestampMixin, TenantScopedMixin):
    """
    Base plan subscription for a tenant.

    Only status == active grants the plan's limits. Every other status
    resolves to the free plan regardless of the plan column.
    """

    __tablename__ = "billing_subscriptions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    plan = Column(
        String(50),
        nullable=False,
        default="free",
        comment="Base plan tier (free, pro, enterprise)"
    )
    status = Column(
        String(50),
        nullable=False,
        default=SubscriptionStatus.ACTIVE.value,
        index=True,
        comment="Payment processor subscription status"
    )
    cancel_at_period_end = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Subscription ends when the current period ends"
    )

    stripe_customer_id = Column(String(255), nullable=True)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)

    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_billing_subscriptions_tenant"),
    )

    def __repr__(self) -> str:
        return (
            f"<BillingSubscription(tenant_id={self.tenant_id}, "
            f"plan={self.plan}, status={self.status})>"
        )

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE.value
