"""
Add-on module subscriptions (returns hub, warehouse, supplier portal, ...).

Zero or many rows per tenant. Presence of an active row means the module is
active; the tier selects the module's own limit row in the plan catalog.
"""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, String, DateTime, Index

from trackbliss.models.base import Base, TimestampMixin, TenantScopedMixin, generate_uuid


class ModuleSubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"


class ModuleSubscription(Base, TimestampMixin, TenantScopedMixin):
    """Single add-on module activation for a tenant."""

    __tablename__ = "billing_module_subscriptions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    module_id = Column(
        String(100),
        nullable=False,
        comment="Feature family (returns_hub, warehouse, supplier_portal, ...)"
    )
    tier = Column(
        String(50),
        nullable=True,
        comment="Module tier (starter, professional, business). "
                "NULL when module_id carries the tier suffix."
    )
    status = Column(
        String(50),
        nullable=False,
        default=ModuleSubscriptionStatus.ACTIVE.value,
    )

    stripe_subscription_item_id = Column(String(255), nullable=True)

    activated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    canceled_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_billing_module_subscriptions_tenant_status", "tenant_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<ModuleSubscription(tenant_id={self.tenant_id}, "
            f"module_id={self.module_id}, tier={self.tier}, status={self.status})>"
        )
