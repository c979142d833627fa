"""
Database models for the entitlement engine.

Billing rows mirror the payment processor (subscription, modules) or are
owned by the credit ledger (credit account, credit transactions).
"""

from trackbliss.models.base import Base, TimestampMixin, TenantScopedMixin, generate_uuid
from trackbliss.models.subscription import BillingSubscription, SubscriptionStatus
from trackbliss.models.module_subscription import ModuleSubscription, ModuleSubscriptionStatus
from trackbliss.models.credit import (
    CreditAccount,
    CreditTransaction,
    CreditTransactionType,
    CreditSource,
    ImmutableRecordError,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "TenantScopedMixin",
    "generate_uuid",
    "BillingSubscription",
    "SubscriptionStatus",
    "ModuleSubscription",
    "ModuleSubscriptionStatus",
    "CreditAccount",
    "CreditTransaction",
    "CreditTransactionType",
    "CreditSource",
    "ImmutableRecordError",
]
