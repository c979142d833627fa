"""
AI credit models.

CreditAccount: two-bucket balance per tenant (monthly allowance + purchased).
CreditTransaction: append-only log of every consumption and refund.

CRITICAL: CreditAccount is versioned. Every UPDATE is conditional on the
version the writer read, so two concurrent draws can never both succeed
against the same balance.
"""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Column, String, Integer, DateTime, Text, JSON,
    CheckConstraint, Index, UniqueConstraint, event,
)

from trackbliss.models.base import Base, TimestampMixin, TenantScopedMixin, generate_uuid


class CreditTransactionType(str, Enum):
    CONSUME = "consume"
    REFUND = "refund"


class CreditSource(str, Enum):
    MONTHLY = "monthly"
    PURCHASED = "purchased"


class ImmutableRecordError(Exception):
    """Raised when code attempts to modify an append-only record."""
    pass


class CreditAccount(Base, TimestampMixin, TenantScopedMixin):
    """
    Credit balance for a tenant.

    monthly_allowance / monthly_used are reset by the billing-cycle job.
    purchased_balance never expires; it only grows through purchases and
    shrinks through consumption.
    """

    __tablename__ = "billing_credits"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    monthly_allowance = Column(Integer, nullable=False, default=0)
    monthly_used = Column(Integer, nullable=False, default=0)
    monthly_reset_at = Column(DateTime(timezone=True), nullable=True)
    purchased_balance = Column(Integer, nullable=False, default=0)
    total_consumed = Column(Integer, nullable=False, default=0)

    version = Column(
        Integer,
        nullable=False,
        comment="Optimistic concurrency counter, bumped on every UPDATE"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_billing_credits_tenant"),
        CheckConstraint("purchased_balance >= 0", name="ck_billing_credits_purchased_non_negative"),
        CheckConstraint("monthly_used >= 0", name="ck_billing_credits_monthly_used_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"<CreditAccount(tenant_id={self.tenant_id}, "
            f"monthly={self.monthly_used}/{self.monthly_allowance}, "
            f"purchased={self.purchased_balance}, version={self.version})>"
        )

    @property
    def monthly_available(self) -> int:
        return max(0, (self.monthly_allowance or 0) - (self.monthly_used or 0))

    @property
    def total_available(self) -> int:
        return self.monthly_available + (self.purchased_balance or 0)


class CreditTransaction(Base, TenantScopedMixin):
    """
    Immutable credit movement.

    One row per bucket touched: a draw that spans both buckets writes a
    monthly row and a purchased row. amount is negative for consumption.
    """

    __tablename__ = "billing_credit_transactions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    type = Column(String(20), nullable=False)
    amount = Column(Integer, nullable=False)
    source = Column(String(20), nullable=False)
    balance_after = Column(Integer, nullable=False)
    operation_type = Column(
        String(100),
        nullable=False,
        comment="AI operation that moved the credits (compliance_check, chat_message, ...)"
    )
    description = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    user_id = Column(String(255), nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )

    __table_args__ = (
        Index("ix_billing_credit_transactions_tenant_created", "tenant_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<CreditTransaction(tenant_id={self.tenant_id}, type={self.type}, "
            f"amount={self.amount}, source={self.source})>"
        )


@event.listens_for(CreditTransaction, "before_update")
def _refuse_transaction_update(mapper, connection, target):
    raise ImmutableRecordError("Credit transactions are append-only")


@event.listens_for(CreditTransaction, "before_delete")
def _refuse_transaction_delete(mapper, connection, target):
    raise ImmutableRecordError("Credit transactions are append-only")
