"""
Billing repository with strict tenant isolation enforcement.

CRITICAL: All reads are scoped by tenant_id.
No query can access billing rows of another tenant.
"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from trackbliss.models.subscription import BillingSubscription
from trackbliss.models.module_subscription import ModuleSubscription, ModuleSubscriptionStatus
from trackbliss.models.credit import CreditAccount, CreditTransaction

logger = logging.getLogger(__name__)


class TenantIsolationError(Exception):
    """Raised when tenant isolation is violated."""
    pass


class BillingRepository:
    """
    Tenant-scoped access to subscription, module and credit rows.

    The repository never commits; the caller owns the transaction.
    """

    def __init__(self, db_session: Session, tenant_id: str):
        """
        Initialize repository with tenant context.

        Args:
            db_session: SQLAlchemy database session
            tenant_id: Tenant identifier

        Raises:
            ValueError: If tenant_id is empty or None
        """
        if not tenant_id:
            raise ValueError("tenant_id is required and cannot be empty")

        self.db_session = db_session
        self.tenant_id = tenant_id

    def _validate_row(self, row, operation: str):
        """
        Validate that a row handed back to the repository belongs to its tenant.

        SECURITY: Prevents cross-tenant writes even if a foreign row leaks in.
        """
        if row is not None and row.tenant_id != self.tenant_id:
            logger.error(
                "Tenant ID mismatch detected",
                extra={
                    "repository_tenant_id": self.tenant_id,
                    "row_tenant_id": row.tenant_id,
                    "operation": operation,
                }
            )
            raise TenantIsolationError(
                f"Tenant ID mismatch: repository scoped to {self.tenant_id}, "
                f"but operation attempted on {row.tenant_id}"
            )

    def get_subscription(self) -> Optional[BillingSubscription]:
        return (
            self.db_session.query(BillingSubscription)
            .filter(BillingSubscription.tenant_id == self.tenant_id)
            .first()
        )

    def list_active_modules(self) -> List[ModuleSubscription]:
        return (
            self.db_session.query(ModuleSubscription)
            .filter(
                ModuleSubscription.tenant_id == self.tenant_id,
                ModuleSubscription.status == ModuleSubscriptionStatus.ACTIVE.value,
            )
            .order_by(ModuleSubscription.activated_at.asc())
            .all()
        )

    def get_credit_account(self) -> Optional[CreditAccount]:
        """Load the authoritative credit row (never cached)."""
        return (
            self.db_session.query(CreditAccount)
            .filter(CreditAccount.tenant_id == self.tenant_id)
            .populate_existing()
            .first()
        )

    def add_transaction(self, transaction: CreditTransaction) -> CreditTransaction:
        """Append a credit transaction row for this tenant."""
        self._validate_row(transaction, "add_transaction")
        self.db_session.add(transaction)
        return transaction

    def list_transactions(self, limit: int = 50, offset: int = 0) -> List[CreditTransaction]:
        """Credit history, newest first."""
        return (
            self.db_session.query(CreditTransaction)
            .filter(CreditTransaction.tenant_id == self.tenant_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
