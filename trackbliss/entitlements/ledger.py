"""
Credit Ledger - two-bucket AI credit balance with atomic draw-down.

consume_credits(amount, tenant_id, operation_type):
1. Load the authoritative CreditAccount row (never the cached snapshot)
2. monthly_available = max(0, allowance - used)
3. Not enough in both buckets → fail with the current total, no mutation
4. Draw monthly first, remainder from purchased
5. Persist with a version-checked UPDATE and append one immutable
   transaction row per bucket touched, in one commit
6. Invalidate the tenant's cached entitlements
7. Return the remaining total

Draw order is policy: the expiring monthly bucket is used up before the
non-expiring purchased one.

CRITICAL: The UPDATE is conditional on the version read in step 1. Two
concurrent draws against a near-empty balance can never both commit. A
lost race is retried once; a second conflict surfaces as
StoreUnavailableError (fail closed). Same-tenant draws within one process
are additionally serialized by a per-tenant lock.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from trackbliss.entitlements.audit import EntitlementAuditLogger, QuotaDenialEvent, get_audit_logger
from trackbliss.entitlements.cache import EntitlementCache
from trackbliss.entitlements.catalog import PlanCatalog
from trackbliss.entitlements.errors import ConcurrentWriteConflict, StoreUnavailableError
from trackbliss.entitlements.locks import TenantLockRegistry
from trackbliss.entitlements.models import ConsumptionResult, CreditBalance
from trackbliss.entitlements.settings import DEFAULT_LEDGER_MAX_ATTEMPTS
from trackbliss.models.base import generate_uuid
from trackbliss.models.credit import (
    CreditAccount,
    CreditSource,
    CreditTransaction,
    CreditTransactionType,
)
from trackbliss.repositories.billing_repo import BillingRepository

logger = logging.getLogger(__name__)


def _validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError(f"amount must be an integer, got {type(amount).__name__}")
    if amount <= 0:
        raise ValueError(f"amount must be positive, got {amount}")
    return amount


class CreditLedger:
    """
    Consumes and refunds AI credits for a tenant.

    Reads and writes the CreditAccount row directly; the entitlement cache
    is only ever invalidated here, never read.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        cache: EntitlementCache,
        catalog: Optional[PlanCatalog] = None,
        audit_logger: Optional[EntitlementAuditLogger] = None,
        max_attempts: int = DEFAULT_LEDGER_MAX_ATTEMPTS,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._session_factory = session_factory
        self._cache = cache
        self._catalog = catalog
        self._audit = audit_logger if audit_logger is not None else get_audit_logger()
        self._max_attempts = max_attempts
        self._tenant_locks = TenantLockRegistry()

    # ------------------------------------------------------------------
    # Primary API
    # ------------------------------------------------------------------

    def consume_credits(
        self,
        amount: int,
        tenant_id: str,
        operation_type: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> ConsumptionResult:
        """
        Draw credits for an AI operation.

        Args:
            amount: Credits to draw (positive integer)
            tenant_id: Tenant identifier
            operation_type: Operation being paid for, recorded in the log
            metadata: Optional extra data for the transaction rows
            user_id: Optional acting user

        Returns:
            ConsumptionResult; success=False is a policy denial, not an error

        Raises:
            ValueError: Invalid amount, tenant or operation type
            StoreUnavailableError: Store failure or repeated write conflict
        """
        amount = _validate_amount(amount)
        self._validate_call(tenant_id, operation_type)

        def draw(session: Session) -> ConsumptionResult:
            return self._draw(session, amount, tenant_id, operation_type, metadata, user_id)

        result = self._run_with_retries(tenant_id, "consume_credits", draw)

        if result.success:
            self._cache.invalidate(tenant_id, reason=f"credits_consumed:{operation_type}")
            logger.info("Credits consumed", extra={
                "tenant_id": tenant_id,
                "operation_type": operation_type,
                "amount": amount,
                "from_monthly": result.from_monthly,
                "from_purchased": result.from_purchased,
                "remaining": result.remaining,
            })
        else:
            self._audit.log_denial(QuotaDenialEvent(
                tenant_id=tenant_id,
                kind="credits",
                resource="ai_credit",
                current=result.remaining,
                limit=amount,
                operation_type=operation_type,
            ))
        return result

    def consume_for_operation(
        self,
        operation: str,
        tenant_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> ConsumptionResult:
        """
        Draw the catalog cost of a named AI operation.

        Zero-cost operations succeed without touching the account.
        """
        if self._catalog is None:
            raise ValueError("A plan catalog is required to price operations")
        cost = self._catalog.credit_cost(operation)
        if cost == 0:
            balance = self.get_balance(tenant_id)
            return ConsumptionResult(success=True, remaining=balance.total_available)
        return self.consume_credits(cost, tenant_id, operation, metadata=metadata, user_id=user_id)

    def refund_credits(
        self,
        amount: int,
        tenant_id: str,
        operation_type: str,
        user_id: Optional[str] = None,
    ) -> ConsumptionResult:
        """
        Return credits after a failed AI call.

        Credits go back to the monthly bucket first (up to what was used
        this month), the rest to the purchased bucket.
        """
        amount = _validate_amount(amount)
        self._validate_call(tenant_id, operation_type)

        def refund(session: Session) -> ConsumptionResult:
            return self._refund(session, amount, tenant_id, operation_type, user_id)

        result = self._run_with_retries(tenant_id, "refund_credits", refund)
        if result.success:
            self._cache.invalidate(tenant_id, reason=f"credits_refunded:{operation_type}")
            logger.info("Credits refunded", extra={
                "tenant_id": tenant_id,
                "operation_type": operation_type,
                "amount": amount,
                "remaining": result.remaining,
            })
        return result

    def get_balance(self, tenant_id: str) -> CreditBalance:
        """Authoritative balance straight from the store."""
        if not tenant_id:
            raise ValueError("tenant_id is required")
        try:
            with self._session_factory() as session:
                account = BillingRepository(session, tenant_id).get_credit_account()
                if account is None:
                    return CreditBalance()
                return CreditBalance(
                    monthly_allowance=account.monthly_allowance,
                    monthly_used=account.monthly_used,
                    purchased_balance=account.purchased_balance,
                    total_consumed=account.total_consumed,
                )
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(tenant_id, "get_balance", cause=exc) from exc

    def list_transactions(
        self,
        tenant_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Credit history, newest first."""
        if not tenant_id:
            raise ValueError("tenant_id is required")
        try:
            with self._session_factory() as session:
                rows = BillingRepository(session, tenant_id).list_transactions(limit, offset)
                return [
                    {
                        "id": row.id,
                        "type": row.type,
                        "amount": row.amount,
                        "source": row.source,
                        "balance_after": row.balance_after,
                        "operation_type": row.operation_type,
                        "metadata": row.metadata_json or {},
                        "user_id": row.user_id,
                        "created_at": row.created_at.isoformat() if row.created_at else None,
                    }
                    for row in rows
                ]
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(tenant_id, "list_transactions", cause=exc) from exc

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_call(tenant_id: str, operation_type: str) -> None:
        if not tenant_id:
            raise ValueError("tenant_id is required")
        if not operation_type:
            raise ValueError("operation_type is required")

    def _run_with_retries(
        self,
        tenant_id: str,
        operation: str,
        apply: Callable[[Session], ConsumptionResult],
    ) -> ConsumptionResult:
        """
        Run one read-compute-write cycle per attempt, under the tenant lock.

        `apply` stages its changes; this method commits. A version conflict
        at commit is retried until max_attempts is exhausted.
        """
        with self._tenant_locks.hold(tenant_id):
            for attempt in range(1, self._max_attempts + 1):
                try:
                    return self._attempt(tenant_id, apply)
                except ConcurrentWriteConflict:
                    if attempt < self._max_attempts:
                        logger.warning("Credit account changed concurrently, retrying", extra={
                            "tenant_id": tenant_id,
                            "operation": operation,
                            "attempt": attempt,
                        })
                        continue
                    conflict = ConcurrentWriteConflict(tenant_id, attempt)
                    logger.error("Credit write conflict persisted, failing closed", extra={
                        "tenant_id": tenant_id,
                        "operation": operation,
                        "attempts": attempt,
                    })
                    raise StoreUnavailableError(tenant_id, operation, cause=conflict) from conflict
        raise AssertionError("unreachable")  # pragma: no cover

    def _attempt(
        self,
        tenant_id: str,
        apply: Callable[[Session], ConsumptionResult],
    ) -> ConsumptionResult:
        try:
            with self._session_factory() as session:
                result = apply(session)
                if result.success:
                    # UPDATE billing_credits ... WHERE id = :id AND version = :read_version
                    session.commit()
                return result
        except StaleDataError as exc:
            raise ConcurrentWriteConflict(tenant_id, 1) from exc
        except SQLAlchemyError as exc:
            logger.error("Credit ledger store failure", extra={
                "tenant_id": tenant_id,
                "error_type": type(exc).__name__,
                "error_detail": str(exc),
            })
            raise StoreUnavailableError(tenant_id, "credit_ledger", cause=exc) from exc

    def _draw(
        self,
        session: Session,
        amount: int,
        tenant_id: str,
        operation_type: str,
        metadata: Optional[Dict[str, Any]],
        user_id: Optional[str],
    ) -> ConsumptionResult:
        repo = BillingRepository(session, tenant_id)
        account = repo.get_credit_account()
        if account is None:
            return ConsumptionResult(success=False, remaining=0)

        monthly_available = account.monthly_available
        purchased_balance = account.purchased_balance
        total_available = monthly_available + purchased_balance
        if total_available < amount:
            return ConsumptionResult(success=False, remaining=total_available)

        from_monthly = min(amount, monthly_available)
        from_purchased = amount - from_monthly
        remaining = (monthly_available - from_monthly) + (purchased_balance - from_purchased)

        account.monthly_used = account.monthly_used + from_monthly
        account.purchased_balance = purchased_balance - from_purchased
        account.total_consumed = account.total_consumed + amount

        transaction_ids = []
        for source, drawn in ((CreditSource.MONTHLY, from_monthly), (CreditSource.PURCHASED, from_purchased)):
            if drawn == 0:
                continue
            transaction = self._transaction(
                tenant_id,
                CreditTransactionType.CONSUME,
                source,
                -drawn,
                remaining,
                operation_type,
                metadata,
                user_id,
            )
            repo.add_transaction(transaction)
            transaction_ids.append(transaction.id)

        return ConsumptionResult(
            success=True,
            remaining=remaining,
            from_monthly=from_monthly,
            from_purchased=from_purchased,
            transaction_ids=tuple(transaction_ids),
        )

    def _refund(
        self,
        session: Session,
        amount: int,
        tenant_id: str,
        operation_type: str,
        user_id: Optional[str],
    ) -> ConsumptionResult:
        repo = BillingRepository(session, tenant_id)
        account = repo.get_credit_account()
        if account is None:
            return ConsumptionResult(success=False, remaining=0)

        to_monthly = min(amount, account.monthly_used)
        to_purchased = amount - to_monthly

        account.monthly_used = account.monthly_used - to_monthly
        account.purchased_balance = account.purchased_balance + to_purchased
        account.total_consumed = max(0, account.total_consumed - amount)
        remaining = self._total_available(account)

        transaction_ids = []
        for source, returned in ((CreditSource.MONTHLY, to_monthly), (CreditSource.PURCHASED, to_purchased)):
            if returned == 0:
                continue
            transaction = self._transaction(
                tenant_id,
                CreditTransactionType.REFUND,
                source,
                returned,
                remaining,
                operation_type,
                None,
                user_id,
            )
            repo.add_transaction(transaction)
            transaction_ids.append(transaction.id)

        return ConsumptionResult(
            success=True,
            remaining=remaining,
            transaction_ids=tuple(transaction_ids),
        )

    @staticmethod
    def _total_available(account: CreditAccount) -> int:
        return max(0, account.monthly_allowance - account.monthly_used) + account.purchased_balance

    @staticmethod
    def _transaction(
        tenant_id: str,
        kind: CreditTransactionType,
        source: CreditSource,
        amount: int,
        balance_after: int,
        operation_type: str,
        metadata: Optional[Dict[str, Any]],
        user_id: Optional[str],
    ) -> CreditTransaction:
        return CreditTransaction(
            id=generate_uuid(),
            tenant_id=tenant_id,
            type=kind.value,
            amount=amount,
            source=source.value,
            balance_after=balance_after,
            operation_type=operation_type,
            description=operation_type if kind == CreditTransactionType.CONSUME else f"Refund: {operation_type}",
            metadata_json=metadata or {},
            user_id=user_id,
        )
