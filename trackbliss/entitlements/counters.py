"""
Live usage counters for guarded resources.

The counted tables (products, documents, rh_returns, ...) belong to the
services that create those resources, not to this engine. They are
described here as data (CountSpec) and queried through lightweight Core
constructs, so no ORM model of a foreign table is needed.

All counts are tenant-scoped. Month-scoped resources only count rows
created since the start of the current billing month (UTC calendar month).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import Boolean, DateTime, String, column, func, select, table
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from trackbliss.entitlements.errors import StoreUnavailableError
from trackbliss.entitlements.models import ResourceType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CountSpec:
    """How to count one resource type for a tenant."""

    table: str
    tenant_column: str = "tenant_id"
    scope_column: Optional[str] = None
    month_scoped: bool = False
    created_column: str = "created_at"
    filters: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)


DEFAULT_COUNT_SPECS: Dict[str, CountSpec] = {
    ResourceType.PRODUCT.value: CountSpec("products"),
    ResourceType.DOCUMENT.value: CountSpec("documents"),
    ResourceType.ADMIN_USER.value: CountSpec("profiles"),
    ResourceType.BATCH.value: CountSpec("product_batches", scope_column="product_id"),
    ResourceType.SUPPLY_CHAIN_ENTRY.value: CountSpec("supply_chain_entries", scope_column="product_id"),
    ResourceType.RETURNS_PER_MONTH.value: CountSpec("rh_returns", month_scoped=True),
    ResourceType.WORKFLOW_RULE.value: CountSpec("rh_workflow_rules", filters=(("active", True),)),
    ResourceType.EMAIL_TEMPLATE.value: CountSpec("rh_email_templates"),
    ResourceType.WAREHOUSE_LOCATION.value: CountSpec("wh_locations", filters=(("is_active", True),)),
    ResourceType.SHIPMENTS_PER_MONTH.value: CountSpec("wh_shipments", month_scoped=True),
    ResourceType.STOCK_TRANSACTIONS_PER_MONTH.value: CountSpec("wh_stock_transactions", month_scoped=True),
}


def month_start(now: datetime) -> datetime:
    """First instant of the UTC calendar month containing `now`."""
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return datetime(now.year, now.month, 1, tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResourceCounter:
    """
    Runs tenant-scoped COUNT(*) queries for guarded resources.

    Never mutates anything.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        specs: Optional[Dict[str, CountSpec]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self._specs = dict(DEFAULT_COUNT_SPECS if specs is None else specs)
        self._clock = clock

    def spec_for(self, resource: str) -> CountSpec:
        try:
            return self._specs[resource]
        except KeyError:
            raise ValueError(f"No usage counter registered for resource '{resource}'")

    def requires_scope(self, resource: str) -> bool:
        return self.spec_for(resource).scope_column is not None

    def is_month_scoped(self, resource: str) -> bool:
        return self.spec_for(resource).month_scoped

    def _build_statement(
        self,
        spec: CountSpec,
        tenant_id: str,
        scope_id: Optional[str],
        since: Optional[datetime],
    ):
        columns = [column(spec.tenant_column, String)]
        if spec.scope_column:
            columns.append(column(spec.scope_column, String))
        if spec.month_scoped:
            columns.append(column(spec.created_column, DateTime(timezone=True)))
        for name, value in spec.filters:
            columns.append(column(name, Boolean) if isinstance(value, bool) else column(name))
        counted = table(spec.table, *columns)

        stmt = (
            select(func.count())
            .select_from(counted)
            .where(counted.c[spec.tenant_column] == tenant_id)
        )
        if spec.scope_column:
            stmt = stmt.where(counted.c[spec.scope_column] == scope_id)
        if since is not None:
            stmt = stmt.where(counted.c[spec.created_column] >= since)
        for name, value in spec.filters:
            stmt = stmt.where(counted.c[name] == value)
        return stmt

    def count(
        self,
        resource: str,
        tenant_id: str,
        scope_id: Optional[str] = None,
    ) -> int:
        """
        Count a tenant's rows of a resource.

        Args:
            resource: ResourceType value
            tenant_id: Tenant identifier
            scope_id: Parent id (product id) for per-product resources

        Raises:
            ValueError: Unknown resource, or missing scope_id for a scoped resource
            StoreUnavailableError: If the count query fails
        """
        spec = self.spec_for(resource)
        if spec.scope_column and not scope_id:
            raise ValueError(f"Resource '{resource}' is counted per {spec.scope_column}; scope_id is required")

        since = month_start(self._clock()) if spec.month_scoped else None
        stmt = self._build_statement(spec, tenant_id, scope_id, since)

        try:
            with self._session_factory() as session:
                current = session.execute(stmt).scalar_one()
        except SQLAlchemyError as exc:
            logger.error("Usage count failed", extra={
                "tenant_id": tenant_id,
                "resource": resource,
                "error": str(exc),
            })
            raise StoreUnavailableError(tenant_id, f"count:{resource}", cause=exc) from exc

        return int(current or 0)
