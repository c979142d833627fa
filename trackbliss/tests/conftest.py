"""
Root test configuration and fixtures.

Provides:
- db_engine / session_factory: SQLite in-memory (PostgreSQL when DATABASE_URL is set)
- usage tables: the guarded resource tables the counters read
- cache / catalog / audit / engine: fresh engine components per test
- row factories for subscriptions, module rows, credit accounts and usage rows

The engine opens and commits its own sessions, so isolation is by table
cleanup after each test rather than by an outer rolled-back transaction.
"""

import os
import uuid
from datetime import datetime, timezone
from typing import Optional

import pytest
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    text,
)
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from trackbliss.db_base import Base
from trackbliss.entitlements.audit import EntitlementAuditLogger
from trackbliss.entitlements.cache import EntitlementCache
from trackbliss.entitlements.catalog import PlanCatalog
from trackbliss.entitlements.service import EntitlementEngine
from trackbliss.models import BillingSubscription, CreditAccount, ModuleSubscription

# Set test environment
os.environ.setdefault("ENV", "test")

USAGE_TABLE_NAMES = (
    "products",
    "documents",
    "profiles",
    "product_batches",
    "supply_chain_entries",
    "rh_returns",
    "rh_workflow_rules",
    "rh_email_templates",
    "wh_locations",
    "wh_shipments",
    "wh_stock_transactions",
)

usage_metadata = MetaData()


def _usage_table(name: str) -> Table:
    return Table(
        name,
        usage_metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("tenant_id", String(255), nullable=False, index=True),
        Column("product_id", String(36), nullable=True),
        Column("active", Boolean, nullable=False, default=True),
        Column("is_active", Boolean, nullable=False, default=True),
        Column(
            "created_at",
            DateTime(timezone=True),
            nullable=False,
            default=lambda: datetime.now(timezone.utc),
        ),
    )


USAGE_TABLES = {name: _usage_table(name) for name in USAGE_TABLE_NAMES}


def _get_test_database_url() -> str:
    """Get database URL for tests."""
    database_url = os.getenv("DATABASE_URL")

    if database_url:
        # Handle Render's postgres:// URL format
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)
        return database_url

    # Default to SQLite for unit tests if no PostgreSQL available
    return "sqlite:///:memory:"


def _is_postgres() -> bool:
    """Check if using PostgreSQL."""
    return _get_test_database_url().startswith("postgresql")


def create_schema(engine) -> None:
    Base.metadata.create_all(bind=engine)
    usage_metadata.create_all(bind=engine)


@pytest.fixture(scope="session")
def db_engine():
    """
    Create database engine for tests.

    Uses PostgreSQL if DATABASE_URL is set, otherwise SQLite in-memory.
    """
    database_url = _get_test_database_url()

    if _is_postgres():
        try:
            engine = create_engine(database_url, pool_pre_ping=True)
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            pytest.skip(
                f"PostgreSQL not available. Set DATABASE_URL or use SQLite. Error: {e}"
            )
    else:
        # SQLite in-memory for fast unit tests
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    create_schema(engine)

    yield engine

    usage_metadata.drop_all(bind=engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(autouse=True)
def _clean_tables(request):
    """Delete every row written by a test that used the shared engine."""
    engine = None
    if "db_engine" in request.fixturenames:
        engine = request.getfixturevalue("db_engine")
    yield
    if engine is None:
        return
    with engine.begin() as conn:
        for table in reversed(usage_metadata.sorted_tables):
            conn.execute(table.delete())
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=db_engine,
    )


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed SQLite database, safe to share between threads."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'entitlements.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    create_schema(engine)
    yield sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    engine.dispose()


@pytest.fixture
def broken_session_factory():
    """Sessions against a database with no tables: every query fails."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield sessionmaker(bind=engine)
    engine.dispose()


# =============================================================================
# Engine components
# =============================================================================


@pytest.fixture
def tenant_id() -> str:
    return f"tenant-{uuid.uuid4().hex[:12]}"


@pytest.fixture
def catalog() -> PlanCatalog:
    return PlanCatalog()


@pytest.fixture
def cache() -> EntitlementCache:
    return EntitlementCache(ttl_seconds=30)


@pytest.fixture
def audit() -> EntitlementAuditLogger:
    return EntitlementAuditLogger()


@pytest.fixture
def engine(session_factory, catalog, cache, audit) -> EntitlementEngine:
    return EntitlementEngine(session_factory, catalog=catalog, cache=cache, audit_logger=audit)


# =============================================================================
# Row factories
# =============================================================================


@pytest.fixture
def make_subscription(session_factory):
    def _make(tenant_id: str, plan: str = "pro", status: str = "active", **kwargs) -> BillingSubscription:
        with session_factory() as session:
            row = BillingSubscription(tenant_id=tenant_id, plan=plan, status=status, **kwargs)
            session.add(row)
            session.commit()
            return row
    return _make


@pytest.fixture
def make_module(session_factory):
    def _make(
        tenant_id: str,
        module_id: str = "returns_hub",
        tier: Optional[str] = "starter",
        status: str = "active",
    ) -> ModuleSubscription:
        with session_factory() as session:
            row = ModuleSubscription(tenant_id=tenant_id, module_id=module_id, tier=tier, status=status)
            session.add(row)
            session.commit()
            return row
    return _make


@pytest.fixture
def make_credit_account(session_factory):
    def _make(
        tenant_id: str,
        monthly_allowance: int = 0,
        monthly_used: int = 0,
        purchased_balance: int = 0,
        factory=None,
    ) -> CreditAccount:
        with (factory or session_factory)() as session:
            row = CreditAccount(
                tenant_id=tenant_id,
                monthly_allowance=monthly_allowance,
                monthly_used=monthly_used,
                purchased_balance=purchased_balance,
                total_consumed=0,
            )
            session.add(row)
            session.commit()
            return row
    return _make


@pytest.fixture
def add_usage(db_engine):
    """
    Insert `count` rows into a guarded resource table.

    Usage:
        add_usage("products", tenant_id, 4)
        add_usage("rh_returns", tenant_id, 3, created_at=last_month)
    """
    def _add(table_name: str, tenant_id: str, count: int = 1, **values) -> None:
        if count <= 0:
            return
        table = USAGE_TABLES[table_name]
        row = {"tenant_id": tenant_id, "created_at": datetime.now(timezone.utc)}
        row.update(values)
        with db_engine.begin() as conn:
            conn.execute(table.insert(), [dict(row) for _ in range(count)])
    return _add


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: mark test as slow-running")
