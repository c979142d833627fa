"""
Database session management with connection pooling.

Provides the shared session factory used by the entitlement engine.
Every engine operation opens its own short-lived session from this factory,
so components are safe to call from concurrent request threads.

Usage:
    from trackbliss.database.session import get_session_factory

    engine = EntitlementEngine(session_factory=get_session_factory())
"""

import os
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool

logger = logging.getLogger(__name__)

# Module-level engine singleton
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def _get_database_url() -> str:
    """
    Get and normalize the database URL from environment.

    Handles Render's postgres:// URL format by converting to postgresql://.
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")

    # SQLAlchemy requires postgresql://
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


def get_engine() -> Engine:
    """
    Get or create the database engine singleton.

    Uses connection pooling with sensible defaults for production:
    - pool_size: 5 connections
    - max_overflow: 10 additional connections under load
    - pool_pre_ping: Verify connections before use
    """
    global _engine
    if _engine is None:
        try:
            database_url = _get_database_url()
            if database_url.startswith("sqlite"):
                _engine = create_engine(
                    database_url,
                    connect_args={"check_same_thread": False},
                )
            else:
                _engine = create_engine(
                    database_url,
                    poolclass=QueuePool,
                    pool_size=5,
                    max_overflow=10,
                    pool_pre_ping=True,  # Verify connection health
                    pool_recycle=1800,   # Recycle connections after 30 minutes
                )
            logger.info("Database engine created", extra={"dialect": _engine.dialect.name})
        except ValueError as e:
            logger.error("Failed to create database engine", extra={"error": str(e)})
            raise
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory singleton."""
    global _SessionLocal
    if _SessionLocal is None:
        engine = get_engine()
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=engine
        )
    return _SessionLocal


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """
    Transactional scope around a series of operations.

    Commits on success, rolls back on any exception, always closes.

    Usage:
        with session_scope() as session:
            session.add(row)
    """
    SessionLocal = factory or get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def reset_engine() -> None:
    """
    Dispose the engine and forget the singletons (for testing).

    WARNING: Only use in tests!
    """
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None
