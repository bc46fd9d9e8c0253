"""
Engine and session handling for the eligibility store.

Request handlers get a session per request through get_db_session; the
reconciliation job and startup hooks use session_scope. Every write path in
the services commits or rolls back explicitly, so sessions here never
autocommit and never autoflush.

Usage:
    from billing_engine.database.session import get_db_session

    @router.get("/entitlements/{account_id}")
    async def get_entitlements(account_id: str, db: Session = Depends(get_db_session)):
        ...
"""

import logging
import os
from contextlib import contextmanager
from typing import Generator, Iterator, Optional

from fastapi import HTTPException, status
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from billing_engine.db_base import Base

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


class DatabaseNotConfiguredError(RuntimeError):
    """DATABASE_URL is missing."""


def database_url() -> str:
    """
    DATABASE_URL with the legacy postgres:// scheme rewritten.

    Raises:
        DatabaseNotConfiguredError: DATABASE_URL is not set
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise DatabaseNotConfiguredError("DATABASE_URL environment variable is not set")
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def get_engine() -> Engine:
    """
    Engine singleton.

    SQLite is opened with check_same_thread disabled since sync dependencies
    run in FastAPI's threadpool. Other backends get a small pre-pinged pool.
    """
    global _engine
    if _engine is None:
        url = database_url()
        if url.startswith("sqlite"):
            _engine = create_engine(url, connect_args={"check_same_thread": False})
        else:
            _engine = create_engine(
                url,
                pool_size=5,
                max_overflow=10,
                pool_pre_ping=True,
                pool_recycle=1800,
            )
        logger.info("Database engine created", extra={"dialect": _engine.dialect.name})
    return _engine


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _session_factory


def create_tables() -> None:
    """Create missing tables (AUTO_CREATE_TABLES)."""
    import billing_engine.models  # noqa: F401 - registers tables on Base

    Base.metadata.create_all(bind=get_engine())
    logger.info("Database tables ensured")


def get_db_session() -> Generator[Session, None, None]:
    """
    FastAPI dependency: one session per request.

    Raises:
        HTTPException: 503 when DATABASE_URL is not configured
    """
    try:
        factory = get_session_factory()
    except DatabaseNotConfiguredError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured",
        )

    session = factory()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """
    Session for jobs and startup hooks.

    Anything left uncommitted when the block raises is rolled back.
    """
    session = get_session_factory()()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def reset_engine() -> None:
    """Dispose the engine and drop the cached factory (tests)."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
