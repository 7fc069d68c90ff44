from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from fastapi import HTTPException
from loguru import logger
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from app.config.settings import settings


def _is_postgresql(database_url: str) -> bool:
    lowered = database_url.lower()
    return "postgresql" in lowered or "postgres" in lowered


def _validate_postgresql_driver() -> None:
    """Validate PostgreSQL driver is installed when using PostgreSQL.

    Must actually import psycopg2 (not just check spec) because SQLAlchemy
    will try to import it when creating the engine.
    """
    try:
        import psycopg2  # noqa: F401

        logger.info("PostgreSQL driver (psycopg2) is available")
    except ImportError as e:
        logger.error(
            "⚠️ CRITICAL: PostgreSQL driver (psycopg2) is not installed!\n"
            "Install it with: pip install psycopg2-binary"
        )
        raise ImportError("PostgreSQL driver required. Install with: pip install psycopg2-binary") from e


# Lazy initialization to avoid import-time database connections
_engine = None
_SessionLocal = None


def _get_engine():
    """Get or create the database engine (lazy initialization)."""
    global _engine
    if _engine is None:
        logger.info(f"Initializing database engine: {settings.database_url}")

        connect_args = {}
        if _is_postgresql(settings.database_url):
            _validate_postgresql_driver()
            connect_args = {
                "connect_timeout": 10,
                "application_name": "execution-report",
            }
        elif "sqlite" in settings.database_url.lower():
            logger.warning("Using SQLite database (local development only)")
            connect_args = {"check_same_thread": False}

        _engine = create_engine(
            settings.database_url,
            connect_args=connect_args,
            echo=False,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
        logger.info("Database engine initialized")
    return _engine


def get_engine():
    """Get or create the database engine (public API)."""
    return _get_engine()


def _get_session_local():
    """Get or create the session factory (lazy initialization)."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
        logger.info("Database session factory initialized")
    return _SessionLocal


def init_db() -> None:
    """Create all tables if they do not exist."""
    from app.db.models import Base

    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    logger.info("Database tables verified")


def get_db() -> Generator[Session, None, None]:
    """Get database session for FastAPI dependencies.

    For non-FastAPI code that needs a context manager, use get_session() instead.

    Yields:
        Session: SQLAlchemy database session
    """
    session = _get_session_local()()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Get database session context manager.

    Commits on success, rolls back on any exception. Closing the session ends
    the transaction, which releases row locks and transaction-scoped advisory
    locks taken inside it.
    """
    session = _get_session_local()()
    try:
        yield session
        session.commit()
    except HTTPException:
        logger.debug("HTTPException in session, rolling back")
        session.rollback()
        raise
    except Exception as e:
        logger.error(f"Database session error, rolling back: {e}. Error type: {type(e).__name__}")
        session.rollback()
        raise
    finally:
        session.close()
