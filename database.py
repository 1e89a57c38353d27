"""
Database connection and session management for DoseKeeper
"""

import logging
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
from contextlib import contextmanager
from typing import Generator

from config import settings


logger = logging.getLogger(__name__)


def _configure_sqlite_connection(dbapi_connection, connection_record):
    # SQLAlchemy emits BEGIN itself so SAVEPOINTs behave
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _begin_sqlite_transaction(conn):
    conn.exec_driver_sql("BEGIN")


def build_engine(database_url: str, echo: bool = False):
    """Create an engine with SQLite or pooled server settings"""
    if database_url.startswith("sqlite"):
        options = {}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, or each session would see an empty database
            options["poolclass"] = StaticPool
        new_engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=echo,
            **options
        )
        event.listen(new_engine, "connect", _configure_sqlite_connection)
        event.listen(new_engine, "begin", _begin_sqlite_transaction)
        return new_engine

    # PostgreSQL or other databases
    return create_engine(
        database_url,
        echo=echo,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True
    )


engine = build_engine(settings.DATABASE_URL, settings.DATABASE_ECHO)

# Create session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)

# Base class for ORM models
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for FastAPI routes to get database session.
    Automatically closes session after request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """
    Context manager for database session.
    Use this for scheduled jobs and other non-FastAPI contexts.

    Usage:
        with get_db_context() as db:
            db.query(DoseInstance).all()
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db() -> None:
    """
    Initialize database tables.
    Creates all tables defined in models.
    """
    # Import models to register them with Base
    import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info(f"Database initialized at: {settings.DATABASE_URL}")


def drop_db() -> None:
    """
    Drop all database tables.
    WARNING: This will delete all data!
    """
    Base.metadata.drop_all(bind=engine)
    logger.warning("All database tables dropped")


class DatabaseHealthCheck:
    """Database health check utilities"""

    @staticmethod
    def is_connected() -> bool:
        """Check if database is connected"""
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception:
            logger.exception("Database health check failed")
            return False


# Export commonly used items
__all__ = [
    "engine",
    "SessionLocal",
    "Base",
    "build_engine",
    "get_db",
    "get_db_context",
    "init_db",
    "drop_db",
    "DatabaseHealthCheck"
]
