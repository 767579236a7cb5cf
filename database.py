"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the held-funds settlement core.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import OperationalError
from config import Config
from models import Base

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")


def _engine_options(database_url: str) -> Dict[str, Any]:
    """Engine options for the configured backend"""
    if database_url.startswith("sqlite"):
        # SQLite: single file, shared between scheduler and request threads
        return {
            "connect_args": {"check_same_thread": False},
            "echo": Config.DATABASE_ECHO,
        }
    return {
        "pool_size": 7,
        "max_overflow": 15,
        "pool_pre_ping": True,   # Validate connections before use
        "pool_recycle": 3600,    # Recycle connections every hour
        "pool_timeout": 30,
        "echo": Config.DATABASE_ECHO,
    }


engine = create_engine(Config.DATABASE_URL, **_engine_options(Config.DATABASE_URL))

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)


def create_tables():
    """Create all settlement tables if they do not exist"""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("✅ DATABASE: Settlement tables created/verified")
    except OperationalError as e:
        logger.error(f"❌ DATABASE: Table creation failed: {e}")
        raise


def get_session() -> Session:
    """Get a new database session (caller closes it)"""
    return SessionLocal()


@contextmanager
def managed_session() -> Generator[Session, None, None]:
    """
    Context manager for a database session.

    Rolls back on error and always closes. Services commit their own
    units of work, so nothing is committed here.
    """
    session = SessionLocal()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def check_connection() -> bool:
    """Check that the database answers a trivial query"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True
    except OperationalError as e:
        logger.error(f"❌ DATABASE: Connection test failed: {e}")
        return False
