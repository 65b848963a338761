"""Database session management and engine configuration.

This module provides the SQLAlchemy engine and session management utilities.
It centralizes database connection configuration and provides dependency injection
helpers for FastAPI endpoints.
"""

from typing import Generator

from loguru import logger
from sqlmodel import Session, create_engine
from sqlalchemy.pool import NullPool

from app.config import DATA_DIR

DATABASE_URL = f"sqlite:///{(DATA_DIR / 'streamrelay.db').as_posix()}"
logger.debug(f"DATABASE_URL: {DATABASE_URL}")

# - check_same_thread=False: sessions are opened from worker threads
# - NullPool: connections close with their session (SQLite)
engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=NullPool,
    echo=False,
)
logger.debug("SQLModel engine created.")


def get_session() -> Generator[Session, None, None]:
    """Dependency for FastAPI endpoints to get a database session.

    Yields:
        Session: A SQLModel session, closed after the request completes.
    """
    logger.trace("Creating new DB session.")
    try:
        with Session(engine) as session:
            yield session
    except Exception as e:
        logger.error(f"Error in DB session: {e}")
        raise


def dispose_engine() -> None:
    """Dispose the global SQLAlchemy engine to close any pooled connections.

    Should be called during application shutdown.
    """
    try:
        engine.dispose()
        logger.debug("SQLAlchemy engine disposed.")
    except Exception as e:
        logger.warning(f"Engine dispose error: {e}")


__all__ = ["engine", "get_session", "dispose_engine", "DATABASE_URL"]
