"""
Database connection management for the indexer's application store.
Provides connection pooling, session management, and connection utilities.
"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import QueuePool, StaticPool
from sqlmodel import Session, SQLModel
from tenacity import retry, stop_after_attempt, wait_exponential

from ..config.settings import Settings, get_settings
# Register tables on SQLModel.metadata
from .. import models  # noqa: F401

logger = logging.getLogger(__name__)


class DatabaseConnection:
    """Application store connection manager with connection pooling and retry logic."""

    def __init__(self, database_url: Optional[str] = None, settings: Optional[Settings] = None):
        """Initialize database connection manager.

        Args:
            database_url: SQLAlchemy URL. If None, builds from environment variables.
            settings: Settings instance, defaults to the global one.
        """
        self.settings = settings or get_settings()
        self.database_url = database_url or self.settings.get_database_url()
        self.engine: Optional[Engine] = None
        self._setup_engine()

    def _setup_engine(self):
        """Setup SQLAlchemy engine with connection pooling."""
        url = make_url(self.database_url)
        db_config = self.settings.database

        if url.get_backend_name() == "sqlite":
            # Local development and tests; one shared connection for in-memory databases
            self.engine = create_engine(
                url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
                echo=db_config.echo,
            )
        else:
            self.engine = create_engine(
                url,
                poolclass=QueuePool,
                pool_size=db_config.pool_size,
                max_overflow=db_config.max_overflow,
                pool_pre_ping=True,
                pool_recycle=db_config.pool_recycle_hours * 3600,
                echo=db_config.echo,
                connect_args={
                    "connect_timeout": db_config.connection_timeout_seconds,
                    "application_name": "solana_indexer"
                }
            )

        @event.listens_for(self.engine, "connect")
        def on_connect(dbapi_conn, connection_record):
            logger.debug(f"New database connection established: {connection_record}")

        @event.listens_for(self.engine, "checkout")
        def on_checkout(dbapi_conn, connection_record, connection_proxy):
            logger.debug("Connection checked out from pool")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True
    )
    def test_connection(self) -> bool:
        """Test database connection with retry logic.

        Returns:
            True if connection successful, raises exception if failed.
        """
        try:
            with self.engine.connect() as conn:
                result = conn.execute(text("SELECT 1")).fetchone()
                logger.info("Database connection test successful")
                return result[0] == 1
        except SQLAlchemyError as e:
            logger.error(f"Database connection test failed: {e}")
            raise

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Get database session with automatic cleanup.

        Yields:
            SQLModel Session instance
        """
        session = Session(self.engine, expire_on_commit=False)
        try:
            yield session
        except Exception as e:
            logger.error(f"Database session error: {e}")
            session.rollback()
            raise
        finally:
            session.close()

    def create_all_tables(self):
        """Create all tables defined in SQLModel metadata."""
        try:
            SQLModel.metadata.create_all(self.engine)
            logger.info("All database tables created successfully")
        except SQLAlchemyError as e:
            logger.error(f"Failed to create database tables: {e}")
            raise

    def get_pool_status(self) -> dict:
        """Get connection pool status for monitoring.

        Returns:
            Dictionary with pool statistics
        """
        if not self.engine or not isinstance(self.engine.pool, QueuePool):
            return {"status": "no_pool"}

        pool = self.engine.pool
        return {
            "pool_size": pool.size(),
            "checked_in": pool.checkedin(),
            "checked_out": pool.checkedout(),
            "overflow": pool.overflow(),
        }

    def dispose(self):
        if self.engine:
            self.engine.dispose()


# Global database connection instance
_db_connection: Optional[DatabaseConnection] = None


def get_database_connection() -> DatabaseConnection:
    """Get the global database connection instance.

    Returns:
        DatabaseConnection instance
    """
    global _db_connection
    if _db_connection is None:
        _db_connection = DatabaseConnection()
    return _db_connection


def health_check(db: Optional[DatabaseConnection] = None) -> dict:
    """Perform database health check.

    Returns:
        Dictionary with health status and metrics
    """
    try:
        db = db or get_database_connection()
        connection_ok = db.test_connection()
        pool_status = db.get_pool_status()

        return {
            "status": "healthy" if connection_ok else "unhealthy",
            "connection_test": connection_ok,
            "pool_status": pool_status,
            "database_host": make_url(db.database_url).host or "local",
        }
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return {
            "status": "unhealthy",
            "error": str(e),
            "connection_test": False
        }
