"""
Database table initialization script.
Creates the application store tables defined in SQLModel schemas.
"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from .connection import DatabaseConnection, get_database_connection

logger = logging.getLogger(__name__)


def init_database(db: Optional[DatabaseConnection] = None) -> dict:
    """Create target_connections, indexing_configs and audit_records if missing."""
    logger.info("Initializing database schema...")
    db = db or get_database_connection()

    try:
        db.create_all_tables()
    except SQLAlchemyError as e:
        logger.error(f"Database initialization failed: {e}")
        return {"status": "failed", "message": "Table creation failed"}

    logger.info("Database initialization completed successfully")
    return {"status": "success", "message": "All tables created"}


if __name__ == "__main__":
    from ..config.settings import configure_logging
    configure_logging()
    result = init_database()
    print(f"Database initialization: {result}")
