"""
Database schema setup for pgshuttle.
"""

import logging
from sqlalchemy import inspect
from sqlalchemy.exc import OperationalError
from pgshuttle import db

logger = logging.getLogger(__name__)


def init_database_schema(app):
    """
    Create the run history tables if they don't exist yet.

    Safe to call from more than one process at startup.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = inspector.get_table_names()

        if 'pipeline_runs' in existing_tables:
            logger.info("Run history schema already present")
            return

        logger.info("No run history table found - creating database schema")
        try:
            db.create_all()
            logger.info("Database schema created successfully")
        except OperationalError as e:
            # Another process created the tables first
            logger.warning(f"Schema creation raced with another process: {e}")
