"""
Database schema bootstrap for tenant-backup.

Creates the application's own tables (users, backup runs) without requiring Alembic.
Tenant record sets live in their own schema and are never touched here.
"""

import logging
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from tenant_backup import db

logger = logging.getLogger(__name__)


def init_database_schema(app):
    """
    Create any application tables that do not exist yet.

    Safe to call from multiple Gunicorn workers: a table created concurrently by
    another worker is simply reported and skipped.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = set(inspector.get_table_names())

        missing = [
            table for name, table in db.metadata.tables.items()
            if name not in existing_tables
        ]
        if not missing:
            logger.debug("Database schema up to date")
            return

        logger.info(f"Creating tables: {', '.join(t.name for t in missing)}")
        try:
            db.metadata.create_all(db.engine, tables=missing)
            logger.info("Database schema created successfully")
        except SQLAlchemyError as e:
            # Another worker may have beaten us to it
            logger.error(f"Failed to create database schema: {e}")
