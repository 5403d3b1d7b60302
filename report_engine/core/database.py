# report_engine/core/database.py
"""Database configuration: config database for engine state, data warehouse for reportable fleet data."""

import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from report_engine.core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

# ===== CONFIG DATABASE =====
# Stores saved reports, execution records, cache entries and the audit log.
DATABASE_URL = settings.database_url

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


# ===== DATA WAREHOUSE DATABASE =====
# Read-only source of the reportable fleet tables (orders, drivers, vehicles, ...).
DATA_WAREHOUSE_URL = settings.data_warehouse_url

dw_engine = create_engine(
    DATA_WAREHOUSE_URL,
    connect_args={"check_same_thread": False} if DATA_WAREHOUSE_URL.startswith("sqlite") else {},
)
DWSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=dw_engine)


# ===== SESSION GENERATORS =====


def get_db():
    """Get config database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_dw_db():
    """Get data warehouse database session."""
    db = DWSessionLocal()
    try:
        yield db
    finally:
        db.close()


# ===== TABLE CREATION =====


def create_all_tables():
    """Create the engine's own tables in the config database."""
    # Import models to ensure they're registered with Base
    from report_engine.reporting.models import Report, ReportExecution, ReportCacheEntry, ReportAuditLog  # noqa: F401

    logger.info("Creating config database tables...")
    Base.metadata.create_all(bind=engine)


def drop_all_tables():
    """Drop the engine's tables in the config database (use with caution!)."""
    from report_engine.reporting.models import Report, ReportExecution, ReportCacheEntry, ReportAuditLog  # noqa: F401

    logger.warning("Dropping config database tables...")
    Base.metadata.drop_all(bind=engine)


def init_db(force_recreate: bool = False):
    """Initialize the config database."""
    if force_recreate:
        drop_all_tables()
    create_all_tables()
    logger.info("Report engine database initialization complete")


if __name__ == "__main__":
    init_db()
