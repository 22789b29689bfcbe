# telemed/database.py
import logging
from typing import Iterator, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import get_settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(
        database_url,
        pool_pre_ping=True,
        echo=False,
        connect_args=connect_args,
    )


# Engine only exists when a database is configured; otherwise the services
# run against the local fallback store.
engine: Optional[Engine] = build_engine(get_settings().database_url) if get_settings().database_configured else None

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()


def is_database_configured() -> bool:
    return engine is not None


# Dependency to get database session
def get_db() -> Iterator[Optional[Session]]:
    if engine is None:
        yield None
        return
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Keeps two blocking bookings of one doctor from overlapping at the database level.
NO_OVERLAP_CONSTRAINT = "appointments_no_overlap"
NO_OVERLAP_DDL = f"""
ALTER TABLE appointments ADD CONSTRAINT {NO_OVERLAP_CONSTRAINT}
EXCLUDE USING gist (
    doctor_id WITH =,
    tstzrange(scheduled_at, ends_at, '[)') WITH &&
) WHERE (status IN ('pending_payment', 'scheduled', 'confirmed'))
"""


def create_tables(bind: Optional[Engine] = None):
    """Create all database tables - MUST import models first!"""
    from . import models  # noqa: F401  registers the mappers on Base.metadata

    bind = bind or engine
    if bind is None:
        logger.warning("DATABASE_URL not configured; skipping table creation (local fallback mode).")
        return

    Base.metadata.create_all(bind=bind)
    logger.info("Database tables created successfully")

    if bind.dialect.name != "postgresql":
        return
    # Lightweight migration: install the exclusion constraint if missing
    try:
        inspector = inspect(bind)
        if "appointments" in inspector.get_table_names():
            with bind.begin() as conn:
                exists = conn.execute(
                    text("SELECT 1 FROM pg_constraint WHERE conname = :name"),
                    {"name": NO_OVERLAP_CONSTRAINT},
                ).first()
                if not exists:
                    conn.execute(text("CREATE EXTENSION IF NOT EXISTS btree_gist"))
                    conn.execute(text(NO_OVERLAP_DDL))
                    logger.info("Installed %s exclusion constraint", NO_OVERLAP_CONSTRAINT)
    except Exception as e:
        # Non-fatal: the application-level conflict check still runs
        logger.warning(f"Could not install {NO_OVERLAP_CONSTRAINT}: {e}")


def drop_tables(bind: Optional[Engine] = None):
    """Drop all database tables"""
    bind = bind or engine
    if bind is not None:
        Base.metadata.drop_all(bind=bind)
        logger.info("Database tables dropped successfully")
