"""Database connection and session management for apprep."""

import logging
import os
from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from .models import Base

logger = logging.getLogger(__name__)

# PostgreSQL in production, SQLite for local development
RAW_DATABASE_URL = (
    os.environ.get("DATABASE_URL")
    or os.environ.get("POSTGRES_URL")
    or "sqlite:///apprep.db"
)

# Fix URL scheme for SQLAlchemy 2.0 (some hosts hand out postgres://)
DATABASE_URL = RAW_DATABASE_URL.replace("postgres://", "postgresql://", 1)

if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
    logger.info(f"Using SQLite: {DATABASE_URL}")
else:
    engine = create_engine(
        DATABASE_URL,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )
    logger.info(f"Using PostgreSQL: {DATABASE_URL.split('@')[-1] if '@' in DATABASE_URL else 'localhost'}")

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_database(bind=None):
    """Create all tables if they don't exist."""
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables created/verified")


@contextmanager
def get_db():
    """Session for code outside a request handler, such as the health check."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_db_dependency():
    """Per-request session for FastAPI endpoints (`Depends(get_db_dependency)`)."""
    with get_db() as db:
        yield db
