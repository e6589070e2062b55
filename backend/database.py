"""
Shared Database Configuration

Centralized database connection management with environment variable support.
Engines receive a Session from here (or from the caller) per invocation.
"""

import os
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool, QueuePool
from typing import Generator, Optional

# Get database URL from environment variable, fallback to SQLite for development
SQLALCHEMY_DATABASE_URL = os.getenv(
    "SQLALCHEMY_DATABASE_URL",
    "sqlite:///./ledger_integrity.db"
)


def build_engine(url: str) -> Engine:
    """Create an engine with pool settings suited to the backend."""
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)

    if url.startswith("sqlite"):
        # SQLite configuration (development and tests)
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            pool_pre_ping=True,
            echo=False,
        )

    # PostgreSQL/Production configuration with connection pooling
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "20")),
        pool_pre_ping=True,  # Verify connections before using
        pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "3600")),
        echo=False,
    )


engine = build_engine(SQLALCHEMY_DATABASE_URL)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Yield a session for one engine invocation.
    Rolls back on error and always closes.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind: Optional[Engine] = None):
    """Create the report tables. Call this on service startup."""
    import integrity_models
    integrity_models.Base.metadata.create_all(bind=bind or engine)
