"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine and session factory used by the engine,
    the FastAPI dependency for database access, and a dialect-aware
    "insert or ignore" helper.

WHY:
    - Every mutation path (merger, session linker, touchpoint replacement)
      runs as one multi-statement transaction on a Session from here
    - Natural-key idempotency (identity links, payments) relies on
      INSERT ... ON CONFLICT DO NOTHING, which both Postgres and SQLite support

USAGE:
    # FastAPI routers and ARQ jobs
    from leadgraph.database import get_db, SessionLocal

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_transaction.html
    - https://docs.sqlalchemy.org/en/20/dialects/postgresql.html#insert-on-conflict-upsert
"""

import os
from typing import Any, Dict, Generator

from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        # Attempt to load from local .env for developer convenience
        from leadgraph.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    if database_url.startswith("postgres://"):
        # Heroku-style URL
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# NOTE: SQLite engines (tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,           # Base pool size
        max_overflow=20,        # Allow up to 30 total connections under load
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in leadgraph.models to ensure a single registry across the app
from .models import Base  # noqa: E402,F401


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection.

    Example:
        @router.get("/contacts")
        def list_contacts(db: Session = Depends(get_db)):
            return db.query(Contact).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# DIALECT HELPERS
# =============================================================================

def insert_ignore(db: Session, model, values: Dict[str, Any], index_elements: list) -> bool:
    """INSERT a row unless it collides on `index_elements`.

    WHAT:
        Emits INSERT ... ON CONFLICT (cols) DO NOTHING for Postgres/SQLite.

    WHY:
        Two concurrent writers racing on the same natural key must both
        succeed without an IntegrityError aborting the whole transaction;
        the loser simply re-reads the winner's row.

    Returns:
        True if a row was inserted, False if it already existed.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values)
    else:
        raise NotImplementedError(f"insert_ignore not supported for dialect {dialect}")

    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    result = db.execute(stmt)
    return (result.rowcount or 0) > 0
