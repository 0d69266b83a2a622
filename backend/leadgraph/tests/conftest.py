"""Pytest configuration for leadgraph integration tests

WHAT: Shared fixtures for DB-backed service tests and HTTP endpoint tests
WHY: Every test gets an isolated in-memory database and an in-process lock table
REFERENCES:
    - leadgraph/main.py: FastAPI application
    - leadgraph/database.py: Database configuration
    - leadgraph/deps.py: Dependency injection
"""

import os
import itertools
from datetime import datetime, date
from decimal import Decimal
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

# Set test environment before any leadgraph import
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("LOCK_BACKEND", "local")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.pop("SENTRY_DSN", None)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite shared across threads (TestClient runs handlers in a threadpool)."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from leadgraph.database import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Database session for one test."""
    SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )

    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def locks():
    from leadgraph.services.named_lock import LocalNamedLockProvider
    return LocalNamedLockProvider()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session, locks):
    """FastAPI test application bound to the test session and lock table."""
    from leadgraph.main import create_app
    from leadgraph.database import get_db
    from leadgraph.deps import get_lock_provider

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_lock_provider] = lambda: locks

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


# ============================================================================
# Model Factories
# ============================================================================

@pytest.fixture
def make_contact(test_db_session):
    """Create and commit a Contact; defaults can be overridden per field."""
    from leadgraph.models import Contact

    counter = itertools.count(1)

    def _make(**fields):
        n = next(counter)
        fields.setdefault("contact_id", f"cntct_test{n:012d}")
        fields.setdefault("status", "lead")
        fields.setdefault("created_at", datetime(2025, 1, 10, 12, 0, 0))
        contact = Contact(**fields)
        test_db_session.add(contact)
        test_db_session.commit()
        return contact

    return _make


@pytest.fixture
def make_session(test_db_session):
    """Create and commit a TrackingSession."""
    from leadgraph.models import TrackingSession

    counter = itertools.count(1)

    def _make(visitor_id, started_at, **fields):
        n = next(counter)
        fields.setdefault("session_id", f"sess_{n:04d}")
        session = TrackingSession(visitor_id=visitor_id, started_at=started_at, **fields)
        test_db_session.add(session)
        test_db_session.commit()
        return session

    return _make


@pytest.fixture
def make_touchpoint(test_db_session):
    """Create and commit an AdTouchpoint."""
    from leadgraph.models import AdTouchpoint

    def _make(ad_id, day: date, **fields):
        fields.setdefault("campaign_id", f"cmp_{ad_id}")
        fields.setdefault("adset_id", f"as_{ad_id}")
        fields.setdefault("spend", Decimal("10.00"))
        touchpoint = AdTouchpoint(ad_id=ad_id, date=day, **fields)
        test_db_session.add(touchpoint)
        test_db_session.commit()
        return touchpoint

    return _make
