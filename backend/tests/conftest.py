"""Shared pytest fixtures for test suite"""
import os
import sys
from pathlib import Path
from typing import Generator
from unittest.mock import patch

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Settings are read at import time; pin the test environment first
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("AUTHZ_SERVICE_URL", "http://authz.test")
os.environ.setdefault("GATEWAY_RETRY_BACKOFF_SECONDS", "0")
os.environ.setdefault("LIMIT_LOCK_TIMEOUT", "1")

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from app.main import app
from app.db.session import get_db
from app.db import redis as redis_module
from app.models import Base
from app.models.donation import Donation
from app.models.states import LedgerEvent, AuditTrigger
from app.services import payment_gateway
from app.services.contribution_limit_service import set_limit
from app.services.donation_service import create_donation
from app.services.ledger_service import transition

from tests.factories import FakeGateway, donation_request, JURISDICTION, CYCLE


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Install fakeredis as the shared Redis client"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    redis_module.set_redis_client(fake_redis)
    try:
        yield fake_redis
    finally:
        redis_module.set_redis_client(None)


@pytest.fixture(scope="function")
def gateway() -> Generator[FakeGateway, None, None]:
    """Fake payment gateway returned by get_gateway()"""
    fake = FakeGateway()
    with patch.object(payment_gateway, "_default_gateway", fake):
        yield fake


@pytest.fixture(scope="function", autouse=True)
def capabilities():
    """Authorization service stub; grants everything unless a test says otherwise"""
    with patch("app.services.authorization_service.has_capability", return_value=True) as mock_check:
        yield mock_check


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis, gateway) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, fakeredis and fake gateway"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        with patch("app.main.init_db"):
            with TestClient(app) as test_client:
                yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def limit(db_session: Session, mock_redis):
    """Configure the default test window with a $2900 per-donor limit"""
    return set_limit(JURISDICTION, CYCLE, 290000, db_session)


@pytest.fixture(scope="function")
def make_donation(db_session: Session, mock_redis, gateway):
    """Create a donation through the service; the fake gateway leaves it processing"""
    def _make(**overrides) -> Donation:
        return create_donation(donation_request(**overrides), db_session)
    return _make


@pytest.fixture(scope="function")
def completed_donation(db_session: Session, make_donation):
    """Create a donation and apply its charge completion"""
    def _make(**overrides) -> Donation:
        donation = make_donation(**overrides)
        return transition(
            donation.id, LedgerEvent.CHARGE_COMPLETED, db_session,
            trigger=AuditTrigger.WEBHOOK, causing_event_id=f"evt_completed_{donation.id}"
        )
    return _make
