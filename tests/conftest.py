"""
Pytest configuration and fixtures for testing.

This file provides reusable test fixtures for:
- Database setup/teardown
- FastAPI test client
- A fresh rate limiter per test
- A fake email service that records sent codes
"""

import os

# Settings are read at import time, so configure before importing the app
os.environ.setdefault("OTP_TOKEN_SECRET", "test-otp-secret")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("JSON_LOGS", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base, get_db
from app.core.rate_limiter import RateLimiter, get_rate_limiter
from app.models.subscriber import Subscriber
from app.services.email_service import get_email_service
from main import app


# Use in-memory SQLite for testing (fast, isolated)
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

CLIENT_IP = "203.0.113.5"


class FakeEmailService:
    """Records OTP emails instead of calling SES"""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send_otp_email(self, to_email, code, first_name=None, expires_in_minutes=2):
        if self.fail:
            return False
        self.sent.append({
            "to_email": to_email,
            "code": code,
            "first_name": first_name,
            "expires_in_minutes": expires_in_minutes,
        })
        return True

    @property
    def last_code(self):
        return self.sent[-1]["code"]


class FakeClock:
    """Controllable epoch-millisecond clock"""

    def __init__(self, start=1_700_000_000_000):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


@pytest.fixture
def db_session():
    """
    Create a fresh database session for each test.
    Tables are dropped after the test completes.
    """
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def fake_email():
    return FakeEmailService()


@pytest.fixture
def limiter():
    return RateLimiter()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client(db_session, fake_email, limiter):
    """
    FastAPI test client with database, email and rate limiter overridden.
    """
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_email_service] = lambda: fake_email
    app.dependency_overrides[get_rate_limiter] = lambda: limiter

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def ip_headers():
    """Headers that make requests come from a non-local client (so limits apply)"""
    return {"X-Forwarded-For": CLIENT_IP}


@pytest.fixture
def subscriber(db_session):
    """An existing subscriber on the mailing list"""
    sub = Subscriber(email="ada@example.com", name="Ada Lovelace", phone=None, tier=None)
    db_session.add(sub)
    db_session.commit()
    db_session.refresh(sub)
    return sub
