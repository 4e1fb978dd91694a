"""
Gatekeeper - Test Configuration

Pytest fixtures for authentication testing.
Provides in-memory database, seeded demo tenant, orchestrator and client.
"""

import os

# Must be set before gatekeeper.config is imported
os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-long-enough-for-hs256")
os.environ.setdefault("BCRYPT_WORK_FACTOR", "4")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import timedelta
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

from gatekeeper.app import create_app
from gatekeeper.auth.database import get_engine, get_session_factory, init_db
from gatekeeper.auth.lockout import LockoutPolicy
from gatekeeper.auth.models import Tenant
from gatekeeper.auth.seed import seed_demo_tenant
from gatekeeper.auth.service import AuthService
from gatekeeper.auth.tokens import JoseSigner, TokenIssuer
from gatekeeper.gateway.ratelimit import MemoryRateLimitStore


TEST_SECRET = os.environ["SECRET_KEY"]

DEMO_TENANT = "demo"
DEMO_EMAIL = "admin@demo.com"
DEMO_PASSWORD = "admin123"


@pytest.fixture(scope="function")
def test_engine():
    """Create a fresh in-memory database for each test."""
    engine = get_engine("sqlite://")
    init_db(engine)

    yield engine

    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    return get_session_factory(test_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a database session for testing."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def demo_tenant(db_session) -> Tenant:
    """Tenant ``demo`` with system roles and admin@demo.com / admin123."""
    return seed_demo_tenant(db_session)


@pytest.fixture(scope="function")
def issuer() -> TokenIssuer:
    return TokenIssuer(
        JoseSigner(TEST_SECRET),
        access_ttl=timedelta(minutes=60),
        refresh_ttl=timedelta(days=7),
    )


@pytest.fixture(scope="function")
def service(session_factory, issuer) -> AuthService:
    return AuthService(
        session_factory,
        issuer,
        LockoutPolicy(threshold=5, duration=timedelta(minutes=15)),
    )


@pytest.fixture(scope="function")
def app(test_engine):
    return create_app(engine=test_engine, rate_limit_store=MemoryRateLimitStore())


@pytest.fixture(scope="function")
def client(app, demo_tenant) -> Generator[TestClient, None, None]:
    """Test client over the seeded in-memory database."""
    with TestClient(app) as c:
        yield c


def login_user(client: TestClient, email: str = DEMO_EMAIL, password: str = DEMO_PASSWORD, tenant: str = DEMO_TENANT):
    """Helper function to login and return the response."""
    return client.post(
        "/api/v1/auth/login",
        json={"tenant_code": tenant, "email": email, "password": password},
    )


def auth_headers(access_token: str) -> dict:
    """Create authorization headers for authenticated requests."""
    return {"Authorization": f"Bearer {access_token}"}
