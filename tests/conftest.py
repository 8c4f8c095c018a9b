"""
Pytest configuration and fixtures for the catalog site backend tests

This file ensures:
1. Clean database state for each test
2. Proper test isolation
3. A SecurityConfig tuned for fast, deterministic tests
"""
from typing import List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.catalog_app.models.database import Base, User
from src.catalog_app.models import audit_log, security  # noqa: F401  (register tables)
from src.api.main import app
from src.api.dependencies import get_db, get_security_config
from src.catalog_app.services.auth_service import get_password_hash
from src.catalog_app.services.challenge_service import ChallengeResult, ChallengeVerifier
from src.catalog_app.services.security_config import SecurityConfig


class FakeVerifier(ChallengeVerifier):
    """Challenge verifier that accepts a fixed set of tokens and records calls."""

    def __init__(self, valid_tokens=("good-token",), score: Optional[float] = 0.9):
        self.valid_tokens = set(valid_tokens)
        self.score = score
        self.calls: List[Tuple[str, Optional[str]]] = []

    def verify(self, token: str, remote_ip: Optional[str] = None) -> ChallengeResult:
        self.calls.append((token, remote_ip))
        if token in self.valid_tokens:
            return ChallengeResult(ok=True, score=self.score)
        return ChallengeResult.failed("rejected")


@pytest.fixture(scope="function")
def test_db_engine():
    """
    Create a fresh in-memory SQLite database for each test.
    This ensures complete isolation between tests.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_db_session(test_db_engine):
    """Create a database session for testing."""
    TestingSessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )

    session = TestingSessionLocal()

    yield session

    session.close()


@pytest.fixture(scope="function")
def security_config():
    """Default thresholds, no adaptive delay, no probabilistic purge, no reCAPTCHA."""
    return SecurityConfig(adaptive_delay=False, purge_probability=0)


@pytest.fixture(scope="function")
def fake_verifier():
    return FakeVerifier()


@pytest.fixture(scope="function")
def challenge_config(security_config, fake_verifier):
    return security_config.with_overrides(
        challenge_verifier=fake_verifier, challenge_site_key="test-site-key"
    )


@pytest.fixture(autouse=False)
def setup_test_db(test_db_session, security_config):
    """
    Configure FastAPI app to use the test database and test SecurityConfig.
    Use this fixture in test files that need API testing.
    """
    def override_get_db():
        try:
            yield test_db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_security_config] = lambda: security_config

    yield

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def use_security_config(setup_test_db):
    """Swap the SecurityConfig the app hands to handlers for this test."""
    def apply(config: SecurityConfig) -> SecurityConfig:
        app.dependency_overrides[get_security_config] = lambda: config
        return config

    return apply


@pytest.fixture(autouse=True)
def reset_production_db():
    """
    Prevent tests from accidentally using the production database.
    This fixture runs automatically for all tests.
    """
    import os
    original_env = os.environ.get('DATABASE_URL')
    original_testing = os.environ.get('TESTING')

    # Force test environment (disables the slowapi limiter)
    os.environ['DATABASE_URL'] = 'sqlite:///:memory:'
    os.environ['TESTING'] = '1'

    yield

    if original_env:
        os.environ['DATABASE_URL'] = original_env
    elif 'DATABASE_URL' in os.environ:
        del os.environ['DATABASE_URL']

    if original_testing:
        os.environ['TESTING'] = original_testing
    elif 'TESTING' in os.environ:
        del os.environ['TESTING']


@pytest.fixture(scope="session")
def test_password():
    """Return a consistent password for all test users."""
    return "TestPassword123"


def _make_user(db, username: str, password: str, role: str, is_active: bool = True) -> User:
    user = User(
        username=username,
        password_hash=get_password_hash(password),
        role=role,
        is_active=is_active,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture(scope="function")
def admin_user(test_db_session, test_password):
    """Create an admin user for testing."""
    return _make_user(test_db_session, "admin_test", test_password, "admin")


@pytest.fixture(scope="function")
def regular_user(test_db_session, test_password):
    """Create a regular user for testing."""
    return _make_user(test_db_session, "user_test", test_password, "user")


@pytest.fixture(scope="function")
def inactive_user(test_db_session, test_password):
    return _make_user(test_db_session, "disabled_test", test_password, "user", is_active=False)


@pytest.fixture(scope="function")
def client(setup_test_db):
    """Fresh client (empty cookie jar) bound to the test database."""
    return TestClient(app)


def _login(client: TestClient, username: str, password: str, **extra):
    csrf_token = client.get("/api/auth/login").json()["csrf_token"]
    body = {"username": username, "password": password, "csrf_token": csrf_token}
    body.update(extra)
    return client.post("/api/auth/login", json=body)


@pytest.fixture(scope="function")
def login():
    """GET the login page for a CSRF token, then POST the credentials."""
    return _login


@pytest.fixture(scope="function")
def admin_client(client, admin_user, test_password):
    """Client logged in as the admin; .csrf holds the post-login token."""
    response = _login(client, admin_user.username, test_password)
    assert response.status_code == 200, response.text
    client.csrf = response.json()["new_csrf_token"]
    return client


@pytest.fixture(scope="function")
def user_client(client, regular_user, test_password):
    response = _login(client, regular_user.username, test_password)
    assert response.status_code == 200, response.text
    client.csrf = response.json()["new_csrf_token"]
    return client
