"""Shared pytest fixtures for test suite"""
import os
import sys
from pathlib import Path
from typing import Generator
from unittest.mock import AsyncMock, patch

import fakeredis
import pytest

# Point the app at an in-memory database before anything imports settings
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("AI_API_KEY", "test-key")

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from app.main import app
from app.db import redis as redis_module
from app.db.session import engine, get_db, SessionLocal
from app.models import Base
from app.models.user import User
from app.services.auth_service import create_user
from app.services.credit_service import get_or_create_user_credits

TEST_PASSWORD = "TestPassword123!"


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function", autouse=True)
def mock_redis():
    """Replace the Redis client with fakeredis"""
    fake_redis = fakeredis.FakeRedis(decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        yield fake_redis


@pytest.fixture(scope="function", autouse=True)
def mock_events():
    """Capture credit events instead of publishing them to Redis"""
    with patch("app.services.credit_pipeline.publish_credit_balance_changed", new_callable=AsyncMock) as balance_changed, \
            patch("app.services.credit_pipeline.publish_credits_low", new_callable=AsyncMock) as credits_low, \
            patch("app.services.credit_pipeline.publish_credits_insufficient", new_callable=AsyncMock) as insufficient:
        yield {
            "credit_balance_changed": balance_changed,
            "credits_low": credits_low,
            "credits_insufficient": insufficient,
        }


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked Redis"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Session is closed by the db_session fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        with patch("app.main.init_db"), \
                patch("app.main.instrument_sqlalchemy"), \
                patch("app.main.credit_expiry_scheduler_task", new_callable=AsyncMock):
            with TestClient(app, raise_server_exceptions=False) as test_client:
                yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    """User with the signup bonus"""
    return create_user(email="student@example.com", password=TEST_PASSWORD, db=db_session)


@pytest.fixture(scope="function")
def test_user_2(db_session: Session) -> User:
    """Second user for isolation tests"""
    return create_user(email="student2@example.com", password=TEST_PASSWORD, db=db_session)


@pytest.fixture(scope="function")
def admin_user(db_session: Session) -> User:
    return create_user(email="admin@example.com", password=TEST_PASSWORD, db=db_session, is_admin=True)


def login(client: TestClient, user: User) -> TestClient:
    response = client.post("/api/auth/login", json={"email": user.email, "password": TEST_PASSWORD})
    assert response.status_code == 200
    return client


@pytest.fixture(scope="function")
def authenticated_client(client: TestClient, test_user: User) -> TestClient:
    """Client logged in as test_user"""
    return login(client, test_user)


@pytest.fixture(scope="function")
def admin_client(client: TestClient, admin_user: User) -> TestClient:
    """Client logged in as an admin"""
    return login(client, admin_user)


@pytest.fixture(scope="function")
def funded_user(db_session: Session) -> User:
    """User with a plain purchased balance and no signup bonus"""
    user = User(email="funded@example.com", password_hash="x")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    get_or_create_user_credits(user.id, db_session)
    return user

