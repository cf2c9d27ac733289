"""Shared pytest fixtures for test suite"""
import asyncio
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Dict, Generator, Optional
from unittest.mock import AsyncMock, patch

import fakeredis
import pytest
from cryptography.fernet import Fernet

# Settings are read once at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", secrets.token_urlsafe(32))
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("VIDEO_PLATFORM_CLIENT_ID", "video-client-id")
os.environ.setdefault("VIDEO_PLATFORM_CLIENT_SECRET", "video-client-secret")
os.environ.setdefault("GRAPH_APP_ID", "graph-app-id")
os.environ.setdefault("GRAPH_APP_SECRET", "graph-app-secret")

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crosspost.main import app
from crosspost.db import redis as redis_module
from crosspost.db.helpers import add_content, save_connection
from crosspost.db.session import get_db
from crosspost.models import Base
from crosspost.models.content import Content
from crosspost.models.user import User
from crosspost.services.platforms import PlatformPublisher, PublishResult
from crosspost.services.storage.r2_service import BlobStore


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
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Mock Redis client using fakeredis"""
    fake_redis = fakeredis.FakeRedis(decode_responses=True)
    with patch.object(redis_module, '_client', fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked Redis"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        # No OpenTelemetry, no real database and no background loops in tests
        with patch('crosspost.main.initialize_otel', return_value=False), \
                patch('crosspost.main.instrument_sqlalchemy'), \
                patch('crosspost.main.init_db'), \
                patch('crosspost.tasks.scheduler.scheduler_task', new=AsyncMock()), \
                patch('crosspost.tasks.token_tasks.token_renewal_task', new=AsyncMock()):
            with TestClient(app) as test_client:
                yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    user = User(email="creator@example.com")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def test_user_2(db_session: Session) -> User:
    """Second user for ownership tests"""
    user = User(email="other-creator@example.com")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


def login(client: TestClient, redis_client, user: User) -> str:
    """Give the client a session cookie for user"""
    session_id = secrets.token_urlsafe(16)
    redis_client.setex(f"session:{session_id}", 3600, str(user.id))
    client.cookies.set("session_id", session_id)
    return session_id


@pytest.fixture(scope="function")
def authenticated_client(client: TestClient, test_user: User, mock_redis) -> TestClient:
    """Client with an authenticated session for test_user"""
    login(client, mock_redis, test_user)
    return client


@pytest.fixture(scope="function")
def test_content(db_session: Session, test_user: User) -> Content:
    return add_content(
        user_id=test_user.id,
        object_key=f"user_{test_user.id}/launch.mp4",
        filename="launch.mp4",
        title="Launch day",
        description="Behind the scenes of launch day",
        tags=["launch"],
        db=db_session,
    )


def connect_platform(db_session: Session, user: User, platform: str, access_token: str = "access-token",
                     expires_at: Optional[datetime] = None, **kwargs):
    """Store a connected platform with a token valid for 30 days unless told otherwise"""
    if expires_at is None:
        expires_at = datetime.now(timezone.utc) + timedelta(days=30)
    kwargs.setdefault("account_id", f"{platform}-account")
    kwargs.setdefault("account_name", f"{platform} account")
    return save_connection(user.id, platform, access_token=access_token, expires_at=expires_at,
                           db=db_session, **kwargs)


class FakeBlobStore(BlobStore):
    """In-memory blob store"""

    def __init__(self, objects: Optional[Dict[str, bytes]] = None):
        self.objects = dict(objects or {})

    async def read(self, object_key: str) -> bytes:
        if object_key not in self.objects:
            raise FileNotFoundError(f"Object not found: {object_key}")
        return self.objects[object_key]

    async def size(self, object_key: str) -> int:
        return len(await self.read(object_key))

    async def stream(self, object_key: str, start: int = 0, chunk_size: Optional[int] = None):
        data = await self.read(object_key)
        chunk_size = chunk_size or 4
        for offset in range(start, len(data), chunk_size):
            yield data[offset:offset + chunk_size]

    def public_url(self, object_key: str) -> str:
        return f"https://media.example.com/{object_key}"


class FakePublisher(PlatformPublisher):
    """Publisher that succeeds, or raises the given error (also from fetch_insights)"""

    def __init__(self, platform: str, error: Optional[Exception] = None, delay: float = 0):
        super().__init__()
        self.platform_id = platform
        self.error = error
        self.delay = delay
        self.calls = []
        self.insight_calls = []

    async def publish(self, credential, content, metadata, on_progress=None):
        self.calls.append((credential, content, metadata))
        if self.delay:
            await asyncio.sleep(self.delay)
        if on_progress is not None:
            await on_progress(100)
        if self.error is not None:
            raise self.error
        return PublishResult(external_id=f"{self.platform_id}-id", url=f"https://example.com/{self.platform_id}")

    async def fetch_insights(self, credential, external_id, since=None):
        self.insight_calls.append((credential, external_id, since))
        if self.error is not None:
            raise self.error
        return {"views": 42, "likes": 7}


@pytest.fixture(scope="function")
def blob_store(test_content: Content) -> FakeBlobStore:
    return FakeBlobStore({test_content.object_key: b"0123456789"})
