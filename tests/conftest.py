"""
Pytest configuration and fixtures.
"""
import os
from cryptography.fernet import Fernet

# Settings are loaded at import time, so the environment must be ready first
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-sessions")
os.environ.setdefault("CLIENT_ID", "test-client-id")
os.environ.setdefault("CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("RECALL_API_KEY", "test-recall-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_URL", "https://bots.example.com")
os.environ.setdefault("MAX_RETRIES", "1")
os.environ.setdefault("DEBUG", "false")

import pytest
from contextlib import asynccontextmanager, ExitStack
from datetime import timedelta
from unittest.mock import patch
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from meetbot.models import Base, CalendarConnection, ConnectionStatus, ScheduledBot, ScheduledBotStatus
from meetbot.utils import token_cipher, utcnow


# Modules that open their own database sessions
DB_SESSION_USERS = [
    "meetbot.services.connection_service",
    "meetbot.services.dispatch",
    "meetbot.services.webhook_service",
    "meetbot.services.scheduler",
    "meetbot.api",
]


# ============================================
# DATABASE FIXTURES
# ============================================

@pytest.fixture(scope="function")
async def test_engine():
    """Create a test database engine using in-memory SQLite."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="function")
async def test_db_session(test_engine):
    """Create a test database session."""
    async_session = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
def patch_db(test_db_session):
    """Route every get_db_session() call to the test session."""
    @asynccontextmanager
    async def mock_get_db():
        yield test_db_session
        await test_db_session.flush()

    with ExitStack() as stack:
        for module in DB_SESSION_USERS:
            stack.enter_context(patch(f"{module}.get_db_session", mock_get_db))
        yield test_db_session


# ============================================
# TEST CLIENT FIXTURES
# ============================================

@pytest.fixture(scope="function")
def test_client():
    """Create a test client (lifespan not started)."""
    from main import app

    return TestClient(app)


# ============================================
# DATA FIXTURES
# ============================================

@pytest.fixture
def make_connection(test_db_session):
    """Insert a calendar connection with encrypted tokens."""
    async def _make(
        user_id: str = "user-1",
        status: str = ConnectionStatus.ACTIVE,
        auto_record_enabled: bool = True,
        expires_in: timedelta = timedelta(hours=1),
        refresh_token: str = "refresh-token-1",
    ) -> CalendarConnection:
        connection = CalendarConnection(
            user_id=user_id,
            account_email=f"{user_id}@example.com",
            access_token=token_cipher.encrypt_token("access-token-1"),
            refresh_token=token_cipher.encrypt_token(refresh_token),
            token_expires_at=utcnow() + expires_in,
            status=status,
            auto_record_enabled=auto_record_enabled,
        )
        test_db_session.add(connection)
        await test_db_session.flush()
        return connection
    return _make


@pytest.fixture
def make_scheduled_bot(test_db_session):
    """Insert a scheduled bot starting at a given offset from now."""
    async def _make(
        user_id: str = "user-1",
        event_id: str = "event-1",
        starts_in: timedelta = timedelta(minutes=3),
        status: str = ScheduledBotStatus.PENDING,
        bot_enabled: bool = True,
        bot_id: str = None,
        connection_id: int = None,
    ) -> ScheduledBot:
        start = utcnow() + starts_in
        scheduled = ScheduledBot(
            user_id=user_id,
            calendar_connection_id=connection_id,
            external_event_id=event_id,
            event_title="Weekly sync",
            event_start=start,
            event_end=start + timedelta(minutes=30),
            meeting_url="https://meet.google.com/abc-defg-hij",
            attendees=[],
            bot_enabled=bot_enabled,
            bot_status=status,
            bot_id=bot_id,
        )
        test_db_session.add(scheduled)
        await test_db_session.flush()
        return scheduled
    return _make


@pytest.fixture
def mock_msal_token_response():
    """Mock MSAL token response."""
    return {
        "access_token": "new-access-token-" + "x" * 40,
        "refresh_token": "new-refresh-token-" + "y" * 40,
        "expires_in": 3600,
        "id_token_claims": {
            "oid": "user-1",
            "preferred_username": "user-1@example.com",
            "name": "Test User",
        },
    }
