"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator
from datetime import timedelta
from uuid import UUID

import pytest
import pytest_asyncio
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from mailqueue.db import Base, close_db, get_test_engine, init_db
from mailqueue.db.models import Message
from mailqueue.db.repository import utcnow
from mailqueue.types.message import EmailPayload

# PostgreSQL when set; otherwise every test gets a throwaway SQLite file
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest.fixture
def database_url(tmp_path) -> str:
    """Get the test database URL."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'mailqueue.db'}"


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an engine with an empty messages table."""
    engine = get_test_engine(database_url)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if TEST_DATABASE_URL:
            await conn.execute(sa.text("TRUNCATE TABLE messages"))

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(async_engine: AsyncEngine) -> AsyncGenerator[AsyncSession]:
    """Create a database session for tests."""
    session_factory = async_sessionmaker(
        bind=async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with session_factory() as session:
        yield session

        # Rollback any uncommitted changes
        await session.rollback()


@pytest_asyncio.fixture
async def queue_db(async_engine: AsyncEngine) -> AsyncGenerator[AsyncEngine]:
    """Initialize the global session factory used by workers and the mailer."""
    await init_db(async_engine)
    yield async_engine
    await close_db()


@pytest.fixture
def sample_payload() -> dict:
    """Create a sample email payload."""
    return EmailPayload(
        from_address="noreply@example.com",
        to="user@example.com",
        subject="Please verify your email address",
        body="Hi, please verify your account.",
    ).to_payload()


@pytest.fixture
def expire_claims(db_session: AsyncSession):
    """Backdate claims so they look abandoned by a crashed worker."""

    async def _expire(message_ids: list[UUID]) -> None:
        await db_session.execute(
            sa.update(Message)
            .where(Message.id.in_(message_ids))
            .values(claimed_at=utcnow() - timedelta(hours=1))
            .execution_options(synchronize_session=False)
        )
        await db_session.commit()

    return _expire
