import os
import uuid
from datetime import date, timedelta

# Settings are read at import time, so the environment must be ready first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./askdata_test.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-jwt-signing-only")
os.environ.setdefault("LLM_ENDPOINT", "")

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.pool import NullPool
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from app.core.security import create_access_token, hash_password
from app.main import app
from app.core import models
from app.core.database import Base, get_db
from app.ai_feature.executor import ReadOnlyExecutor, get_executor
from app.ai_feature.llm import get_llm
from tests.fakes import FakeLLM

# Force to use a test db for tests
TEST_DATABASE_URL = os.environ.get(
    "TEST_DATABASE_URL", "sqlite+aiosqlite:///./askdata_test.db"
)

# NullPool: every test runs in its own event loop, so never reuse connections
test_engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=NullPool)
TestingSessionLocal = async_sessionmaker(
    test_engine, class_=AsyncSession, expire_on_commit=False
)


# Fresh tables for every test, dropped afterwards
@pytest_asyncio.fixture(scope="function", autouse=True)
async def set_up_db():
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield  # Tests happens here
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# Create session and rollback once it is done
@pytest_asyncio.fixture(scope="function")
async def db_session():
    async with TestingSessionLocal() as session:
        yield session
        await session.rollback()
        await session.close()


@pytest_asyncio.fixture(scope="function")
async def fake_llm():
    return FakeLLM()


@pytest_asyncio.fixture(scope="function")
async def executor():
    return ReadOnlyExecutor(test_engine, row_limit=50, timeout_seconds=5)


# Client
@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, fake_llm: FakeLLM, executor):
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_llm] = lambda: fake_llm
    app.dependency_overrides[get_executor] = lambda: executor

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# User
@pytest_asyncio.fixture(scope="function")
async def test_user(db_session: AsyncSession):
    # Generate unique email for each test to avoid duplicates
    unique_email = f"test_{uuid.uuid4().hex[:8]}@gmail.com"
    hashed_pwd = hash_password("password123")

    user = models.User(email=unique_email, password=hashed_pwd, role="user")

    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


# Admin
@pytest_asyncio.fixture(scope="function")
async def test_admin(db_session: AsyncSession):
    unique_email = f"admin_{uuid.uuid4().hex[:8]}@gmail.com"
    hashed_pwd = hash_password("password123")

    user = models.User(email=unique_email, password=hashed_pwd, role="admin")

    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


# Token for user
@pytest_asyncio.fixture(scope="function")
async def auth_headers_user(test_user):
    token = create_access_token({"user_id": test_user.id})
    return {"Authorization": f"Bearer {token}"}


# Token for admin
@pytest_asyncio.fixture(scope="function")
async def auth_headers_admin(test_admin):
    token = create_access_token({"user_id": test_admin.id})
    return {"Authorization": f"Bearer {token}"}


# Ten days of revenue for two stores: Store A grows by 10 a day, Store B is flat
@pytest_asyncio.fixture(scope="function")
async def snapshot_rows(db_session: AsyncSession):
    start = date(2025, 1, 1)
    rows = []
    for day in range(10):
        rows.append(
            models.DailyChangesSnapshot(
                snapshot_date=start + timedelta(days=day),
                entity="Store A",
                metric="revenue",
                value=100 + 10 * day,
                source="test",
            )
        )
        rows.append(
            models.DailyChangesSnapshot(
                snapshot_date=start + timedelta(days=day),
                entity="Store B",
                metric="revenue",
                value=50,
                source="test",
            )
        )
    db_session.add_all(rows)
    await db_session.commit()
    return rows


@pytest_asyncio.fixture(scope="function")
async def refund_policy(db_session: AsyncSession):
    from app.ai_feature.retrieval import ingest_document

    return await ingest_document(
        db_session,
        title="Refund policy",
        source="wiki/refunds",
        content=(
            "Customers may request a refund within 30 days of purchase. "
            "Refunds are paid back to the original payment method within five "
            "business days. Gift cards are not refundable."
        ),
    )
