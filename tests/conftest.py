"""
LedgerClose - Test Configuration

Pytest fixtures and configuration.
"""

import os

# Settings are read once at import time; keep Redis out of the test run
os.environ["CACHE_ENABLED"] = "false"
os.environ.setdefault("APP_ENV", "testing")

from decimal import Decimal
from typing import AsyncGenerator
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

import ledgerclose.models  # noqa: F401
from ledgerclose.database import Base, get_async_session
from ledgerclose.models.document import DocumentStatus, DocumentType, SourceDocument
from ledgerclose.services.cache_service import CacheService
from main import app


# In-memory SQLite shared by every connection of the test engine
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database for each test."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session
        await session.rollback()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database session override."""

    async def override_get_session():
        yield db_session

    app.dependency_overrides[get_async_session] = override_get_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ===========================================
# DATA FIXTURES
# ===========================================

@pytest.fixture
def tenant_id():
    return uuid4()


@pytest.fixture
def cache() -> CacheService:
    """Cache that never touches Redis."""
    return CacheService(enabled=False)


@pytest_asyncio.fixture
async def extracted_receipt(db_session: AsyncSession, tenant_id) -> SourceDocument:
    """Receipt with a complete, high-confidence extraction."""
    document = SourceDocument(
        id=uuid4(),
        tenant_id=tenant_id,
        file_name="receipt-0042.pdf",
        document_type=DocumentType.RECEIPT,
        status=DocumentStatus.EXTRACTED,
        extracted_data={
            "vendor": "Acme Stationery",
            "total": "120.00",
            "tax": "20.00",
            "date": "2026-10-05",
            "description": "Office supplies",
        },
        confidence_score=Decimal("0.9500"),
    )
    db_session.add(document)
    await db_session.commit()
    return document
