"""Test fixtures for the deal pipeline.

Provides:
- A file-backed SQLite database (aiosqlite) with savepoints enabled
- A session_factory matching the repository contract
- Seeded system deal types (residential_sale, mortgage)
- A DealService wired to the test database
- Owner/client ids and a helper for creating deals
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine

from src.dealflow.config import Settings
from src.dealflow.core.database import Base
from src.dealflow.deals import models  # noqa: F401  registers tables
from src.dealflow.deals.schemas import DealCreate, DealRead, DealType
from src.dealflow.deals.seeds import seed_deal_types
from src.dealflow.deals.service import DealService

OWNER_ID = "11111111-1111-4111-8111-111111111111"
OTHER_OWNER_ID = "22222222-2222-4222-8222-222222222222"
CLIENT_ID = "33333333-3333-4333-8333-333333333333"


@pytest_asyncio.fixture
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Async SQLite engine on a temp file, schema created from the models."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'dealflow.db'}")

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy
    # emit BEGIN itself.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session generator bound to the test engine."""

    async def _factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(db_engine, expire_on_commit=False) as session:
            yield session

    return _factory


@pytest.fixture
def settings() -> Settings:
    return Settings(
        DATABASE_URL="sqlite+aiosqlite://",
        ACTIVITY_LOG_TIMEOUT_SECONDS=2.0,
    )


@pytest_asyncio.fixture
async def seeded(session_factory) -> None:
    await seed_deal_types(session_factory)


@pytest_asyncio.fixture
async def service(session_factory, settings, seeded) -> DealService:
    """DealService over a seeded test database."""
    return DealService(session_factory, settings=settings)


@pytest_asyncio.fixture
async def residential(service: DealService) -> DealType:
    return await service.catalog.get_by_code("residential_sale")


@pytest_asyncio.fixture
async def mortgage(service: DealService) -> DealType:
    return await service.catalog.get_by_code("mortgage")


async def make_deal(
    service: DealService,
    deal_type: DealType,
    owner_id: str = OWNER_ID,
    **overrides,
) -> DealRead:
    """Create a deal with sensible defaults."""
    fields = {
        "deal_type_id": deal_type.id,
        "client_id": CLIENT_ID,
        "deal_name": "123 Main St",
        "deal_value": 200000,
        "commission_rate": 3,
        "commission_split_percent": 50,
    }
    fields.update(overrides)
    return await service.create_deal(DealCreate(**fields), owner_id)


def new_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture
def deal_factory(service: DealService, residential: DealType):
    """Async callable creating deals; defaults to a residential_sale deal."""

    async def _create(
        deal_type: DealType | None = None, owner_id: str = OWNER_ID, **overrides
    ) -> DealRead:
        return await make_deal(service, deal_type or residential, owner_id, **overrides)

    return _create


@pytest.fixture
def owner_id() -> str:
    return OWNER_ID


@pytest.fixture
def other_owner_id() -> str:
    return OTHER_OWNER_ID
