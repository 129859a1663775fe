"""Pytest configuration and fixtures."""

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from lp_interval_tracker.engine.models import ResolvedMetadata
from lp_interval_tracker.ingestor.resolver import StaticMetadataResolver
from lp_interval_tracker.storage.database import DatabaseManager
from lp_interval_tracker.storage.models import Base

ENTITY_ID = "0x1234567890abcdef1234567890abcdef12345678"
ASSET_A = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
ASSET_B = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"


@pytest.fixture
def entity_id() -> str:
    """Sample pool manager address."""
    return ENTITY_ID


@pytest.fixture
def resolved_metadata() -> ResolvedMetadata:
    return ResolvedMetadata(
        asset_a=ASSET_A,
        asset_b=ASSET_B,
        decimals_a=18,
        decimals_b=6,
        protocol_tag="uniswap-v3",
    )


@pytest.fixture
def static_resolver() -> StaticMetadataResolver:
    """Resolver that knows only the sample entity."""
    return StaticMetadataResolver(
        {
            ENTITY_ID: {
                "assetA": ASSET_A,
                "assetB": ASSET_B,
                "decimalsA": 18,
                "decimalsB": 6,
                "protocolTag": "uniswap-v3",
            }
        }
    )


@pytest.fixture
async def async_engine() -> AsyncIterator[AsyncEngine]:
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def db_manager(tmp_path: Path) -> AsyncIterator[DatabaseManager]:
    """Database manager over a file-backed SQLite database with the schema created."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'tracker.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()
