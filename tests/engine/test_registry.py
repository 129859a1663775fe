"""Tests for the entity registry."""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from lp_interval_tracker.engine.models import EntityMetadata, ResolvedMetadata
from lp_interval_tracker.engine.registry import EntityRegistry
from lp_interval_tracker.ingestor.resolver import MetadataResolutionError


def _metadata(entity_id: str, protocol_tag: str = "uniswap-v3") -> EntityMetadata:
    return EntityMetadata(
        entity_id=entity_id,
        asset_a="0xa",
        asset_b="0xb",
        decimals_a=18,
        decimals_b=6,
        protocol_tag=protocol_tag,
        first_seen_at=100,
        first_seen_block=10,
    )


class TestRegister:
    @pytest.mark.asyncio
    async def test_register_then_lookup(self, async_session: AsyncSession) -> None:
        registry = EntityRegistry(async_session)
        assert await registry.register(_metadata("0xe")) is True
        assert await registry.lookup("0xe") == _metadata("0xe")

    @pytest.mark.asyncio
    async def test_lookup_unknown(self, async_session: AsyncSession) -> None:
        assert await EntityRegistry(async_session).lookup("0xnope") is None

    @pytest.mark.asyncio
    async def test_duplicate_registration_does_not_overwrite(self, async_session: AsyncSession) -> None:
        registry = EntityRegistry(async_session)
        await registry.register(_metadata("0xe"))
        assert await registry.register(_metadata("0xe", protocol_tag="other")) is False

        stored = await registry.lookup("0xe")
        assert stored is not None
        assert stored.protocol_tag == "uniswap-v3"


class TestEnsureRegistered:
    @pytest.mark.asyncio
    async def test_resolves_new_entity_once(
        self, async_session: AsyncSession, resolved_metadata: ResolvedMetadata
    ) -> None:
        resolver = AsyncMock()
        resolver.resolve = AsyncMock(return_value=resolved_metadata)
        registry = EntityRegistry(async_session)

        first = await registry.ensure_registered("0xe", resolver, timestamp=100, block=10)
        second = await registry.ensure_registered("0xe", resolver, timestamp=200, block=20)

        assert first == second
        assert first.first_seen_at == 100
        assert first.first_seen_block == 10
        resolver.resolve.assert_awaited_once_with("0xe")

    @pytest.mark.asyncio
    async def test_resolution_failure_registers_nothing(self, async_session: AsyncSession) -> None:
        resolver = AsyncMock()
        resolver.resolve = AsyncMock(side_effect=MetadataResolutionError("0xe", "rpc down"))
        registry = EntityRegistry(async_session)

        with pytest.raises(MetadataResolutionError):
            await registry.ensure_registered("0xe", resolver, timestamp=100, block=10)
        assert await registry.lookup("0xe") is None

    @pytest.mark.asyncio
    async def test_transport_failure_becomes_resolution_error(self, async_session: AsyncSession) -> None:
        resolver = AsyncMock()
        resolver.resolve = AsyncMock(side_effect=TimeoutError("rpc timeout"))
        registry = EntityRegistry(async_session)

        with pytest.raises(MetadataResolutionError, match="rpc timeout"):
            await registry.ensure_registered("0xe", resolver, timestamp=100, block=10)
        assert await registry.lookup("0xe") is None
