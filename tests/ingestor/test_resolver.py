"""Tests for entity metadata resolvers."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from lp_interval_tracker.engine.models import ResolvedMetadata
from lp_interval_tracker.ingestor.chain import RPCError
from lp_interval_tracker.ingestor.resolver import (
    CachedMetadataResolver,
    ChainMetadataResolver,
    MetadataResolutionError,
    StaticMetadataResolver,
)

ENTITY = "0x1234567890abcdef1234567890abcdef12345678"
TOKEN_A = "0xAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"
TOKEN_B = "0xBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBB"


@pytest.fixture
def metadata() -> ResolvedMetadata:
    return ResolvedMetadata(
        asset_a=TOKEN_A.lower(),
        asset_b=TOKEN_B.lower(),
        decimals_a=18,
        decimals_b=6,
        protocol_tag="uniswap-v3",
    )


@pytest.fixture
def mock_redis() -> MagicMock:
    redis = MagicMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    return redis


class TestStaticMetadataResolver:
    @pytest.mark.asyncio
    async def test_resolves_known_entity_case_insensitively(self, metadata: ResolvedMetadata) -> None:
        resolver = StaticMetadataResolver(
            {
                ENTITY.upper(): {
                    "assetA": TOKEN_A,
                    "assetB": TOKEN_B,
                    "decimalsA": 18,
                    "decimalsB": "6",
                    "protocolTag": "uniswap-v3",
                }
            }
        )

        assert await resolver.resolve(ENTITY) == metadata

    @pytest.mark.asyncio
    async def test_unknown_entity(self) -> None:
        with pytest.raises(MetadataResolutionError, match="not present"):
            await StaticMetadataResolver({}).resolve(ENTITY)

    @pytest.mark.asyncio
    async def test_incomplete_entry(self) -> None:
        resolver = StaticMetadataResolver({ENTITY: {"assetA": TOKEN_A, "assetB": TOKEN_B, "decimalsA": 18}})
        with pytest.raises(MetadataResolutionError, match="missing field decimalsB"):
            await resolver.resolve(ENTITY)

    @pytest.mark.asyncio
    async def test_out_of_range_decimals(self) -> None:
        resolver = StaticMetadataResolver(
            {
                ENTITY: {
                    "assetA": TOKEN_A,
                    "assetB": TOKEN_B,
                    "decimalsA": 300,
                    "decimalsB": 6,
                    "protocolTag": "x",
                }
            }
        )
        with pytest.raises(MetadataResolutionError, match="decimals_a out of range"):
            await resolver.resolve(ENTITY)

    @pytest.mark.asyncio
    async def test_from_file(self, tmp_path: Path, metadata: ResolvedMetadata) -> None:
        path = tmp_path / "metadata.json"
        path.write_text(
            json.dumps(
                {
                    ENTITY: {
                        "assetA": TOKEN_A,
                        "assetB": TOKEN_B,
                        "decimalsA": 18,
                        "decimalsB": 6,
                        "protocolTag": "uniswap-v3",
                    }
                }
            )
        )

        resolver = StaticMetadataResolver.from_file(path)
        assert await resolver.resolve(ENTITY) == metadata

    def test_from_file_rejects_non_object(self, tmp_path: Path) -> None:
        path = tmp_path / "metadata.json"
        path.write_text("[]")
        with pytest.raises(ValueError, match="JSON object"):
            StaticMetadataResolver.from_file(path)


class TestChainMetadataResolver:
    @staticmethod
    def _client(values: dict[tuple[str, str], str]) -> MagicMock:
        client = MagicMock()

        async def call_immutable(address: str, abi: list, fn_name: str) -> str:
            return values[(address, fn_name)]

        client.call_immutable = AsyncMock(side_effect=call_immutable)
        return client

    @pytest.mark.asyncio
    async def test_reads_manager_and_tokens(self, metadata: ResolvedMetadata) -> None:
        client = self._client(
            {
                (ENTITY, "token0"): TOKEN_A,
                (ENTITY, "token1"): TOKEN_B,
                (ENTITY, "protocol"): "uniswap-v3",
                (TOKEN_A, "decimals"): "18",
                (TOKEN_B, "decimals"): "6",
            }
        )

        assert await ChainMetadataResolver(client).resolve(ENTITY) == metadata
        assert client.call_immutable.await_count == 5

    @pytest.mark.asyncio
    async def test_rpc_failure_is_resolution_error(self) -> None:
        client = MagicMock()
        client.call_immutable = AsyncMock(side_effect=RPCError("all endpoints down"))

        with pytest.raises(MetadataResolutionError, match="RPC failure"):
            await ChainMetadataResolver(client).resolve(ENTITY)

    @pytest.mark.asyncio
    async def test_empty_protocol_tag_is_resolution_error(self) -> None:
        client = self._client(
            {
                (ENTITY, "token0"): TOKEN_A,
                (ENTITY, "token1"): TOKEN_B,
                (ENTITY, "protocol"): "",
                (TOKEN_A, "decimals"): "18",
                (TOKEN_B, "decimals"): "6",
            }
        )

        with pytest.raises(MetadataResolutionError, match="protocol_tag"):
            await ChainMetadataResolver(client).resolve(ENTITY)


class TestCachedMetadataResolver:
    @pytest.mark.asyncio
    async def test_cache_miss_resolves_and_stores(self, mock_redis: MagicMock, metadata: ResolvedMetadata) -> None:
        inner = MagicMock()
        inner.resolve = AsyncMock(return_value=metadata)
        resolver = CachedMetadataResolver(inner, mock_redis, ttl_seconds=120)

        assert await resolver.resolve(ENTITY) == metadata

        inner.resolve.assert_awaited_once_with(ENTITY)
        key, payload = mock_redis.set.await_args.args
        assert key == f"lp_interval_tracker:metadata:{ENTITY}"
        assert json.loads(payload)["protocol_tag"] == "uniswap-v3"
        assert mock_redis.set.await_args.kwargs == {"ex": 120}

    @pytest.mark.asyncio
    async def test_cache_hit_skips_inner(self, mock_redis: MagicMock, metadata: ResolvedMetadata) -> None:
        mock_redis.get = AsyncMock(
            return_value=json.dumps(
                {
                    "asset_a": metadata.asset_a,
                    "asset_b": metadata.asset_b,
                    "decimals_a": 18,
                    "decimals_b": 6,
                    "protocol_tag": "uniswap-v3",
                }
            ).encode()
        )
        inner = MagicMock()
        inner.resolve = AsyncMock()

        assert await CachedMetadataResolver(inner, mock_redis).resolve(ENTITY) == metadata
        inner.resolve.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_refetched(self, mock_redis: MagicMock, metadata: ResolvedMetadata) -> None:
        mock_redis.get = AsyncMock(return_value=b'{"asset_a": "0x1"}')
        inner = MagicMock()
        inner.resolve = AsyncMock(return_value=metadata)

        assert await CachedMetadataResolver(inner, mock_redis).resolve(ENTITY) == metadata
        inner.resolve.assert_awaited_once()
        mock_redis.set.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_redis_outage_falls_back_to_inner(
        self, mock_redis: MagicMock, metadata: ResolvedMetadata
    ) -> None:
        mock_redis.get = AsyncMock(side_effect=RedisConnectionError("refused"))
        mock_redis.set = AsyncMock(side_effect=RedisConnectionError("refused"))
        inner = MagicMock()
        inner.resolve = AsyncMock(return_value=metadata)

        assert await CachedMetadataResolver(inner, mock_redis).resolve(ENTITY) == metadata

    @pytest.mark.asyncio
    async def test_inner_failure_is_not_cached(self, mock_redis: MagicMock) -> None:
        inner = MagicMock()
        inner.resolve = AsyncMock(side_effect=MetadataResolutionError(ENTITY, "timeout"))

        with pytest.raises(MetadataResolutionError):
            await CachedMetadataResolver(inner, mock_redis).resolve(ENTITY)
        mock_redis.set.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalidate(self, mock_redis: MagicMock) -> None:
        resolver = CachedMetadataResolver(MagicMock(), mock_redis)

        assert await resolver.invalidate(ENTITY.upper()) is True
        mock_redis.delete.assert_awaited_once_with(f"lp_interval_tracker:metadata:{ENTITY}")

    def test_rejects_non_positive_ttl(self, mock_redis: MagicMock) -> None:
        with pytest.raises(ValueError, match="ttl_seconds"):
            CachedMetadataResolver(MagicMock(), mock_redis, ttl_seconds=0)
