"""Entity metadata resolvers.

A resolver maps an entity id (a pool manager address) to its underlying
assets, their decimals and the protocol tag. Resolvers either return complete
metadata or raise ``MetadataResolutionError``; they never fill in defaults.
"""

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any, Protocol

from redis.asyncio import Redis

from lp_interval_tracker.engine.models import ResolvedMetadata
from lp_interval_tracker.ingestor.chain import ChainClient, ChainClientError

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 3600

MANAGER_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "token0",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "token1",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "protocol",
        "inputs": [],
        "outputs": [{"name": "", "type": "string"}],
        "stateMutability": "view",
    },
]

ERC20_DECIMALS_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "decimals",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
    },
]


class MetadataResolutionError(Exception):
    """Raised when entity metadata cannot be resolved completely."""

    def __init__(self, entity_id: str, message: str) -> None:
        super().__init__(f"{entity_id}: {message}")
        self.entity_id = entity_id


class MetadataResolver(Protocol):
    """Looks up metadata for a newly observed entity."""

    async def resolve(self, entity_id: str) -> ResolvedMetadata: ...


def _metadata_from_mapping(entity_id: str, data: Any) -> ResolvedMetadata:
    if not isinstance(data, dict):
        raise MetadataResolutionError(entity_id, "metadata entry must be an object")
    try:
        return ResolvedMetadata(
            asset_a=str(data["assetA"]).lower(),
            asset_b=str(data["assetB"]).lower(),
            decimals_a=int(data["decimalsA"]),
            decimals_b=int(data["decimalsB"]),
            protocol_tag=str(data["protocolTag"]),
        )
    except KeyError as e:
        raise MetadataResolutionError(entity_id, f"missing field {e.args[0]}") from e
    except (TypeError, ValueError) as e:
        raise MetadataResolutionError(entity_id, str(e)) from e


class StaticMetadataResolver:
    """Resolves metadata from an in-memory mapping, usually loaded from JSON.

    The JSON document maps entity ids to objects with ``assetA``, ``assetB``,
    ``decimalsA``, ``decimalsB`` and ``protocolTag``.
    """

    def __init__(self, entries: dict[str, Any]) -> None:
        self._entries = {k.lower(): v for k, v in entries.items()}

    @classmethod
    def from_file(cls, path: Path) -> "StaticMetadataResolver":
        with path.open(encoding="utf-8") as handle:
            entries = json.load(handle)
        if not isinstance(entries, dict):
            raise ValueError(f"{path} must contain a JSON object keyed by entity id")
        logger.info("Loaded static metadata for %d entities from %s", len(entries), path)
        return cls(entries)

    async def resolve(self, entity_id: str) -> ResolvedMetadata:
        entry = self._entries.get(entity_id.lower())
        if entry is None:
            raise MetadataResolutionError(entity_id, "not present in static metadata")
        return _metadata_from_mapping(entity_id, entry)


class ChainMetadataResolver:
    """Resolves metadata by reading the manager and token contracts."""

    def __init__(self, client: ChainClient) -> None:
        self._client = client

    async def resolve(self, entity_id: str) -> ResolvedMetadata:
        try:
            asset_a = await self._client.call_immutable(entity_id, MANAGER_ABI, "token0")
            asset_b = await self._client.call_immutable(entity_id, MANAGER_ABI, "token1")
            protocol_tag = await self._client.call_immutable(entity_id, MANAGER_ABI, "protocol")
            decimals_a = await self._client.call_immutable(asset_a, ERC20_DECIMALS_ABI, "decimals")
            decimals_b = await self._client.call_immutable(asset_b, ERC20_DECIMALS_ABI, "decimals")
        except ChainClientError as e:
            raise MetadataResolutionError(entity_id, f"RPC failure: {e}") from e
        except ValueError as e:
            # Invalid address returned by the manager contract.
            raise MetadataResolutionError(entity_id, str(e)) from e

        try:
            return ResolvedMetadata(
                asset_a=asset_a.lower(),
                asset_b=asset_b.lower(),
                decimals_a=int(decimals_a),
                decimals_b=int(decimals_b),
                protocol_tag=protocol_tag,
            )
        except ValueError as e:
            raise MetadataResolutionError(entity_id, str(e)) from e


class CachedMetadataResolver:
    """Redis-backed TTL cache in front of another resolver.

    Only complete metadata is cached. Redis failures degrade to calling the
    wrapped resolver directly.
    """

    def __init__(
        self,
        inner: MetadataResolver,
        redis: Redis,
        *,
        ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        key_prefix: str = "lp_interval_tracker:metadata:",
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._inner = inner
        self._redis = redis
        self._ttl = ttl_seconds
        self._prefix = key_prefix

    def _key(self, entity_id: str) -> str:
        return f"{self._prefix}{entity_id.lower()}"

    async def resolve(self, entity_id: str) -> ResolvedMetadata:
        key = self._key(entity_id)
        try:
            cached = await self._redis.get(key)
        except Exception as e:
            logger.warning("Metadata cache get failed: %s", e)
            cached = None

        if cached is not None:
            try:
                payload = json.loads(cached.decode() if isinstance(cached, bytes) else cached)
                return ResolvedMetadata(**payload)
            except (TypeError, ValueError) as e:
                logger.warning("Discarding corrupt cached metadata for %s: %s", entity_id, e)

        metadata = await self._inner.resolve(entity_id)
        try:
            await self._redis.set(key, json.dumps(asdict(metadata)), ex=self._ttl)
        except Exception as e:
            logger.warning("Metadata cache set failed: %s", e)
        return metadata

    async def invalidate(self, entity_id: str) -> bool:
        """Drop the cached entry for an entity.

        Returns:
            True if an entry was removed.
        """
        removed = await self._redis.delete(self._key(entity_id))
        return bool(removed)
