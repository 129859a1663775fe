"""Entity registry: write-once metadata per tracked pool manager."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from lp_interval_tracker.engine.models import EntityMetadata
from lp_interval_tracker.ingestor.resolver import MetadataResolutionError
from lp_interval_tracker.storage.repos import EntityRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from lp_interval_tracker.ingestor.resolver import MetadataResolver

logger = logging.getLogger(__name__)


class EntityRegistry:
    """Idempotent key-value store of entity metadata.

    There is deliberately no update operation: once an entity is registered
    its assets, decimals and protocol tag never change.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._repo = EntityRepository(session)

    async def register(self, metadata: EntityMetadata) -> bool:
        """Register an entity; a second registration is a silent no-op.

        Returns:
            True if the entity was newly registered.
        """
        inserted = await self._repo.insert_if_absent(metadata)
        if inserted:
            logger.info(
                "Registered entity %s (%s, %s/%s)",
                metadata.entity_id,
                metadata.protocol_tag,
                metadata.asset_a,
                metadata.asset_b,
            )
        else:
            logger.debug("Entity %s already registered; keeping existing metadata", metadata.entity_id)
        return inserted

    async def lookup(self, entity_id: str) -> EntityMetadata | None:
        return await self._repo.get(entity_id)

    async def ensure_registered(
        self,
        entity_id: str,
        resolver: MetadataResolver,
        *,
        timestamp: int,
        block: int,
    ) -> EntityMetadata:
        """Return the entity's metadata, resolving and registering it on first sight.

        Raises:
            MetadataResolutionError: If the resolver cannot produce complete
                metadata or its backend is unreachable. Nothing is registered
                in that case.
        """
        existing = await self.lookup(entity_id)
        if existing is not None:
            return existing

        try:
            resolved = await resolver.resolve(entity_id)
        except OSError as e:
            # Timeouts and connection failures of a resolver backend.
            raise MetadataResolutionError(entity_id, f"transport failure: {e!r}") from e
        metadata = EntityMetadata.from_resolved(
            entity_id,
            resolved,
            first_seen_at=timestamp,
            first_seen_block=block,
        )
        await self.register(metadata)
        return metadata
