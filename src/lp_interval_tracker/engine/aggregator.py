"""Hourly aggregation of closed-interval deltas."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from lp_interval_tracker.engine.models import HourlyBucket, hour_floor
from lp_interval_tracker.storage.repos import HourlyBucketRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class Aggregator:
    """Folds each closed interval's delta into its entity's hourly bucket.

    Every interval contributes at most once: the contribution marker and the
    bucket update are written in the same transaction, and a second
    ``accumulate`` for the same interval id is rejected.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._repo = HourlyBucketRepository(session)

    async def accumulate(
        self,
        entity_id: str,
        timestamp: int,
        delta_a: int,
        delta_b: int,
        interval_id: str,
    ) -> HourlyBucket | None:
        """Add one closed interval to the bucket of the hour containing ``timestamp``.

        Returns:
            The updated bucket, or None if this interval was already accumulated.
        """
        hour_timestamp = hour_floor(timestamp)
        claimed = await self._repo.claim_contribution(
            interval_id,
            entity_id=entity_id,
            hour_timestamp=hour_timestamp,
        )
        if not claimed:
            logger.warning("Interval %s already accumulated; ignoring", interval_id)
            return None

        bucket = await self._repo.add(
            entity_id=entity_id,
            hour_timestamp=hour_timestamp,
            delta_a=delta_a,
            delta_b=delta_b,
        )
        logger.debug(
            "Bucket %s@%d now %d/%d over %d intervals",
            entity_id,
            hour_timestamp,
            bucket.total_delta_a,
            bucket.total_delta_b,
            bucket.interval_count,
        )
        return bucket

    async def get_bucket(self, entity_id: str, timestamp: int) -> HourlyBucket | None:
        """Bucket of the hour containing ``timestamp``."""
        return await self._repo.get(entity_id, hour_floor(timestamp))

    async def buckets(
        self,
        entity_id: str,
        *,
        since: int | None = None,
        until: int | None = None,
    ) -> list[HourlyBucket]:
        return await self._repo.list_range(
            entity_id,
            since=hour_floor(since) if since is not None else None,
            until=until,
        )
