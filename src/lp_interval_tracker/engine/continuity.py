"""Continuity tracker: audit trail of position id migrations."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from lp_interval_tracker.engine.models import RebalanceLink, Ticks, make_event_id
from lp_interval_tracker.storage.repos import RebalanceLinkRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

DEFAULT_MAX_HOPS = 256


class ContinuityTracker:
    """Records old -> new position links. Never touches interval state."""

    def __init__(self, session: AsyncSession) -> None:
        self._repo = RebalanceLinkRepository(session)

    async def link(
        self,
        entity_id: str,
        old_position_id: str,
        new_position_id: str,
        new_ticks: Ticks,
        *,
        timestamp: int,
        block: int,
        tx_ref: str,
        log_index: int,
    ) -> RebalanceLink | None:
        """Insert a link keyed by its source event.

        Returns:
            The link, or None if the same source event was linked before.
        """
        link = RebalanceLink(
            link_id=make_event_id(tx_ref, log_index),
            entity_id=entity_id,
            old_position_id=old_position_id,
            new_position_id=new_position_id,
            new_tick_lower=new_ticks.lower,
            new_tick_upper=new_ticks.upper,
            timestamp=timestamp,
            block_number=block,
            tx_ref=tx_ref,
        )
        if not await self._repo.insert_if_absent(link):
            logger.warning("Rebalance link %s already recorded", link.link_id)
            return None
        logger.debug("Linked %s/%s -> %s", entity_id, old_position_id, new_position_id)
        return link

    async def lineage(
        self,
        entity_id: str,
        position_id: str,
        *,
        max_hops: int = DEFAULT_MAX_HOPS,
    ) -> list[str]:
        """Follow migrations forward from ``position_id``.

        Returns:
            Position ids starting with ``position_id``, in migration order.
        """
        chain = [position_id]
        seen = {position_id}
        current = position_id
        for _ in range(max_hops):
            link = await self._repo.get_successor(entity_id, current)
            if link is None or link.new_position_id in seen:
                break
            chain.append(link.new_position_id)
            seen.add(link.new_position_id)
            current = link.new_position_id
        return chain
