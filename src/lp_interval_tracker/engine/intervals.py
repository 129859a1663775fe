"""Interval state machine.

Each (entity, position) has at most one open interval. Transitions:

    (none) --open--> Open --close--> Closed

``replace`` is close-then-reopen for positions modified in place. A closed
record is terminal; a reopen creates a new record with its own id.

Lookups of the current open interval always go to the store; nothing about
interval state is cached between calls.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from lp_interval_tracker.engine.models import (
    ClosedInterval,
    OpenInterval,
    ReplaceResult,
    Ticks,
    TokenAmounts,
    make_event_id,
    make_interval_id,
)
from lp_interval_tracker.storage.repos import IntervalRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from lp_interval_tracker.engine.aggregator import Aggregator

logger = logging.getLogger(__name__)


class IntervalStateMachine:
    """Applies open/close/replace transitions to stored intervals.

    All methods run inside the caller's transaction. A close hands its delta
    to the aggregator through the same session, so the interval transition
    and the bucket update commit or roll back together.
    """

    def __init__(self, session: AsyncSession, aggregator: Aggregator) -> None:
        self._repo = IntervalRepository(session)
        self._aggregator = aggregator

    async def current(self, entity_id: str, position_id: str) -> OpenInterval | None:
        return await self._repo.get_open(entity_id, position_id)

    async def open(
        self,
        entity_id: str,
        position_id: str,
        amount_in_a: int,
        amount_in_b: int,
        ticks: Ticks,
        *,
        timestamp: int,
        block: int,
        tx_ref: str,
        interval_id: str | None = None,
    ) -> OpenInterval | None:
        """Open a new interval for a position.

        Returns:
            The new interval, or None when the position already has an open
            interval (duplicate open) or the interval id already exists
            (replay of an open whose interval has since closed).
        """
        existing = await self._repo.get_open(entity_id, position_id)
        if existing is not None:
            logger.warning(
                "Duplicate open for %s/%s at %d: interval %s is already open; skipping",
                entity_id,
                position_id,
                timestamp,
                existing.interval_id,
            )
            return None

        interval = OpenInterval(
            interval_id=interval_id or make_interval_id(entity_id, position_id, timestamp),
            entity_id=entity_id,
            position_id=position_id,
            start_timestamp=timestamp,
            start_block=block,
            start_tx_ref=tx_ref,
            amount_in_a=amount_in_a,
            amount_in_b=amount_in_b,
            tick_lower=ticks.lower,
            tick_upper=ticks.upper,
            tick_at_open=ticks.current,
        )
        if not await self._repo.insert_open(interval):
            logger.warning(
                "Interval %s already exists; treating open as a replay",
                interval.interval_id,
            )
            return None

        logger.debug(
            "Opened interval %s (in %d/%d)",
            interval.interval_id,
            amount_in_a,
            amount_in_b,
        )
        return interval

    async def close(
        self,
        entity_id: str,
        position_id: str,
        amount_out_a: int,
        amount_out_b: int,
        *,
        timestamp: int,
        block: int,
        tx_ref: str,
    ) -> ClosedInterval | None:
        """Close the open interval of a position and accumulate its delta.

        Returns:
            The closed interval, or None if the position has no open interval.
            That happens when history is consumed from the middle, or when an
            already-applied close is replayed.
        """
        current = await self._repo.get_open(entity_id, position_id)
        if current is None:
            logger.warning(
                "No open interval for %s/%s at %d; close skipped",
                entity_id,
                position_id,
                timestamp,
            )
            return None
        return await self._close(
            current,
            TokenAmounts(amount_out_a, amount_out_b),
            timestamp=timestamp,
            block=block,
            tx_ref=tx_ref,
        )

    async def replace(
        self,
        entity_id: str,
        position_id: str,
        before: TokenAmounts,
        after: TokenAmounts,
        ticks: Ticks,
        *,
        timestamp: int,
        block: int,
        tx_ref: str,
        log_index: int = 0,
    ) -> ReplaceResult:
        """Close the current interval at ``before`` and reopen it at ``after``.

        The reopened interval inherits the closed interval's tick bounds when
        ``ticks`` carries none. No interval is reopened when ``after`` holds
        nothing. Both halves run in the caller's transaction.
        """
        closed: ClosedInterval | None = None
        current = await self._repo.get_open(entity_id, position_id)
        if current is None:
            logger.info(
                "No open interval for %s/%s at %d; replace only reopens",
                entity_id,
                position_id,
                timestamp,
            )
        else:
            closed = await self._close(current, before, timestamp=timestamp, block=block, tx_ref=tx_ref)

        if not after.has_holdings:
            logger.debug("Position %s/%s emptied at %d; nothing reopened", entity_id, position_id, timestamp)
            return ReplaceResult(closed=closed, opened=None)

        bounds = ticks
        if not ticks.has_bounds and closed is not None:
            bounds = Ticks(lower=closed.tick_lower, upper=closed.tick_upper, current=ticks.current)

        interval_id = make_interval_id(entity_id, position_id, timestamp)
        if await self._repo.get(interval_id) is not None:
            # Closed and reopened within the second the previous interval started.
            interval_id = f"{interval_id}-{make_event_id(tx_ref, log_index)}"

        opened = await self.open(
            entity_id,
            position_id,
            after.a,
            after.b,
            bounds,
            timestamp=timestamp,
            block=block,
            tx_ref=tx_ref,
            interval_id=interval_id,
        )
        return ReplaceResult(closed=closed, opened=opened)

    async def _close(
        self,
        current: OpenInterval,
        amounts_out: TokenAmounts,
        *,
        timestamp: int,
        block: int,
        tx_ref: str,
    ) -> ClosedInterval | None:
        closed = current.close(amounts_out.a, amounts_out.b, timestamp=timestamp, block=block, tx_ref=tx_ref)
        if not await self._repo.mark_closed(closed):
            logger.warning("Interval %s was closed concurrently; skipping", current.interval_id)
            return None

        await self._aggregator.accumulate(
            closed.entity_id,
            timestamp,
            closed.delta_a,
            closed.delta_b,
            closed.interval_id,
        )
        logger.debug(
            "Closed interval %s (delta %d/%d)",
            closed.interval_id,
            closed.delta_a,
            closed.delta_b,
        )
        return closed
