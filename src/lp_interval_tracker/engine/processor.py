"""Per-event entry point.

``EventProcessor.apply`` maps one ``LedgerEvent`` to exactly one database
transaction covering the ledger row, entity registration, the interval
transition, the bucket update, the continuity link and the position counters.
Whatever happens, the caller gets a typed ``EventOutcome`` back.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from lp_interval_tracker.engine.aggregator import Aggregator
from lp_interval_tracker.engine.continuity import ContinuityTracker
from lp_interval_tracker.engine.intervals import IntervalStateMachine
from lp_interval_tracker.engine.models import (
    EventOutcome,
    SkipReason,
    TokenAmounts,
)
from lp_interval_tracker.engine.registry import EntityRegistry
from lp_interval_tracker.ingestor.models import EventKind, LedgerEvent, MalformedEventError
from lp_interval_tracker.ingestor.resolver import MetadataResolutionError
from lp_interval_tracker.storage.repos import (
    LiquidityOperationDTO,
    LiquidityOperationRepository,
    PositionStatsRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from lp_interval_tracker.ingestor.resolver import MetadataResolver
    from lp_interval_tracker.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


def _ledger_row(event: LedgerEvent) -> LiquidityOperationDTO:
    amount_a: int | None
    amount_b: int | None
    amounts = event.amounts
    if event.kind is EventKind.OPEN:
        amount_a, amount_b = amounts.in_a, amounts.in_b
    elif event.kind is EventKind.CLOSE:
        amount_a, amount_b = amounts.out_a, amounts.out_b
    elif event.kind is EventKind.SNAPSHOT:
        amount_a, amount_b = amounts.after_a, amounts.after_b
    else:
        amount_a = amount_b = None
    return LiquidityOperationDTO(
        operation_id=event.event_id,
        entity_id=event.entity_id,
        position_id=event.position_id,
        kind=event.kind.value,
        timestamp=event.timestamp,
        block_number=event.block_number,
        tx_ref=event.tx_ref,
        log_index=event.log_index,
        amount_a=amount_a,
        amount_b=amount_b,
        tick_lower=event.ticks.lower,
        tick_upper=event.ticks.upper,
        current_tick=event.ticks.current,
    )


class EventProcessor:
    """Applies ledger events to the derived tables, one transaction per event.

    Args:
        db: Database manager providing the transaction scope.
        resolver: Metadata resolver consulted for entities seen for the first time.
        dry_run: Apply each event and then roll it back instead of committing.
    """

    def __init__(
        self,
        db: DatabaseManager,
        resolver: MetadataResolver,
        *,
        dry_run: bool = False,
    ) -> None:
        self._db = db
        self._resolver = resolver
        self._dry_run = dry_run

    async def apply(self, event: LedgerEvent) -> EventOutcome:
        """Apply one event atomically.

        Returns:
            APPLIED when derived state changed, SKIPPED with a reason when the
            event was consumed without effect, RETRY when the transaction was
            rolled back and the same event must be delivered again.
        """
        try:
            event.validate()
        except MalformedEventError as e:
            logger.warning("Malformed event %s: %s", event.event_id, e)
            return EventOutcome.skipped(event.event_id, SkipReason.MALFORMED, str(e))

        try:
            async with self._db.get_async_session() as session:
                outcome = await self._apply_in_session(session, event)
                if self._dry_run:
                    await session.rollback()
        except MetadataResolutionError as e:
            logger.warning("Metadata resolution failed for %s (event %s): %s", event.entity_id, event.event_id, e)
            return EventOutcome.retry(event.event_id, f"metadata resolution failed: {e}")
        except SQLAlchemyError as e:
            logger.warning("Transaction failed for event %s: %s", event.event_id, e)
            return EventOutcome.retry(event.event_id, f"transaction failed: {e.__class__.__name__}")

        logger.debug(
            "Event %s (%s %s/%s): %s%s",
            event.event_id,
            event.kind.value,
            event.entity_id,
            event.position_id,
            outcome.status.value,
            f" ({outcome.reason.value})" if outcome.reason else "",
        )
        return outcome

    async def _apply_in_session(self, session: AsyncSession, event: LedgerEvent) -> EventOutcome:
        ledger = LiquidityOperationRepository(session)
        if not await ledger.claim(_ledger_row(event)):
            logger.warning("Event %s was already applied; skipping redelivery", event.event_id)
            return EventOutcome.skipped(event.event_id, SkipReason.DUPLICATE_EVENT)

        await EntityRegistry(session).ensure_registered(
            event.entity_id,
            self._resolver,
            timestamp=event.timestamp,
            block=event.block_number,
        )

        if event.kind is EventKind.MIGRATE:
            outcome = await self._migrate(session, event)
        else:
            outcome = await self._transition(session, event)

        await ledger.record_outcome(
            event.event_id,
            outcome=outcome.status.value,
            skip_reason=outcome.reason.value if outcome.reason else None,
            detail=outcome.detail,
        )
        return outcome

    async def _transition(self, session: AsyncSession, event: LedgerEvent) -> EventOutcome:
        machine = IntervalStateMachine(session, Aggregator(session))
        stats = PositionStatsRepository(session)
        amounts = event.amounts
        event_id = event.event_id

        if event.kind is EventKind.OPEN:
            in_a, in_b = amounts.pair("in_a", "in_b")
            opened = await machine.open(
                event.entity_id,
                event.position_id,
                in_a,
                in_b,
                event.ticks,
                timestamp=event.timestamp,
                block=event.block_number,
                tx_ref=event.tx_ref,
            )
            if opened is None:
                return EventOutcome.skipped(event_id, SkipReason.DUPLICATE_OPEN, "position already has an open interval")
            await stats.bump(event.entity_id, event.position_id, counter="opens", timestamp=event.timestamp)
            return EventOutcome.applied(event_id, opened=opened)

        if event.kind is EventKind.CLOSE:
            out_a, out_b = amounts.pair("out_a", "out_b")
            closed = await machine.close(
                event.entity_id,
                event.position_id,
                out_a,
                out_b,
                timestamp=event.timestamp,
                block=event.block_number,
                tx_ref=event.tx_ref,
            )
            if closed is None:
                return EventOutcome.skipped(event_id, SkipReason.NOT_FOUND, "no open interval for position")
            await stats.bump(event.entity_id, event.position_id, counter="closes", timestamp=event.timestamp)
            return EventOutcome.applied(event_id, closed=closed)

        before = TokenAmounts(*amounts.pair("before_a", "before_b"))
        after = TokenAmounts(*amounts.pair("after_a", "after_b"))
        result = await machine.replace(
            event.entity_id,
            event.position_id,
            before,
            after,
            event.ticks,
            timestamp=event.timestamp,
            block=event.block_number,
            tx_ref=event.tx_ref,
            log_index=event.log_index,
        )
        if result.closed is None and result.opened is None:
            return EventOutcome.skipped(event_id, SkipReason.NOT_FOUND, "no open interval and no residual holdings")

        await stats.bump(event.entity_id, event.position_id, counter="replaces", timestamp=event.timestamp)
        detail = None
        if result.closed is None:
            detail = "no open interval to close; opened from snapshot"
        return EventOutcome.applied(event_id, closed=result.closed, opened=result.opened, detail=detail)

    async def _migrate(self, session: AsyncSession, event: LedgerEvent) -> EventOutcome:
        new_position_id = event.new_position_id
        if new_position_id is None:
            raise MalformedEventError("migrate event requires newPositionId")
        link = await ContinuityTracker(session).link(
            event.entity_id,
            event.position_id,
            new_position_id,
            event.ticks,
            timestamp=event.timestamp,
            block=event.block_number,
            tx_ref=event.tx_ref,
            log_index=event.log_index,
        )
        if link is None:
            return EventOutcome.skipped(event.event_id, SkipReason.DUPLICATE_EVENT, "link already recorded")
        await PositionStatsRepository(session).bump(
            event.entity_id,
            event.position_id,
            counter="migrations",
            timestamp=event.timestamp,
        )
        return EventOutcome.applied(event.event_id, detail=f"linked to {event.new_position_id}")

