"""Repository pattern implementations for data access.

This module provides data access for the derived tables. Every repository
works on a caller-owned ``AsyncSession``; none of them commit, so all writes
made for one event land in the caller's transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from lp_interval_tracker.engine.models import (
    ClosedInterval,
    EntityMetadata,
    HourlyBucket,
    Interval,
    OpenInterval,
    RebalanceLink,
)
from lp_interval_tracker.storage.models import (
    INTERVAL_STATE_CLOSED,
    INTERVAL_STATE_OPEN,
    BucketContributionModel,
    EntityModel,
    HourlyBucketModel,
    IntervalModel,
    LiquidityOperationModel,
    PositionStatsModel,
    RebalanceLinkModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _is_sqlite(session: AsyncSession) -> bool:
    bind = session.bind
    return bind is not None and bind.dialect.name == "sqlite"


def _insert_for(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    if _is_sqlite(session):
        return sqlite_insert(model)
    return pg_insert(model)


def _interval_fields(model: IntervalModel) -> dict[str, Any]:
    return {
        "interval_id": model.interval_id,
        "entity_id": model.entity_id,
        "position_id": model.position_id,
        "start_timestamp": model.start_timestamp,
        "start_block": model.start_block,
        "start_tx_ref": model.start_tx_ref,
        "amount_in_a": model.amount_in_a,
        "amount_in_b": model.amount_in_b,
        "tick_lower": model.tick_lower,
        "tick_upper": model.tick_upper,
        "tick_at_open": model.tick_at_open,
    }


def _interval_from_model(model: IntervalModel) -> Interval:
    if model.state == INTERVAL_STATE_OPEN:
        return OpenInterval(**_interval_fields(model))
    if (
        model.end_timestamp is None
        or model.end_block is None
        or model.end_tx_ref is None
        or model.amount_out_a is None
        or model.amount_out_b is None
        or model.delta_a is None
        or model.delta_b is None
    ):
        raise ValueError(f"Closed interval {model.interval_id} is missing its end fields")
    return ClosedInterval(
        **_interval_fields(model),
        end_timestamp=model.end_timestamp,
        end_block=model.end_block,
        end_tx_ref=model.end_tx_ref,
        amount_out_a=model.amount_out_a,
        amount_out_b=model.amount_out_b,
        delta_a=model.delta_a,
        delta_b=model.delta_b,
    )


def _entity_from_model(model: EntityModel) -> EntityMetadata:
    return EntityMetadata(
        entity_id=model.entity_id,
        asset_a=model.asset_a,
        asset_b=model.asset_b,
        decimals_a=model.decimals_a,
        decimals_b=model.decimals_b,
        protocol_tag=model.protocol_tag,
        first_seen_at=model.first_seen_at,
        first_seen_block=model.first_seen_block,
    )


def _bucket_from_model(model: HourlyBucketModel) -> HourlyBucket:
    return HourlyBucket(
        entity_id=model.entity_id,
        hour_timestamp=model.hour_timestamp,
        total_delta_a=model.total_delta_a,
        total_delta_b=model.total_delta_b,
        interval_count=model.interval_count,
        year=model.year,
        month=model.month,
        day=model.day,
        hour=model.hour,
    )


def _link_from_model(model: RebalanceLinkModel) -> RebalanceLink:
    return RebalanceLink(
        link_id=model.link_id,
        entity_id=model.entity_id,
        old_position_id=model.old_position_id,
        new_position_id=model.new_position_id,
        new_tick_lower=model.new_tick_lower,
        new_tick_upper=model.new_tick_upper,
        timestamp=model.timestamp,
        block_number=model.block_number,
        tx_ref=model.tx_ref,
    )


class EntityRepository:
    """Repository for write-once entity metadata."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, entity_id: str) -> EntityMetadata | None:
        result = await self.session.execute(select(EntityModel).where(EntityModel.entity_id == entity_id))
        model = result.scalar_one_or_none()
        return _entity_from_model(model) if model else None

    async def insert_if_absent(self, metadata: EntityMetadata) -> bool:
        """Insert metadata unless the entity already exists.

        Returns:
            True if a row was inserted, False if the entity was already registered.
        """
        stmt = _insert_for(self.session, EntityModel).values(
            entity_id=metadata.entity_id,
            asset_a=metadata.asset_a,
            asset_b=metadata.asset_b,
            decimals_a=metadata.decimals_a,
            decimals_b=metadata.decimals_b,
            protocol_tag=metadata.protocol_tag,
            first_seen_at=metadata.first_seen_at,
            first_seen_block=metadata.first_seen_block,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["entity_id"])
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    async def list_all(self) -> list[EntityMetadata]:
        result = await self.session.execute(select(EntityModel).order_by(EntityModel.first_seen_block))
        return [_entity_from_model(m) for m in result.scalars().all()]


class IntervalRepository:
    """Repository for holding intervals."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, interval_id: str) -> Interval | None:
        result = await self.session.execute(
            select(IntervalModel)
            .where(IntervalModel.interval_id == interval_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return _interval_from_model(model) if model else None

    async def get_open(self, entity_id: str, position_id: str) -> OpenInterval | None:
        """Fetch the open interval of a position, if any."""
        result = await self.session.execute(
            select(IntervalModel)
            .where(
                IntervalModel.entity_id == entity_id,
                IntervalModel.position_id == position_id,
                IntervalModel.state == INTERVAL_STATE_OPEN,
            )
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        if model is None:
            return None
        return OpenInterval(**_interval_fields(model))

    async def insert_open(self, interval: OpenInterval) -> bool:
        """Insert a new open interval unless its id already exists."""
        stmt = _insert_for(self.session, IntervalModel).values(
            interval_id=interval.interval_id,
            entity_id=interval.entity_id,
            position_id=interval.position_id,
            state=INTERVAL_STATE_OPEN,
            start_timestamp=interval.start_timestamp,
            start_block=interval.start_block,
            start_tx_ref=interval.start_tx_ref,
            amount_in_a=interval.amount_in_a,
            amount_in_b=interval.amount_in_b,
            tick_lower=interval.tick_lower,
            tick_upper=interval.tick_upper,
            tick_at_open=interval.tick_at_open,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["interval_id"])
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    async def mark_closed(self, interval: ClosedInterval) -> bool:
        """Transition a stored interval from open to closed.

        The update only matches a row that is still open, so a second close
        of the same interval changes nothing and returns False.
        """
        result = await self.session.execute(
            update(IntervalModel)
            .where(
                IntervalModel.interval_id == interval.interval_id,
                IntervalModel.state == INTERVAL_STATE_OPEN,
            )
            .values(
                state=INTERVAL_STATE_CLOSED,
                end_timestamp=interval.end_timestamp,
                end_block=interval.end_block,
                end_tx_ref=interval.end_tx_ref,
                amount_out_a=interval.amount_out_a,
                amount_out_b=interval.amount_out_b,
                delta_a=interval.delta_a,
                delta_b=interval.delta_b,
            )
        )
        return bool(result.rowcount)

    async def list_open(self, *, entity_id: str | None = None, limit: int = 500) -> list[OpenInterval]:
        stmt = select(IntervalModel).where(IntervalModel.state == INTERVAL_STATE_OPEN)
        if entity_id is not None:
            stmt = stmt.where(IntervalModel.entity_id == entity_id)
        stmt = stmt.order_by(IntervalModel.start_timestamp.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return [i for i in map(_interval_from_model, result.scalars().all()) if isinstance(i, OpenInterval)]

    async def list_closed(self, *, entity_id: str | None = None, limit: int = 50) -> list[ClosedInterval]:
        stmt = select(IntervalModel).where(IntervalModel.state == INTERVAL_STATE_CLOSED)
        if entity_id is not None:
            stmt = stmt.where(IntervalModel.entity_id == entity_id)
        stmt = stmt.order_by(IntervalModel.end_timestamp.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return [i for i in map(_interval_from_model, result.scalars().all()) if isinstance(i, ClosedInterval)]

    async def list_for_position(self, entity_id: str, position_id: str) -> list[Interval]:
        result = await self.session.execute(
            select(IntervalModel)
            .where(IntervalModel.entity_id == entity_id, IntervalModel.position_id == position_id)
            .order_by(IntervalModel.start_timestamp, IntervalModel.start_block)
        )
        return [_interval_from_model(m) for m in result.scalars().all()]


class HourlyBucketRepository:
    """Repository for hourly delta buckets and their contribution markers."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def claim_contribution(self, interval_id: str, *, entity_id: str, hour_timestamp: int) -> bool:
        """Record that an interval is being folded into a bucket.

        Returns:
            False if the interval was already folded in.
        """
        stmt = _insert_for(self.session, BucketContributionModel).values(
            interval_id=interval_id,
            entity_id=entity_id,
            hour_timestamp=hour_timestamp,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["interval_id"])
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    async def add(self, *, entity_id: str, hour_timestamp: int, delta_a: int, delta_b: int) -> HourlyBucket:
        """Create the bucket or add to its totals, atomically.

        On SQLite the totals are stored as decimal text, which SQL arithmetic
        would coerce to floating point, so the sums are computed here instead.
        """
        if _is_sqlite(self.session):
            return await self._add_exact(entity_id, hour_timestamp, delta_a, delta_b)

        table = HourlyBucketModel.__table__
        stmt = pg_insert(HourlyBucketModel).values(
            entity_id=entity_id,
            hour_timestamp=hour_timestamp,
            total_delta_a=delta_a,
            total_delta_b=delta_b,
            interval_count=1,
            updated_at=datetime.now(UTC),
            **HourlyBucket.calendar_fields(hour_timestamp),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["entity_id", "hour_timestamp"],
            set_={
                "total_delta_a": table.c.total_delta_a + stmt.excluded.total_delta_a,
                "total_delta_b": table.c.total_delta_b + stmt.excluded.total_delta_b,
                "interval_count": table.c.interval_count + 1,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        bucket = await self.get(entity_id, hour_timestamp)
        if bucket is None:
            raise RuntimeError(f"Bucket {entity_id}@{hour_timestamp} missing after upsert")
        return bucket

    async def _add_exact(self, entity_id: str, hour_timestamp: int, delta_a: int, delta_b: int) -> HourlyBucket:
        # SQLite admits one writer at a time; a concurrent writer makes this
        # transaction fail with "database is locked" rather than lose an update.
        current = await self.get(entity_id, hour_timestamp)
        if current is None:
            bucket = HourlyBucket(
                entity_id=entity_id,
                hour_timestamp=hour_timestamp,
                total_delta_a=delta_a,
                total_delta_b=delta_b,
                interval_count=1,
                **HourlyBucket.calendar_fields(hour_timestamp),
            )
            self.session.add(
                HourlyBucketModel(
                    entity_id=entity_id,
                    hour_timestamp=hour_timestamp,
                    total_delta_a=bucket.total_delta_a,
                    total_delta_b=bucket.total_delta_b,
                    interval_count=bucket.interval_count,
                    **HourlyBucket.calendar_fields(hour_timestamp),
                )
            )
            await self.session.flush()
            return bucket

        bucket = replace(
            current,
            total_delta_a=current.total_delta_a + delta_a,
            total_delta_b=current.total_delta_b + delta_b,
            interval_count=current.interval_count + 1,
        )
        await self.session.execute(
            update(HourlyBucketModel)
            .where(
                HourlyBucketModel.entity_id == entity_id,
                HourlyBucketModel.hour_timestamp == hour_timestamp,
            )
            .values(
                total_delta_a=bucket.total_delta_a,
                total_delta_b=bucket.total_delta_b,
                interval_count=bucket.interval_count,
                updated_at=datetime.now(UTC),
            )
        )
        return bucket

    async def get(self, entity_id: str, hour_timestamp: int) -> HourlyBucket | None:
        result = await self.session.execute(
            select(HourlyBucketModel)
            .where(
                HourlyBucketModel.entity_id == entity_id,
                HourlyBucketModel.hour_timestamp == hour_timestamp,
            )
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return _bucket_from_model(model) if model else None

    async def list_range(
        self,
        entity_id: str,
        *,
        since: int | None = None,
        until: int | None = None,
    ) -> list[HourlyBucket]:
        """Buckets of an entity with ``since <= hour_timestamp < until``, oldest first."""
        stmt = select(HourlyBucketModel).where(HourlyBucketModel.entity_id == entity_id)
        if since is not None:
            stmt = stmt.where(HourlyBucketModel.hour_timestamp >= since)
        if until is not None:
            stmt = stmt.where(HourlyBucketModel.hour_timestamp < until)
        result = await self.session.execute(stmt.order_by(HourlyBucketModel.hour_timestamp))
        return [_bucket_from_model(m) for m in result.scalars().all()]

    async def list_recent(self, *, limit: int = 168) -> list[HourlyBucket]:
        result = await self.session.execute(
            select(HourlyBucketModel).order_by(HourlyBucketModel.hour_timestamp.desc()).limit(limit)
        )
        return [_bucket_from_model(m) for m in result.scalars().all()]


class RebalanceLinkRepository:
    """Repository for position migration links."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_if_absent(self, link: RebalanceLink) -> bool:
        stmt = _insert_for(self.session, RebalanceLinkModel).values(
            link_id=link.link_id,
            entity_id=link.entity_id,
            old_position_id=link.old_position_id,
            new_position_id=link.new_position_id,
            new_tick_lower=link.new_tick_lower,
            new_tick_upper=link.new_tick_upper,
            timestamp=link.timestamp,
            block_number=link.block_number,
            tx_ref=link.tx_ref,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["link_id"])
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    async def get(self, link_id: str) -> RebalanceLink | None:
        result = await self.session.execute(select(RebalanceLinkModel).where(RebalanceLinkModel.link_id == link_id))
        model = result.scalar_one_or_none()
        return _link_from_model(model) if model else None

    async def get_successor(self, entity_id: str, position_id: str) -> RebalanceLink | None:
        """Latest link that migrated ``position_id`` away."""
        result = await self.session.execute(
            select(RebalanceLinkModel)
            .where(
                RebalanceLinkModel.entity_id == entity_id,
                RebalanceLinkModel.old_position_id == position_id,
            )
            .order_by(RebalanceLinkModel.block_number.desc(), RebalanceLinkModel.link_id.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return _link_from_model(model) if model else None

    async def list_for_position(self, entity_id: str, position_id: str) -> list[RebalanceLink]:
        """Links that migrated ``position_id`` away or produced it, in chain order."""
        result = await self.session.execute(
            select(RebalanceLinkModel)
            .where(
                RebalanceLinkModel.entity_id == entity_id,
                or_(
                    RebalanceLinkModel.old_position_id == position_id,
                    RebalanceLinkModel.new_position_id == position_id,
                ),
            )
            .order_by(RebalanceLinkModel.block_number, RebalanceLinkModel.link_id)
        )
        return [_link_from_model(m) for m in result.scalars().all()]

    async def list_recent(self, *, entity_id: str | None = None, limit: int = 50) -> list[RebalanceLink]:
        stmt = select(RebalanceLinkModel)
        if entity_id is not None:
            stmt = stmt.where(RebalanceLinkModel.entity_id == entity_id)
        stmt = stmt.order_by(RebalanceLinkModel.timestamp.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return [_link_from_model(m) for m in result.scalars().all()]


@dataclass
class LiquidityOperationDTO:
    """Data transfer object for consumed source events."""

    operation_id: str
    entity_id: str
    position_id: str
    kind: str
    timestamp: int
    block_number: int
    tx_ref: str
    log_index: int
    outcome: str = "pending"
    skip_reason: str | None = None
    detail: str | None = None
    amount_a: int | None = None
    amount_b: int | None = None
    tick_lower: int | None = None
    tick_upper: int | None = None
    current_tick: int | None = None

    @classmethod
    def from_model(cls, model: LiquidityOperationModel) -> LiquidityOperationDTO:
        return cls(
            operation_id=model.operation_id,
            entity_id=model.entity_id,
            position_id=model.position_id,
            kind=model.kind,
            timestamp=model.timestamp,
            block_number=model.block_number,
            tx_ref=model.tx_ref,
            log_index=model.log_index,
            outcome=model.outcome,
            skip_reason=model.skip_reason,
            detail=model.detail,
            amount_a=model.amount_a,
            amount_b=model.amount_b,
            tick_lower=model.tick_lower,
            tick_upper=model.tick_upper,
            current_tick=model.current_tick,
        )


class LiquidityOperationRepository:
    """Repository for the consumed-event ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def claim(self, dto: LiquidityOperationDTO) -> bool:
        """Insert the ledger row for an event.

        Returns:
            False if the event was consumed before (redelivery).
        """
        stmt = _insert_for(self.session, LiquidityOperationModel).values(
            operation_id=dto.operation_id,
            entity_id=dto.entity_id,
            position_id=dto.position_id,
            kind=dto.kind,
            amount_a=dto.amount_a,
            amount_b=dto.amount_b,
            tick_lower=dto.tick_lower,
            tick_upper=dto.tick_upper,
            current_tick=dto.current_tick,
            outcome=dto.outcome,
            skip_reason=dto.skip_reason,
            detail=dto.detail,
            timestamp=dto.timestamp,
            block_number=dto.block_number,
            tx_ref=dto.tx_ref,
            log_index=dto.log_index,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["operation_id"])
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    async def record_outcome(
        self,
        operation_id: str,
        *,
        outcome: str,
        skip_reason: str | None = None,
        detail: str | None = None,
    ) -> None:
        await self.session.execute(
            update(LiquidityOperationModel)
            .where(LiquidityOperationModel.operation_id == operation_id)
            .values(outcome=outcome, skip_reason=skip_reason, detail=detail)
        )

    async def get(self, operation_id: str) -> LiquidityOperationDTO | None:
        result = await self.session.execute(
            select(LiquidityOperationModel)
            .where(LiquidityOperationModel.operation_id == operation_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return LiquidityOperationDTO.from_model(model) if model else None

    async def list_for_position(self, entity_id: str, position_id: str) -> list[LiquidityOperationDTO]:
        result = await self.session.execute(
            select(LiquidityOperationModel)
            .where(
                LiquidityOperationModel.entity_id == entity_id,
                LiquidityOperationModel.position_id == position_id,
            )
            .order_by(LiquidityOperationModel.block_number, LiquidityOperationModel.log_index)
        )
        return [LiquidityOperationDTO.from_model(m) for m in result.scalars().all()]


@dataclass
class PositionStatsDTO:
    """Data transfer object for position counters."""

    entity_id: str
    position_id: str
    opens: int
    closes: int
    replaces: int
    migrations: int
    first_seen_at: int
    last_activity_at: int

    @classmethod
    def from_model(cls, model: PositionStatsModel) -> PositionStatsDTO:
        return cls(
            entity_id=model.entity_id,
            position_id=model.position_id,
            opens=model.opens,
            closes=model.closes,
            replaces=model.replaces,
            migrations=model.migrations,
            first_seen_at=model.first_seen_at,
            last_activity_at=model.last_activity_at,
        )


POSITION_COUNTERS = ("opens", "closes", "replaces", "migrations")


class PositionStatsRepository:
    """Repository for per-position lifetime counters."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def bump(self, entity_id: str, position_id: str, *, counter: str, timestamp: int) -> None:
        """Increment one counter and advance ``last_activity_at``."""
        if counter not in POSITION_COUNTERS:
            raise ValueError(f"Unknown position counter: {counter}")
        table = PositionStatsModel.__table__
        initial = {name: int(name == counter) for name in POSITION_COUNTERS}
        stmt = _insert_for(self.session, PositionStatsModel).values(
            entity_id=entity_id,
            position_id=position_id,
            first_seen_at=timestamp,
            last_activity_at=timestamp,
            **initial,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["entity_id", "position_id"],
            set_={
                counter: table.c[counter] + 1,
                "last_activity_at": stmt.excluded.last_activity_at,
            },
        )
        await self.session.execute(stmt)

    async def get(self, entity_id: str, position_id: str) -> PositionStatsDTO | None:
        result = await self.session.execute(
            select(PositionStatsModel)
            .where(
                PositionStatsModel.entity_id == entity_id,
                PositionStatsModel.position_id == position_id,
            )
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return PositionStatsDTO.from_model(model) if model else None
