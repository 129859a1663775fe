"""Tests for storage repositories."""

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lp_interval_tracker.engine.models import EntityMetadata, OpenInterval, RebalanceLink
from lp_interval_tracker.storage.models import IntervalModel
from lp_interval_tracker.storage.repos import (
    EntityRepository,
    HourlyBucketRepository,
    IntervalRepository,
    LiquidityOperationDTO,
    LiquidityOperationRepository,
    PositionStatsRepository,
    RebalanceLinkRepository,
)

E = "0x1234567890abcdef1234567890abcdef12345678"

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def sample_entity() -> EntityMetadata:
    """Create sample entity metadata."""
    return EntityMetadata(
        entity_id=E,
        asset_a="0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa",
        asset_b="0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb",
        decimals_a=18,
        decimals_b=6,
        protocol_tag="uniswap-v3",
        first_seen_at=1_700_000_000,
        first_seen_block=123,
    )


def _open_interval(position_id: str = "1", start: int = 0, interval_id: str | None = None) -> OpenInterval:
    return OpenInterval(
        interval_id=interval_id or f"{E}-{position_id}-{start}",
        entity_id=E,
        position_id=position_id,
        start_timestamp=start,
        start_block=1,
        start_tx_ref="0xa",
        amount_in_a=100,
        amount_in_b=200,
        tick_lower=-60,
        tick_upper=60,
        tick_at_open=0,
    )


def _operation(operation_id: str = "0xa-0", position_id: str = "1") -> LiquidityOperationDTO:
    return LiquidityOperationDTO(
        operation_id=operation_id,
        entity_id=E,
        position_id=position_id,
        kind="open",
        timestamp=100,
        block_number=5,
        tx_ref=operation_id.split("-")[0],
        log_index=int(operation_id.split("-")[1]),
        amount_a=100,
        amount_b=200,
    )


# ============================================================================
# EntityRepository Tests
# ============================================================================


class TestEntityRepository:
    @pytest.mark.asyncio
    async def test_insert_and_get(self, async_session: AsyncSession, sample_entity: EntityMetadata) -> None:
        repo = EntityRepository(async_session)

        assert await repo.insert_if_absent(sample_entity) is True
        assert await repo.get(E) == sample_entity

    @pytest.mark.asyncio
    async def test_insert_is_write_once(self, async_session: AsyncSession, sample_entity: EntityMetadata) -> None:
        repo = EntityRepository(async_session)
        await repo.insert_if_absent(sample_entity)

        changed = EntityMetadata(**{**sample_entity.__dict__, "decimals_a": 8})
        assert await repo.insert_if_absent(changed) is False

        stored = await repo.get(E)
        assert stored is not None
        assert stored.decimals_a == 18

    @pytest.mark.asyncio
    async def test_get_missing(self, async_session: AsyncSession) -> None:
        assert await EntityRepository(async_session).get("0xmissing") is None

    @pytest.mark.asyncio
    async def test_list_all(self, async_session: AsyncSession, sample_entity: EntityMetadata) -> None:
        repo = EntityRepository(async_session)
        await repo.insert_if_absent(sample_entity)

        assert [m.entity_id for m in await repo.list_all()] == [E]


# ============================================================================
# IntervalRepository Tests
# ============================================================================


class TestIntervalRepository:
    @pytest.mark.asyncio
    async def test_insert_open_and_get(self, async_session: AsyncSession) -> None:
        repo = IntervalRepository(async_session)
        interval = _open_interval()

        assert await repo.insert_open(interval) is True
        assert await repo.get(interval.interval_id) == interval
        assert await repo.get_open(E, "1") == interval

    @pytest.mark.asyncio
    async def test_insert_same_id_twice(self, async_session: AsyncSession) -> None:
        repo = IntervalRepository(async_session)
        interval = _open_interval()

        await repo.insert_open(interval)
        assert await repo.insert_open(interval) is False

    @pytest.mark.asyncio
    async def test_second_open_interval_for_position_is_rejected(self, async_session: AsyncSession) -> None:
        repo = IntervalRepository(async_session)
        await repo.insert_open(_open_interval(start=0))

        with pytest.raises(IntegrityError):
            await repo.insert_open(_open_interval(start=10))

    @pytest.mark.asyncio
    async def test_mark_closed_is_compare_and_set(self, async_session: AsyncSession) -> None:
        repo = IntervalRepository(async_session)
        interval = _open_interval()
        await repo.insert_open(interval)
        closed = interval.close(90, 250, timestamp=500, block=2, tx_ref="0xb")

        assert await repo.mark_closed(closed) is True
        assert await repo.mark_closed(closed) is False

        stored = await repo.get(interval.interval_id)
        assert stored == closed
        assert await repo.get_open(E, "1") is None

    @pytest.mark.asyncio
    async def test_closed_row_without_deltas_violates_check(self, async_session: AsyncSession) -> None:
        async_session.add(
            IntervalModel(
                interval_id="bad",
                entity_id=E,
                position_id="1",
                state="closed",
                start_timestamp=0,
                start_block=1,
                start_tx_ref="0xa",
                amount_in_a=1,
                amount_in_b=1,
            )
        )
        with pytest.raises(IntegrityError):
            await async_session.flush()

    @pytest.mark.asyncio
    async def test_incomplete_closed_row_is_reported(self, async_session: AsyncSession) -> None:
        async_session.add(
            IntervalModel(
                interval_id="partial",
                entity_id=E,
                position_id="1",
                state="closed",
                start_timestamp=0,
                start_block=1,
                start_tx_ref="0xa",
                amount_in_a=1,
                amount_in_b=1,
                end_timestamp=5,
                delta_a=0,
                delta_b=0,
            )
        )
        await async_session.flush()

        with pytest.raises(ValueError, match="partial is missing its end fields"):
            await IntervalRepository(async_session).get("partial")

    @pytest.mark.asyncio
    async def test_list_open_and_closed(self, async_session: AsyncSession) -> None:
        repo = IntervalRepository(async_session)
        for position_id, start in (("1", 0), ("2", 10), ("3", 20)):
            await repo.insert_open(_open_interval(position_id, start))

        first = await repo.get_open(E, "1")
        second = await repo.get_open(E, "2")
        assert first is not None and second is not None
        await repo.mark_closed(first.close(1, 1, timestamp=300, block=3, tx_ref="0xc"))
        await repo.mark_closed(second.close(1, 1, timestamp=200, block=3, tx_ref="0xd"))

        assert [i.position_id for i in await repo.list_open()] == ["3"]
        assert [i.end_timestamp for i in await repo.list_closed(entity_id=E)] == [300, 200]
        assert await repo.list_closed(entity_id="0xother") == []


# ============================================================================
# HourlyBucketRepository Tests
# ============================================================================


class TestHourlyBucketRepository:
    @pytest.mark.asyncio
    async def test_claim_contribution_once(self, async_session: AsyncSession) -> None:
        repo = HourlyBucketRepository(async_session)

        assert await repo.claim_contribution("i1", entity_id=E, hour_timestamp=0) is True
        assert await repo.claim_contribution("i1", entity_id=E, hour_timestamp=0) is False

    @pytest.mark.asyncio
    async def test_add_creates_then_accumulates(self, async_session: AsyncSession) -> None:
        repo = HourlyBucketRepository(async_session)

        first = await repo.add(entity_id=E, hour_timestamp=3600, delta_a=-100, delta_b=100)
        second = await repo.add(entity_id=E, hour_timestamp=3600, delta_a=40, delta_b=-30)

        assert (first.total_delta_a, first.interval_count) == (-100, 1)
        assert (second.total_delta_a, second.total_delta_b, second.interval_count) == (-60, 70, 2)
        assert (second.year, second.month, second.day, second.hour) == (1970, 1, 1, 1)

    @pytest.mark.asyncio
    async def test_add_is_exact_for_wide_totals(self, async_session: AsyncSession) -> None:
        repo = HourlyBucketRepository(async_session)
        big = 10**40

        await repo.add(entity_id=E, hour_timestamp=0, delta_a=big + 1, delta_b=-(big + 3))
        await repo.add(entity_id=E, hour_timestamp=0, delta_a=big, delta_b=1)
        stored = await repo.get(E, 0)

        assert stored is not None
        assert (stored.total_delta_a, stored.total_delta_b) == (2 * big + 1, -(big + 2))

    @pytest.mark.asyncio
    async def test_list_range_is_half_open(self, async_session: AsyncSession) -> None:
        repo = HourlyBucketRepository(async_session)
        for hour in range(4):
            await repo.add(entity_id=E, hour_timestamp=hour * 3600, delta_a=1, delta_b=1)

        buckets = await repo.list_range(E, since=3600, until=3 * 3600)
        assert [b.hour_timestamp for b in buckets] == [3600, 7200]

    @pytest.mark.asyncio
    async def test_list_recent_newest_first(self, async_session: AsyncSession) -> None:
        repo = HourlyBucketRepository(async_session)
        await repo.add(entity_id=E, hour_timestamp=0, delta_a=1, delta_b=1)
        await repo.add(entity_id=E, hour_timestamp=3600, delta_a=1, delta_b=1)

        assert [b.hour_timestamp for b in await repo.list_recent(limit=1)] == [3600]


# ============================================================================
# RebalanceLinkRepository Tests
# ============================================================================


class TestRebalanceLinkRepository:
    @staticmethod
    def _link(link_id: str, old: str, new: str, block: int) -> RebalanceLink:
        return RebalanceLink(
            link_id=link_id,
            entity_id=E,
            old_position_id=old,
            new_position_id=new,
            new_tick_lower=-10,
            new_tick_upper=10,
            timestamp=block * 12,
            block_number=block,
            tx_ref=link_id.split("-")[0],
        )

    @pytest.mark.asyncio
    async def test_insert_if_absent(self, async_session: AsyncSession) -> None:
        repo = RebalanceLinkRepository(async_session)
        link = self._link("0xa-0", "1", "2", 5)

        assert await repo.insert_if_absent(link) is True
        assert await repo.insert_if_absent(link) is False
        assert await repo.get("0xa-0") == link

    @pytest.mark.asyncio
    async def test_get_successor_returns_latest(self, async_session: AsyncSession) -> None:
        repo = RebalanceLinkRepository(async_session)
        await repo.insert_if_absent(self._link("0xa-0", "1", "2", 5))
        await repo.insert_if_absent(self._link("0xb-0", "1", "3", 9))

        successor = await repo.get_successor(E, "1")
        assert successor is not None
        assert successor.new_position_id == "3"
        assert await repo.get_successor(E, "3") is None

    @pytest.mark.asyncio
    async def test_list_for_position_covers_both_ends(self, async_session: AsyncSession) -> None:
        repo = RebalanceLinkRepository(async_session)
        await repo.insert_if_absent(self._link("0xb-0", "2", "3", 9))
        await repo.insert_if_absent(self._link("0xa-0", "1", "2", 5))
        await repo.insert_if_absent(self._link("0xc-0", "7", "8", 6))

        links = await repo.list_for_position(E, "2")
        assert [link.link_id for link in links] == ["0xa-0", "0xb-0"]


# ============================================================================
# LiquidityOperationRepository Tests
# ============================================================================


class TestLiquidityOperationRepository:
    @pytest.mark.asyncio
    async def test_claim_once(self, async_session: AsyncSession) -> None:
        repo = LiquidityOperationRepository(async_session)

        assert await repo.claim(_operation()) is True
        assert await repo.claim(_operation()) is False

    @pytest.mark.asyncio
    async def test_record_outcome(self, async_session: AsyncSession) -> None:
        repo = LiquidityOperationRepository(async_session)
        await repo.claim(_operation())

        await repo.record_outcome("0xa-0", outcome="skipped", skip_reason="not_found", detail="nothing open")

        stored = await repo.get("0xa-0")
        assert stored is not None
        assert (stored.outcome, stored.skip_reason, stored.detail) == ("skipped", "not_found", "nothing open")
        assert stored.amount_a == 100

    @pytest.mark.asyncio
    async def test_list_for_position_in_chain_order(self, async_session: AsyncSession) -> None:
        repo = LiquidityOperationRepository(async_session)
        await repo.claim(_operation("0xa-3"))
        await repo.claim(_operation("0xa-1"))
        await repo.claim(_operation("0xb-0", position_id="2"))

        ops = await repo.list_for_position(E, "1")
        assert [op.operation_id for op in ops] == ["0xa-1", "0xa-3"]


# ============================================================================
# PositionStatsRepository Tests
# ============================================================================


class TestPositionStatsRepository:
    @pytest.mark.asyncio
    async def test_bump_creates_and_increments(self, async_session: AsyncSession) -> None:
        repo = PositionStatsRepository(async_session)
        await repo.bump(E, "1", counter="opens", timestamp=100)
        await repo.bump(E, "1", counter="replaces", timestamp=200)
        await repo.bump(E, "1", counter="replaces", timestamp=300)

        stats = await repo.get(E, "1")
        assert stats is not None
        assert (stats.opens, stats.closes, stats.replaces, stats.migrations) == (1, 0, 2, 0)
        assert (stats.first_seen_at, stats.last_activity_at) == (100, 300)

    @pytest.mark.asyncio
    async def test_unknown_counter(self, async_session: AsyncSession) -> None:
        with pytest.raises(ValueError, match="Unknown position counter"):
            await PositionStatsRepository(async_session).bump(E, "1", counter="bogus", timestamp=0)
