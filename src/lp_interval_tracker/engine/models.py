"""Domain types for interval tracking and aggregation.

Intervals are a tagged variant: an ``OpenInterval`` carries no end fields
and no deltas, a ``ClosedInterval`` always carries both. Amounts are raw
integer token units; nothing here knows about prices or decimals.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import NamedTuple

BUCKET_SECONDS = 3600


def hour_floor(timestamp: int) -> int:
    """Return the start of the hour containing ``timestamp`` (epoch seconds)."""
    return (timestamp // BUCKET_SECONDS) * BUCKET_SECONDS


def make_interval_id(entity_id: str, position_id: str, start_timestamp: int) -> str:
    """Deterministic interval key: entity, position and start timestamp."""
    return f"{entity_id}-{position_id}-{start_timestamp}"


def make_event_id(tx_ref: str, log_index: int) -> str:
    """Key of a single source event."""
    return f"{tx_ref}-{log_index}"


class IntervalState(str, Enum):
    """Lifecycle state of an interval record."""

    OPEN = "open"
    CLOSED = "closed"


class TokenAmounts(NamedTuple):
    """A pair of raw unit amounts, one per asset."""

    a: int
    b: int

    @property
    def has_holdings(self) -> bool:
        return self.a > 0 or self.b > 0


@dataclass(frozen=True)
class Ticks:
    """Tick bounds of a position plus the pool tick at the time of the event."""

    lower: int | None = None
    upper: int | None = None
    current: int | None = None

    @property
    def has_bounds(self) -> bool:
        return self.lower is not None and self.upper is not None


@dataclass(frozen=True)
class ResolvedMetadata:
    """Entity metadata as returned by a metadata resolver."""

    asset_a: str
    asset_b: str
    decimals_a: int
    decimals_b: int
    protocol_tag: str

    def __post_init__(self) -> None:
        if not self.asset_a or not self.asset_b:
            raise ValueError("asset addresses must be non-empty")
        if not self.protocol_tag:
            raise ValueError("protocol_tag must be non-empty")
        for name, value in (("decimals_a", self.decimals_a), ("decimals_b", self.decimals_b)):
            if not 0 <= value <= 255:
                raise ValueError(f"{name} out of range: {value}")


@dataclass(frozen=True)
class EntityMetadata:
    """Immutable metadata of a registered entity."""

    entity_id: str
    asset_a: str
    asset_b: str
    decimals_a: int
    decimals_b: int
    protocol_tag: str
    first_seen_at: int
    first_seen_block: int

    @classmethod
    def from_resolved(
        cls,
        entity_id: str,
        resolved: ResolvedMetadata,
        *,
        first_seen_at: int,
        first_seen_block: int,
    ) -> EntityMetadata:
        return cls(
            entity_id=entity_id,
            asset_a=resolved.asset_a,
            asset_b=resolved.asset_b,
            decimals_a=resolved.decimals_a,
            decimals_b=resolved.decimals_b,
            protocol_tag=resolved.protocol_tag,
            first_seen_at=first_seen_at,
            first_seen_block=first_seen_block,
        )


@dataclass(frozen=True)
class _IntervalFields:
    interval_id: str
    entity_id: str
    position_id: str
    start_timestamp: int
    start_block: int
    start_tx_ref: str
    amount_in_a: int
    amount_in_b: int
    tick_lower: int | None
    tick_upper: int | None
    tick_at_open: int | None

    @property
    def ticks(self) -> Ticks:
        return Ticks(lower=self.tick_lower, upper=self.tick_upper, current=self.tick_at_open)


@dataclass(frozen=True)
class OpenInterval(_IntervalFields):
    """An interval that is still accumulating; it has no end and no delta."""

    @property
    def state(self) -> IntervalState:
        return IntervalState.OPEN

    def close(
        self,
        amount_out_a: int,
        amount_out_b: int,
        *,
        timestamp: int,
        block: int,
        tx_ref: str,
    ) -> ClosedInterval:
        """Return the closed form of this interval.

        Deltas are ``out - in`` per asset and may be negative.
        """
        return ClosedInterval(
            interval_id=self.interval_id,
            entity_id=self.entity_id,
            position_id=self.position_id,
            start_timestamp=self.start_timestamp,
            start_block=self.start_block,
            start_tx_ref=self.start_tx_ref,
            amount_in_a=self.amount_in_a,
            amount_in_b=self.amount_in_b,
            tick_lower=self.tick_lower,
            tick_upper=self.tick_upper,
            tick_at_open=self.tick_at_open,
            end_timestamp=timestamp,
            end_block=block,
            end_tx_ref=tx_ref,
            amount_out_a=amount_out_a,
            amount_out_b=amount_out_b,
            delta_a=amount_out_a - self.amount_in_a,
            delta_b=amount_out_b - self.amount_in_b,
        )


@dataclass(frozen=True)
class ClosedInterval(_IntervalFields):
    """A finished interval. Terminal: it is never reopened."""

    end_timestamp: int
    end_block: int
    end_tx_ref: str
    amount_out_a: int
    amount_out_b: int
    delta_a: int
    delta_b: int

    @property
    def state(self) -> IntervalState:
        return IntervalState.CLOSED


Interval = OpenInterval | ClosedInterval


@dataclass(frozen=True)
class HourlyBucket:
    """Running totals of closed-interval deltas for one entity and hour."""

    entity_id: str
    hour_timestamp: int
    total_delta_a: int
    total_delta_b: int
    interval_count: int
    year: int
    month: int
    day: int
    hour: int

    @staticmethod
    def calendar_fields(hour_timestamp: int) -> dict[str, int]:
        """UTC calendar breakdown of an hour-aligned timestamp."""
        dt = datetime.fromtimestamp(hour_timestamp, tz=UTC)
        return {"year": dt.year, "month": dt.month, "day": dt.day, "hour": dt.hour}


@dataclass(frozen=True)
class RebalanceLink:
    """Continuity link from a migrated position id to its successor."""

    link_id: str
    entity_id: str
    old_position_id: str
    new_position_id: str
    new_tick_lower: int | None
    new_tick_upper: int | None
    timestamp: int
    block_number: int
    tx_ref: str


@dataclass(frozen=True)
class ReplaceResult:
    """What a replace transition did: the closed half and/or the reopened half."""

    closed: ClosedInterval | None
    opened: OpenInterval | None


class OutcomeStatus(str, Enum):
    """Result class of applying one event."""

    APPLIED = "applied"
    SKIPPED = "skipped"
    RETRY = "retry"


class SkipReason(str, Enum):
    """Why an event was consumed without changing interval state."""

    NOT_FOUND = "not_found"
    DUPLICATE_OPEN = "duplicate_open"
    DUPLICATE_EVENT = "duplicate_event"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class EventOutcome:
    """Typed result of the per-event entry point."""

    event_id: str
    status: OutcomeStatus
    reason: SkipReason | None = None
    detail: str | None = None
    closed: ClosedInterval | None = None
    opened: OpenInterval | None = None

    @classmethod
    def applied(
        cls,
        event_id: str,
        *,
        closed: ClosedInterval | None = None,
        opened: OpenInterval | None = None,
        detail: str | None = None,
    ) -> EventOutcome:
        return cls(event_id=event_id, status=OutcomeStatus.APPLIED, closed=closed, opened=opened, detail=detail)

    @classmethod
    def skipped(cls, event_id: str, reason: SkipReason, detail: str | None = None) -> EventOutcome:
        return cls(event_id=event_id, status=OutcomeStatus.SKIPPED, reason=reason, detail=detail)

    @classmethod
    def retry(cls, event_id: str, detail: str) -> EventOutcome:
        return cls(event_id=event_id, status=OutcomeStatus.RETRY, detail=detail)

    @property
    def is_retriable(self) -> bool:
        return self.status is OutcomeStatus.RETRY
