"""Interval tracking engine - State machine, aggregation and per-event processing."""

from lp_interval_tracker.engine.models import (
    BUCKET_SECONDS,
    ClosedInterval,
    EntityMetadata,
    EventOutcome,
    HourlyBucket,
    Interval,
    IntervalState,
    OpenInterval,
    OutcomeStatus,
    RebalanceLink,
    ReplaceResult,
    ResolvedMetadata,
    SkipReason,
    Ticks,
    TokenAmounts,
    hour_floor,
    make_event_id,
    make_interval_id,
)

__all__ = [
    "BUCKET_SECONDS",
    "ClosedInterval",
    "EntityMetadata",
    "EventOutcome",
    "HourlyBucket",
    "Interval",
    "IntervalState",
    "OpenInterval",
    "OutcomeStatus",
    "RebalanceLink",
    "ReplaceResult",
    "ResolvedMetadata",
    "SkipReason",
    "Ticks",
    "TokenAmounts",
    "hour_floor",
    "make_event_id",
    "make_interval_id",
]
