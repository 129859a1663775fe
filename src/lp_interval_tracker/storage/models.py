"""SQLAlchemy models for persistent storage.

This module defines the schema of the derived tables: registered entities,
holding intervals, hourly buckets, rebalance links, and the per-event
operation ledger.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator, TypeEngine


class RawUnits(TypeDecorator[int]):
    """Exact integer token amounts of up to 79 digits.

    PostgreSQL stores them as ``NUMERIC(precision, 0)``. SQLite has no exact
    wide numeric type (its NUMERIC goes through a float), so there they are
    stored as decimal strings. Values always load as ``int``.
    """

    impl = Numeric
    cache_ok = True

    def __init__(self, precision: int = 78) -> None:
        super().__init__()
        self.precision = precision

    def load_dialect_impl(self, dialect: Dialect) -> TypeEngine[Any]:
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(self.precision + 1))
        return dialect.type_descriptor(Numeric(self.precision, 0))

    def process_bind_param(self, value: Any, dialect: Dialect) -> Any:
        if value is None:
            return None
        value = int(value)
        if dialect.name == "sqlite":
            return str(value)
        return Decimal(value)

    def process_result_value(self, value: Any, dialect: Dialect) -> int | None:
        if value is None:
            return None
        return int(value)


# Raw token units (uint256).
UNITS = RawUnits(78)
# Signed deltas of raw token units.
SIGNED_UNITS = RawUnits(79)

INTERVAL_STATE_OPEN = "open"
INTERVAL_STATE_CLOSED = "closed"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class EntityModel(Base):
    """Write-once metadata for a tracked pool manager."""

    __tablename__ = "entities"

    entity_id: Mapped[str] = mapped_column(String(66), primary_key=True)

    asset_a: Mapped[str] = mapped_column(String(66), nullable=False)
    asset_b: Mapped[str] = mapped_column(String(66), nullable=False)
    decimals_a: Mapped[int] = mapped_column(Integer, nullable=False)
    decimals_b: Mapped[int] = mapped_column(Integer, nullable=False)
    protocol_tag: Mapped[str] = mapped_column(String(64), nullable=False)

    first_seen_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    first_seen_block: Mapped[int] = mapped_column(BigInteger, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class IntervalModel(Base):
    """One continuous holding period of a position.

    End fields and deltas are populated exactly when the interval is closed.
    """

    __tablename__ = "intervals"

    interval_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(66), nullable=False)
    position_id: Mapped[str] = mapped_column(String(80), nullable=False)
    state: Mapped[str] = mapped_column(String(8), nullable=False)  # open/closed

    start_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    start_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    start_tx_ref: Mapped[str] = mapped_column(String(80), nullable=False)
    amount_in_a: Mapped[int] = mapped_column(UNITS, nullable=False)
    amount_in_b: Mapped[int] = mapped_column(UNITS, nullable=False)
    tick_lower: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tick_upper: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tick_at_open: Mapped[int | None] = mapped_column(Integer, nullable=True)

    end_timestamp: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    end_block: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    end_tx_ref: Mapped[str | None] = mapped_column(String(80), nullable=True)
    amount_out_a: Mapped[int | None] = mapped_column(UNITS, nullable=True)
    amount_out_b: Mapped[int | None] = mapped_column(UNITS, nullable=True)
    delta_a: Mapped[int | None] = mapped_column(SIGNED_UNITS, nullable=True)
    delta_b: Mapped[int | None] = mapped_column(SIGNED_UNITS, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        CheckConstraint("state IN ('open', 'closed')", name="ck_intervals_state"),
        CheckConstraint(
            "(state = 'closed') = (delta_a IS NOT NULL AND delta_b IS NOT NULL "
            "AND end_timestamp IS NOT NULL)",
            name="ck_intervals_closed_fields",
        ),
        # At most one open interval per position.
        Index(
            "uq_intervals_open_position",
            "entity_id",
            "position_id",
            unique=True,
            postgresql_where=text("state = 'open'"),
            sqlite_where=text("state = 'open'"),
        ),
        Index("idx_intervals_entity_position", "entity_id", "position_id"),
        Index("idx_intervals_state_start", "state", "start_timestamp"),
        Index("idx_intervals_state_end", "state", "end_timestamp"),
    )


class HourlyBucketModel(Base):
    """Per-entity sums of closed-interval deltas for one hour."""

    __tablename__ = "hourly_buckets"

    entity_id: Mapped[str] = mapped_column(String(66), primary_key=True)
    hour_timestamp: Mapped[int] = mapped_column(BigInteger, primary_key=True)

    total_delta_a: Mapped[int] = mapped_column(SIGNED_UNITS, nullable=False)
    total_delta_b: Mapped[int] = mapped_column(SIGNED_UNITS, nullable=False)
    interval_count: Mapped[int] = mapped_column(Integer, nullable=False)

    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    day: Mapped[int] = mapped_column(Integer, nullable=False)
    hour: Mapped[int] = mapped_column(Integer, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __table_args__ = (Index("idx_hourly_buckets_hour", "hour_timestamp"),)


class BucketContributionModel(Base):
    """Marks an interval as folded into its bucket (exactly once)."""

    __tablename__ = "bucket_contributions"

    interval_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(66), nullable=False)
    hour_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (Index("idx_bucket_contributions_bucket", "entity_id", "hour_timestamp"),)


class RebalanceLinkModel(Base):
    """Position id migration (old -> new) emitted by a rebalance."""

    __tablename__ = "rebalance_links"

    link_id: Mapped[str] = mapped_column(String(100), primary_key=True)  # txRef-logIndex
    entity_id: Mapped[str] = mapped_column(String(66), nullable=False)
    old_position_id: Mapped[str] = mapped_column(String(80), nullable=False)
    new_position_id: Mapped[str] = mapped_column(String(80), nullable=False)
    new_tick_lower: Mapped[int | None] = mapped_column(Integer, nullable=True)
    new_tick_upper: Mapped[int | None] = mapped_column(Integer, nullable=True)

    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tx_ref: Mapped[str] = mapped_column(String(80), nullable=False)

    __table_args__ = (
        Index("idx_rebalance_links_old", "entity_id", "old_position_id"),
        Index("idx_rebalance_links_new", "entity_id", "new_position_id"),
        Index("idx_rebalance_links_ts", "timestamp"),
    )


class LiquidityOperationModel(Base):
    """Ledger of every source event the engine has consumed."""

    __tablename__ = "liquidity_operations"

    operation_id: Mapped[str] = mapped_column(String(100), primary_key=True)  # txRef-logIndex
    entity_id: Mapped[str] = mapped_column(String(66), nullable=False)
    position_id: Mapped[str] = mapped_column(String(80), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)

    amount_a: Mapped[int | None] = mapped_column(UNITS, nullable=True)
    amount_b: Mapped[int | None] = mapped_column(UNITS, nullable=True)
    tick_lower: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tick_upper: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_tick: Mapped[int | None] = mapped_column(Integer, nullable=True)

    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    skip_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)

    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tx_ref: Mapped[str] = mapped_column(String(80), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_liquidity_operations_position", "entity_id", "position_id", "block_number"),
    )


class PositionStatsModel(Base):
    """Lifetime activity counters for a position."""

    __tablename__ = "position_stats"

    entity_id: Mapped[str] = mapped_column(String(66), primary_key=True)
    position_id: Mapped[str] = mapped_column(String(80), primary_key=True)

    opens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    closes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    replaces: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    migrations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    first_seen_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_activity_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
