"""Initial schema for entities, intervals, hourly buckets and the event ledger.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

from lp_interval_tracker.storage.models import RawUnits

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# NUMERIC on PostgreSQL, decimal text on SQLite.
UNITS = RawUnits(78)
SIGNED_UNITS = RawUnits(79)


def upgrade() -> None:
    op.create_table(
        "entities",
        sa.Column("entity_id", sa.String(66), nullable=False),
        sa.Column("asset_a", sa.String(66), nullable=False),
        sa.Column("asset_b", sa.String(66), nullable=False),
        sa.Column("decimals_a", sa.Integer(), nullable=False),
        sa.Column("decimals_b", sa.Integer(), nullable=False),
        sa.Column("protocol_tag", sa.String(64), nullable=False),
        sa.Column("first_seen_at", sa.BigInteger(), nullable=False),
        sa.Column("first_seen_block", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("entity_id"),
    )

    op.create_table(
        "intervals",
        sa.Column("interval_id", sa.String(255), nullable=False),
        sa.Column("entity_id", sa.String(66), nullable=False),
        sa.Column("position_id", sa.String(80), nullable=False),
        sa.Column("state", sa.String(8), nullable=False),
        sa.Column("start_timestamp", sa.BigInteger(), nullable=False),
        sa.Column("start_block", sa.BigInteger(), nullable=False),
        sa.Column("start_tx_ref", sa.String(80), nullable=False),
        sa.Column("amount_in_a", UNITS, nullable=False),
        sa.Column("amount_in_b", UNITS, nullable=False),
        sa.Column("tick_lower", sa.Integer(), nullable=True),
        sa.Column("tick_upper", sa.Integer(), nullable=True),
        sa.Column("tick_at_open", sa.Integer(), nullable=True),
        sa.Column("end_timestamp", sa.BigInteger(), nullable=True),
        sa.Column("end_block", sa.BigInteger(), nullable=True),
        sa.Column("end_tx_ref", sa.String(80), nullable=True),
        sa.Column("amount_out_a", UNITS, nullable=True),
        sa.Column("amount_out_b", UNITS, nullable=True),
        sa.Column("delta_a", SIGNED_UNITS, nullable=True),
        sa.Column("delta_b", SIGNED_UNITS, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("interval_id"),
        sa.CheckConstraint("state IN ('open', 'closed')", name="ck_intervals_state"),
        sa.CheckConstraint(
            "(state = 'closed') = (delta_a IS NOT NULL AND delta_b IS NOT NULL "
            "AND end_timestamp IS NOT NULL)",
            name="ck_intervals_closed_fields",
        ),
    )
    op.create_index(
        "uq_intervals_open_position",
        "intervals",
        ["entity_id", "position_id"],
        unique=True,
        postgresql_where=sa.text("state = 'open'"),
        sqlite_where=sa.text("state = 'open'"),
    )
    op.create_index("idx_intervals_entity_position", "intervals", ["entity_id", "position_id"])
    op.create_index("idx_intervals_state_start", "intervals", ["state", "start_timestamp"])
    op.create_index("idx_intervals_state_end", "intervals", ["state", "end_timestamp"])

    op.create_table(
        "hourly_buckets",
        sa.Column("entity_id", sa.String(66), nullable=False),
        sa.Column("hour_timestamp", sa.BigInteger(), nullable=False),
        sa.Column("total_delta_a", SIGNED_UNITS, nullable=False),
        sa.Column("total_delta_b", SIGNED_UNITS, nullable=False),
        sa.Column("interval_count", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("day", sa.Integer(), nullable=False),
        sa.Column("hour", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("entity_id", "hour_timestamp"),
    )
    op.create_index("idx_hourly_buckets_hour", "hourly_buckets", ["hour_timestamp"])

    op.create_table(
        "bucket_contributions",
        sa.Column("interval_id", sa.String(255), nullable=False),
        sa.Column("entity_id", sa.String(66), nullable=False),
        sa.Column("hour_timestamp", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("interval_id"),
    )
    op.create_index(
        "idx_bucket_contributions_bucket",
        "bucket_contributions",
        ["entity_id", "hour_timestamp"],
    )

    op.create_table(
        "rebalance_links",
        sa.Column("link_id", sa.String(100), nullable=False),
        sa.Column("entity_id", sa.String(66), nullable=False),
        sa.Column("old_position_id", sa.String(80), nullable=False),
        sa.Column("new_position_id", sa.String(80), nullable=False),
        sa.Column("new_tick_lower", sa.Integer(), nullable=True),
        sa.Column("new_tick_upper", sa.Integer(), nullable=True),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("tx_ref", sa.String(80), nullable=False),
        sa.PrimaryKeyConstraint("link_id"),
    )
    op.create_index("idx_rebalance_links_old", "rebalance_links", ["entity_id", "old_position_id"])
    op.create_index("idx_rebalance_links_new", "rebalance_links", ["entity_id", "new_position_id"])
    op.create_index("idx_rebalance_links_ts", "rebalance_links", ["timestamp"])

    op.create_table(
        "liquidity_operations",
        sa.Column("operation_id", sa.String(100), nullable=False),
        sa.Column("entity_id", sa.String(66), nullable=False),
        sa.Column("position_id", sa.String(80), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("amount_a", UNITS, nullable=True),
        sa.Column("amount_b", UNITS, nullable=True),
        sa.Column("tick_lower", sa.Integer(), nullable=True),
        sa.Column("tick_upper", sa.Integer(), nullable=True),
        sa.Column("current_tick", sa.Integer(), nullable=True),
        sa.Column("outcome", sa.String(16), nullable=False),
        sa.Column("skip_reason", sa.String(32), nullable=True),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("tx_ref", sa.String(80), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("operation_id"),
    )
    op.create_index(
        "idx_liquidity_operations_position",
        "liquidity_operations",
        ["entity_id", "position_id", "block_number"],
    )

    op.create_table(
        "position_stats",
        sa.Column("entity_id", sa.String(66), nullable=False),
        sa.Column("position_id", sa.String(80), nullable=False),
        sa.Column("opens", sa.Integer(), nullable=False),
        sa.Column("closes", sa.Integer(), nullable=False),
        sa.Column("replaces", sa.Integer(), nullable=False),
        sa.Column("migrations", sa.Integer(), nullable=False),
        sa.Column("first_seen_at", sa.BigInteger(), nullable=False),
        sa.Column("last_activity_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("entity_id", "position_id"),
    )


def downgrade() -> None:
    op.drop_table("position_stats")
    op.drop_index("idx_liquidity_operations_position", table_name="liquidity_operations")
    op.drop_table("liquidity_operations")
    op.drop_index("idx_rebalance_links_ts", table_name="rebalance_links")
    op.drop_index("idx_rebalance_links_new", table_name="rebalance_links")
    op.drop_index("idx_rebalance_links_old", table_name="rebalance_links")
    op.drop_table("rebalance_links")
    op.drop_index("idx_bucket_contributions_bucket", table_name="bucket_contributions")
    op.drop_table("bucket_contributions")
    op.drop_index("idx_hourly_buckets_hour", table_name="hourly_buckets")
    op.drop_table("hourly_buckets")
    op.drop_index("idx_intervals_state_end", table_name="intervals")
    op.drop_index("idx_intervals_state_start", table_name="intervals")
    op.drop_index("idx_intervals_entity_position", table_name="intervals")
    op.drop_index("uq_intervals_open_position", table_name="intervals")
    op.drop_table("intervals")
    op.drop_table("entities")
