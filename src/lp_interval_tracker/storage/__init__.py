"""Storage layer - Database schemas and repositories."""

from lp_interval_tracker.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from lp_interval_tracker.storage.models import (
    Base,
    BucketContributionModel,
    EntityModel,
    HourlyBucketModel,
    IntervalModel,
    LiquidityOperationModel,
    PositionStatsModel,
    RebalanceLinkModel,
)
from lp_interval_tracker.storage.repos import (
    EntityRepository,
    HourlyBucketRepository,
    IntervalRepository,
    LiquidityOperationDTO,
    LiquidityOperationRepository,
    PositionStatsDTO,
    PositionStatsRepository,
    RebalanceLinkRepository,
)

__all__ = [
    "Base",
    "BucketContributionModel",
    "DatabaseManager",
    "EntityModel",
    "EntityRepository",
    "HourlyBucketModel",
    "HourlyBucketRepository",
    "IntervalModel",
    "IntervalRepository",
    "LiquidityOperationDTO",
    "LiquidityOperationModel",
    "LiquidityOperationRepository",
    "PositionStatsDTO",
    "PositionStatsModel",
    "PositionStatsRepository",
    "RebalanceLinkModel",
    "RebalanceLinkRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
