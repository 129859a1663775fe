"""Event pipeline for the LP interval tracker.

This module provides the Pipeline class that wires the metadata resolver,
database and event processor together and drives an event stream through
a pool of workers partitioned by entity id.
"""

from __future__ import annotations

import asyncio
import logging
import zlib
from collections import Counter
from collections.abc import AsyncIterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis

from lp_interval_tracker.config import Settings, get_settings
from lp_interval_tracker.engine.models import EventOutcome, OutcomeStatus
from lp_interval_tracker.engine.processor import EventProcessor
from lp_interval_tracker.ingestor.chain import ChainClient
from lp_interval_tracker.ingestor.resolver import (
    CachedMetadataResolver,
    ChainMetadataResolver,
    StaticMetadataResolver,
)
from lp_interval_tracker.storage.database import DatabaseManager

if TYPE_CHECKING:
    from lp_interval_tracker.ingestor.models import LedgerEvent
    from lp_interval_tracker.ingestor.resolver import MetadataResolver

logger = logging.getLogger(__name__)


def partition_for(entity_id: str, workers: int) -> int:
    """Worker index owning an entity. Stable across processes and restarts."""
    return zlib.crc32(entity_id.encode("utf-8")) % workers


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    events_seen: int = 0
    events_applied: int = 0
    events_skipped: Counter[str] = field(default_factory=Counter)
    events_retried: int = 0
    events_failed: int = 0
    events_held: int = 0
    # Entity id -> id of the first event that was not applied.
    parked_entities: dict[str, str] = field(default_factory=dict)
    last_block: int | None = None
    last_error: str | None = None

    @property
    def skipped_total(self) -> int:
        return sum(self.events_skipped.values())

    def record(self, outcome: EventOutcome) -> None:
        if outcome.status is OutcomeStatus.APPLIED:
            self.events_applied += 1
        elif outcome.status is OutcomeStatus.SKIPPED:
            self.events_skipped[outcome.reason.value if outcome.reason else "unknown"] += 1


_SENTINEL = None


class Pipeline:
    """Drives ledger events through the interval tracking engine.

    Events are routed to worker ``partition_for(entity_id, workers)`` through
    a bounded queue, so the events of one entity are applied in source order
    by a single worker. A retriable outcome is retried with exponential
    backoff by the owning worker, which pauses only that partition. When the
    retries run out the entity is parked: its remaining events are held (not
    applied) and listed in ``stats.parked_entities`` so the caller can
    redeliver from the failed event. Other entities keep flowing.

    Example:
        ```python
        from lp_interval_tracker.config import get_settings
        from lp_interval_tracker.ingestor.source import JsonlEventSource
        from lp_interval_tracker.pipeline import Pipeline

        async with Pipeline(get_settings()) as pipeline:
            await pipeline.process(JsonlEventSource(Path("events.jsonl")))
        print(pipeline.stats)
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        dry_run: bool | None = None,
        db_manager: DatabaseManager | None = None,
        resolver: MetadataResolver | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            dry_run: If True, roll back every event. Overrides settings.dry_run.
            db_manager: Database manager to use instead of one built from settings.
                The caller keeps ownership of it.
            resolver: Metadata resolver to use instead of one built from settings.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        self._db_manager = db_manager
        self._owns_db = db_manager is None
        self._resolver = resolver
        self._owns_resolver = resolver is None
        self._redis: Redis | None = None
        self._chain_client: ChainClient | None = None
        self._processor: EventProcessor | None = None

        self._stop_event: asyncio.Event | None = None
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if pipeline is running."""
        return self._state == PipelineState.RUNNING

    async def start(self) -> None:
        """Start the pipeline.

        Raises:
            RuntimeError: If pipeline is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting pipeline...")

        try:
            await self._initialize_components()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            logger.info(
                "Pipeline started (workers=%d, dry_run=%s)",
                self._settings.engine.workers,
                self._dry_run,
            )
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the pipeline gracefully.

        Event production stops at the next event boundary, queued events are
        drained, then resources are released.
        """
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")

        if self._stop_event:
            self._stop_event.set()
        await self._idle.wait()

        await self._cleanup()

        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    def request_stop(self) -> None:
        """Ask the pipeline to stop reading events at the next event boundary."""
        if self._stop_event:
            self._stop_event.set()

    async def _initialize_components(self) -> None:
        settings = self._settings

        if settings.redis.url:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)

        if self._db_manager is None:
            logger.debug("Initializing database manager...")
            self._db_manager = DatabaseManager(settings.database.url)

        if self._resolver is None:
            self._resolver = self._build_resolver()

        self._processor = EventProcessor(self._db_manager, self._resolver, dry_run=self._dry_run)

    def _build_resolver(self) -> MetadataResolver:
        settings = self._settings
        resolver: MetadataResolver
        if settings.metadata.static_file is not None:
            logger.debug("Using static metadata from %s", settings.metadata.static_file)
            resolver = StaticMetadataResolver.from_file(settings.metadata.static_file)
        elif settings.chain.rpc_url is not None:
            logger.debug("Initializing chain client...")
            self._chain_client = ChainClient(
                settings.chain.rpc_url,
                fallback_rpc_url=settings.chain.fallback_rpc_url,
                redis=self._redis,
                cache_ttl_seconds=settings.metadata.cache_ttl_seconds,
                max_requests_per_second=settings.chain.max_requests_per_second,
                max_retries=settings.chain.max_retries,
            )
            resolver = ChainMetadataResolver(self._chain_client)
        else:
            raise ValueError("No metadata source configured (CHAIN_RPC_URL or METADATA_STATIC_FILE)")

        if self._redis is not None:
            resolver = CachedMetadataResolver(
                resolver,
                self._redis,
                ttl_seconds=settings.metadata.cache_ttl_seconds,
            )
        return resolver

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._chain_client:
            await self._chain_client.aclose()
            self._chain_client = None

        if self._db_manager and self._owns_db:
            await self._db_manager.dispose_async()
            self._db_manager = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        if self._owns_resolver:
            self._resolver = None
        self._processor = None
        logger.debug("Resources cleaned up")

    async def process(self, events: AsyncIterable[LedgerEvent]) -> PipelineStats:
        """Consume an event stream until it ends or ``stop()`` is called.

        Returns:
            The pipeline statistics after the last queued event was handled.
        """
        if self._state != PipelineState.RUNNING:
            raise RuntimeError(f"Cannot process events in state {self._state}")
        stop_event = self._stop_event
        if stop_event is None:
            raise RuntimeError("Pipeline components are not initialized")

        workers = self._settings.engine.workers
        queues: list[asyncio.Queue[LedgerEvent | None]] = [
            asyncio.Queue(maxsize=self._settings.engine.queue_size) for _ in range(workers)
        ]
        tasks = [
            asyncio.create_task(self._run_worker(index, queue), name=f"worker-{index}")
            for index, queue in enumerate(queues)
        ]

        self._idle.clear()
        try:
            async for event in events:
                if stop_event.is_set():
                    logger.info("Stop requested; no further events will be read")
                    break
                self._stats.events_seen += 1
                await queues[partition_for(event.entity_id, workers)].put(event)
        finally:
            for queue in queues:
                await queue.put(_SENTINEL)
            await asyncio.gather(*tasks)
            self._idle.set()

        return self._stats

    async def _run_worker(self, index: int, queue: asyncio.Queue[LedgerEvent | None]) -> None:
        logger.debug("Worker %d started", index)
        while True:
            event = await queue.get()
            try:
                if event is _SENTINEL:
                    break
                if event.entity_id in self._stats.parked_entities:
                    self._stats.events_held += 1
                    logger.debug("Holding event %s; entity %s is parked", event.event_id, event.entity_id)
                    continue
                outcome = await self._apply_with_retry(event)
                if outcome.is_retriable:
                    self._park(event, outcome.detail)
            except Exception as e:
                logger.exception("Unexpected error applying event %s", event.event_id if event else "?")
                self._stats.events_failed += 1
                self._stats.last_error = str(e)
                if event is not None:
                    self._park(event, str(e))
            finally:
                queue.task_done()
        logger.debug("Worker %d finished", index)

    def _park(self, event: LedgerEvent, reason: str | None) -> None:
        """Stop applying an entity's events; delivery must resume from ``event``."""
        self._stats.parked_entities[event.entity_id] = event.event_id
        logger.error(
            "Parked entity %s; its later events are held until event %s is redelivered: %s",
            event.entity_id,
            event.event_id,
            reason,
        )

    async def _apply_with_retry(self, event: LedgerEvent) -> EventOutcome:
        processor = self._processor
        if processor is None:
            raise RuntimeError("Pipeline components are not initialized")
        max_retries = self._settings.engine.max_retries
        base_delay = self._settings.engine.retry_base_delay_seconds

        attempt = 0
        while True:
            outcome = await processor.apply(event)
            if not outcome.is_retriable:
                self._stats.record(outcome)
                self._stats.last_block = event.block_number
                return outcome

            if attempt >= max_retries:
                self._stats.events_failed += 1
                self._stats.last_error = outcome.detail
                logger.error(
                    "Giving up on event %s for %s after %d retries: %s",
                    event.event_id,
                    event.entity_id,
                    attempt,
                    outcome.detail,
                )
                return outcome

            delay = base_delay * (2**attempt)
            attempt += 1
            self._stats.events_retried += 1
            logger.warning(
                "Retrying event %s in %.2fs (attempt %d/%d): %s",
                event.event_id,
                delay,
                attempt,
                max_retries,
                outcome.detail,
            )
            await asyncio.sleep(delay)

    async def run(self, events: AsyncIterable[LedgerEvent]) -> PipelineStats:
        """Start the pipeline, consume ``events`` and stop.

        Example:
            ```python
            stats = await Pipeline().run(JsonlEventSource(path))
            ```
        """
        await self.start()
        try:
            return await self.process(events)
        finally:
            await self.stop()

    async def __aenter__(self) -> Pipeline:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
