"""Command line entry point.

Usage:
    python -m lp_interval_tracker init-db
    python -m lp_interval_tracker ingest events.jsonl [--dry-run] [--workers N]
    python -m lp_interval_tracker show-config
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

from pydantic import ValidationError

from lp_interval_tracker import __version__
from lp_interval_tracker.config import Settings, get_settings
from lp_interval_tracker.ingestor.source import JsonlEventSource
from lp_interval_tracker.pipeline import Pipeline
from lp_interval_tracker.storage.database import DatabaseManager

logger = logging.getLogger("lp_interval_tracker")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lp_interval_tracker",
        description="Track LP position intervals and aggregate hourly deltas.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the derived tables")

    ingest = sub.add_parser("ingest", help="Apply a JSON-lines event file")
    ingest.add_argument("events", type=Path, help="Path to the JSON-lines event file")
    ingest.add_argument("--dry-run", action="store_true", help="Roll back every event instead of committing")
    ingest.add_argument("--workers", type=int, default=None, help="Override ENGINE_WORKERS")
    ingest.add_argument("--start-line", type=int, default=0, help="Skip this many lines of the file")

    sub.add_parser("show-config", help="Print the effective configuration with secrets redacted")
    return parser


async def _init_db(settings: Settings) -> int:
    db = DatabaseManager(settings.database.url)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()
    return 0


async def _ingest(settings: Settings, args: argparse.Namespace) -> int:
    if not args.events.is_file():
        logger.error("Event file not found: %s", args.events)
        return 2
    if args.workers is not None:
        if args.workers < 1:
            logger.error("--workers must be at least 1")
            return 2
        settings.engine.workers = args.workers

    pipeline = Pipeline(settings, dry_run=args.dry_run or None)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, pipeline.request_stop)
        except NotImplementedError:
            # Windows event loops do not support signal handlers.
            pass

    source = JsonlEventSource(args.events, start_line=args.start_line)
    stats = await pipeline.run(source)
    logger.info(
        "Ingest finished: seen=%d applied=%d skipped=%d %s retried=%d failed=%d held=%d malformed_lines=%d",
        stats.events_seen,
        stats.events_applied,
        stats.skipped_total,
        dict(stats.events_skipped),
        stats.events_retried,
        stats.events_failed,
        stats.events_held,
        source.malformed,
    )
    for entity_id, event_id in sorted(stats.parked_entities.items()):
        logger.error("Entity %s was parked; redeliver its events from %s", entity_id, event_id)
    return 1 if stats.events_failed else 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
        settings.validate_requirements(command=args.command)
    except (ValidationError, ValueError) as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error("Invalid configuration: %s", e)
        return 2

    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "show-config":
        print(json.dumps(settings.redacted_summary(), indent=2))
        return 0
    if args.command == "init-db":
        return asyncio.run(_init_db(settings))
    return asyncio.run(_ingest(settings, args))


if __name__ == "__main__":
    sys.exit(main())
