"""JSON-lines event source.

Reads one ``LedgerEvent`` per line from a file produced by an upstream
indexer. The file is expected to already be in source order and free of
reorged events.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from pathlib import Path

from lp_interval_tracker.ingestor.models import LedgerEvent, MalformedEventError

logger = logging.getLogger(__name__)


class JsonlEventSource:
    """Async iterator over the events of a JSON-lines file.

    Lines that cannot be decoded or parsed are logged and counted in
    ``malformed``; they never stop the stream. Blank lines and lines starting
    with ``#`` are ignored.

    Example:
        ```python
        source = JsonlEventSource(Path("events.jsonl"))
        async for event in source:
            await processor.apply(event)
        ```
    """

    def __init__(self, path: Path, *, start_line: int = 0) -> None:
        self._path = path
        self._start_line = start_line
        self.lines_read = 0
        self.malformed = 0

    def __aiter__(self) -> AsyncIterator[LedgerEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[LedgerEvent]:
        with self._path.open("rb") as handle:
            line_number = 0
            while True:
                line = await asyncio.to_thread(handle.readline)
                if not line:
                    break
                line_number += 1
                if line_number <= self._start_line:
                    continue
                self.lines_read += 1

                event = self._parse_line(line, line_number)
                if event is not None:
                    yield event

        logger.info(
            "Finished reading %s: %d lines, %d malformed",
            self._path,
            self.lines_read,
            self.malformed,
        )

    def _parse_line(self, raw: bytes, line_number: int) -> LedgerEvent | None:
        try:
            text = raw.decode("utf-8").strip()
            if not text or text.startswith("#"):
                return None
            return LedgerEvent.from_dict(json.loads(text))
        except UnicodeDecodeError as e:
            reason = f"not UTF-8: {e.reason} at byte {e.start}"
        except json.JSONDecodeError as e:
            reason = f"invalid JSON: {e.msg}"
        except MalformedEventError as e:
            reason = str(e)
        self.malformed += 1
        logger.warning("Skipping malformed event at %s:%d: %s", self._path, line_number, reason)
        return None
