"""Tests for the JSON-lines event source."""

import json
from pathlib import Path

import pytest

from lp_interval_tracker.ingestor.models import EventKind, LedgerEvent
from lp_interval_tracker.ingestor.source import JsonlEventSource


def _line(kind: str, log_index: int, **amounts: int) -> str:
    return json.dumps(
        {
            "kind": kind,
            "entityId": "0xE",
            "positionId": "1",
            "timestamp": 100 + log_index,
            "blockNumber": 10,
            "txRef": "0xA",
            "logIndex": log_index,
            "amounts": dict(amounts),
        }
    )


@pytest.fixture
def events_file(tmp_path: Path) -> Path:
    path = tmp_path / "events.jsonl"
    path.write_text(
        "\n".join(
            [
                "# exported by indexer",
                _line("open", 0, inA=10, inB=20),
                "",
                "{not json",
                json.dumps({"kind": "burn", "entityId": "0xe"}),
                _line("close", 1, outA=11, outB=19),
            ]
        )
        + "\n"
    )
    return path


async def _collect(source: JsonlEventSource) -> list[LedgerEvent]:
    return [event async for event in source]


class TestJsonlEventSource:
    @pytest.mark.asyncio
    async def test_yields_valid_events_and_counts_malformed(self, events_file: Path) -> None:
        source = JsonlEventSource(events_file)

        events = await _collect(source)

        assert [e.kind for e in events] == [EventKind.OPEN, EventKind.CLOSE]
        assert events[0].entity_id == "0xe"
        assert events[1].amounts.out_a == 11
        assert source.malformed == 2
        assert source.lines_read == 6

    @pytest.mark.asyncio
    async def test_start_line_skips_already_consumed_lines(self, events_file: Path) -> None:
        source = JsonlEventSource(events_file, start_line=2)

        events = await _collect(source)

        assert [e.kind for e in events] == [EventKind.CLOSE]
        assert source.lines_read == 4

    @pytest.mark.asyncio
    async def test_undecodable_line_is_counted_and_skipped(self, tmp_path: Path) -> None:
        path = tmp_path / "binary.jsonl"
        path.write_bytes(b"\xff\xfe bad\n" + _line("open", 0, inA=1, inB=2).encode() + b"\n")
        source = JsonlEventSource(path)

        events = await _collect(source)

        assert [e.kind for e in events] == [EventKind.OPEN]
        assert source.malformed == 1
        assert source.lines_read == 2

    @pytest.mark.asyncio
    async def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.jsonl"
        path.write_text("")
        source = JsonlEventSource(path)

        assert await _collect(source) == []
        assert source.malformed == 0

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            await _collect(JsonlEventSource(tmp_path / "missing.jsonl"))
