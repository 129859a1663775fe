"""Data models for the ingestor module."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from lp_interval_tracker.engine.models import Ticks, make_event_id


class MalformedEventError(ValueError):
    """Raised when a ledger event cannot be parsed or is inconsistent."""


class EventKind(str, Enum):
    """Kind of a position lifecycle event."""

    OPEN = "open"
    CLOSE = "close"
    SNAPSHOT = "snapshot"
    MIGRATE = "migrate"

    @classmethod
    def parse(cls, value: Any) -> "EventKind":
        try:
            return cls(str(value).strip().lower())
        except ValueError as e:
            raise MalformedEventError(f"unknown event kind: {value!r}") from e


def _parse_int(data: dict[str, Any], key: str) -> int:
    value = _parse_optional_int(data, key)
    if value is None:
        raise MalformedEventError(f"missing field: {key}")
    return value


def _parse_optional_int(data: dict[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise MalformedEventError(f"field {key} must be an integer, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0) if value.lower().startswith(("0x", "-0x")) else int(value)
        except ValueError as e:
            raise MalformedEventError(f"field {key} is not an integer: {value!r}") from e
    raise MalformedEventError(f"field {key} must be an integer, got {type(value).__name__}")


@dataclass(frozen=True)
class Amounts:
    """Raw unit amounts attached to an event. Which fields are set depends on the kind."""

    in_a: int | None = None
    in_b: int | None = None
    out_a: int | None = None
    out_b: int | None = None
    before_a: int | None = None
    before_b: int | None = None
    after_a: int | None = None
    after_b: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Amounts":
        """Create Amounts from the camelCase ``amounts`` object of an event."""
        data = data or {}
        return cls(
            in_a=_parse_optional_int(data, "inA"),
            in_b=_parse_optional_int(data, "inB"),
            out_a=_parse_optional_int(data, "outA"),
            out_b=_parse_optional_int(data, "outB"),
            before_a=_parse_optional_int(data, "beforeA"),
            before_b=_parse_optional_int(data, "beforeB"),
            after_a=_parse_optional_int(data, "afterA"),
            after_b=_parse_optional_int(data, "afterB"),
        )

    def pair(self, first: str, second: str) -> tuple[int, int]:
        """Two amounts that the event kind requires."""
        a, b = getattr(self, first), getattr(self, second)
        if a is None or b is None:
            raise MalformedEventError(f"amounts.{first} and amounts.{second} are required")
        return a, b


_REQUIRED_AMOUNTS: dict[EventKind, tuple[str, ...]] = {
    EventKind.OPEN: ("in_a", "in_b"),
    EventKind.CLOSE: ("out_a", "out_b"),
    EventKind.SNAPSHOT: ("before_a", "before_b", "after_a", "after_b"),
    EventKind.MIGRATE: (),
}


@dataclass(frozen=True)
class LedgerEvent:
    """One position lifecycle event as delivered by the event source.

    Events of one entity arrive in non-decreasing ``(block_number, log_index)``
    order. ``(tx_ref, log_index)`` identifies the event.
    """

    kind: EventKind
    entity_id: str
    position_id: str
    timestamp: int
    block_number: int
    tx_ref: str
    log_index: int
    amounts: Amounts = field(default_factory=Amounts)
    ticks: Ticks = field(default_factory=Ticks)
    new_position_id: str | None = None

    @property
    def event_id(self) -> str:
        return make_event_id(self.tx_ref, self.log_index)

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)

    def validate(self) -> None:
        """Check kind-specific consistency.

        Raises:
            MalformedEventError: If required amounts are missing or negative,
                tick bounds are inverted, or a migration has no target.
        """
        if not self.entity_id:
            raise MalformedEventError("entity_id is empty")
        if not self.position_id:
            raise MalformedEventError("position_id is empty")
        if not self.tx_ref:
            raise MalformedEventError("tx_ref is empty")
        if self.timestamp < 0 or self.block_number < 0 or self.log_index < 0:
            raise MalformedEventError("timestamp, block_number and log_index must be non-negative")

        for name in _REQUIRED_AMOUNTS[self.kind]:
            value = getattr(self.amounts, name)
            if value is None:
                raise MalformedEventError(f"{self.kind.value} event requires amounts.{name}")
            if value < 0:
                raise MalformedEventError(f"amounts.{name} must be non-negative, got {value}")

        lower, upper = self.ticks.lower, self.ticks.upper
        if lower is not None and upper is not None and lower >= upper:
            raise MalformedEventError(f"tick lower {lower} must be below upper {upper}")

        if self.kind is EventKind.MIGRATE:
            if not self.new_position_id:
                raise MalformedEventError("migrate event requires newPositionId")
            if self.new_position_id == self.position_id:
                raise MalformedEventError("migrate event must change the position id")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LedgerEvent":
        """Create a LedgerEvent from a decoded JSON record.

        Integer fields accept JSON numbers or decimal/hex strings, since raw
        token amounts routinely exceed the float-safe range.

        Raises:
            MalformedEventError: If a field is missing or has the wrong type.
        """
        if not isinstance(data, dict):
            raise MalformedEventError(f"event must be an object, got {type(data).__name__}")

        for key in ("entityId", "positionId", "txRef"):
            if data.get(key) in (None, ""):
                raise MalformedEventError(f"missing field: {key}")

        ticks_data = data.get("ticks") or {}
        if not isinstance(ticks_data, dict):
            raise MalformedEventError("ticks must be an object")
        amounts_data = data.get("amounts")
        if amounts_data is not None and not isinstance(amounts_data, dict):
            raise MalformedEventError("amounts must be an object")

        new_position_id = data.get("newPositionId")
        timestamp = _parse_int(data, "timestamp")
        block_number = _parse_int(data, "blockNumber")
        log_index = _parse_int(data, "logIndex")

        return cls(
            kind=EventKind.parse(data.get("kind")),
            entity_id=str(data["entityId"]).lower(),
            position_id=str(data["positionId"]),
            timestamp=timestamp,
            block_number=block_number,
            tx_ref=str(data["txRef"]).lower(),
            log_index=log_index,
            amounts=Amounts.from_dict(amounts_data),
            ticks=Ticks(
                lower=_parse_optional_int(ticks_data, "lower"),
                upper=_parse_optional_int(ticks_data, "upper"),
                current=_parse_optional_int(ticks_data, "current"),
            ),
            new_position_id=str(new_position_id) if new_position_id is not None else None,
        )
