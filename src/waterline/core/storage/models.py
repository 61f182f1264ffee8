"""Data models for the Waterline persistence layer."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal, Union

EventKind = Literal["positive", "negative"]
EventSource = Literal["phone", "watch", "widget", "live_activity"]
DrinkType = Literal["beer", "wine", "liquor", "cocktail"]
VolumeUnit = Literal["oz", "ml"]

EVENT_SOURCES: frozenset[str] = frozenset({"phone", "watch", "widget", "live_activity"})
DRINK_TYPES: frozenset[str] = frozenset({"beer", "wine", "liquor", "cocktail"})


# ---------------------------------------------------------------------------
# Event payloads
# ---------------------------------------------------------------------------

def _check_quantity(name: str, value: float) -> None:
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"{name} must be a finite non-negative number, got {value}")


@dataclass(frozen=True)
class PositivePayload:
    """A drink. ``weight`` is the standard-drink estimate added to the balance."""

    weight: float = 1.0
    drink_type: DrinkType = "beer"
    size_oz: float = 12.0
    abv: float | None = None
    preset_id: str | None = None  # denormalized; the preset may since be gone

    kind: EventKind = field(default="positive", init=False)

    def __post_init__(self) -> None:
        _check_quantity("weight", self.weight)
        _check_quantity("size_oz", self.size_oz)
        if self.abv is not None:
            _check_quantity("abv", self.abv)
        if self.drink_type not in DRINK_TYPES:
            raise ValueError(f"Unknown drink type: {self.drink_type!r}")

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("kind")
        return data


@dataclass(frozen=True)
class NegativePayload:
    """A water break. ``volume_oz`` is cosmetic and never affects the balance."""

    volume_oz: float = 8.0

    kind: EventKind = field(default="negative", init=False)

    def __post_init__(self) -> None:
        _check_quantity("volume_oz", self.volume_oz)

    def to_dict(self) -> dict[str, Any]:
        return {"volume_oz": self.volume_oz}


EventPayload = Union[PositivePayload, NegativePayload]


def payload_from_dict(kind: str, data: dict[str, Any]) -> EventPayload:
    """Rebuild a payload from its stored JSON form."""
    if kind == "positive":
        return PositivePayload(**data)
    if kind == "negative":
        return NegativePayload(**data)
    raise ValueError(f"Unknown event kind: {kind!r}")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class Event:
    """An immutable timestamped fact in a session's log.

    Ordering is always by ``(timestamp, id)``, never by insertion order.
    """

    id: str
    session_id: str
    timestamp: datetime
    payload: EventPayload
    source: EventSource = "phone"
    dirty: bool = True
    revision: int = 1

    @property
    def kind(self) -> EventKind:
        return self.payload.kind

    def sort_key(self) -> tuple[datetime, str]:
        return (self.timestamp, self.id)


@dataclass
class SessionSummary:
    """Derived summary cached on a session when it ends."""

    total_positive: int
    total_negative: int
    total_positive_weight: float
    total_negative_volume: float
    duration_seconds: float
    adherence: float
    final_balance: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionSummary:
        return cls(**data)


@dataclass
class Session:
    """One bounded logging period. Owns its events."""

    id: str
    user_id: str
    start_time: datetime
    end_time: datetime | None = None
    is_active: bool = True
    summary: SessionSummary | None = None
    dirty: bool = True
    revision: int = 1


@dataclass
class Preset:
    """A named shortcut for logging a drink."""

    id: str
    user_id: str
    name: str
    drink_type: DrinkType = "beer"
    size_oz: float = 12.0
    abv: float | None = None
    weight: float = 1.0
    dirty: bool = True
    revision: int = 1

    def to_payload(self) -> PositivePayload:
        return PositivePayload(
            weight=self.weight,
            drink_type=self.drink_type,
            size_oz=self.size_oz,
            abv=self.abv,
            preset_id=self.id,
        )


@dataclass(frozen=True)
class UserSettings:
    """Pacing configuration. Read by the engine and policy, never mutated by them."""

    due_every_n: int = 1
    time_reminders_enabled: bool = False
    time_reminder_interval_minutes: int = 20
    warning_threshold: int = 2
    default_negative_amount_oz: int = 8
    units: VolumeUnit = "oz"
    discreet_notifications: bool = True

    def __post_init__(self) -> None:
        if self.due_every_n < 1:
            raise ValueError(f"due_every_n must be at least 1, got {self.due_every_n}")
        if self.warning_threshold < 1:
            raise ValueError(
                f"warning_threshold must be at least 1, got {self.warning_threshold}"
            )
        if self.time_reminder_interval_minutes < 1:
            raise ValueError("time_reminder_interval_minutes must be at least 1")
        if self.units not in ("oz", "ml"):
            raise ValueError(f"Unknown units: {self.units!r}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UserSettings:
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class UserProfile:
    """The local owner of sessions and presets."""

    id: str
    user_key: str
    settings: UserSettings = field(default_factory=UserSettings)
    created_at: str = ""
