"""Commands arriving from out-of-process surfaces (watch, widgets, intents).

Transport messages are untyped dictionaries. They are decoded exactly once,
here, into one of the command dataclasses below; everything past this
boundary works with typed values only.

Wire format (``type`` selects the variant)::

    {"type": "startSession"}
    {"type": "endSession"}
    {"type": "logWater", "amountOz": 8}
    {"type": "logDrink", "presetName": "IPA", "drinkType": "beer",
     "sizeOz": 16, "standardDrinkEstimate": 1.3, "abv": 6.5}

Optional on every message: ``source`` (``phone`` | ``watch`` | ``widget`` |
``live_activity``, default ``watch``) and ``timestamp`` (ISO 8601).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Union

from waterline.core.storage.models import DRINK_TYPES, EVENT_SOURCES, EventSource


class CommandDecodeError(ValueError):
    """Raised when a transport message cannot be decoded into a command."""


@dataclass(frozen=True)
class StartSessionCommand:
    source: EventSource = "watch"


@dataclass(frozen=True)
class EndSessionCommand:
    source: EventSource = "watch"


@dataclass(frozen=True)
class LogNegativeCommand:
    """Log a water break. ``volume_oz`` None means the user's default amount."""

    volume_oz: float | None = None
    source: EventSource = "watch"
    timestamp: datetime | None = None


@dataclass(frozen=True)
class LogPositiveCommand:
    """Log a drink with explicit details (the watch sends preset values inline).

    ``name`` links the event to a saved preset of the same name, if any.
    """

    name: str = "Drink"
    drink_type: str = "beer"
    size_oz: float = 12.0
    weight: float = 1.0
    abv: float | None = None
    source: EventSource = "watch"
    timestamp: datetime | None = None


Command = Union[StartSessionCommand, EndSessionCommand, LogNegativeCommand, LogPositiveCommand]


def decode_command(message: dict[str, Any]) -> Command:
    """Validate an untyped transport message and return the typed command.

    Raises:
        CommandDecodeError: On an unknown type or malformed field.
    """
    if not isinstance(message, dict):
        raise CommandDecodeError(f"Expected a mapping, got {type(message).__name__}")

    kind = message.get("type")
    source = _source(message)

    if kind == "startSession":
        return StartSessionCommand(source=source)
    if kind == "endSession":
        return EndSessionCommand(source=source)
    if kind == "logWater":
        amount = message.get("amountOz")
        return LogNegativeCommand(
            volume_oz=None if amount is None else _non_negative(message, "amountOz"),
            source=source,
            timestamp=_timestamp(message),
        )
    if kind == "logDrink":
        drink_type = message.get("drinkType", "beer")
        if drink_type not in DRINK_TYPES:
            raise CommandDecodeError(f"Unknown drinkType: {drink_type!r}")
        name = message.get("presetName", "Drink")
        if not isinstance(name, str):
            raise CommandDecodeError("presetName must be a string")
        abv = message.get("abv")
        return LogPositiveCommand(
            name=name,
            drink_type=drink_type,
            size_oz=_non_negative(message, "sizeOz", 12.0),
            weight=_non_negative(message, "standardDrinkEstimate", 1.0),
            abv=None if abv is None else _non_negative(message, "abv"),
            source=source,
            timestamp=_timestamp(message),
        )

    raise CommandDecodeError(f"Unknown command type: {kind!r}")


def _source(message: dict[str, Any]) -> EventSource:
    source = message.get("source", "watch")
    if source not in EVENT_SOURCES:
        raise CommandDecodeError(f"Unknown source: {source!r}")
    return source


def _non_negative(message: dict[str, Any], key: str, default: float = 0.0) -> float:
    value = message.get(key, default)
    # bool is an int subclass; a flag is never a quantity.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise CommandDecodeError(f"{key} must be a number, got {value!r}")
    if not math.isfinite(value) or value < 0:
        raise CommandDecodeError(f"{key} must be a finite non-negative number, got {value}")
    return float(value)


def _timestamp(message: dict[str, Any]) -> datetime | None:
    raw = message.get("timestamp")
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise CommandDecodeError("timestamp must be an ISO 8601 string")
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise CommandDecodeError(f"Invalid timestamp: {raw!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
