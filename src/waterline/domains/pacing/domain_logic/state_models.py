"""Value types produced by the pacing state engine and reminder policy."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Literal

ReminderKind = Literal["pacing_warning", "break_due"]


@dataclass(frozen=True)
class DerivedState:
    """State replayed from a session's full ordered event log."""

    running_balance: float = 0.0
    since_last_negative: int = 0
    total_positive: int = 0
    total_negative: int = 0
    total_positive_weight: float = 0.0
    total_negative_volume: float = 0.0
    is_warning: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ReminderSignal:
    """Advisory output of the reminder policy. Delivery is someone else's job."""

    kind: ReminderKind
    session_id: str
    running_balance: float
    since_last_negative: int
