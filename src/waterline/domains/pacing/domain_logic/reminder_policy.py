"""Latching reminder policy for value-based triggers.

Decides, from consecutive DerivedState values of a session, whether a
pacing warning or a break-due reminder should fire. Each trigger fires once
per qualifying crossing and is re-armed only when the condition clears.

Time-based reminders are driven by an external wall-clock scheduler; this
module only exposes the inactivity window that scheduler should honour.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol, runtime_checkable

from waterline.domains.pacing.domain_logic.state_models import DerivedState, ReminderSignal

logger = logging.getLogger(__name__)

# Time reminders pause after this long without a logged event.
INACTIVITY_THRESHOLD = timedelta(minutes=90)


@runtime_checkable
class ReminderNotifier(Protocol):
    """Consumer of reminder signals (notification banners, watch haptics...)."""

    def notify(self, signal: ReminderSignal) -> None:
        ...


class LoggingNotifier:
    """Default notifier: records signals in the log and keeps them for inspection."""

    def __init__(self) -> None:
        self.delivered: list[ReminderSignal] = []

    def notify(self, signal: ReminderSignal) -> None:
        self.delivered.append(signal)
        logger.info(
            "Reminder %s for session %s (balance=%.1f, since_last_negative=%d)",
            signal.kind,
            signal.session_id,
            signal.running_balance,
            signal.since_last_negative,
        )


@dataclass
class _Latches:
    warned: bool = False
    break_due: bool = False


class ReminderPolicy:
    """Per-session ``Normal``/``Warned`` latch plus a break-due latch.

    Usage::

        policy = ReminderPolicy()
        signals = policy.evaluate(session_id, state, due_every_n=2)
    """

    def __init__(self) -> None:
        self._sessions: dict[str, _Latches] = {}

    def is_warned(self, session_id: str) -> bool:
        latches = self._sessions.get(session_id)
        return latches.warned if latches else False

    def observe(self, session_id: str, state: DerivedState, due_every_n: int) -> None:
        """Prime latches from a known state without firing anything."""
        self._sessions[session_id] = _Latches(
            warned=state.is_warning,
            break_due=state.since_last_negative >= due_every_n,
        )

    def evaluate(
        self, session_id: str, state: DerivedState, due_every_n: int
    ) -> list[ReminderSignal]:
        """Advance the latches for a fresh recompute and return signals to fire."""
        latches = self._sessions.setdefault(session_id, _Latches())
        signals: list[ReminderSignal] = []

        if state.is_warning and not latches.warned:
            latches.warned = True
            signals.append(self._signal("pacing_warning", session_id, state))
        elif not state.is_warning and latches.warned:
            latches.warned = False  # recovery is silent

        is_due = state.since_last_negative >= due_every_n
        if is_due and not latches.break_due:
            latches.break_due = True
            signals.append(self._signal("break_due", session_id, state))
        elif not is_due:
            latches.break_due = False

        return signals

    def reset(self, session_id: str) -> None:
        """Forget a session, e.g. once it has ended."""
        self._sessions.pop(session_id, None)

    @staticmethod
    def inactivity_expired(last_event_at: datetime | None, now: datetime) -> bool:
        """Whether time-based reminders should pause for lack of activity."""
        if last_event_at is None:
            return False
        return now - last_event_at >= INACTIVITY_THRESHOLD

    @staticmethod
    def _signal(kind, session_id: str, state: DerivedState) -> ReminderSignal:
        return ReminderSignal(
            kind=kind,
            session_id=session_id,
            running_balance=state.running_balance,
            since_last_negative=state.since_last_negative,
        )
