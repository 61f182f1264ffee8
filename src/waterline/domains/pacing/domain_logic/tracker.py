"""Pacing tracker — the public facade over store, engine, policy and sync.

Every mutation follows the same path:

1. write synchronously to the local event store (fails only on local I/O);
2. replay the session's complete event log into fresh derived state;
3. advance the reminder latches and hand any signals to the notifier
   (active sessions only; an ended session gets its cached summary redone);
4. tell the sync coordinator that something is dirty (never awaited).

Logging therefore never waits on the network, and a sync failure never
surfaces as a logging failure.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from waterline.core.storage.models import (
    DRINK_TYPES,
    EVENT_SOURCES,
    Event,
    EventPayload,
    EventSource,
    NegativePayload,
    PositivePayload,
    Preset,
    Session,
    SessionSummary,
    UserSettings,
)
from waterline.core.storage.repository import (
    ConstraintViolation,
    EventStore,
    SessionNotFoundError,
)
from waterline.core.sync.coordinator import SyncCoordinator, SyncStatusReport
from waterline.domains.pacing.commands import (
    Command,
    EndSessionCommand,
    LogNegativeCommand,
    LogPositiveCommand,
    StartSessionCommand,
)
from waterline.domains.pacing.domain_logic.reminder_policy import (
    LoggingNotifier,
    ReminderNotifier,
    ReminderPolicy,
)
from waterline.domains.pacing.domain_logic.state_engine import compute_state, compute_summary
from waterline.domains.pacing.domain_logic.state_models import DerivedState, ReminderSignal

if TYPE_CHECKING:
    from waterline.core.audit.logger import AuditLogger

logger = logging.getLogger(__name__)

# An active session older than this is offered to the user for closing.
ABANDONED_SESSION_AGE = timedelta(hours=12)


class SessionNotActiveError(ConstraintViolation):
    """The session has already ended."""


class NoActiveSessionError(ConstraintViolation):
    """A command needs an active session and there is none."""


class PresetNotFoundError(ConstraintViolation):
    """No preset exists with the given id."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PacingTracker:
    """Session lifecycle, event logging and derived state for one local user.

    Usage::

        tracker = PacingTracker(store, user_key="u1", coordinator=coordinator)
        session_id = tracker.start_session()
        tracker.append_event(session_id, PositivePayload(weight=1.0))
        tracker.log_negative(session_id)
        state = tracker.current_state(session_id)
    """

    def __init__(
        self,
        store: EventStore,
        *,
        user_key: str,
        coordinator: SyncCoordinator | None = None,
        policy: ReminderPolicy | None = None,
        notifier: ReminderNotifier | None = None,
        audit_logger: AuditLogger | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._user_key = user_key
        self._coordinator = coordinator
        self._policy = policy or ReminderPolicy()
        self._notifier = notifier or LoggingNotifier()
        self._audit = audit_logger
        self._clock = clock or _utcnow
        self._profile = store.get_or_create_profile(user_key)
        self._prime_active_session()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def user_key(self) -> str:
        return self._user_key

    @property
    def store(self) -> EventStore:
        return self._store

    @property
    def coordinator(self) -> SyncCoordinator | None:
        return self._coordinator

    @property
    def notifier(self) -> ReminderNotifier:
        return self._notifier

    @property
    def settings(self) -> UserSettings:
        return self._profile.settings

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def start_session(self, now: datetime | None = None) -> str:
        """Open a new active session.

        Raises:
            SessionAlreadyActiveError: If a session is already active.
        """
        session = self._store.create_session(self._profile.id, now or self._clock())
        self._policy.reset(session.id)
        self._notify_dirty()
        return session.id

    def end_session(self, session_id: str, now: datetime | None = None) -> SessionSummary:
        """Close an active session and cache its summary.

        Raises:
            SessionNotFoundError: If the session does not exist.
            SessionNotActiveError: If the session has already ended.
        """
        session = self._require_session(session_id)
        if not session.is_active:
            raise SessionNotActiveError(f"Session {session_id} has already ended")

        end = now or self._clock()
        summary = self._summarize(session, end)
        self._store.end_session(session_id, end, summary)
        self._policy.reset(session_id)
        self._notify_dirty()
        return summary

    def active_session(self) -> Session | None:
        return self._store.active_session(self._profile.id)

    def list_sessions(self, *, limit: int = 50) -> list[Session]:
        return self._store.list_sessions(self._profile.id, limit=limit)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def append_event(
        self,
        session_id: str,
        payload: EventPayload,
        *,
        timestamp: datetime | None = None,
        source: EventSource = "phone",
    ) -> str:
        """Log an event into a session and return its id.

        ``timestamp`` defaults to now; an earlier value back-fills the event
        into its place in the ordered log.
        """
        if source not in EVENT_SOURCES:
            raise ValueError(f"Unknown event source: {source!r}")
        event = Event(
            id="",
            session_id=session_id,
            timestamp=timestamp or self._clock(),
            payload=payload,
            source=source,
        )
        event_id = self._store.append(session_id, event)
        self._after_event_change(session_id)
        return event_id

    def log_preset(
        self,
        session_id: str,
        preset_id: str,
        *,
        timestamp: datetime | None = None,
        source: EventSource = "phone",
    ) -> str:
        """Log a drink copied from a preset."""
        preset = self._store.get_preset(preset_id)
        if preset is None:
            raise PresetNotFoundError(f"No preset with id {preset_id}")
        return self.append_event(
            session_id, preset.to_payload(), timestamp=timestamp, source=source
        )

    def log_negative(
        self,
        session_id: str,
        volume_oz: float | None = None,
        *,
        timestamp: datetime | None = None,
        source: EventSource = "phone",
    ) -> str:
        """Log a water break; the amount defaults to the user's setting."""
        if volume_oz is None:
            volume_oz = float(self.settings.default_negative_amount_oz)
        return self.append_event(
            session_id, NegativePayload(volume_oz=volume_oz), timestamp=timestamp, source=source
        )

    def delete_event(self, event_id: str) -> bool:
        """Remove an event and recompute its session. False if it did not exist."""
        event = self._store.get_event(event_id)
        if event is None:
            return False
        self._store.delete(event_id)
        self._after_event_change(event.session_id)
        return True

    def replace_event(self, event_id: str, payload: EventPayload) -> bool:
        """Edit an event's payload in place. False if it did not exist."""
        event = self._store.get_event(event_id)
        if event is None:
            return False
        self._store.replace(event_id, payload)
        self._after_event_change(event.session_id)
        return True

    def events(self, session_id: str) -> list[Event]:
        self._require_session(session_id)
        return self._store.events_for(session_id)

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    def current_state(self, session_id: str) -> DerivedState:
        self._require_session(session_id)
        return compute_state(self._store.events_for(session_id), self.settings.warning_threshold)

    def session_summary(self, session_id: str) -> SessionSummary:
        """Cached summary for an ended session; a live one for an active session."""
        session = self._require_session(session_id)
        if not session.is_active and session.summary is not None:
            return session.summary
        return self._summarize(session, session.end_time)

    def last_activity(self, session_id: str) -> datetime:
        """Anchor for time-based reminders: the latest event, else the session start."""
        session = self._require_session(session_id)
        return self._store.last_event_time(session_id) or session.start_time

    def time_reminders_paused(self, session_id: str, now: datetime | None = None) -> bool:
        """Whether the external reminder scheduler should hold off for inactivity."""
        return ReminderPolicy.inactivity_expired(
            self.last_activity(session_id), now or self._clock()
        )

    def abandoned_session_hours(self, now: datetime | None = None) -> float | None:
        """Age in hours of an active session left open too long, else None."""
        session = self.active_session()
        if session is None:
            return None
        age = (now or self._clock()) - session.start_time
        if age < ABANDONED_SESSION_AGE:
            return None
        return age.total_seconds() / 3600

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync_status(self) -> SyncStatusReport:
        if self._coordinator is None:
            return SyncStatusReport(status="offline", pending_count=self._store.count_pending())
        return self._coordinator.report()

    async def sync_now(self) -> SyncStatusReport:
        if self._coordinator is not None:
            await self._coordinator.perform_sync()
        return self.sync_status()

    async def delete_all_user_data(self, user_key: str | None = None) -> dict[str, int | bool]:
        """Erase every local record of the user, then try the remote copy.

        The local purge always completes; remote erasure is best effort and
        reported as ``remote_erased``.
        """
        key = user_key or self._user_key
        active = self.active_session()
        if active is not None:
            self._policy.reset(active.id)

        counts = self._store.delete_all_user_data(key)
        remote_erased = False
        if self._coordinator is not None:
            remote_erased = await self._coordinator.delete_remote_user(key)
        if self._audit is not None:
            self._audit.log_data_delete(counts=counts, remote_erased=remote_erased)

        if key == self._user_key:
            # The tracker stays usable with a fresh profile.
            self._profile = self._store.get_or_create_profile(self._user_key)
        self._notify_dirty()
        return {**counts, "remote_erased": remote_erased}

    # ------------------------------------------------------------------
    # Presets and settings
    # ------------------------------------------------------------------

    def save_preset(
        self,
        name: str,
        *,
        drink_type: str = "beer",
        size_oz: float = 12.0,
        abv: float | None = None,
        weight: float = 1.0,
        preset_id: str | None = None,
    ) -> str:
        """Create a preset, or update it in place when ``preset_id`` is given."""
        if not name.strip():
            raise ValueError("Preset name must not be empty")
        if drink_type not in DRINK_TYPES:
            raise ValueError(f"Unknown drink type: {drink_type!r}")
        if not all(math.isfinite(v) and v >= 0 for v in (weight, size_oz)):
            raise ValueError("Preset weight and size must be finite and non-negative")

        pid = self._store.save_preset(Preset(
            id=preset_id or "",
            user_id=self._profile.id,
            name=name.strip(),
            drink_type=drink_type,
            size_oz=size_oz,
            abv=abv,
            weight=weight,
        ))
        self._notify_dirty()
        return pid

    def delete_preset(self, preset_id: str) -> bool:
        return self._store.delete_preset(preset_id)

    def list_presets(self) -> list[Preset]:
        return self._store.list_presets(self._profile.id)

    def update_settings(self, **changes) -> UserSettings:
        """Apply setting changes; unknown names or invalid values raise ValueError."""
        unknown = set(changes) - {f.name for f in dataclasses.fields(UserSettings)}
        if unknown:
            raise ValueError(f"Unknown settings: {sorted(unknown)}")
        updated = dataclasses.replace(self._profile.settings, **changes)
        self._store.update_settings(self._profile.id, updated)
        self._profile.settings = updated
        logger.info("Settings updated: %s", sorted(changes))
        return updated

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def handle_command(self, command: Command) -> str | SessionSummary:
        """Apply a decoded transport command.

        Returns the new session or event id, or the summary for an end.
        """
        if isinstance(command, StartSessionCommand):
            return self.start_session()
        if isinstance(command, EndSessionCommand):
            return self.end_session(self._require_active().id)
        if isinstance(command, LogNegativeCommand):
            return self.log_negative(
                self._require_active().id,
                command.volume_oz,
                timestamp=command.timestamp,
                source=command.source,
            )
        if isinstance(command, LogPositiveCommand):
            # The watch sends preset values inline; link back to the preset by name.
            preset = next((p for p in self.list_presets() if p.name == command.name), None)
            payload = PositivePayload(
                weight=command.weight,
                drink_type=command.drink_type,
                size_oz=command.size_oz,
                abv=command.abv,
                preset_id=preset.id if preset else None,
            )
            return self.append_event(
                self._require_active().id,
                payload,
                timestamp=command.timestamp,
                source=command.source,
            )
        raise TypeError(f"Unhandled command: {type(command).__name__}")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_session(self, session_id: str) -> Session:
        session = self._store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"No session with id {session_id}")
        return session

    def _require_active(self) -> Session:
        session = self.active_session()
        if session is None:
            raise NoActiveSessionError("No active session")
        return session

    def _summarize(self, session: Session, end: datetime | None) -> SessionSummary:
        return compute_summary(
            self._store.events_for(session.id),
            session.start_time,
            end,
            self.settings.due_every_n,
            self.settings.warning_threshold,
            now=self._clock(),
        )

    def _after_event_change(self, session_id: str) -> None:
        session = self._require_session(session_id)
        if session.is_active:
            state = self.current_state(session_id)
            for signal in self._policy.evaluate(session_id, state, self.settings.due_every_n):
                self._deliver(signal)
        else:
            self._store.update_session_summary(session_id, self._summarize(session, session.end_time))
        self._notify_dirty()

    def _deliver(self, signal: ReminderSignal) -> None:
        try:
            self._notifier.notify(signal)
        except Exception:
            logger.exception("Reminder notifier failed for %s", signal.kind)

    def _notify_dirty(self) -> None:
        if self._coordinator is not None:
            self._coordinator.notify_dirty()

    def _prime_active_session(self) -> None:
        """Load latches for a session that survived a restart so it does not re-fire."""
        session = self.active_session()
        if session is None:
            return
        state = self.current_state(session.id)
        self._policy.observe(session.id, state, self.settings.due_every_n)
        logger.info("Resumed active session %s", session.id)
