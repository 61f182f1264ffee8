"""Event store — durable local log of sessions, events and presets.

The store mediates between domain records (Session, Event, Preset) and the
SQLite database. It is the local source of truth: every write lands here
synchronously, and every record carries a dirty flag plus a revision counter
that the sync coordinator uses to clear dirty flags safely.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Literal

from waterline.core.storage.database import WaterlineDatabase
from waterline.core.storage.encryption import EncryptionError, PayloadCodec
from waterline.core.storage.models import (
    Event,
    EventPayload,
    Preset,
    Session,
    SessionSummary,
    UserProfile,
    UserSettings,
    payload_from_dict,
)

logger = logging.getLogger(__name__)

RecordKind = Literal["session", "event", "preset"]

# Column names are safe to interpolate: only these tables are ever addressed.
_TABLES: dict[str, str] = {
    "session": "sessions",
    "event": "events",
    "preset": "presets",
}


class RepositoryError(Exception):
    """Base class for event store errors."""


class LocalStorageFailure(RepositoryError):
    """The local database could not complete an operation. Fatal to the caller."""


class ConstraintViolation(RepositoryError):
    """An operation would break a data invariant. No state was mutated."""


class SessionAlreadyActiveError(ConstraintViolation):
    """A session is already active for this user."""


class SessionNotFoundError(ConstraintViolation):
    """No session exists with the given id."""


def to_iso(value: datetime) -> str:
    """Serialize a datetime as fixed-width UTC ISO 8601 so text order is time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class EventStore:
    """Append-mostly store for the pacing event log.

    Usage::

        db = WaterlineDatabase(":memory:")
        db.initialize()
        store = EventStore(db, PayloadCodec())

        profile = store.get_or_create_profile("user-123")
        session = store.create_session(profile.id, datetime.now(timezone.utc))
        event_id = store.append(session.id, event)
        events = store.events_for(session.id)
    """

    def __init__(self, database: WaterlineDatabase, codec: PayloadCodec | None = None) -> None:
        self._db = database
        self._codec = codec or PayloadCodec()

    @staticmethod
    def _new_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def _now_iso() -> str:
        return to_iso(datetime.now(timezone.utc))

    @contextmanager
    def _write(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Run a write in one transaction, translating sqlite errors."""
        conn = self._db.connection
        try:
            yield conn
            conn.commit()
        except sqlite3.IntegrityError:
            conn.rollback()
            raise
        except sqlite3.Error as exc:
            conn.rollback()
            logger.error("Local storage failure during %s: %s", operation, exc)
            raise LocalStorageFailure(f"{operation} failed: {exc}") from exc

    def _read(self, query: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        try:
            return self._db.connection.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            logger.error("Local storage failure reading: %s", exc)
            raise LocalStorageFailure(f"read failed: {exc}") from exc

    # ------------------------------------------------------------------
    # User profile
    # ------------------------------------------------------------------

    def get_profile(self) -> UserProfile | None:
        """Return the local profile, if one has been created."""
        rows = self._read("SELECT * FROM users ORDER BY created_at LIMIT 1")
        return self._row_to_profile(rows[0]) if rows else None

    def get_or_create_profile(
        self, user_key: str, settings: UserSettings | None = None
    ) -> UserProfile:
        """Return the profile for ``user_key``, creating it on first use."""
        rows = self._read("SELECT * FROM users WHERE user_key = ?", (user_key,))
        if rows:
            return self._row_to_profile(rows[0])

        profile = UserProfile(
            id=self._new_id(),
            user_key=user_key,
            settings=settings or UserSettings(),
            created_at=self._now_iso(),
        )
        with self._write("create profile") as conn:
            conn.execute(
                "INSERT INTO users (id, user_key, settings_json, created_at) VALUES (?, ?, ?, ?)",
                (
                    profile.id,
                    profile.user_key,
                    json.dumps(profile.settings.to_dict(), separators=(",", ":")),
                    profile.created_at,
                ),
            )
        logger.info("Created local profile %s", profile.id)
        return profile

    def update_settings(self, user_id: str, settings: UserSettings) -> None:
        with self._write("update settings") as conn:
            conn.execute(
                "UPDATE users SET settings_json = ? WHERE id = ?",
                (json.dumps(settings.to_dict(), separators=(",", ":")), user_id),
            )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(
        self, user_id: str, start_time: datetime, *, session_id: str | None = None
    ) -> Session:
        """Insert a new active session.

        Raises:
            SessionAlreadyActiveError: If the user already has an active session.
        """
        session = Session(id=session_id or self._new_id(), user_id=user_id, start_time=start_time)
        try:
            with self._write("create session") as conn:
                conn.execute(
                    """INSERT INTO sessions (id, user_id, start_time, is_active, dirty, revision)
                       VALUES (?, ?, ?, 1, 1, 1)""",
                    (session.id, user_id, to_iso(start_time)),
                )
        except sqlite3.IntegrityError as exc:
            if "FOREIGN KEY" in str(exc):
                raise ConstraintViolation(f"No user with id {user_id}") from exc
            raise SessionAlreadyActiveError(
                f"User {user_id} already has an active session"
            ) from exc
        logger.info("Started session %s", session.id)
        return session

    def get_session(self, session_id: str) -> Session | None:
        rows = self._read("SELECT * FROM sessions WHERE id = ?", (session_id,))
        return self._row_to_session(rows[0]) if rows else None

    def active_session(self, user_id: str) -> Session | None:
        rows = self._read(
            "SELECT * FROM sessions WHERE user_id = ? AND is_active = 1", (user_id,)
        )
        return self._row_to_session(rows[0]) if rows else None

    def list_sessions(self, user_id: str, *, limit: int = 50) -> list[Session]:
        """List sessions for a user, newest first."""
        rows = self._read(
            "SELECT * FROM sessions WHERE user_id = ? ORDER BY start_time DESC LIMIT ?",
            (user_id, limit),
        )
        return [self._row_to_session(row) for row in rows]

    def end_session(
        self, session_id: str, end_time: datetime, summary: SessionSummary
    ) -> None:
        """Close a session and cache its derived summary. Marks it dirty."""
        with self._write("end session") as conn:
            conn.execute(
                """UPDATE sessions
                   SET end_time = ?, is_active = 0, summary_json = ?,
                       dirty = 1, revision = revision + 1
                   WHERE id = ?""",
                (
                    to_iso(end_time),
                    json.dumps(summary.to_dict(), separators=(",", ":")),
                    session_id,
                ),
            )
        logger.info("Ended session %s", session_id)

    def update_session_summary(self, session_id: str, summary: SessionSummary) -> None:
        """Replace the cached summary of an ended session. Marks it dirty."""
        with self._write("update session summary") as conn:
            conn.execute(
                """UPDATE sessions
                   SET summary_json = ?, dirty = 1, revision = revision + 1
                   WHERE id = ?""",
                (json.dumps(summary.to_dict(), separators=(",", ":")), session_id),
            )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def append(self, session_id: str, event: Event) -> str:
        """Insert an event into a session's log and mark only it dirty.

        Args:
            session_id: The owning session.
            event: The event to insert. If ``event.id`` is empty, a UUID is
                generated.

        Returns:
            The event ID.

        Raises:
            SessionNotFoundError: If the session does not exist.
            LocalStorageFailure: On storage I/O error.
        """
        if event.session_id and event.session_id != session_id:
            raise ValueError(
                f"Event belongs to session {event.session_id}, not {session_id}"
            )
        if self.get_session(session_id) is None:
            raise SessionNotFoundError(f"No session with id {session_id}")

        eid = event.id or self._new_id()
        try:
            with self._write("append event") as conn:
                conn.execute(
                    """INSERT INTO events (id, session_id, timestamp, kind, payload, source, dirty, revision)
                       VALUES (?, ?, ?, ?, ?, ?, 1, 1)""",
                    (
                        eid,
                        session_id,
                        to_iso(event.timestamp),
                        event.kind,
                        self._codec.encode(event.payload.to_dict()),
                        event.source,
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise LocalStorageFailure(f"append event failed: {exc}") from exc

        logger.debug("Appended %s event %s to session %s", event.kind, eid, session_id)
        return eid

    def get_event(self, event_id: str) -> Event | None:
        rows = self._read("SELECT * FROM events WHERE id = ?", (event_id,))
        return self._row_to_event(rows[0]) if rows else None

    def delete(self, event_id: str) -> bool:
        """Hard-delete an event. No tombstone is kept.

        Returns:
            True if an event was found and deleted, False otherwise.
        """
        with self._write("delete event") as conn:
            cursor = conn.execute("DELETE FROM events WHERE id = ?", (event_id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted event %s", event_id)
        return deleted

    def replace(self, event_id: str, payload: EventPayload) -> bool:
        """Swap an event's payload in place, keeping its id and timestamp.

        Returns:
            True if the event existed and was updated.
        """
        with self._write("replace event") as conn:
            cursor = conn.execute(
                """UPDATE events
                   SET kind = ?, payload = ?, dirty = 1, revision = revision + 1
                   WHERE id = ?""",
                (payload.kind, self._codec.encode(payload.to_dict()), event_id),
            )
        return cursor.rowcount > 0

    def events_for(self, session_id: str) -> list[Event]:
        """Return all events of a session ordered by (timestamp, id)."""
        rows = self._read(
            "SELECT * FROM events WHERE session_id = ? ORDER BY timestamp, id",
            (session_id,),
        )
        return [self._row_to_event(row) for row in rows]

    def last_event_time(self, session_id: str) -> datetime | None:
        rows = self._read(
            "SELECT MAX(timestamp) FROM events WHERE session_id = ?", (session_id,)
        )
        value = rows[0][0] if rows else None
        return from_iso(value) if value else None

    # ------------------------------------------------------------------
    # Presets
    # ------------------------------------------------------------------

    def save_preset(self, preset: Preset) -> str:
        """Insert or update a preset and mark it dirty."""
        pid = preset.id or self._new_id()
        with self._write("save preset") as conn:
            conn.execute(
                """INSERT INTO presets (id, user_id, name, drink_type, size_oz, abv, weight, dirty, revision)
                   VALUES (?, ?, ?, ?, ?, ?, ?, 1, 1)
                   ON CONFLICT(id) DO UPDATE SET
                       name = excluded.name,
                       drink_type = excluded.drink_type,
                       size_oz = excluded.size_oz,
                       abv = excluded.abv,
                       weight = excluded.weight,
                       dirty = 1,
                       revision = presets.revision + 1""",
                (
                    pid,
                    preset.user_id,
                    preset.name,
                    preset.drink_type,
                    preset.size_oz,
                    preset.abv,
                    preset.weight,
                ),
            )
        return pid

    def get_preset(self, preset_id: str) -> Preset | None:
        rows = self._read("SELECT * FROM presets WHERE id = ?", (preset_id,))
        return self._row_to_preset(rows[0]) if rows else None

    def list_presets(self, user_id: str) -> list[Preset]:
        rows = self._read(
            "SELECT * FROM presets WHERE user_id = ? ORDER BY name, id", (user_id,)
        )
        return [self._row_to_preset(row) for row in rows]

    def delete_preset(self, preset_id: str) -> bool:
        """Delete a preset. Events logged from it keep their copied values."""
        with self._write("delete preset") as conn:
            cursor = conn.execute("DELETE FROM presets WHERE id = ?", (preset_id,))
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Sync bookkeeping
    # ------------------------------------------------------------------

    def pending(self, kind: RecordKind) -> list[Any]:
        """Return dirty records of one kind in dependency-safe order.

        Sessions are ordered by start time, events by (timestamp, id), and
        presets by (name, id).
        """
        if kind == "session":
            rows = self._read("SELECT * FROM sessions WHERE dirty = 1 ORDER BY start_time, id")
            return [self._row_to_session(row) for row in rows]
        if kind == "event":
            rows = self._read("SELECT * FROM events WHERE dirty = 1 ORDER BY timestamp, id")
            return [self._row_to_event(row) for row in rows]
        if kind == "preset":
            rows = self._read("SELECT * FROM presets WHERE dirty = 1 ORDER BY name, id")
            return [self._row_to_preset(row) for row in rows]
        raise RepositoryError(f"Invalid record kind: {kind!r}. Valid: {set(_TABLES)}")

    def mark_clean(self, kind: RecordKind, record_id: str, revision: int) -> bool:
        """Clear a dirty flag only if the record is still at ``revision``.

        A write that lands after the sync snapshot bumps the revision, so
        the record stays dirty and is pushed again on the next pass.

        Returns:
            True if the flag was cleared.
        """
        table = _TABLES.get(kind)
        if table is None:
            raise RepositoryError(f"Invalid record kind: {kind!r}. Valid: {set(_TABLES)}")
        with self._write("mark clean") as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET dirty = 0 WHERE id = ? AND revision = ?",
                (record_id, revision),
            )
        return cursor.rowcount > 0

    def count_pending(self) -> int:
        """Total number of dirty sessions, events and presets."""
        rows = self._read(
            """SELECT
                 (SELECT COUNT(*) FROM sessions WHERE dirty = 1) +
                 (SELECT COUNT(*) FROM events WHERE dirty = 1) +
                 (SELECT COUNT(*) FROM presets WHERE dirty = 1)"""
        )
        return rows[0][0]

    # ------------------------------------------------------------------
    # Account erasure
    # ------------------------------------------------------------------

    def delete_all_user_data(self, user_key: str) -> dict[str, int]:
        """Delete the profile and everything it owns.

        Returns:
            Row counts removed per table.
        """
        rows = self._read("SELECT id FROM users WHERE user_key = ?", (user_key,))
        if not rows:
            return {"sessions": 0, "events": 0, "presets": 0}
        user_id = rows[0][0]

        with self._write("delete all user data") as conn:
            events = conn.execute(
                """DELETE FROM events WHERE session_id IN
                   (SELECT id FROM sessions WHERE user_id = ?)""",
                (user_id,),
            ).rowcount
            sessions = conn.execute("DELETE FROM sessions WHERE user_id = ?", (user_id,)).rowcount
            presets = conn.execute("DELETE FROM presets WHERE user_id = ?", (user_id,)).rowcount
            conn.execute("DELETE FROM users WHERE id = ?", (user_id,))

        logger.warning(
            "Deleted ALL local data for user: %d sessions, %d events, %d presets",
            sessions,
            events,
            presets,
        )
        return {"sessions": sessions, "events": events, "presets": presets}

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _row_to_profile(self, row: Any) -> UserProfile:
        return UserProfile(
            id=row["id"],
            user_key=row["user_key"],
            settings=UserSettings.from_dict(json.loads(row["settings_json"])),
            created_at=row["created_at"],
        )

    def _row_to_session(self, row: Any) -> Session:
        summary = None
        if row["summary_json"]:
            summary = SessionSummary.from_dict(json.loads(row["summary_json"]))
        return Session(
            id=row["id"],
            user_id=row["user_id"],
            start_time=from_iso(row["start_time"]),
            end_time=from_iso(row["end_time"]) if row["end_time"] else None,
            is_active=bool(row["is_active"]),
            summary=summary,
            dirty=bool(row["dirty"]),
            revision=row["revision"],
        )

    def _row_to_event(self, row: Any) -> Event:
        try:
            payload = payload_from_dict(row["kind"], self._codec.decode(row["payload"]))
        except (EncryptionError, TypeError, ValueError) as exc:
            logger.error("Unreadable payload for event %s: %s", row["id"], exc)
            raise LocalStorageFailure(f"event {row['id']} payload unreadable: {exc}") from exc
        return Event(
            id=row["id"],
            session_id=row["session_id"],
            timestamp=from_iso(row["timestamp"]),
            payload=payload,
            source=row["source"],
            dirty=bool(row["dirty"]),
            revision=row["revision"],
        )

    def _row_to_preset(self, row: Any) -> Preset:
        return Preset(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            drink_type=row["drink_type"],
            size_oz=row["size_oz"],
            abv=row["abv"],
            weight=row["weight"],
            dirty=bool(row["dirty"]),
            revision=row["revision"],
        )
