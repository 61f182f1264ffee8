"""MCP tools for session logging, derived state and sync status.

Thin adapters over :class:`PacingTracker`: every tool validates its
arguments, calls one tracker operation and returns a JSON string. Constraint
failures (no such session, session already active...) come back as
``{"status": "error"}`` results instead of MCP errors.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

from waterline.core.storage.models import (
    NegativePayload,
    PositivePayload,
    Session,
    SessionSummary,
)
from waterline.core.storage.repository import ConstraintViolation, SessionAlreadyActiveError
from waterline.domains.pacing.commands import CommandDecodeError, decode_command

if TYPE_CHECKING:
    from waterline.domains.pacing.domain_logic.tracker import PacingTracker

logger = logging.getLogger(__name__)


def _parse_time(value: str) -> datetime | None:
    """Parse an optional ISO 8601 timestamp; naive values are taken as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _error(message: str, **extra: Any) -> str:
    return json.dumps({"status": "error", "message": message, **extra})


def _session_dict(session: Session) -> dict[str, Any]:
    return {
        "session_id": session.id,
        "start_time": session.start_time.isoformat(),
        "end_time": session.end_time.isoformat() if session.end_time else None,
        "is_active": session.is_active,
        "summary": session.summary.to_dict() if session.summary else None,
    }


def register_session_tools(mcp: FastMCP, tracker: PacingTracker) -> None:
    """Register session logging and sync tools on the MCP server."""

    @mcp.tool
    async def start_session(ctx: Context) -> str:
        """Start a new pacing session. Only one session can be active at a time."""
        try:
            session_id = tracker.start_session()
        except SessionAlreadyActiveError:
            active = tracker.active_session()
            return _error(
                "A session is already active. End it before starting a new one.",
                active_session_id=active.id if active else None,
            )
        return json.dumps({"status": "started", "session_id": session_id})

    @mcp.tool
    async def end_session(ctx: Context, session_id: str = "") -> str:
        """End a session and return its summary.

        Args:
            session_id: Session to end. Defaults to the active session.
        """
        if not session_id:
            active = tracker.active_session()
            if active is None:
                return _error("No active session to end.")
            session_id = active.id
        try:
            summary = tracker.end_session(session_id)
        except ConstraintViolation as exc:
            return _error(str(exc))
        return json.dumps({
            "status": "ended",
            "session_id": session_id,
            "summary": summary.to_dict(),
        })

    @mcp.tool
    async def log_drink(
        ctx: Context,
        session_id: str = "",
        preset_id: str = "",
        drink_type: str = "beer",
        size_oz: float = 12.0,
        abv: float | None = None,
        standard_drinks: float = 1.0,
        timestamp: str = "",
        source: str = "phone",
    ) -> str:
        """Log a drink into a session.

        Args:
            session_id: Target session. Defaults to the active session.
            preset_id: Copy drink details from this preset instead of the fields below.
            drink_type: One of 'beer', 'wine', 'liquor', 'cocktail'.
            size_oz: Serving size in ounces.
            abv: Alcohol by volume, percent.
            standard_drinks: Standard-drink estimate added to the balance.
            timestamp: When the drink happened (ISO 8601). Defaults to now.
            source: Where it was logged: 'phone', 'watch', 'widget', 'live_activity'.
        """
        try:
            session_id = session_id or _active_id(tracker)
            when = _parse_time(timestamp)
            if preset_id:
                event_id = tracker.log_preset(session_id, preset_id, timestamp=when, source=source)
            else:
                payload = PositivePayload(
                    weight=standard_drinks, drink_type=drink_type, size_oz=size_oz, abv=abv
                )
                event_id = tracker.append_event(session_id, payload, timestamp=when, source=source)
        except (ConstraintViolation, ValueError) as exc:
            return _error(str(exc))

        return json.dumps({
            "status": "logged",
            "event_id": event_id,
            "session_id": session_id,
            "state": tracker.current_state(session_id).to_dict(),
        })

    @mcp.tool
    async def log_water(
        ctx: Context,
        session_id: str = "",
        volume_oz: float | None = None,
        timestamp: str = "",
        source: str = "phone",
    ) -> str:
        """Log a water break into a session.

        Args:
            session_id: Target session. Defaults to the active session.
            volume_oz: Amount of water. Defaults to the configured default amount.
            timestamp: When it happened (ISO 8601). Defaults to now.
            source: Where it was logged: 'phone', 'watch', 'widget', 'live_activity'.
        """
        try:
            session_id = session_id or _active_id(tracker)
            event_id = tracker.log_negative(
                session_id, volume_oz, timestamp=_parse_time(timestamp), source=source
            )
        except (ConstraintViolation, ValueError) as exc:
            return _error(str(exc))

        return json.dumps({
            "status": "logged",
            "event_id": event_id,
            "session_id": session_id,
            "state": tracker.current_state(session_id).to_dict(),
        })

    @mcp.tool
    async def edit_log_entry(
        ctx: Context,
        event_id: str,
        kind: str,
        drink_type: str = "beer",
        size_oz: float = 12.0,
        abv: float | None = None,
        standard_drinks: float = 1.0,
        volume_oz: float = 8.0,
    ) -> str:
        """Replace the details of a logged entry, keeping its id and time.

        Args:
            event_id: The entry to edit.
            kind: 'positive' (drink) or 'negative' (water).
            drink_type: Drink type for a positive entry.
            size_oz: Serving size for a positive entry.
            abv: Alcohol by volume for a positive entry.
            standard_drinks: Standard-drink estimate for a positive entry.
            volume_oz: Water amount for a negative entry.
        """
        try:
            if kind == "positive":
                payload: PositivePayload | NegativePayload = PositivePayload(
                    weight=standard_drinks, drink_type=drink_type, size_oz=size_oz, abv=abv
                )
            elif kind == "negative":
                payload = NegativePayload(volume_oz=volume_oz)
            else:
                return _error(f"Unknown kind: {kind!r}. Use 'positive' or 'negative'.")
        except ValueError as exc:
            return _error(str(exc))

        if not tracker.replace_event(event_id, payload):
            return json.dumps({"status": "not_found", "event_id": event_id})
        return json.dumps({"status": "updated", "event_id": event_id})

    @mcp.tool
    async def delete_log_entry(ctx: Context, event_id: str) -> str:
        """Delete a logged entry and recompute its session.

        Args:
            event_id: The entry to delete.
        """
        if not tracker.delete_event(event_id):
            return json.dumps({"status": "not_found", "event_id": event_id})
        logger.info("Deleted log entry %s", event_id)
        return json.dumps({"status": "deleted", "event_id": event_id})

    @mcp.tool
    async def current_state(ctx: Context, session_id: str = "") -> str:
        """Return the derived pacing state of a session.

        Args:
            session_id: Session to inspect. Defaults to the active session.
        """
        try:
            session_id = session_id or _active_id(tracker)
            state = tracker.current_state(session_id)
        except ConstraintViolation as exc:
            return _error(str(exc))

        result: dict[str, Any] = {"session_id": session_id, **state.to_dict()}
        abandoned = tracker.abandoned_session_hours()
        if abandoned is not None:
            result["abandoned_hours"] = round(abandoned, 1)
        return json.dumps(result)

    @mcp.tool
    async def session_summary(ctx: Context, session_id: str) -> str:
        """Return the summary of a session (live for an active session).

        Args:
            session_id: Session to summarize.
        """
        try:
            summary = tracker.session_summary(session_id)
        except ConstraintViolation as exc:
            return _error(str(exc))
        return json.dumps({"session_id": session_id, **summary.to_dict()})

    @mcp.tool
    async def list_sessions(ctx: Context, limit: int = 20) -> str:
        """List recent sessions, newest first.

        Args:
            limit: Maximum number of sessions to return.
        """
        sessions = tracker.list_sessions(limit=max(1, limit))
        return json.dumps({
            "count": len(sessions),
            "sessions": [_session_dict(s) for s in sessions],
        })

    @mcp.tool
    async def submit_command(ctx: Context, message: dict) -> str:
        """Apply a command message from a watch, widget or shortcut.

        Args:
            message: Transport message, e.g. {"type": "logWater", "amountOz": 8}.
        """
        try:
            command = decode_command(message)
            result = tracker.handle_command(command)
        except (CommandDecodeError, ConstraintViolation, ValueError) as exc:
            return _error(str(exc))

        if isinstance(result, SessionSummary):
            return json.dumps({"status": "applied", "summary": result.to_dict()})
        return json.dumps({"status": "applied", "id": result})

    @mcp.tool
    async def sync_status(ctx: Context) -> str:
        """Report sync status and the number of records waiting to sync."""
        report = tracker.sync_status()
        return json.dumps({"status": report.status, "pending_count": report.pending_count})

    @mcp.tool
    async def sync_now(ctx: Context) -> str:
        """Push pending records to the remote store now."""
        report = await tracker.sync_now()
        return json.dumps({"status": report.status, "pending_count": report.pending_count})


def _active_id(tracker: PacingTracker) -> str:
    active = tracker.active_session()
    if active is None:
        raise ConstraintViolation("No active session. Start one or pass session_id.")
    return active.id
