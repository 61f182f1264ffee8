"""Audit logger — durable trail of sync passes and data erasure.

Records what left the device and what was deleted, without copying any
event payloads into the trail:

* ``sync_pass``   — one row per coordinator pass: pushed/failed counts,
  duration, outcome.
* ``data_delete`` — account erasure, with per-table row counts and whether
  the remote copy was erased too.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from waterline.core.storage.database import WaterlineDatabase

logger = logging.getLogger(__name__)


@dataclass
class AuditEvent:
    """A single audit log entry."""

    action: str                          # 'sync_pass' | 'data_delete'
    pushed: int = 0
    failed: int = 0
    duration_ms: float | None = None
    status: str = "success"              # 'success' | 'partial' | 'failure'
    error_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class AuditLogger:
    """Records audit events to the ``audit_log`` SQLite table.

    All writes are committed immediately so no audit entry is lost on crash.
    A failed audit write is logged and never propagates: auditing must not
    break sync or erasure.

    Usage::

        audit = AuditLogger(database)
        audit.log_sync_pass(pushed=12, failed=0, duration_ms=85.2)
    """

    def __init__(self, database: WaterlineDatabase) -> None:
        self._db = database

    # ---------------------------------------------------------------
    # Write
    # ---------------------------------------------------------------

    def log_event(self, event: AuditEvent) -> str:
        """Insert an audit event and return its UUID, or "" if the write failed."""
        event_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()

        metadata_json = (
            json.dumps(event.metadata, separators=(",", ":"))
            if event.metadata
            else None
        )

        try:
            conn = self._db.connection
            conn.execute(
                """INSERT INTO audit_log
                   (id, timestamp, action, pushed, failed, duration_ms,
                    status, error_type, metadata_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event_id,
                    now,
                    event.action,
                    event.pushed,
                    event.failed,
                    event.duration_ms,
                    event.status,
                    event.error_type,
                    metadata_json,
                ),
            )
            conn.commit()
        except Exception:
            logger.exception("Failed to write audit event — event lost")
            return ""

        return event_id

    def log_sync_pass(
        self,
        *,
        pushed: int,
        failed: int,
        duration_ms: float | None = None,
        error_type: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Record one sync pass. Status is derived from the counts."""
        if error_type is not None:
            status = "failure"
        elif failed:
            status = "partial"
        else:
            status = "success"
        return self.log_event(AuditEvent(
            action="sync_pass",
            pushed=pushed,
            failed=failed,
            duration_ms=duration_ms,
            status=status,
            error_type=error_type,
            metadata=metadata or {},
        ))

    def log_data_delete(
        self,
        *,
        counts: dict[str, int],
        remote_erased: bool,
    ) -> str:
        """Record an account erasure."""
        return self.log_event(AuditEvent(
            action="data_delete",
            status="success" if remote_erased else "partial",
            metadata={**counts, "remote_erased": remote_erased},
        ))

    # ---------------------------------------------------------------
    # Read
    # ---------------------------------------------------------------

    def get_events(
        self,
        *,
        action: str | None = None,
        since: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Query audit events, newest first."""
        conditions: list[str] = []
        params: list[Any] = []

        if action:
            conditions.append("action = ?")
            params.append(action)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        query = f"SELECT * FROM audit_log{where} ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)

        rows = self._db.connection.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def count_events(self, *, action: str | None = None) -> int:
        if action:
            row = self._db.connection.execute(
                "SELECT COUNT(*) FROM audit_log WHERE action = ?", (action,)
            ).fetchone()
        else:
            row = self._db.connection.execute("SELECT COUNT(*) FROM audit_log").fetchone()
        return row[0]
