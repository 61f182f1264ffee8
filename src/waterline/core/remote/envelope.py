"""Sync envelopes: the unit the coordinator pushes to the remote store."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from waterline.core.storage.models import Event, Preset, Session
from waterline.core.storage.repository import RecordKind, to_iso


@dataclass(frozen=True)
class SyncEnvelope:
    """A dirty record snapshot, tagged for idempotent upsert.

    ``revision`` is the local revision at snapshot time; the coordinator
    hands it back to the store when clearing the dirty flag.
    """

    kind: RecordKind
    local_id: str
    revision: int
    payload: dict[str, Any] = field(default_factory=dict)
    parent_key: str | None = None

    @classmethod
    def from_session(cls, session: Session) -> SyncEnvelope:
        return cls(
            kind="session",
            local_id=session.id,
            revision=session.revision,
            payload={
                "start_time": to_iso(session.start_time),
                "end_time": to_iso(session.end_time) if session.end_time else None,
                "is_active": session.is_active,
                "summary": session.summary.to_dict() if session.summary else None,
            },
        )

    @classmethod
    def from_event(cls, event: Event) -> SyncEnvelope:
        return cls(
            kind="event",
            local_id=event.id,
            revision=event.revision,
            parent_key=event.session_id,
            payload={
                "timestamp": to_iso(event.timestamp),
                "kind": event.kind,
                "source": event.source,
                "data": event.payload.to_dict(),
            },
        )

    @classmethod
    def from_preset(cls, preset: Preset) -> SyncEnvelope:
        return cls(
            kind="preset",
            local_id=preset.id,
            revision=preset.revision,
            payload={
                "name": preset.name,
                "drink_type": preset.drink_type,
                "size_oz": preset.size_oz,
                "abv": preset.abv,
                "weight": preset.weight,
            },
        )
