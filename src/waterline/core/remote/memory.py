"""In-memory remote store for tests and offline development.

Behaves like the real remote: upserts are keyed by local id, last write wins,
events are refused when their session has not been pushed yet. Failures can
be injected to simulate an unreachable or rejecting backend.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from waterline.core.remote import RemoteRejected, RemoteUnreachable
from waterline.core.remote.envelope import SyncEnvelope

logger = logging.getLogger(__name__)


class InMemoryRemoteGateway:
    """Dict-backed :class:`~waterline.core.remote.RemoteGateway`.

    Attributes:
        unreachable: When True every call raises :class:`RemoteUnreachable`.
        rejected_keys: Local ids whose upserts raise :class:`RemoteRejected`.
        gate: Optional event every call waits on before proceeding; lets a
            test hold a sync pass in flight.
        calls: ``(operation, key)`` log of every attempted call.
    """

    def __init__(self) -> None:
        self.users: dict[str, dict[str, Any]] = {}
        self.sessions: dict[str, dict[str, Any]] = {}
        self.events: dict[str, dict[str, Any]] = {}
        self.presets: dict[str, dict[str, Any]] = {}
        self.unreachable = False
        self.rejected_keys: set[str] = set()
        self.gate: asyncio.Event | None = None
        self.calls: list[tuple[str, str]] = []

    async def _enter(self, operation: str, key: str) -> None:
        self.calls.append((operation, key))
        if self.gate is not None:
            await self.gate.wait()
        if self.unreachable:
            raise RemoteUnreachable(f"{operation}: remote store unreachable")
        if key in self.rejected_keys:
            raise RemoteRejected(f"{operation}: record {key} rejected")

    def calls_for(self, operation: str) -> list[str]:
        return [key for op, key in self.calls if op == operation]

    async def upsert_user(self, user_key: str, settings: dict[str, Any]) -> str:
        await self._enter("upsert_user", user_key)
        self.users[user_key] = {"settings": dict(settings)}
        return f"user:{user_key}"

    async def upsert_session(self, user_key: str, envelope: SyncEnvelope) -> str:
        await self._enter("upsert_session", envelope.local_id)
        if user_key not in self.users:
            raise RemoteRejected(f"Unknown user {user_key}")
        self.sessions[envelope.local_id] = {"user_key": user_key, **envelope.payload}
        return f"session:{envelope.local_id}"

    async def upsert_event(self, envelope: SyncEnvelope) -> str:
        await self._enter("upsert_event", envelope.local_id)
        if envelope.parent_key not in self.sessions:
            raise RemoteRejected(f"Unknown session {envelope.parent_key}")
        self.events[envelope.local_id] = {"session_key": envelope.parent_key, **envelope.payload}
        return f"event:{envelope.local_id}"

    async def upsert_preset(self, user_key: str, envelope: SyncEnvelope) -> str:
        await self._enter("upsert_preset", envelope.local_id)
        if user_key not in self.users:
            raise RemoteRejected(f"Unknown user {user_key}")
        self.presets[envelope.local_id] = {"user_key": user_key, **envelope.payload}
        return f"preset:{envelope.local_id}"

    async def delete_user(self, user_key: str) -> None:
        await self._enter("delete_user", user_key)
        self.users.pop(user_key, None)
        session_keys = [k for k, s in self.sessions.items() if s["user_key"] == user_key]
        for key in session_keys:
            del self.sessions[key]
        self.events = {
            k: e for k, e in self.events.items() if e["session_key"] not in session_keys
        }
        self.presets = {k: p for k, p in self.presets.items() if p["user_key"] != user_key}
        logger.info("In-memory remote erased user %s", user_key)

    async def health_check(self) -> bool:
        return not self.unreachable
