"""Remote store gateway — abstraction over the cloud copy of the event log."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from waterline.core.remote.envelope import SyncEnvelope


class RemoteGatewayError(Exception):
    """Base exception for remote store failures."""


class RemoteUnreachable(RemoteGatewayError):
    """The remote store could not be reached (network down, timeout, refused)."""


class RemoteRejected(RemoteGatewayError):
    """The remote store answered but refused the record."""


@runtime_checkable
class RemoteGateway(Protocol):
    """Idempotent-by-key operations against the remote store.

    Every upsert is keyed by the record's local id (its natural key), so
    delivering the same envelope twice leaves the remote unchanged.
    Conflicts resolve last-write-wins. Implementations raise
    :class:`RemoteUnreachable` or :class:`RemoteRejected` on failure.
    """

    async def upsert_user(self, user_key: str, settings: dict[str, Any]) -> str:
        """Create or update the owning user; returns the remote id."""
        ...

    async def upsert_session(self, user_key: str, envelope: SyncEnvelope) -> str:
        ...

    async def upsert_event(self, envelope: SyncEnvelope) -> str:
        """Upsert an event under ``envelope.parent_key`` (its session's key)."""
        ...

    async def upsert_preset(self, user_key: str, envelope: SyncEnvelope) -> str:
        ...

    async def delete_user(self, user_key: str) -> None:
        """Erase the user and everything they own remotely."""
        ...

    async def health_check(self) -> bool:
        """Whether the remote store is reachable right now."""
        ...
