"""Sync coordinator — pushes dirty local records to the remote store.

The local event store is authoritative. This coordinator keeps the remote
copy eventually consistent without ever blocking local writes:

* single-flight: at most one sync pass runs at a time; requests that arrive
  while a pass is in flight are coalesced into one follow-up pass;
* dependency order: sessions, then events, then presets, per pass;
* idempotent: every push is an upsert keyed by local id, so re-delivery
  after a crash mid-pass is harmless;
* partial progress is kept: a failed record stays dirty and the rest of the
  pass continues;
* dirty flags are cleared by compare-and-clear on the record revision, so a
  write landing mid-pass is never lost.

Conflict policy is last-write-wins; there is no merge and no detection of
concurrent edits from another device.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from waterline.core.remote import RemoteGateway, RemoteGatewayError
from waterline.core.remote.envelope import SyncEnvelope
from waterline.core.storage.repository import EventStore, LocalStorageFailure
from waterline.core.sync.connectivity import ConnectivityMonitor

if TYPE_CHECKING:
    from waterline.core.audit.logger import AuditLogger

logger = logging.getLogger(__name__)

SyncState = Literal["idle", "syncing", "offline", "error"]


@dataclass(frozen=True)
class SyncStatusReport:
    """Read-only view for a "syncing / pending N / offline" indicator."""

    status: SyncState
    pending_count: int


class SyncCoordinator:
    """Single-flight background sync of dirty records.

    Usage::

        coordinator = SyncCoordinator(store, gateway, connectivity, user_key="u1")
        await coordinator.start()
        ...
        store.append(session_id, event)
        coordinator.notify_dirty()
        ...
        await coordinator.stop()
    """

    def __init__(
        self,
        store: EventStore,
        gateway: RemoteGateway,
        connectivity: ConnectivityMonitor,
        *,
        user_key: str,
        audit_logger: AuditLogger | None = None,
        retry_base_seconds: float = 5.0,
        retry_max_seconds: float = 300.0,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._connectivity = connectivity
        self._user_key = user_key
        self._audit = audit_logger
        self._retry_base = retry_base_seconds
        self._retry_max = retry_max_seconds

        self._status: SyncState = "idle"
        self._pending_count = 0
        self._is_syncing = False
        self._resync_requested = False
        self._started = False
        self._task: asyncio.Task | None = None
        self._retry_handle: asyncio.TimerHandle | None = None
        self._retry_attempt = 0
        self._pass_count = 0

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def status(self) -> SyncState:
        return self._status

    @property
    def pending_count(self) -> int:
        return self._pending_count

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    @property
    def resync_requested(self) -> bool:
        return self._resync_requested

    @property
    def pass_count(self) -> int:
        """Number of passes that reached the snapshot step."""
        return self._pass_count

    @property
    def retry_scheduled(self) -> bool:
        return self._retry_handle is not None

    def report(self) -> SyncStatusReport:
        return SyncStatusReport(status=self._status, pending_count=self._pending_count)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Begin observing connectivity and make an initial sync attempt."""
        if self._started:
            return
        self._connectivity.subscribe(self._on_connectivity_change)
        await self._connectivity.start()
        self._started = True
        logger.info("Sync coordinator started (connected=%s)", self._connectivity.is_connected)
        self.notify_dirty()

    async def stop(self) -> None:
        """Cancel pending retries and any in-flight pass; stop observing."""
        self._cancel_retry()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        if self._started:
            await self._connectivity.stop()
            self._started = False
        logger.info("Sync coordinator stopped")

    async def wait_until_idle(self) -> None:
        """Wait for the in-flight pass (and any coalesced follow-ups) to finish."""
        while self._task is not None and not self._task.done():
            await self._task

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def notify_dirty(self) -> None:
        """Signal that local data changed. Never blocks and never raises for sync reasons.

        Coalesces into the running pass when one is in flight; otherwise
        starts a pass as a background task on the running event loop.
        """
        self._refresh_pending()
        if self._is_syncing:
            self._resync_requested = True
            return
        if not self._connectivity.is_connected:
            self._status = "offline"
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; sync deferred to the next trigger")
            return
        # Claim the flight before the task is scheduled so a second call coalesces.
        self._is_syncing = True
        self._task = loop.create_task(self._drain())

    async def perform_sync(self) -> None:
        """Run a sync pass now, or coalesce into the one already in flight."""
        if self._is_syncing:
            self._resync_requested = True
            return
        self._is_syncing = True
        await self._drain()

    async def delete_remote_user(self, user_key: str) -> bool:
        """Best-effort remote erasure. Returns True if the remote confirmed it."""
        if not self._connectivity.is_connected:
            logger.info("Offline; skipping remote erasure for user")
            return False
        try:
            await self._gateway.delete_user(user_key)
        except RemoteGatewayError as exc:
            logger.warning("Remote erasure failed: %s", exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Sync engine
    # ------------------------------------------------------------------

    async def _drain(self) -> None:
        """Run passes until no resync was requested. Caller holds the flight."""
        try:
            while True:
                self._resync_requested = False
                try:
                    await self._sync_pass()
                except LocalStorageFailure:
                    logger.exception("Local storage failure during sync pass")
                    self._status = "error"
                    break
                except Exception:
                    logger.exception("Unexpected error during sync pass")
                    self._refresh_pending()
                    self._status = "error" if self._connectivity.is_connected else "offline"
                    break
                if not self._resync_requested or not self._connectivity.is_connected:
                    break
                logger.debug("Changes arrived during sync; running another pass")
        finally:
            self._is_syncing = False

    async def _sync_pass(self) -> None:
        if not self._connectivity.is_connected:
            self._status = "offline"
            return

        self._pass_count += 1
        started = time.monotonic()

        sessions = [SyncEnvelope.from_session(s) for s in self._store.pending("session")]
        events = [SyncEnvelope.from_event(e) for e in self._store.pending("event")]
        presets = [SyncEnvelope.from_preset(p) for p in self._store.pending("preset")]
        total = len(sessions) + len(events) + len(presets)
        self._pending_count = total

        if total == 0:
            self._status = "idle"
            return

        self._status = "syncing"
        logger.info(
            "Sync pass: %d sessions, %d events, %d presets pending",
            len(sessions),
            len(events),
            len(presets),
        )

        profile = self._store.get_profile()
        settings = profile.settings.to_dict() if profile else {}
        try:
            await self._gateway.upsert_user(self._user_key, settings)
        except RemoteGatewayError as exc:
            logger.warning("Could not reach remote store to register user: %s", exc)
            self._user_upsert_failed(exc, started)
            return
        except Exception as exc:
            logger.exception("Unexpected error registering user with remote store")
            self._user_upsert_failed(exc, started)
            return

        self._retry_attempt = 0
        self._cancel_retry()

        pushed = 0
        failed = 0
        failed_sessions: set[str] = set()

        for env in sessions:
            if await self._push(env, self._gateway.upsert_session(self._user_key, env)):
                pushed += 1
            else:
                failed += 1
                failed_sessions.add(env.local_id)

        for env in events:
            if env.parent_key in failed_sessions:
                logger.debug("Skipping event %s; its session failed to sync", env.local_id)
                failed += 1
                continue
            if await self._push(env, self._gateway.upsert_event(env)):
                pushed += 1
            else:
                failed += 1

        for env in presets:
            if await self._push(env, self._gateway.upsert_preset(self._user_key, env)):
                pushed += 1
            else:
                failed += 1

        self._refresh_pending()
        if not self._connectivity.is_connected:
            self._status = "offline"
        else:
            self._status = "idle" if self._pending_count == 0 else "error"

        logger.info(
            "Sync pass finished: %d pushed, %d failed, %d still pending",
            pushed,
            failed,
            self._pending_count,
        )
        self._audit_pass(pushed, failed, started)

    async def _push(self, envelope: SyncEnvelope, call: Awaitable[str]) -> bool:
        try:
            await call
        except RemoteGatewayError as exc:
            logger.warning("Failed to sync %s %s: %s", envelope.kind, envelope.local_id, exc)
            return False
        except Exception:
            logger.exception("Unexpected error syncing %s %s", envelope.kind, envelope.local_id)
            return False
        if not self._store.mark_clean(envelope.kind, envelope.local_id, envelope.revision):
            logger.debug(
                "%s %s changed during sync; left dirty", envelope.kind, envelope.local_id
            )
        return True

    # ------------------------------------------------------------------
    # Retry and connectivity
    # ------------------------------------------------------------------

    def _user_upsert_failed(self, exc: Exception, started: float) -> None:
        self._refresh_pending()
        self._status = "error" if self._connectivity.is_connected else "offline"
        self._schedule_retry()
        self._audit_pass(0, 0, started, error_type=type(exc).__name__)

    def _schedule_retry(self) -> None:
        """Schedule exactly one delayed retry, backing off exponentially."""
        if self._retry_handle is not None:
            return
        delay = self._retry_delay(self._retry_attempt)
        self._retry_attempt += 1
        self._retry_handle = asyncio.get_running_loop().call_later(delay, self._fire_retry)
        logger.info("Sync retry %d scheduled in %.1fs", self._retry_attempt, delay)

    def _retry_delay(self, attempt: int) -> float:
        return min(self._retry_base * (2 ** attempt), self._retry_max)

    def _fire_retry(self) -> None:
        self._retry_handle = None
        self.notify_dirty()

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def _on_connectivity_change(self, connected: bool) -> None:
        if connected:
            if self._status == "offline":
                self._status = "idle"
            self.notify_dirty()
        elif not self._is_syncing:
            # An in-flight pass is left alone; it reports offline when it ends.
            self._status = "offline"

    def _refresh_pending(self) -> None:
        self._pending_count = self._store.count_pending()

    def _audit_pass(
        self, pushed: int, failed: int, started: float, *, error_type: str | None = None
    ) -> None:
        if self._audit is None:
            return
        self._audit.log_sync_pass(
            pushed=pushed,
            failed=failed,
            duration_ms=round((time.monotonic() - started) * 1000, 1),
            error_type=error_type,
            metadata={"pending_after": self._pending_count},
        )
