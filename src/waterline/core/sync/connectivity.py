"""Connectivity observation for the sync coordinator.

The coordinator only needs to know "connected or not" and to be told when
that changes. Host platforms that already have a reachability API push state
into :class:`ManualConnectivity`; headless deployments poll the remote with
:class:`ProbeConnectivityMonitor`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

ConnectivityCallback = Callable[[bool], None]


@runtime_checkable
class ConnectivityMonitor(Protocol):
    """Source of connected/disconnected transitions."""

    @property
    def is_connected(self) -> bool:
        ...

    def subscribe(self, callback: ConnectivityCallback) -> None:
        """Register a callback invoked with the new state on every transition."""
        ...

    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...


class _Subscribers:
    def __init__(self, connected: bool) -> None:
        self._connected = connected
        self._callbacks: list[ConnectivityCallback] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    def subscribe(self, callback: ConnectivityCallback) -> None:
        self._callbacks.append(callback)

    def _publish(self, connected: bool) -> None:
        if connected == self._connected:
            return
        self._connected = connected
        logger.info("Connectivity changed: %s", "connected" if connected else "disconnected")
        for callback in list(self._callbacks):
            callback(connected)


class ManualConnectivity(_Subscribers):
    """Connectivity state set explicitly by the host (or by tests).

    Usage::

        connectivity = ManualConnectivity(connected=False)
        coordinator = SyncCoordinator(store, gateway, connectivity, user_key="u1")
        await coordinator.start()
        connectivity.set_connected(True)  # triggers a sync pass
    """

    def __init__(self, connected: bool = True) -> None:
        super().__init__(connected)

    def set_connected(self, connected: bool) -> None:
        self._publish(connected)

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass


class ProbeConnectivityMonitor(_Subscribers):
    """Polls an async probe (typically ``gateway.health_check``) on an interval."""

    def __init__(
        self,
        probe: Callable[[], Awaitable[bool]],
        *,
        interval_seconds: float = 30.0,
    ) -> None:
        super().__init__(False)
        self._probe = probe
        self._interval = interval_seconds
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        if self._task is not None:
            return
        await self.check_now()
        self._task = asyncio.get_running_loop().create_task(self._poll())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def check_now(self) -> bool:
        """Run the probe once and publish any transition."""
        self._publish(bool(await self._probe()))
        return self._connected

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.check_now()
