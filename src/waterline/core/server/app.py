"""Waterline MCP Server — application factory.

This module provides:
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery (`fastmcp run src/waterline/core/server/app.py:mcp`)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastmcp import FastMCP

from waterline.core.audit.logger import AuditLogger
from waterline.core.config.settings import get_settings
from waterline.core.remote import RemoteGateway
from waterline.core.remote.client import MCPRemoteGateway
from waterline.core.remote.memory import InMemoryRemoteGateway
from waterline.core.storage.database import WaterlineDatabase
from waterline.core.storage.encryption import PayloadCodec
from waterline.core.storage.repository import EventStore
from waterline.core.sync.connectivity import ConnectivityMonitor, ProbeConnectivityMonitor
from waterline.core.sync.coordinator import SyncCoordinator
from waterline.domains.pacing.domain_logic.reminder_policy import ReminderNotifier
from waterline.domains.pacing.domain_logic.tracker import PacingTracker
from waterline.domains.pacing.tools.data_management_tools import register_data_management_tools
from waterline.domains.pacing.tools.session_tools import register_session_tools

logger = logging.getLogger(__name__)

_VERSION = "0.1.0"


def create_app(
    *,
    database_override: WaterlineDatabase | None = None,
    gateway_override: RemoteGateway | None = None,
    connectivity_override: ConnectivityMonitor | None = None,
    notifier_override: ReminderNotifier | None = None,
) -> FastMCP:
    """Create and configure the Waterline MCP server.

    This is the main application factory. It:
    1. Opens the local event store (encrypted payloads if a key is set)
    2. Creates the remote gateway (MCP client, or in-memory when unconfigured)
    3. Wires connectivity, sync coordinator, audit logger and tracker
    4. Registers all tools
    5. Starts/stops the sync coordinator with the server lifespan

    Raises:
        EncryptionError: If ENCRYPTION_KEY is set but is not a valid Fernet key.
    """
    settings = get_settings()

    # --- Local event store ---
    if database_override is not None:
        database = database_override
    else:
        database = WaterlineDatabase(settings.db_path)
    database.initialize()

    codec = PayloadCodec(settings.encryption_key or None)
    if not codec.encrypted:
        logger.info(
            "No ENCRYPTION_KEY configured — event payloads are stored as plain JSON. "
            "Set ENCRYPTION_KEY to encrypt them at rest."
        )
    store = EventStore(database, codec)
    logger.info(
        "Event store initialized: %s (schema v%d)",
        settings.db_path if database_override is None else "override",
        database.get_schema_version(),
    )

    # --- Remote store ---
    gateway: RemoteGateway
    if gateway_override is not None:
        gateway = gateway_override
    elif settings.remote_store_url:
        from fastmcp import Client as MCPClient

        gateway = MCPRemoteGateway(MCPClient(settings.remote_store_url))
        logger.info("Remote store configured for %s", settings.remote_store_url)
    else:
        gateway = InMemoryRemoteGateway()
        logger.warning(
            "No REMOTE_STORE_URL configured — syncing to an in-memory remote "
            "(data stays on this device)"
        )

    if connectivity_override is not None:
        connectivity = connectivity_override
    else:
        connectivity = ProbeConnectivityMonitor(
            gateway.health_check,
            interval_seconds=settings.connectivity_probe_interval_seconds,
        )

    # --- Sync, audit, tracker ---
    audit_logger = AuditLogger(database)
    coordinator = SyncCoordinator(
        store,
        gateway,
        connectivity,
        user_key=settings.user_key,
        audit_logger=audit_logger,
        retry_base_seconds=settings.sync_retry_base_seconds,
        retry_max_seconds=settings.sync_retry_max_seconds,
    )
    tracker = PacingTracker(
        store,
        user_key=settings.user_key,
        coordinator=coordinator,
        notifier=notifier_override,
        audit_logger=audit_logger,
    )

    @asynccontextmanager
    async def lifespan(server: FastMCP) -> AsyncIterator[dict]:
        await coordinator.start()
        try:
            yield {"tracker": tracker}
        finally:
            await coordinator.stop()

    # --- Server instance ---
    server = FastMCP(
        "Waterline",
        instructions=(
            "Waterline pacing companion. Log drinks and water breaks into "
            "sessions, read the running balance and pacing warnings, and "
            "manage presets and settings. Data is stored on this device first "
            "and synced to the remote store in the background."
        ),
        lifespan=lifespan,
    )

    # --- Register tools ---
    @server.tool
    def health_check() -> dict:
        """Check server health and return basic status information."""
        report = tracker.sync_status()
        active = tracker.active_session()
        return {
            "status": "ok",
            "server": "Waterline",
            "version": _VERSION,
            "encrypted_at_rest": codec.encrypted,
            "remote_store_url": settings.remote_store_url or None,
            "sync_status": report.status,
            "pending_count": report.pending_count,
            "active_session_id": active.id if active else None,
        }

    register_session_tools(server, tracker)
    logger.info("Session tools registered")

    register_data_management_tools(server, tracker)
    logger.info("Data management tools registered")

    return server


# Module-level instance for FastMCP discovery (`fastmcp run ...app.py:mcp`).
# Lazy: only created when this module is loaded directly (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
