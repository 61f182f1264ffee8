"""MCP tools for presets, settings and account erasure.

Erasure implements the user's right to delete their drink log: the local
purge always completes, the remote copy is erased when reachable, and the
operation is audit-logged by the tracker.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from waterline.domains.pacing.domain_logic.tracker import PacingTracker

logger = logging.getLogger(__name__)


def register_data_management_tools(mcp: FastMCP, tracker: PacingTracker) -> None:
    """Register preset, settings and data management tools on the MCP server."""

    @mcp.tool
    async def save_preset(
        ctx: Context,
        name: str,
        drink_type: str = "beer",
        size_oz: float = 12.0,
        abv: float | None = None,
        standard_drinks: float = 1.0,
        preset_id: str = "",
    ) -> str:
        """Create or update a drink preset.

        Args:
            name: Display name, e.g. 'House IPA'.
            drink_type: One of 'beer', 'wine', 'liquor', 'cocktail'.
            size_oz: Serving size in ounces.
            abv: Alcohol by volume, percent.
            standard_drinks: Standard-drink estimate logged with each use.
            preset_id: Existing preset to update. Omit to create a new one.
        """
        try:
            pid = tracker.save_preset(
                name,
                drink_type=drink_type,
                size_oz=size_oz,
                abv=abv,
                weight=standard_drinks,
                preset_id=preset_id or None,
            )
        except ValueError as exc:
            return json.dumps({"status": "error", "message": str(exc)})
        return json.dumps({"status": "saved", "preset_id": pid, "name": name.strip()})

    @mcp.tool
    async def list_presets(ctx: Context) -> str:
        """List saved drink presets."""
        presets = tracker.list_presets()
        return json.dumps({
            "count": len(presets),
            "presets": [
                {
                    "preset_id": p.id,
                    "name": p.name,
                    "drink_type": p.drink_type,
                    "size_oz": p.size_oz,
                    "abv": p.abv,
                    "standard_drinks": p.weight,
                }
                for p in presets
            ],
        })

    @mcp.tool
    async def delete_preset(ctx: Context, preset_id: str) -> str:
        """Delete a preset. Drinks already logged from it are unchanged.

        Args:
            preset_id: The preset to delete.
        """
        if tracker.delete_preset(preset_id):
            return json.dumps({"status": "deleted", "preset_id": preset_id})
        return json.dumps({
            "status": "not_found",
            "preset_id": preset_id,
            "message": "No preset found with that ID.",
        })

    @mcp.tool
    async def update_settings(
        ctx: Context,
        due_every_n: int | None = None,
        warning_threshold: int | None = None,
        time_reminders_enabled: bool | None = None,
        time_reminder_interval_minutes: int | None = None,
        default_negative_amount_oz: int | None = None,
        units: str | None = None,
        discreet_notifications: bool | None = None,
    ) -> str:
        """Change pacing settings. Only the arguments given are changed.

        Args:
            due_every_n: Drinks allowed before a water break is due.
            warning_threshold: Balance at which the pacing warning fires.
            time_reminders_enabled: Whether time-based reminders are on.
            time_reminder_interval_minutes: Minutes between time-based reminders.
            default_negative_amount_oz: Default water amount per break.
            units: 'oz' or 'ml'.
            discreet_notifications: Hide drink wording in notifications.
        """
        changes = {
            key: value
            for key, value in {
                "due_every_n": due_every_n,
                "warning_threshold": warning_threshold,
                "time_reminders_enabled": time_reminders_enabled,
                "time_reminder_interval_minutes": time_reminder_interval_minutes,
                "default_negative_amount_oz": default_negative_amount_oz,
                "units": units,
                "discreet_notifications": discreet_notifications,
            }.items()
            if value is not None
        }
        if not changes:
            return json.dumps({"status": "unchanged", "settings": tracker.settings.to_dict()})
        try:
            settings = tracker.update_settings(**changes)
        except ValueError as exc:
            return json.dumps({"status": "error", "message": str(exc)})
        return json.dumps({"status": "updated", "settings": settings.to_dict()})

    @mcp.tool
    async def delete_all_user_data(
        ctx: Context,
        confirm: str = "",
    ) -> str:
        """Permanently delete ALL sessions, drinks, water breaks and presets.

        This removes every local record and asks the remote store to erase its
        copy. It cannot be undone.

        Args:
            confirm: Must be exactly 'DELETE_ALL' to proceed. Safety gate.
        """
        if confirm != "DELETE_ALL":
            return json.dumps({
                "status": "cancelled",
                "message": (
                    "To delete all data, call this tool with "
                    "confirm='DELETE_ALL'. This action cannot be undone."
                ),
            })

        start_time = time.monotonic()
        result = await tracker.delete_all_user_data()
        elapsed_ms = (time.monotonic() - start_time) * 1000

        logger.warning("ALL user data deleted: %s", result)
        return json.dumps({
            "status": "all_deleted",
            **result,
            "duration_ms": round(elapsed_ms, 1),
            "message": (
                "All data has been permanently deleted."
                if result["remote_erased"]
                else "Local data deleted. The remote copy could not be erased right now."
            ),
        })
