"""MCP client gateway for the Waterline remote store.

The remote store is reached through MCP tool calls via ``fastmcp.Client``.
Each upsert tool is keyed by the record's local id, so retries after a crash
mid-sync are safe: the remote patches the existing row instead of inserting
a duplicate.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastmcp.exceptions import ToolError

from waterline.core.remote import RemoteRejected, RemoteUnreachable
from waterline.core.remote.envelope import SyncEnvelope

logger = logging.getLogger(__name__)


class MCPRemoteGateway:
    """:class:`~waterline.core.remote.RemoteGateway` backed by an MCP server.

    Usage::

        from fastmcp import Client
        mcp = Client("https://sync.example.com/mcp")
        gateway = MCPRemoteGateway(mcp)

        remote_id = await gateway.upsert_session("user-123", envelope)
    """

    def __init__(self, mcp_client: Any) -> None:
        """Initialise with a fastmcp.Client (or compatible)."""
        self._client = mcp_client

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def upsert_user(self, user_key: str, settings: dict[str, Any]) -> str:
        return await self._upsert("upsert_user", {"user_key": user_key, "settings": settings})

    async def upsert_session(self, user_key: str, envelope: SyncEnvelope) -> str:
        return await self._upsert(
            "upsert_session",
            {"user_key": user_key, "key": envelope.local_id, **envelope.payload},
        )

    async def upsert_event(self, envelope: SyncEnvelope) -> str:
        return await self._upsert(
            "upsert_event",
            {"session_key": envelope.parent_key, "key": envelope.local_id, **envelope.payload},
        )

    async def upsert_preset(self, user_key: str, envelope: SyncEnvelope) -> str:
        return await self._upsert(
            "upsert_preset",
            {"user_key": user_key, "key": envelope.local_id, **envelope.payload},
        )

    async def delete_user(self, user_key: str) -> None:
        await self._call_tool("delete_user", {"user_key": user_key})

    async def health_check(self) -> bool:
        try:
            parsed = await self._call_tool("health_check", {})
        except (RemoteUnreachable, RemoteRejected):
            return False
        return parsed.get("status") == "ok"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _upsert(self, tool_name: str, arguments: dict[str, Any]) -> str:
        parsed = await self._call_tool(tool_name, arguments)
        remote_id = parsed.get("id")
        if not isinstance(remote_id, str) or not remote_id:
            raise RemoteRejected(f"Missing remote id in response from {tool_name}")
        return remote_id

    async def _call_tool(self, tool_name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Call a tool on the remote store and return the parsed JSON object.

        Transport failures become :class:`RemoteUnreachable`; error payloads
        and malformed responses become :class:`RemoteRejected`.
        """
        logger.debug("Calling remote store tool %s", tool_name)

        try:
            async with self._client:
                result = await self._client.call_tool(tool_name, arguments)
        except ToolError as exc:
            raise RemoteRejected(f"{tool_name} reported an error: {exc}") from exc
        except Exception as exc:
            logger.warning("Remote store unreachable calling %s: %s", tool_name, exc)
            raise RemoteUnreachable(
                f"Failed to call remote store tool '{tool_name}'"
            ) from exc

        if getattr(result, "is_error", False):
            raise RemoteRejected(f"{tool_name} reported an error: {_extract_payload(result)}")

        payload = _extract_payload(result)
        if payload is None:
            raise RemoteRejected(f"No usable content in response from {tool_name}")

        if isinstance(payload, str):
            try:
                parsed: Any = json.loads(payload)
            except (json.JSONDecodeError, TypeError) as exc:
                raise RemoteRejected(f"Invalid JSON from {tool_name}: {exc}") from exc
        else:
            parsed = payload

        if not isinstance(parsed, dict):
            raise RemoteRejected(
                f"Expected JSON object from {tool_name}, got {type(parsed).__name__}"
            )

        if parsed.get("status") == "error":
            raise RemoteRejected(
                f"Remote store rejected {tool_name}: {_format_error(parsed.get('error'))}"
            )

        return parsed


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def _extract_payload(result: Any) -> Any | None:
    """Extract a usable payload from a fastmcp tool result.

    Accepts a CallToolResult (``.content`` list), a bare list of content
    blocks, a single block, a raw string, or an already-parsed dict.
    """
    if isinstance(result, (dict, str)):
        return result

    blocks = getattr(result, "content", result)
    if not isinstance(blocks, list):
        blocks = [blocks]

    for block in blocks:
        payload = _payload_from_block(block, prefer_json=True)
        if payload is not None:
            return payload
    for block in blocks:
        payload = _payload_from_block(block, prefer_json=False)
        if payload is not None:
            return payload
    return None


def _payload_from_block(block: Any, *, prefer_json: bool) -> Any | None:
    """Extract payload from a single content block."""
    if isinstance(block, str):
        return None if prefer_json else block

    if isinstance(block, dict):
        if prefer_json:
            return block.get("data", block.get("json"))
        return block.get("text")

    if prefer_json:
        for attr in ("data", "json"):
            value = getattr(block, attr, None)
            # pydantic content blocks expose a .json() method; skip it.
            if value is not None and not callable(value):
                return value
        return None

    return getattr(block, "text", None)


def _format_error(error: Any) -> str:
    """Format an error payload from the remote store into a readable string."""
    if error is None:
        return "Unknown error"
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        msg = error.get("message") or error.get("code")
        return msg if isinstance(msg, str) and msg else str(error)
    return str(error)
