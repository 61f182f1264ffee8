"""Tests for MCPRemoteGateway — remote store calls over fastmcp.Client."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import pytest
from fastmcp.exceptions import ToolError

from conftest import T0, MockMCPClient
from waterline.core.remote import RemoteGateway, RemoteRejected, RemoteUnreachable
from waterline.core.remote.client import MCPRemoteGateway, _extract_payload, _format_error
from waterline.core.remote.envelope import SyncEnvelope
from waterline.core.storage.models import Event, NegativePayload, Session


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio required)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@pytest.fixture
def remote(mock_mcp_client: MockMCPClient) -> MCPRemoteGateway:
    return MCPRemoteGateway(mock_mcp_client)


def _event_envelope() -> SyncEnvelope:
    return SyncEnvelope.from_event(
        Event(id="e1", session_id="s1", timestamp=T0, payload=NegativePayload(volume_oz=8.0))
    )


class TestProtocol:
    def test_satisfies_gateway_protocol(self, remote):
        assert isinstance(remote, RemoteGateway)


class TestUpserts:
    def test_upsert_user(self, remote, mock_mcp_client):
        remote_id = _run(remote.upsert_user("u1", {"due_every_n": 2}))
        assert remote_id == "remote-u1"
        assert mock_mcp_client.calls == [
            ("upsert_user", {"user_key": "u1", "settings": {"due_every_n": 2}})
        ]

    def test_upsert_session_is_keyed_by_local_id(self, remote, mock_mcp_client):
        env = SyncEnvelope.from_session(Session(id="s1", user_id="local", start_time=T0))
        assert _run(remote.upsert_session("u1", env)) == "remote-s1"
        tool, args = mock_mcp_client.calls[-1]
        assert tool == "upsert_session"
        assert args["key"] == "s1"
        assert args["user_key"] == "u1"
        assert args["is_active"] is True

    def test_upsert_event_carries_session_key(self, remote, mock_mcp_client):
        assert _run(remote.upsert_event(_event_envelope())) == "remote-e1"
        tool, args = mock_mcp_client.calls[-1]
        assert tool == "upsert_event"
        assert args["session_key"] == "s1"
        assert args["kind"] == "negative"
        assert args["data"] == {"volume_oz": 8.0}

    def test_missing_id_is_rejected(self, mock_mcp_client):
        mock_mcp_client.responses["upsert_event"] = {"status": "ok"}
        with pytest.raises(RemoteRejected, match="Missing remote id"):
            _run(MCPRemoteGateway(mock_mcp_client).upsert_event(_event_envelope()))


class TestFailures:
    def test_transport_error_is_unreachable(self, remote, mock_mcp_client):
        mock_mcp_client.fail_with = ConnectionError("refused")
        with pytest.raises(RemoteUnreachable):
            _run(remote.upsert_user("u1", {}))

    def test_error_status_is_rejected(self, remote, mock_mcp_client):
        mock_mcp_client.responses["upsert_event"] = {
            "status": "error",
            "error": {"code": "SESSION_NOT_FOUND", "message": "unknown session"},
        }
        with pytest.raises(RemoteRejected, match="unknown session"):
            _run(remote.upsert_event(_event_envelope()))

    def test_tool_error_is_rejected_not_unreachable(self, remote, mock_mcp_client):
        # fastmcp.Client raises ToolError when the tool itself reports an error.
        mock_mcp_client.fail_with = ToolError("session key unknown")
        with pytest.raises(RemoteRejected, match="session key unknown"):
            _run(remote.upsert_event(_event_envelope()))

    def test_invalid_json_is_rejected(self, remote, mock_mcp_client):
        mock_mcp_client.responses["upsert_user"] = "not json {"
        with pytest.raises(RemoteRejected, match="Invalid JSON"):
            _run(remote.upsert_user("u1", {}))

    def test_non_object_is_rejected(self, remote, mock_mcp_client):
        mock_mcp_client.responses["upsert_user"] = "[1, 2]"
        with pytest.raises(RemoteRejected, match="Expected JSON object"):
            _run(remote.upsert_user("u1", {}))

    def test_delete_user(self, remote, mock_mcp_client):
        _run(remote.delete_user("u1"))
        assert mock_mcp_client.calls[-1] == ("delete_user", {"user_key": "u1"})


class TestHealthCheck:
    def test_ok(self, remote):
        assert _run(remote.health_check()) is True

    def test_unreachable_is_false(self, remote, mock_mcp_client):
        mock_mcp_client.fail_with = OSError("down")
        assert _run(remote.health_check()) is False


@dataclass
class _Result:
    content: list
    is_error: bool = False


@dataclass
class _Block:
    text: str | None = None
    data: object = None


class TestExtractPayload:
    def test_prefers_structured_data(self):
        result = _Result(content=[_Block(text='{"a": 1}', data={"a": 2})])
        assert _extract_payload(result) == {"a": 2}

    def test_falls_back_to_text(self):
        assert _extract_payload(_Result(content=[_Block(text='{"a": 1}')])) == '{"a": 1}'

    def test_raw_values_pass_through(self):
        assert _extract_payload({"a": 1}) == {"a": 1}
        assert _extract_payload("x") == "x"

    def test_empty_content(self):
        assert _extract_payload(_Result(content=[])) is None

    def test_is_error_result_is_rejected(self, mock_mcp_client):
        class _ErrorClient(MockMCPClient):
            async def call_tool(self, tool_name, arguments):
                return _Result(content=[_Block(text="boom")], is_error=True)

        with pytest.raises(RemoteRejected, match="reported an error"):
            _run(MCPRemoteGateway(_ErrorClient()).upsert_user("u1", {}))


class TestFormatError:
    def test_variants(self):
        assert _format_error(None) == "Unknown error"
        assert _format_error("bad") == "bad"
        assert _format_error({"code": "X"}) == "X"
        assert _format_error({"message": "m", "code": "X"}) == "m"
        assert _format_error(42) == "42"
