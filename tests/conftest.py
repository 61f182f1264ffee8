"""Shared test fixtures for Waterline tests."""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REMOTE_STORE_URL", "")
    monkeypatch.setenv("ENCRYPTION_KEY", "")
    monkeypatch.setenv("USER_KEY", "test-user")
    monkeypatch.setenv("DB_PATH", ":memory:")

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from waterline.core.remote.memory import InMemoryRemoteGateway  # noqa: E402
from waterline.core.storage.database import WaterlineDatabase  # noqa: E402
from waterline.core.storage.models import (  # noqa: E402
    Event,
    EventPayload,
    NegativePayload,
    PositivePayload,
)
from waterline.core.storage.repository import EventStore  # noqa: E402
from waterline.core.sync.connectivity import ManualConnectivity  # noqa: E402

# Fixed reference time so tests never depend on the wall clock.
T0 = datetime(2026, 3, 14, 20, 0, tzinfo=timezone.utc)


def at(minutes: float) -> datetime:
    """Reference time plus ``minutes``."""
    return T0 + timedelta(minutes=minutes)


def make_event(
    id: str,
    minutes: float,
    payload: EventPayload | None = None,
    *,
    session_id: str = "s1",
) -> Event:
    """Create a test event; positive with weight 1.0 unless a payload is given."""
    return Event(
        id=id,
        session_id=session_id,
        timestamp=at(minutes),
        payload=payload or PositivePayload(),
    )


def drink(id: str, minutes: float, weight: float = 1.0, **kwargs) -> Event:
    return make_event(id, minutes, PositivePayload(weight=weight), **kwargs)


def water(id: str, minutes: float, volume_oz: float = 8.0, **kwargs) -> Event:
    return make_event(id, minutes, NegativePayload(volume_oz=volume_oz), **kwargs)


class FakeClock:
    """Manually advanced clock for tracker tests."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Mock MCP client (remote store)
# ---------------------------------------------------------------------------

@dataclass
class _TextBlock:
    """Mimics fastmcp content block structure."""

    type: str
    text: str


class MockMCPClient:
    """Mock fastmcp.Client that answers remote-store tool calls.

    Suitable for injecting into MCPRemoteGateway without a running remote
    store. ``responses`` overrides the payload for a tool name; ``fail_with``
    makes every call raise.
    """

    def __init__(self, responses: dict[str, Any] | None = None) -> None:
        self.responses = responses or {}
        self.fail_with: Exception | None = None
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> list[Any]:
        self.calls.append((tool_name, arguments))
        if self.fail_with is not None:
            raise self.fail_with
        if tool_name in self.responses:
            payload = self.responses[tool_name]
        elif tool_name == "health_check":
            payload = {"status": "ok"}
        elif tool_name == "delete_user":
            payload = {"status": "deleted"}
        elif tool_name.startswith("upsert_"):
            payload = {"status": "ok", "id": f"remote-{arguments.get('key', arguments.get('user_key'))}"}
        else:
            payload = {"status": "error", "error": f"Unknown tool: {tool_name}"}
        if isinstance(payload, str):
            return [_TextBlock(type="text", text=payload)]
        return [_TextBlock(type="text", text=json.dumps(payload))]

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        pass


@pytest.fixture
def mock_mcp_client() -> MockMCPClient:
    return MockMCPClient()


# ---------------------------------------------------------------------------
# In-memory storage and sync fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def db():
    """Create an in-memory WaterlineDatabase for testing."""
    database = WaterlineDatabase(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def store(db) -> EventStore:
    """Create an EventStore backed by in-memory SQLite (plain JSON payloads)."""
    return EventStore(db)


@pytest.fixture
def profile(store):
    return store.get_or_create_profile("test-user")


@pytest.fixture
def session(store, profile):
    """An active session starting at the reference time."""
    return store.create_session(profile.id, T0, session_id="s1")


@pytest.fixture
def gateway() -> InMemoryRemoteGateway:
    return InMemoryRemoteGateway()


@pytest.fixture
def connectivity() -> ManualConnectivity:
    return ManualConnectivity(connected=True)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
