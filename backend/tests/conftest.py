"""Shared test fixtures and configuration for backend tests."""
import asyncio
from typing import Any, List, Optional

import pytest
from fastapi.testclient import TestClient

from chatbroker.chat.broker import ChatBroker
from chatbroker.main import app


class FakeConnection:
    """In-memory stand-in for a WebSocket: records every frame sent to it."""

    def __init__(self, fail: bool = False) -> None:
        self.frames: List[dict] = []
        self.fail = fail

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise RuntimeError("connection closed")
        self.frames.append(data)

    def events(self, name: Optional[str] = None) -> List[dict]:
        """Frames received, optionally filtered by event name."""
        return [f for f in self.frames if name is None or f["event"] == name]

    def names(self) -> List[str]:
        return [f["event"] for f in self.frames]

    def last(self, name: str) -> Any:
        """Payload of the most recent frame with this event name."""
        matching = self.events(name)
        assert matching, f"no {name!r} frame received; got {self.names()}"
        return matching[-1]["data"]

    def clear(self) -> None:
        self.frames.clear()


class StalledConnection(FakeConnection):
    """A client that stopped reading: every send waits forever."""

    def __init__(self) -> None:
        super().__init__()
        self.attempts = 0
        self._never = asyncio.Event()

    async def send_json(self, data: Any) -> None:
        self.attempts += 1
        await self._never.wait()


class FlushingBroker(ChatBroker):
    """Broker whose calls return only once their frames are written.

    Lets tests assert on ``FakeConnection.frames`` right after a call.
    """

    async def connect(self, connection):
        connection_id = await super().connect(connection)
        await self.dispatcher.flush()
        return connection_id

    async def handle(self, connection_id, event, data=None):
        await super().handle(connection_id, event, data)
        await self.dispatcher.flush()

    async def disconnect(self, connection_id):
        await super().disconnect(connection_id)
        await self.dispatcher.flush()


class FakeClock:
    """Controllable wall clock (seconds since epoch)."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(scope="module")
def api_client():
    """Provide a TestClient for the main FastAPI app.

    Entered as a context manager so every HTTP request and WebSocket
    session in a module shares one event loop (and the app lifespan runs).
    """
    with TestClient(app) as client:
        yield client


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def broker(clock):
    """A fresh broker with the default rooms and a controllable clock."""
    return FlushingBroker(clock=clock)


@pytest.fixture
def join_user(broker):
    """Connect a fake client and join it under ``username``.

    Returns an async factory: ``cid, conn = await join_user("alice")``.
    The connection's frame log is cleared after the join.
    """
    async def _join(username: str, avatar_index: int = 0, keep_frames: bool = False):
        conn = FakeConnection()
        cid = await broker.connect(conn)
        await broker.handle(cid, "join", {"username": username, "avatarIndex": avatar_index})
        if not keep_frames:
            conn.clear()
        return cid, conn

    return _join
