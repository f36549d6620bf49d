"""Tests for the event dispatcher fan-out."""
import asyncio

import pytest

from chatbroker.chat.dispatcher import EventDispatcher, make_frame
from chatbroker.chat.rooms import Room

from conftest import FakeConnection, StalledConnection


@pytest.fixture
def dispatcher():
    return EventDispatcher()


@pytest.fixture
def connections(dispatcher):
    conns = {cid: FakeConnection() for cid in ("a", "b", "c")}
    for cid, conn in conns.items():
        dispatcher.subscribe(cid, conn)
    return conns


def test_make_frame():
    assert make_frame("typing", True) == {"event": "typing", "data": True}


@pytest.mark.asyncio
async def test_send_to_one(dispatcher, connections):
    dispatcher.send("b", "room-list", ["general"])
    await dispatcher.flush()
    assert connections["b"].frames == [{"event": "room-list", "data": ["general"]}]
    assert connections["a"].frames == connections["c"].frames == []


@pytest.mark.asyncio
async def test_publish_room_uses_member_snapshot(dispatcher, connections):
    room = Room("general")
    room.add_member("a", 0.0)
    room.add_member("c", 0.0)

    dispatcher.publish_room(room, "user-joined", "alice", exclude="c")
    room.add_member("b", 0.0)
    await dispatcher.flush()

    assert connections["a"].names() == ["user-joined"]
    assert connections["b"].frames == []
    assert connections["c"].frames == []


@pytest.mark.asyncio
async def test_publish_all(dispatcher, connections):
    dispatcher.publish_all("room-created", "temp")
    await dispatcher.flush()
    for conn in connections.values():
        assert conn.last("room-created") == "temp"


@pytest.mark.asyncio
async def test_frames_arrive_in_publish_order(dispatcher, connections):
    for n in range(20):
        dispatcher.send("a", "typing", n)
    await dispatcher.flush()
    assert [f["data"] for f in connections["a"].frames] == list(range(20))


@pytest.mark.asyncio
async def test_unknown_and_unsubscribed_ids_are_skipped(dispatcher, connections):
    dispatcher.unsubscribe("b")
    dispatcher.publish(["a", "b", "ghost"], "typing", {"isTyping": False})
    await dispatcher.flush()
    assert connections["a"].names() == ["typing"]
    assert connections["b"].frames == []


@pytest.mark.asyncio
async def test_failed_send_drops_connection(dispatcher, connections):
    connections["b"].fail = True
    dispatcher.publish_all("room-removed", "temp")
    await dispatcher.flush()

    assert connections["a"].last("room-removed") == "temp"
    assert connections["c"].last("room-removed") == "temp"
    assert not dispatcher.is_connected("b")
    assert sorted(dispatcher.connection_ids()) == ["a", "c"]


@pytest.mark.asyncio
async def test_stalled_connection_does_not_delay_others(dispatcher, connections):
    stalled = StalledConnection()
    dispatcher.subscribe("slow", stalled)

    for n in range(3):
        dispatcher.publish_all("typing", n)
    await asyncio.wait_for(dispatcher.flush(["a", "b", "c"]), timeout=1)

    assert stalled.attempts == 1
    assert [f["data"] for f in connections["a"].frames] == [0, 1, 2]
    assert dispatcher.is_connected("slow")
    dispatcher.clear()


@pytest.mark.asyncio
async def test_overflowing_outbox_drops_connection():
    dispatcher = EventDispatcher(max_pending=2)
    stalled = StalledConnection()
    dispatcher.subscribe("slow", stalled)

    # First frame is taken by the writer, the next two fill the queue
    dispatcher.send("slow", "typing", 0)
    await asyncio.sleep(0)
    dispatcher.send("slow", "typing", 1)
    dispatcher.send("slow", "typing", 2)
    assert dispatcher.is_connected("slow")

    dispatcher.send("slow", "typing", 3)
    assert not dispatcher.is_connected("slow")
