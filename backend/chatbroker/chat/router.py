"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws/chat: Real-time chat messaging
    - GET /rooms: Names of all rooms
    - GET /rooms/{room}/history: Message history of a room
    - GET /rooms/{room}/users: Users currently in a room
    - GET /settings/presence: Avatar count and idle timeout for clients

Wire format:
    Every frame in either direction is a JSON object
    ``{"event": "<name>", "data": <payload>}``.

Protocol Flow:
    1. Client connects
       → Server sends: {event: "room-list", data: [...]}
    2. Client sends: {event: "join", data: {username, avatarIndex}}
       → Server sends: room-history, room-list
       → Server broadcasts to room: user-joined, update-users
    3. Client sends: {event: "send-message", data: {message, replyTo?}}
       → Server broadcasts to room: receive-message
    4. Client sends: change-room / create-room / typing / update-reaction /
       edit-message / delete-message / mark-as-read / user-status /
       avatar-change (see ChatBroker for each event)
    5. On disconnect → Server broadcasts to room: user-left, update-users

Frames that are not valid JSON objects are ignored; the protocol never
replies with an error.
"""
import json
import logging
from typing import List

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect

from chatbroker.config import get_config

from .broker import ChatBroker

logger = logging.getLogger(__name__)

router = APIRouter()

# Global singleton instance used by all WebSocket handlers
broker = ChatBroker.from_config(get_config())


@router.get("/rooms", tags=["rooms"])
async def list_rooms() -> List[str]:
    """Get the names of all rooms, default rooms first."""
    return broker.directory.names()


@router.get("/rooms/{room}/history", tags=["rooms"])
async def get_room_history(room: str) -> List[dict]:
    """Get the message history for a room.

    Args:
        room: Room name (case-insensitive).

    Returns:
        Messages in the same shape as the ``room-history`` event.

    Raises:
        HTTPException: 404 if the room does not exist.
    """
    found = broker.directory.get(room)
    if found is None:
        raise HTTPException(status_code=404, detail=f"Room not found: {room}")
    async with found.lock:
        return found.history_to_wire()


@router.get("/rooms/{room}/users", tags=["rooms"])
async def get_room_users(room: str) -> List[dict]:
    """Get the users currently in a room (same shape as ``update-users``)."""
    found = broker.directory.get(room)
    if found is None:
        raise HTTPException(status_code=404, detail=f"Room not found: {room}")
    return broker.users_in(found)


@router.get("/settings/presence", tags=["settings"])
async def get_presence_settings() -> dict:
    """Client-side presence knobs: avatar set size and idle timeout."""
    presence = get_config().presence
    return {
        "avatarCount": presence.avatar_count,
        "idleAfterSeconds": presence.idle_after_seconds,
    }


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for real-time chat.

    Each connection gets a server-assigned id; the client becomes a room
    member only after sending ``join``.

    Args:
        websocket: The WebSocket connection.
    """
    await websocket.accept()
    connection_id = await broker.connect(websocket)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                logger.debug("[WS] %s sent a non-JSON frame", connection_id)
                continue
            if not isinstance(frame, dict):
                logger.debug("[WS] %s sent a non-object frame", connection_id)
                continue

            logger.debug("[WS] %s received: event=%s", connection_id, frame.get("event", "?"))
            await broker.handle(connection_id, frame.get("event"), frame.get("data"))

    except WebSocketDisconnect:
        pass
    finally:
        await broker.disconnect(connection_id)
