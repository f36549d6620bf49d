"""Chat broker: one coroutine per client event.

This module wires the presence registry, room directory, reaction engine
and event dispatcher together and implements the client protocol:

    join, get-rooms, send-message, change-room, create-room, typing,
    update-reaction, edit-message, delete-message, mark-as-read,
    user-status, avatar-change, disconnect

Error model:
    Nothing here ever answers with an error. Malformed payloads, unknown
    rooms or messages, edits by non-authors and duplicate requests are
    all dropped silently (logged at DEBUG). Handlers resolve the room
    from the caller's live presence record, never from a value captured
    earlier, and re-check it after taking the room lock.

Thread Safety:
    Designed for a single asyncio event loop. Per-room state is only
    mutated while holding that room's ``asyncio.Lock``; a room change
    takes both rooms' locks in name order so a connection is always a
    member of exactly one room. Handlers only queue outbound frames
    while a lock is held; socket writes happen in the dispatcher's
    per-connection writer tasks, so a slow client never holds a room.
"""
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from chatbroker.config import AppConfig

from .dispatcher import DEFAULT_MAX_PENDING, Connection, EventDispatcher
from .lifecycle import RoomLifecycleManager
from .presence import PresenceRegistry
from .reactions import toggle_reaction
from .rooms import Clock, Room, RoomDirectory
from .schemas import (
    EditRequest,
    JoinRequest,
    Presence,
    ReactionRequest,
    avatar_index_adapter,
    message_id_adapter,
    parse_send_payload,
    room_name_adapter,
    status_adapter,
    typing_adapter,
)

logger = logging.getLogger(__name__)

Handler = Callable[[str, Any], Awaitable[None]]

_NO_ROOM: Tuple[Optional[Presence], Optional[Room]] = (None, None)


class ChatBroker:
    """Shared state and event handlers for every chat connection.

    Note:
        The module-level ``broker`` instance is shared by all WebSocket
        handlers. Tests build their own with an injected clock.
    """

    def __init__(
        self,
        *,
        default_rooms: Optional[List[str]] = None,
        default_room: str = "general",
        avatar_count: int = 9,
        idle_expiry_seconds: float = 24 * 60 * 60,
        sweep_interval_seconds: float = 60 * 60,
        seed_system_messages: bool = True,
        max_pending_frames: int = DEFAULT_MAX_PENDING,
        clock: Clock = time.time,
    ) -> None:
        if default_rooms is None:
            default_rooms = ["general", "gaming", "movies", "music"]
        self.clock = clock
        self.default_room = default_room
        self.avatar_count = avatar_count
        self.presence = PresenceRegistry()
        self.directory = RoomDirectory(
            default_rooms, clock=clock, seed_system_messages=seed_system_messages
        )
        self.dispatcher = EventDispatcher(max_pending=max_pending_frames)
        self.lifecycle = RoomLifecycleManager(
            self.directory,
            self.dispatcher,
            idle_expiry_seconds=idle_expiry_seconds,
            interval_seconds=sweep_interval_seconds,
            clock=clock,
        )
        self._handlers: Dict[str, Handler] = {
            "join": self.join,
            "get-rooms": self.get_rooms,
            "send-message": self.send_message,
            "change-room": self.change_room,
            "create-room": self.create_room,
            "typing": self.typing,
            "update-reaction": self.update_reaction,
            "edit-message": self.edit_message,
            "delete-message": self.delete_message,
            "mark-as-read": self.mark_as_read,
            "user-status": self.user_status,
            "avatar-change": self.avatar_change,
        }

    @classmethod
    def from_config(cls, config: AppConfig, clock: Clock = time.time) -> "ChatBroker":
        return cls(
            default_rooms=config.rooms.default_rooms,
            default_room=config.rooms.default_room,
            avatar_count=config.presence.avatar_count,
            idle_expiry_seconds=config.rooms.idle_expiry_seconds,
            sweep_interval_seconds=config.rooms.sweep_interval_seconds,
            seed_system_messages=config.rooms.seed_system_messages,
            max_pending_frames=config.server.max_pending_frames,
            clock=clock,
        )

    def reset(self) -> None:
        """Forget every connection, presence and dynamic room."""
        self.dispatcher.clear()
        self.presence = PresenceRegistry()
        self.directory.reset()

    # =========================================================================
    # Helpers
    # =========================================================================

    def users_in(self, room: Room) -> List[dict]:
        return [p.to_wire() for p in self.presence.lookup(room.members)]

    @asynccontextmanager
    async def _current_room(
        self, connection_id: str
    ) -> AsyncIterator[Tuple[Optional[Presence], Optional[Room]]]:
        """Lock the caller's live room and yield (presence, room).

        Yields ``(None, None)`` if the connection has no presence, its room
        is gone, or it moved rooms while we waited for the lock.
        """
        presence = self.presence.get(connection_id)
        room = self.directory.get(presence.room) if presence else None
        if room is None:
            yield _NO_ROOM
            return
        async with room.lock:
            if (
                room.removed
                or self.presence.get(connection_id) is not presence
                or presence.room != room.name
            ):
                yield _NO_ROOM
            else:
                yield presence, room

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(self, connection: Connection) -> str:
        """Subscribe a freshly accepted connection and send it the room list."""
        connection_id = str(uuid.uuid4())
        self.dispatcher.subscribe(connection_id, connection)
        self.dispatcher.send(connection_id, "room-list", self.directory.names())
        logger.info(f"[Broker] Connection {connection_id} opened")
        return connection_id

    async def handle(self, connection_id: str, event: Any, data: Any = None) -> None:
        """Route one inbound frame to its handler.

        Unknown events and invalid payloads are dropped. An unexpected
        error is logged and swallowed so the connection stays usable.
        """
        handler = self._handlers.get(event) if isinstance(event, str) else None
        if handler is None:
            logger.debug("[Broker] Ignoring unknown event %r from %s", event, connection_id)
            return
        try:
            await handler(connection_id, data)
        except ValidationError as e:
            logger.debug(
                "[Broker] Dropping invalid %s payload from %s: %s",
                event, connection_id, e.errors(include_url=False),
            )
        except Exception:
            logger.exception(f"[Broker] Error handling {event} from {connection_id}")

    async def disconnect(self, connection_id: str) -> None:
        """Leave the current room and forget the connection."""
        self.dispatcher.unsubscribe(connection_id)
        async with self._current_room(connection_id) as (presence, room):
            if room is not None:
                room.remove_member(connection_id, self.clock())
                self.presence.remove(connection_id)
                self.dispatcher.publish_room(room, "user-left", presence.username)
                self.dispatcher.publish_room(room, "update-users", self.users_in(room))
        self.presence.remove(connection_id)
        logger.info(f"[Broker] Connection {connection_id} closed")

    # =========================================================================
    # Presence
    # =========================================================================

    async def join(self, connection_id: str, data: Any) -> None:
        request = JoinRequest.model_validate(data)
        avatar_index = request.avatarIndex or 0
        if avatar_index >= self.avatar_count:
            avatar_index = 0

        existing = self.presence.get(connection_id)
        room = self.directory.get(existing.room if existing else self.default_room)
        if room is None:
            return

        async with room.lock:
            if room.removed:
                return
            presence = self.presence.register(
                connection_id, request.username, avatar_index, room.name
            )
            room.add_member(connection_id, self.clock())

            self.dispatcher.send(connection_id, "room-history", room.history_to_wire())
            self.dispatcher.send(connection_id, "room-list", self.directory.names())
            self.dispatcher.publish_room(room, "user-joined", presence.username)
            self.dispatcher.publish_room(room, "update-users", self.users_in(room))

        logger.info(f"[Broker] {presence.username!r} ({connection_id}) joined {room.name}")

    async def typing(self, connection_id: str, data: Any) -> None:
        is_typing = typing_adapter.validate_python(data)
        async with self._current_room(connection_id) as (presence, room):
            if room is None:
                return
            self.dispatcher.publish_room(
                room,
                "typing",
                {"username": presence.username, "isTyping": is_typing},
                exclude=connection_id,
            )

    async def user_status(self, connection_id: str, data: Any) -> None:
        status = status_adapter.validate_python(data)
        async with self._current_room(connection_id) as (presence, room):
            if room is None:
                return
            self.presence.set_status(connection_id, status)
            self.dispatcher.publish_room(room, "update-users", self.users_in(room))

    async def avatar_change(self, connection_id: str, data: Any) -> None:
        avatar_index = avatar_index_adapter.validate_python(data)
        if avatar_index >= self.avatar_count:
            logger.debug("[Broker] Avatar index %d out of range", avatar_index)
            return
        async with self._current_room(connection_id) as (presence, room):
            if room is None:
                return
            self.presence.set_avatar(connection_id, avatar_index)
            self.dispatcher.publish_room(room, "update-users", self.users_in(room))
        self.dispatcher.publish_all(
            "avatar-updated", {"userId": connection_id, "avatarIndex": avatar_index}
        )

    # =========================================================================
    # Rooms
    # =========================================================================

    async def get_rooms(self, connection_id: str, data: Any = None) -> None:
        self.dispatcher.send(connection_id, "room-list", self.directory.names())

    async def create_room(self, connection_id: str, data: Any) -> None:
        name = room_name_adapter.validate_python(data)
        room = self.directory.create(name)
        if room is None:
            logger.debug("[Broker] Room %r already exists", name)
            return
        self.dispatcher.publish_all("room-created", room.name)

    async def change_room(self, connection_id: str, data: Any) -> None:
        """Move a connection to another existing room.

        Both rooms are locked (in name order) for the whole move: the
        connection leaves the old member set and enters the new one with
        no await in between.
        """
        target_name = room_name_adapter.validate_python(data)
        presence = self.presence.get(connection_id)
        if presence is None or presence.room == target_name:
            return
        old_room = self.directory.get(presence.room)
        new_room = self.directory.get(target_name)
        if old_room is None or new_room is None:
            return

        first, second = sorted((old_room, new_room), key=lambda r: r.name)
        async with first.lock, second.lock:
            if (
                old_room.removed
                or new_room.removed
                or self.presence.get(connection_id) is not presence
                or presence.room != old_room.name
            ):
                return
            now = self.clock()
            old_room.remove_member(connection_id, now)
            new_room.add_member(connection_id, now)
            self.presence.set_room(connection_id, new_room.name)

            self.dispatcher.publish_room(old_room, "user-left", presence.username)
            self.dispatcher.publish_room(old_room, "update-users", self.users_in(old_room))

            self.dispatcher.send(connection_id, "room-history", new_room.history_to_wire())
            self.dispatcher.publish_room(new_room, "user-joined", presence.username)
            self.dispatcher.publish_room(new_room, "update-users", self.users_in(new_room))

            last = new_room.last_message()
            if last is not None and last.username != presence.username:
                self.dispatcher.send(connection_id, "mark-as-read", last.id)

        logger.info(
            f"[Broker] {presence.username!r} moved {old_room.name} -> {new_room.name}"
        )

    # =========================================================================
    # Messages
    # =========================================================================

    async def send_message(self, connection_id: str, data: Any) -> None:
        payload, reply_to = parse_send_payload(data)
        async with self._current_room(connection_id) as (presence, room):
            if room is None:
                return
            message = room.append(
                presence.username,
                payload,
                reply_to=reply_to,
                avatar_index=presence.avatarIndex,
            )
            self.dispatcher.publish_room(
                room, "receive-message", room.message_to_wire(message)
            )

    async def edit_message(self, connection_id: str, data: Any) -> None:
        request = EditRequest.model_validate(data)
        async with self._current_room(connection_id) as (presence, room):
            if room is None:
                return
            message = room.edit(request.messageId, presence.username, request.newMessage)
            if message is None:
                logger.debug(
                    "[Broker] Edit of %s by %r ignored", request.messageId, presence.username
                )
                return
            self.dispatcher.publish_room(
                room,
                "message-edited",
                {"messageId": message.id, "newMessage": request.newMessage},
            )

    async def delete_message(self, connection_id: str, data: Any) -> None:
        message_id = message_id_adapter.validate_python(data)
        async with self._current_room(connection_id) as (presence, room):
            if room is None:
                return
            message = room.delete(message_id, presence.username)
            if message is None:
                logger.debug(
                    "[Broker] Delete of %s by %r ignored", message_id, presence.username
                )
                return
            self.dispatcher.publish_room(
                room, "message-deleted", {"messageId": message.id}
            )

    async def update_reaction(self, connection_id: str, data: Any) -> None:
        request = ReactionRequest.model_validate(data)
        async with self._current_room(connection_id) as (presence, room):
            if room is None:
                return
            message = room.find(request.messageId)
            if message is None:
                return
            reactions = toggle_reaction(message, presence.username, request.emoji, request.action)
            self.dispatcher.publish_room(
                room,
                "reaction-updated",
                {"messageId": message.id, "reactions": reactions},
            )

    async def mark_as_read(self, connection_id: str, data: Any) -> None:
        message_id = message_id_adapter.validate_python(data)
        async with self._current_room(connection_id) as (presence, room):
            if room is None:
                return
            if not room.mark_read(message_id, presence.username):
                return
            self.dispatcher.publish_room(
                room,
                "message-read",
                {"messageId": message_id, "username": presence.username},
            )
