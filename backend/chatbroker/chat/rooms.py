"""Room state owners and the room directory.

Each :class:`Room` owns its member set, message log, read receipts and
last-activity timestamp, and carries the ``asyncio.Lock`` that serializes
every read-modify-write on that state. Callers reach rooms only through
:class:`RoomDirectory` and must hold ``room.lock`` while mutating.

Room lifecycle:
    absent -> active (>= 1 member) -> idle (0 members) -> expired (removed)

Default rooms are permanent and never expire. A removed room is flagged
``removed`` so anyone who looked it up before the sweep took its lock
sees it as gone once they acquire the lock.
"""
import asyncio
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional

from chatbroker.config import normalize_room_name

from .schemas import (
    SYSTEM_USERNAME,
    ChatMessage,
    MessagePayload,
    TextPayload,
    unavailable_preview,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class Room:
    """A named channel with its own membership and message log.

    Attributes:
        name: Normalized room name.
        permanent: True for default rooms (exempt from expiry).
        lock: Serializes all mutation of this room's state.
        members: Connection ids currently in the room (insertion ordered).
        messages: Ordered message log.
        read_receipts: message id -> usernames that have read it.
        last_activity: Wall-clock seconds of the last join/leave.
        removed: Set once the lifecycle sweep has deleted the room.
    """

    def __init__(self, name: str, *, permanent: bool = False, now: float = 0.0) -> None:
        self.name = name
        self.permanent = permanent
        self.lock = asyncio.Lock()
        self.members: Dict[str, None] = {}
        self.messages: List[ChatMessage] = []
        self.read_receipts: Dict[str, List[str]] = {}
        self.last_activity = now
        self.removed = False

    def __repr__(self) -> str:
        return f"Room({self.name!r}, members={len(self.members)}, messages={len(self.messages)})"

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    def touch(self, now: float) -> None:
        self.last_activity = now

    def add_member(self, connection_id: str, now: float) -> None:
        self.members[connection_id] = None
        self.touch(now)

    def remove_member(self, connection_id: str, now: float) -> bool:
        present = connection_id in self.members
        self.members.pop(connection_id, None)
        self.touch(now)
        return present

    def is_empty(self) -> bool:
        return not self.members

    def is_expired(self, now: float, idle_seconds: float) -> bool:
        """True when the room may be deleted by the lifecycle sweep."""
        if self.permanent or self.removed:
            return False
        return self.is_empty() and now - self.last_activity > idle_seconds

    # -------------------------------------------------------------------------
    # Message log
    # -------------------------------------------------------------------------

    def append(
        self,
        username: str,
        payload: MessagePayload,
        *,
        reply_to: Optional[str] = None,
        avatar_index: int = 0,
        is_system: bool = False,
    ) -> ChatMessage:
        message = ChatMessage(
            username=username,
            room=self.name,
            payload=payload,
            replyTo=reply_to,
            avatarIndex=avatar_index,
            isSystem=is_system,
        )
        self.messages.append(message)
        self.read_receipts[message.id] = []
        return message

    def find(self, message_id: str) -> Optional[ChatMessage]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def _find_authored(self, message_id: str, author: str) -> Optional[ChatMessage]:
        message = self.find(message_id)
        if message is None or message.isSystem or message.username != author:
            return None
        return message

    def edit(self, message_id: str, author: str, new_text: str) -> Optional[ChatMessage]:
        """Replace the text of ``author``'s own text message.

        Returns:
            The edited message, or None if it does not exist, is not a text
            message, or belongs to someone else.
        """
        message = self._find_authored(message_id, author)
        if message is None or not isinstance(message.payload, TextPayload):
            return None
        message.payload = TextPayload(message=new_text)
        message.edited = True
        return message

    def delete(self, message_id: str, author: str) -> Optional[ChatMessage]:
        """Remove ``author``'s own message together with its read receipts."""
        message = self._find_authored(message_id, author)
        if message is None:
            return None
        self.messages.remove(message)
        self.read_receipts.pop(message.id, None)
        return message

    def history(self) -> List[ChatMessage]:
        """Ordered log of system notices plus messages sent to this room."""
        return [m for m in self.messages if m.isSystem or m.room == self.name]

    def resolve_reply(self, reply_to: Optional[str]) -> Optional[dict]:
        """Preview of the message replied to, or a tombstone if it is gone."""
        if not reply_to:
            return None
        target = self.find(reply_to)
        if target is None:
            return unavailable_preview(reply_to)
        return target.preview()

    def last_message(self) -> Optional[ChatMessage]:
        return self.messages[-1] if self.messages else None

    # -------------------------------------------------------------------------
    # Read receipts
    # -------------------------------------------------------------------------

    def mark_read(self, message_id: str, username: str) -> bool:
        """Record that ``username`` has seen a message.

        Returns:
            True only the first time for a given (message, user) pair.
        """
        readers = self.read_receipts.get(message_id)
        if readers is None or username in readers:
            return False
        readers.append(username)
        return True

    def read_by(self, message_id: str) -> List[str]:
        return list(self.read_receipts.get(message_id, []))

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def message_to_wire(self, message: ChatMessage) -> dict:
        return message.to_wire(
            read_by=self.read_by(message.id),
            reply_preview=self.resolve_reply(message.replyTo),
        )

    def history_to_wire(self) -> List[dict]:
        return [self.message_to_wire(m) for m in self.history()]

    def clear(self) -> None:
        self.members.clear()
        self.messages.clear()
        self.read_receipts.clear()


class RoomDirectory:
    """Room name -> :class:`Room`.

    The directory itself is only touched from the event loop thread and
    never awaits, so single dictionary operations on it are atomic. State
    inside a room is guarded by that room's lock.
    """

    def __init__(
        self,
        default_rooms: Iterable[str],
        *,
        clock: Clock = time.time,
        seed_system_messages: bool = True,
    ) -> None:
        self._clock = clock
        self._rooms: Dict[str, Room] = {}
        self._defaults = [normalize_room_name(name) for name in default_rooms]
        self._seed_system_messages = seed_system_messages
        self.reset()

    def reset(self) -> None:
        """Drop every room and re-seed the default ones."""
        for room in self._rooms.values():
            room.removed = True
            room.clear()
        self._rooms = {}
        now = self._clock()
        for name in self._defaults:
            room = Room(name, permanent=True, now=now)
            if self._seed_system_messages:
                room.append(
                    SYSTEM_USERNAME,
                    TextPayload(message=f"Room {name} created"),
                    is_system=True,
                )
            self._rooms[name] = room

    @property
    def default_rooms(self) -> List[str]:
        return list(self._defaults)

    def is_default(self, name: str) -> bool:
        return normalize_room_name(name) in self._defaults

    def get(self, name: str) -> Optional[Room]:
        return self._rooms.get(normalize_room_name(name))

    def names(self) -> List[str]:
        return list(self._rooms)

    def rooms(self) -> List[Room]:
        return list(self._rooms.values())

    def create(self, name: str) -> Optional[Room]:
        """Create a dynamic room.

        Returns:
            The new Room, or None if the normalized name is empty or taken.
        """
        normalized = normalize_room_name(name)
        if not normalized or normalized in self._rooms:
            return None
        room = Room(normalized, now=self._clock())
        self._rooms[normalized] = room
        logger.info("[Rooms] Created room %s", normalized)
        return room

    def remove(self, room: Room) -> bool:
        """Delete a room and its message log. Caller must hold ``room.lock``."""
        if room.permanent or self._rooms.get(room.name) is not room:
            return False
        del self._rooms[room.name]
        room.removed = True
        room.clear()
        return True

    def __contains__(self, name: str) -> bool:
        return normalize_room_name(name) in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)
