"""Data models for the chat broker.

The stored models (Presence, ChatMessage) and the inbound request models
for every client event live here. Inbound payloads are validated at the
wire boundary; anything that fails validation never reaches room state.

Message payloads are a tagged variant discriminated by ``type``:

    TextPayload  {"type": "text", "message": "..."}
    FilePayload  {"type": "file", "name": "...", "size": 123, "url": "..."}
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import (
    BaseModel,
    Field,
    StrictBool,
    StrictInt,
    StringConstraints,
    TypeAdapter,
    field_validator,
)

# Text shown in place of a reply target that no longer exists
UNAVAILABLE_MESSAGE_TEXT = "Message not available"

SYSTEM_USERNAME = "System"


# =============================================================================
# Enums
# =============================================================================


class UserStatus(str, Enum):
    """Presence status reported by the client.

    Attributes:
        ONLINE: User is active.
        IDLE: Client saw no activity for the configured idle window.
    """
    ONLINE = "online"
    IDLE = "idle"


class ReactionAction(str, Enum):
    ADD = "add"
    REMOVE = "remove"


# =============================================================================
# Stored models
# =============================================================================


class Presence(BaseModel):
    """Live record of a connected user.

    Attributes:
        id: Connection id assigned by the server at connect time.
        username: Name supplied by the client at join (not unique).
        room: Name of the room the connection is currently a member of.
        status: online or idle.
        avatarIndex: Index into the client's fixed avatar set.
    """
    id: str = Field(..., description="Connection id")
    username: str = Field(..., description="Display name chosen at join")
    room: str = Field(..., description="Current room name")
    status: UserStatus = Field(default=UserStatus.ONLINE)
    avatarIndex: int = Field(default=0, ge=0)

    def to_wire(self) -> dict:
        """Shape used by ``update-users``."""
        return {
            "username": self.username,
            "id": self.id,
            "status": self.status.value,
            "avatarIndex": self.avatarIndex,
        }


class TextPayload(BaseModel):
    type: Literal["text"] = "text"
    message: str = Field(..., min_length=1)


class FilePayload(BaseModel):
    """Metadata for a file shared by reference; bytes never reach the server."""
    type: Literal["file"] = "file"
    name: str = Field(..., min_length=1)
    size: int = Field(..., ge=0)
    url: str = Field(..., min_length=1)


MessagePayload = Annotated[Union[TextPayload, FilePayload], Field(discriminator="type")]


class ReactionEntry(BaseModel):
    """One emoji on a message. ``count`` always equals ``len(users)``."""
    count: int = 0
    users: List[str] = Field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatMessage(BaseModel):
    """A message stored in a room's log.

    Attributes:
        id: Server-generated id, unique across all rooms.
        username: Author's username at send time.
        room: Room the message was sent to; never changes.
        payload: Text or file payload.
        timestamp: Creation time (UTC).
        edited: Set once the author edits the message; never cleared.
        replyTo: Optional id of another message in the same room. May dangle.
        avatarIndex: Author's avatar at send time.
        isSystem: True for server-authored notices.
        reactions: emoji -> ReactionEntry.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    username: str
    room: str
    payload: MessagePayload
    timestamp: datetime = Field(default_factory=_utcnow)
    edited: bool = False
    replyTo: Optional[str] = None
    avatarIndex: int = 0
    isSystem: bool = False
    reactions: Dict[str, ReactionEntry] = Field(default_factory=dict)

    @property
    def text(self) -> Optional[str]:
        if isinstance(self.payload, TextPayload):
            return self.payload.message
        return None

    def reactions_to_wire(self) -> Dict[str, dict]:
        return {emoji: entry.model_dump() for emoji, entry in self.reactions.items()}

    def to_wire(
        self,
        read_by: Optional[List[str]] = None,
        reply_preview: Optional[dict] = None,
    ) -> dict:
        """Flatten into the JSON shape clients render."""
        data: Dict[str, Any] = {
            "id": self.id,
            "username": self.username,
            "timestamp": self.timestamp.isoformat(),
            "room": self.room,
            "edited": self.edited,
            "reactions": self.reactions_to_wire(),
            "replyTo": self.replyTo,
            "avatarIndex": self.avatarIndex,
            "isSystem": self.isSystem,
            "readBy": list(read_by or []),
        }
        data.update(self.payload.model_dump())
        if reply_preview is not None:
            data["replyPreview"] = reply_preview
        return data

    def preview(self) -> dict:
        """Compact form embedded in replies."""
        if isinstance(self.payload, FilePayload):
            return {"id": self.id, "username": self.username, "message": self.payload.name}
        return {"id": self.id, "username": self.username, "message": self.payload.message}


def unavailable_preview(message_id: str) -> dict:
    """Tombstone used when a reply target no longer exists."""
    return {"id": message_id, "unavailable": True, "message": UNAVAILABLE_MESSAGE_TEXT}


# =============================================================================
# Inbound request models (client -> server)
# =============================================================================

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
MessageText = Annotated[str, StringConstraints(min_length=1)]
RoomName = Annotated[str, StringConstraints(strip_whitespace=True, to_lower=True, min_length=1)]


class JoinRequest(BaseModel):
    """Only the username can reject a join; a bad avatar becomes ``None``."""

    username: NonEmptyStr
    avatarIndex: Optional[int] = None

    @field_validator("avatarIndex", mode="before")
    @classmethod
    def _lenient_avatar(cls, value: Any) -> Optional[int]:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            return None
        return value


class TextMessageRequest(BaseModel):
    message: MessageText
    replyTo: Optional[str] = None


class ReactionRequest(BaseModel):
    messageId: NonEmptyStr
    emoji: NonEmptyStr
    action: ReactionAction


class EditRequest(BaseModel):
    messageId: NonEmptyStr
    newMessage: MessageText


room_name_adapter = TypeAdapter(RoomName)
message_id_adapter = TypeAdapter(NonEmptyStr)
status_adapter = TypeAdapter(UserStatus)
avatar_index_adapter = TypeAdapter(Annotated[StrictInt, Field(ge=0)])
typing_adapter = TypeAdapter(StrictBool)


def parse_send_payload(data: Any) -> Tuple[MessagePayload, Optional[str]]:
    """Turn a ``send-message`` payload into (payload, replyTo).

    Accepts a bare string, ``{message, replyTo?}`` or
    ``{type: "file", name, size, url}``.

    Raises:
        ValidationError: If the payload matches none of the accepted shapes.
    """
    if isinstance(data, str):
        data = {"message": data}
    if isinstance(data, dict) and data.get("type") == "file":
        return FilePayload.model_validate(data), None
    request = TextMessageRequest.model_validate(data)
    return TextPayload(message=request.message), request.replyTo or None
