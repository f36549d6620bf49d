"""Presence registry: connection id -> live user record.

Every lookup tolerates a connection that has already gone away and
returns ``None`` instead of raising, so handlers racing a disconnect
simply do nothing.
"""
import logging
from typing import Dict, List, Optional

from .schemas import Presence, UserStatus

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Tracks which user sits behind each open connection."""

    def __init__(self) -> None:
        # connection_id -> Presence
        self._presences: Dict[str, Presence] = {}

    def register(
        self,
        connection_id: str,
        username: str,
        avatar_index: int,
        room: str,
    ) -> Presence:
        """Create (or refresh) the presence record for a connection.

        Registering the same connection twice keeps its current room and
        replaces username and avatar; status goes back to online.

        Args:
            connection_id: Server-assigned connection id.
            username: Name supplied at join.
            avatar_index: Avatar chosen at join.
            room: Room to place a first-time registration in.

        Returns:
            The stored Presence.
        """
        existing = self._presences.get(connection_id)
        if existing is not None:
            room = existing.room
        presence = Presence(
            id=connection_id,
            username=username,
            room=room,
            status=UserStatus.ONLINE,
            avatarIndex=avatar_index,
        )
        self._presences[connection_id] = presence
        logger.debug("[Presence] Registered %s as %r in %s", connection_id, username, room)
        return presence

    def get(self, connection_id: str) -> Optional[Presence]:
        return self._presences.get(connection_id)

    def set_status(self, connection_id: str, status: UserStatus) -> Optional[Presence]:
        presence = self._presences.get(connection_id)
        if presence is not None:
            presence.status = status
        return presence

    def set_avatar(self, connection_id: str, avatar_index: int) -> Optional[Presence]:
        presence = self._presences.get(connection_id)
        if presence is not None:
            presence.avatarIndex = avatar_index
        return presence

    def set_room(self, connection_id: str, room: str) -> Optional[Presence]:
        presence = self._presences.get(connection_id)
        if presence is not None:
            presence.room = room
        return presence

    def remove(self, connection_id: str) -> Optional[Presence]:
        return self._presences.pop(connection_id, None)

    def lookup(self, connection_ids) -> List[Presence]:
        """Presences for the given ids, skipping any already removed."""
        return [
            self._presences[cid] for cid in connection_ids if cid in self._presences
        ]

    def __len__(self) -> int:
        return len(self._presences)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._presences
