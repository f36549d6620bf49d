"""Event dispatcher: push-only fan-out to connected clients.

Every frame on the wire is ``{"event": <name>, "data": <payload>}``.
Publishing never waits on a socket: each connection owns an outbound
``asyncio.Queue`` drained by a single writer task, so a handler can
publish while holding a room lock and a slow reader only delays itself.
Frames published in order to a connection are written in that order.

Delivery is at-most-once: a send that fails, or an outbox that overflows
``max_pending`` frames, unsubscribes the connection. Nothing is retried.

Performance Notes:
    - One writer task per connection, started on the first queued frame
    - Room publishes snapshot the member set at call time
"""
import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol

from .rooms import Room

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING = 256


class Connection(Protocol):
    """Anything that can push a JSON frame (a Starlette WebSocket in production)."""

    async def send_json(self, data: Any) -> None: ...


def make_frame(event: str, data: Any) -> dict:
    return {"event": event, "data": data}


class _Outbox:
    """Pending frames for one connection plus the task writing them."""

    def __init__(self, connection: Connection, max_pending: int) -> None:
        self.connection = connection
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self.writer: Optional[asyncio.Task] = None
        self.sending = False

    @property
    def idle(self) -> bool:
        return self.queue.empty() and not self.sending


class EventDispatcher:
    """Tracks open connections and queues events for them."""

    def __init__(self, max_pending: int = DEFAULT_MAX_PENDING) -> None:
        self.max_pending = max_pending
        # connection_id -> _Outbox
        self._outboxes: Dict[str, _Outbox] = {}

    def subscribe(self, connection_id: str, connection: Connection) -> None:
        self.unsubscribe(connection_id)
        self._outboxes[connection_id] = _Outbox(connection, self.max_pending)

    def unsubscribe(self, connection_id: str) -> None:
        outbox = self._outboxes.pop(connection_id, None)
        if outbox is not None:
            self._stop_writer(outbox)

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self._outboxes

    def connection_ids(self) -> List[str]:
        return list(self._outboxes)

    def clear(self) -> None:
        for outbox in self._outboxes.values():
            self._stop_writer(outbox)
        self._outboxes.clear()

    def send(self, connection_id: str, event: str, data: Any) -> None:
        """Queue an event for a single connection."""
        self._enqueue([connection_id], make_frame(event, data))

    def publish(
        self,
        connection_ids: Iterable[str],
        event: str,
        data: Any,
        exclude: Optional[str] = None,
    ) -> None:
        """Queue an event for the given connections (minus ``exclude``)."""
        targets = [cid for cid in connection_ids if cid != exclude]
        self._enqueue(targets, make_frame(event, data))

    def publish_room(
        self, room: Room, event: str, data: Any, exclude: Optional[str] = None
    ) -> None:
        """Queue an event for the room's current member set."""
        self.publish(list(room.members), event, data, exclude=exclude)

    def publish_all(self, event: str, data: Any, exclude: Optional[str] = None) -> None:
        """Queue an event for every open connection."""
        self.publish(list(self._outboxes), event, data, exclude=exclude)

    async def flush(self, connection_ids: Optional[Iterable[str]] = None) -> None:
        """Wait until the queued frames have been written.

        Args:
            connection_ids: Connections to wait for. Defaults to all of
                them; a stalled connection included here never flushes.
        """
        wanted = None if connection_ids is None else set(connection_ids)
        while True:
            busy = [
                outbox
                for cid, outbox in self._outboxes.items()
                if (wanted is None or cid in wanted) and not outbox.idle
            ]
            if not busy:
                return
            await asyncio.sleep(0)

    # =========================================================================
    # Delivery
    # =========================================================================

    def _enqueue(self, connection_ids: List[str], frame: dict) -> None:
        for cid in connection_ids:
            outbox = self._outboxes.get(cid)
            if outbox is None:
                continue
            try:
                outbox.queue.put_nowait(frame)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropping connection {cid}: {self.max_pending} frames pending"
                )
                self.unsubscribe(cid)
                continue
            if outbox.writer is None:
                outbox.writer = asyncio.create_task(
                    self._write_loop(cid, outbox), name=f"chat-writer-{cid}"
                )

    async def _write_loop(self, connection_id: str, outbox: _Outbox) -> None:
        while True:
            frame = await outbox.queue.get()
            outbox.sending = True
            success = await self._safe_send(outbox.connection, frame)
            outbox.sending = False
            if not success:
                # Remove failed connection
                if self._outboxes.get(connection_id) is outbox:
                    del self._outboxes[connection_id]
                    logger.debug(f"Removed dead connection {connection_id}")
                return

    def _stop_writer(self, outbox: _Outbox) -> None:
        writer, outbox.writer = outbox.writer, None
        if writer is not None:
            writer.cancel()

    async def _safe_send(self, connection: Connection, frame: dict) -> bool:
        """Send a frame to a connection with error handling.

        Returns:
            True if successful, False if the connection failed.
        """
        try:
            await connection.send_json(frame)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False
