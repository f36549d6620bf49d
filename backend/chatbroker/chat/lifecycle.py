"""Room lifecycle manager.

A periodic sweep deletes dynamic rooms that are both empty and idle for
longer than the expiry window, and announces each removal to every
connection with ``room-removed``. Default rooms are never touched.

The sweep takes each room's lock before looking at it, so a join that
got the lock first leaves the room non-empty (and thus ineligible), and
a join that arrives after the removal finds ``room.removed`` set.
"""
import asyncio
import logging
import time
from typing import List, Optional

from .dispatcher import EventDispatcher
from .rooms import Clock, RoomDirectory

logger = logging.getLogger(__name__)

DEFAULT_IDLE_EXPIRY_SECONDS = 24 * 60 * 60
DEFAULT_SWEEP_INTERVAL_SECONDS = 60 * 60


class RoomLifecycleManager:
    """Expires idle dynamic rooms on a fixed interval."""

    def __init__(
        self,
        directory: RoomDirectory,
        dispatcher: EventDispatcher,
        *,
        idle_expiry_seconds: float = DEFAULT_IDLE_EXPIRY_SECONDS,
        interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Clock = time.time,
    ) -> None:
        self.directory = directory
        self.dispatcher = dispatcher
        self.idle_expiry_seconds = idle_expiry_seconds
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    async def sweep(self, now: Optional[float] = None) -> List[str]:
        """Run one sweep pass.

        Args:
            now: Wall-clock seconds to evaluate idleness against. Defaults
                to the manager's clock.

        Returns:
            Names of the rooms removed in this pass.
        """
        if now is None:
            now = self._clock()

        removed: List[str] = []
        for room in self.directory.rooms():
            if room.permanent:
                continue
            async with room.lock:
                if not room.is_expired(now, self.idle_expiry_seconds):
                    continue
                if not self.directory.remove(room):
                    continue
                removed.append(room.name)
                logger.info(f"[Lifecycle] Room {room.name} removed due to inactivity")
                self.dispatcher.publish_all("room-removed", room.name)

        if removed:
            logger.info("[Lifecycle] Sweep removed %d room(s)", len(removed))
        else:
            logger.debug("[Lifecycle] Sweep removed nothing")
        return removed

    async def run(self) -> None:
        """Sweep forever, sleeping ``interval_seconds`` between passes."""
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.sweep()
            except Exception:
                logger.exception("[Lifecycle] Sweep failed")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="room-lifecycle-sweep")
            logger.info(
                "[Lifecycle] Sweeper started (interval=%ss, idle_expiry=%ss)",
                self.interval_seconds,
                self.idle_expiry_seconds,
            )
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("[Lifecycle] Sweeper stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
