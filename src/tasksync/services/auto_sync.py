"""Periodic background sync using an asyncio task."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

if TYPE_CHECKING:
    from ..sync.engine import SyncEngine

logger = logging.getLogger(__name__)


class AutoSyncScheduler:
    """Trigger ``engine.run()`` every ``interval_minutes``.

    A tick is skipped while another run is active or when no credential is
    available; the next tick tries again.
    """

    def __init__(
        self,
        engine: "SyncEngine",
        ensure_credential: Callable[[], Awaitable[bool]],
        interval_minutes: int,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._engine = engine
        self._ensure_credential = ensure_credential
        self._interval_seconds = max(1, interval_minutes) * 60
        self._sleep = sleep
        self._task: Optional[asyncio.Task[None]] = None
        self._shutdown = False

    @property
    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_active:
            return
        self._shutdown = False
        self._task = asyncio.create_task(self._loop())
        logger.info("Auto sync every %d minute(s)", self._interval_seconds // 60)

    async def shutdown(self) -> None:
        self._shutdown = True
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.debug("Auto sync task cancelled")

    async def tick(self) -> bool:
        """Run one scheduled sync; return True when a run was started."""

        if self._engine.is_running:
            logger.info("Auto sync skipped: a run is already active")
            return False
        if not await self._ensure_credential():
            logger.warning("Auto sync skipped: no valid credential")
            return False
        summary = await self._engine.run(manual=False)
        logger.info("Auto sync finished with status %s", summary.status.value)
        return True

    async def _loop(self) -> None:
        try:
            while not self._shutdown:
                await self._sleep(self._interval_seconds)
                if self._shutdown:
                    return
                await self.tick()
        except asyncio.CancelledError:
            logger.debug("Auto sync loop was cancelled")
            raise


__all__ = ["AutoSyncScheduler"]
