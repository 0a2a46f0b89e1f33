"""Supervised polling loops.

Each loop owns at most one asyncio task: ``start()`` on a running loop is
a no-op, so a transport reconnect that re-runs startup wiring can never
spawn a duplicate poller. A failing tick is logged and the loop keeps
going on its next interval.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class PollingLoop:
    """Runs ``tick`` every ``interval`` seconds until stopped."""

    def __init__(
        self,
        name: str,
        interval: float,
        tick: Callable[[], Awaitable[None]],
    ):
        self.name = name
        self.interval = interval
        self._tick = tick
        self._running = False
        self._task: asyncio.Task | None = None
        self.last_tick_at: datetime | None = None
        self.tick_count = 0

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self) -> bool:
        """Start the loop. Returns False if it was already running."""
        if self.running:
            logger.debug("%s loop already running, skipping duplicate start", self.name)
            return False
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info("%s loop started (interval=%ss)", self.name, self.interval)
        return True

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("%s loop stopped", self.name)

    async def run_once(self) -> None:
        await self._tick()
        self.tick_count += 1
        self.last_tick_at = datetime.now(timezone.utc)

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("%s loop error", self.name)
            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
