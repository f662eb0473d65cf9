"""Bedrock — Per-room refresh scheduler."""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger("bedrock.scheduler")


class RefreshScheduler:
    """Runs one repeating refresh task per room key.

    Ticks fire on a fixed cadence measured from `start()`. Each tick runs as its
    own task, so a slow or failing refresh never delays the next one. Stopping a
    key cancels its timer but leaves ticks already in flight to finish.
    """

    def __init__(self, tick: Callable[[str], Awaitable[None]], interval: float = 30.0):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._tick = tick
        self.interval = interval
        self._timers: dict[str, asyncio.Task] = {}
        self._inflight: set[asyncio.Task] = set()

    def is_running(self, key: str) -> bool:
        timer = self._timers.get(key)
        return timer is not None and not timer.done()

    def start(self, key: str) -> bool:
        """Arm the timer for `key`. Returns False if one is already running."""
        if self.is_running(key):
            return False
        # Drop a finished or cancelled handle before re-arming
        self._timers.pop(key, None)
        self._timers[key] = asyncio.create_task(self._run(key), name=f"refresh:{key}")
        logger.info("Started periodic updates for room: %s (every %ss)", key, self.interval)
        return True

    def stop(self, key: str) -> bool:
        timer = self._timers.pop(key, None)
        if timer is None:
            return False
        timer.cancel()
        logger.info("Stopped periodic updates for room: %s", key)
        return True

    @property
    def active_keys(self) -> list[str]:
        return [key for key in self._timers if self.is_running(key)]

    async def _run(self, key: str):
        loop = asyncio.get_running_loop()
        next_at = loop.time() + self.interval
        while True:
            await asyncio.sleep(max(0.0, next_at - loop.time()))
            next_at += self.interval
            task = asyncio.create_task(self._safe_tick(key), name=f"tick:{key}")
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _safe_tick(self, key: str):
        try:
            await self._tick(key)
        except Exception:
            logger.exception("Refresh tick failed for room: %s", key)

    async def shutdown(self):
        """Cancel every timer and in-flight tick."""
        tasks = list(self._timers.values()) + list(self._inflight)
        self._timers.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Refresh scheduler stopped (%d tasks cancelled)", len(tasks))
