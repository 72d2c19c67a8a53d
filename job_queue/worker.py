"""
Periodic Worker — the timer-driven loop every pipeline sweep runs in.

Each worker owns one asyncio task that calls its tick function, logs and
swallows nothing but the tick's own exception (so the next tick retries),
then sleeps for the interval. Workers share no in-process state; all
coordination happens in the store.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable, Optional

logger = structlog.get_logger()


class PeriodicWorker:
    """
    Usage:
        worker = PeriodicWorker("dispatch", dispatcher.sweep, interval_s=1.0)
        await worker.start()     # returns immediately, runs as task
        await worker.stop()
    """

    def __init__(
        self,
        name: str,
        tick: Callable[[], Awaitable[Any]],
        interval_s: float = 5.0,
    ):
        self.name = name
        self.tick = tick
        self.interval_s = interval_s
        self.ticks = 0
        self.errors = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the loop as a background task."""
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=f"{self.name}_worker")
        logger.info("worker_started", worker=self.name, interval_s=self.interval_s)

    async def stop(self) -> None:
        """Gracefully stop the loop."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("worker_stopped", worker=self.name, ticks=self.ticks, errors=self.errors)

    async def run_once(self) -> Any:
        self.ticks += 1
        return await self.tick()

    async def _loop(self) -> None:
        """Main loop — runs until stopped."""
        while self._running:
            try:
                stats = await self.run_once()
                if stats:
                    logger.debug("worker_tick", worker=self.name, stats=stats)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.errors += 1
                logger.error("worker_tick_error", worker=self.name, error=str(e))

            await asyncio.sleep(self.interval_s)
