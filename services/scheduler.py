"""Cancellable, self-rescheduling asyncio polling task.

Runs one cycle to completion, then sleeps a fixed delay before the next one,
so cycles of the same loop never overlap. stop() cancels the pending sleep
but lets a cycle that is already running finish.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class PollingLoop:

    def __init__(
        self,
        name: str,
        cycle: Callable[[], Awaitable[object]],
        interval_secs: float,
        sleep: Sleep = asyncio.sleep,
    ):
        self.name = name
        self.cycle = cycle
        self.interval_secs = interval_secs
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._in_cycle = False
        self.cycles_completed = 0
        self.cycles_failed = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_cycle(self) -> bool:
        return self._in_cycle

    def start(self) -> None:
        """Schedule the first cycle immediately. No-op if already running."""
        if self._running:
            logger.info("[%s] Already running", self.name)
            return
        self._running = True
        if self._task is not None and not self._task.done() and self._in_cycle:
            # stop() raced with an in-flight cycle; that task simply keeps looping
            return
        logger.info("[%s] Starting with %.1fs interval", self.name, self.interval_secs)
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"poll-{self.name}")

    def stop(self) -> None:
        """Prevent further cycles. An in-flight cycle runs to completion."""
        if not self._running:
            return
        logger.info("[%s] Stopping...", self.name)
        self._running = False
        if self._task is not None and not self._in_cycle:
            self._task.cancel()

    async def wait(self) -> None:
        """Wait until the loop task has exited (after stop())."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def run_once(self) -> object:
        """Run a single cycle outside the schedule, with the same error handling."""
        return await self._run_cycle()

    async def _run_cycle(self) -> object:
        self._in_cycle = True
        try:
            result = await self.cycle()
            self.cycles_completed += 1
            return result
        except Exception:
            self.cycles_failed += 1
            logger.exception("[%s] Cycle failed", self.name)
            return None
        finally:
            self._in_cycle = False

    async def _run(self) -> None:
        try:
            while self._running:
                await self._run_cycle()
                if not self._running:
                    break
                await self._sleep(self.interval_secs)
        except asyncio.CancelledError:
            logger.debug("[%s] Pending cycle cancelled", self.name)
        finally:
            if asyncio.current_task() is self._task:
                self._running = False
            logger.info("[%s] Stopped", self.name)
