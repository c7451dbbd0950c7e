"""
Fixed-Cadence Scheduler

Provides PeriodicTimer, which fires an async callback every `interval`
seconds on the running event loop, measured on the loop's monotonic clock.

- Next fire time is computed from the schedule, not from when the callback
  finished, so a slow tick does not push later ticks back.
- Missed intervals are skipped, never queued up.
- Callback errors are logged and the timer keeps running.

Usage:
    async def tick():
        ...

    timer = PeriodicTimer(5.0, tick, name="polling")
    await timer.start()

    # Later:
    timer.stop()
"""

import asyncio
from typing import Awaitable, Callable

from .logging_setup import get_service_logger

logger = get_service_logger("scheduler")


class PeriodicTimer:
    """
    Interval timer driving an async callback.

    Attributes:
        interval: Seconds between executions
        callback: Async function to call each interval
        skipped_count: Intervals dropped because a tick overran
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
        name: str = "unnamed",
    ):
        self.interval = interval_seconds
        self.callback = callback
        self.name = name

        self._task: asyncio.Task | None = None
        self._running = False

        self._execution_count: int = 0
        self._error_count: int = 0
        self._skipped_count: int = 0
        self._last_execution_time: float = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the timer in a background task. First tick fires after one interval."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run(), name=f"timer:{self.name}")

    def stop(self) -> None:
        """Stop the timer. Safe to call from inside the callback."""
        self._running = False
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_run = loop.time() + self.interval

        while self._running:
            delay = next_run - loop.time()
            if delay > 0:
                try:
                    await asyncio.sleep(delay)
                except asyncio.CancelledError:
                    break

            if not self._running:
                break

            start = loop.time()
            try:
                await self.callback()
                self._execution_count += 1
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._error_count += 1
                logger.error(f"Timer '{self.name}' callback error: {e}", exc_info=True)
            self._last_execution_time = loop.time() - start

            now = loop.time()
            skipped = 0
            while next_run <= now:
                next_run += self.interval
                skipped += 1

            # One step is the tick we just ran
            if skipped > 1:
                self._skipped_count += skipped - 1
                logger.warning(
                    f"Timer '{self.name}' skipped {skipped - 1} intervals "
                    f"(execution took {self._last_execution_time:.3f}s)"
                )

    @property
    def skipped_count(self) -> int:
        return self._skipped_count

    @property
    def execution_count(self) -> int:
        return self._execution_count

    def get_stats(self) -> dict:
        """Get timer statistics for observability."""
        return {
            "name": self.name,
            "interval_s": self.interval,
            "running": self._running,
            "execution_count": self._execution_count,
            "error_count": self._error_count,
            "skipped_count": self._skipped_count,
            "last_execution_s": round(self._last_execution_time, 3),
        }
