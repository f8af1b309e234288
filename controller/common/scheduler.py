"""
Interval Timer for Point Polling

ScheduledLoop runs one async callback on a fixed wall-clock grid.
Each point gets its own loop, so a slow point never delays another.

Timing rules:
- The first run lands on the next multiple of the interval
- Runs are awaited inline: a loop never overlaps with itself
- Boundaries missed while a callback overran are dropped, not queued
- A wall-clock jump of more than CLOCK_JUMP_S realigns the grid

Usage:
    async def poll_tank_level():
        ...

    loop = ScheduledLoop(5.0, poll_tank_level, name="point:tank-level")
    await loop.start()

    # Later:
    loop.stop()
    await loop.join(5.0)
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from common.logging_setup import get_service_logger

logger = get_service_logger("scheduler")

# Lateness beyond this is treated as a clock step (NTP, suspend), not drift
CLOCK_JUMP_S = 30.0


@dataclass
class _LoopMetrics:
    executions: int = 0
    errors: int = 0
    skipped: int = 0
    drift_total_s: float = 0.0
    drift_last_ms: float = 0.0
    last_duration_s: float = 0.0


class ScheduledLoop:
    """
    Fixed-interval async timer.

    stop() cancels a pending sleep at once. A callback that is already
    running is left to finish and the loop exits right after it, so a
    half-done device transaction is never interrupted.
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
        name: str = "unnamed",
    ):
        """
        Args:
            interval_seconds: Seconds between runs (sub-second allowed)
            callback: Coroutine function invoked once per interval
            name: Label used in logs and task names
        """
        if interval_seconds <= 0:
            raise ValueError(f"interval must be positive, got {interval_seconds}")

        self.interval = interval_seconds
        self.callback = callback
        self.name = name

        self._due: float = 0
        self._running = False
        self._in_callback = False
        self._task: asyncio.Task | None = None
        self._metrics = _LoopMetrics()

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name=f"scheduled:{self.name}")

    def stop(self) -> None:
        self._running = False
        if self._task and not self._in_callback:
            self._task.cancel()

    async def join(self, timeout: float | None = None) -> None:
        """Wait until the loop task has exited (call after stop())."""
        task = self._task
        if task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
        except asyncio.TimeoutError:
            logger.warning(f"Scheduler '{self.name}' did not stop within {timeout}s")

    def _next_boundary(self, now: float) -> float:
        return ((now // self.interval) + 1) * self.interval

    async def _run(self) -> None:
        self._due = self._next_boundary(time.time())

        while self._running:
            delay = self._due - time.time()
            if delay > 0:
                try:
                    await asyncio.sleep(delay)
                except asyncio.CancelledError:
                    break
            if not self._running:
                break

            self._record_lateness(time.time() - self._due)
            await self._invoke()
            self._advance(time.time())

    def _record_lateness(self, late_s: float) -> None:
        if late_s > CLOCK_JUMP_S:
            logger.info(f"Scheduler '{self.name}' clock jump detected ({late_s:.0f}s), realigning")
            self._metrics.drift_last_ms = 0
            return
        self._metrics.drift_total_s += max(0.0, late_s)
        self._metrics.drift_last_ms = late_s * 1000

    async def _invoke(self) -> None:
        self._in_callback = True
        started = time.time()
        try:
            await self.callback()
            self._metrics.executions += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._metrics.errors += 1
            logger.error(f"Scheduled callback '{self.name}' error: {e}")
        finally:
            self._metrics.last_duration_s = time.time() - started
            self._in_callback = False

    def _advance(self, now: float) -> None:
        """Move the due time past now, counting boundaries that were missed"""
        if now - self._due > CLOCK_JUMP_S:
            self._due = self._next_boundary(now)
            return

        # Always step past the boundary just served, even after an early wake-up
        self._due += self.interval
        missed = 0
        while self._due <= now:
            self._due += self.interval
            missed += 1

        if missed > 0:
            self._metrics.skipped += missed
            logger.warning(
                f"Scheduler '{self.name}' skipped {missed} intervals "
                f"(execution took {self._metrics.last_duration_s:.3f}s)"
            )

    @property
    def drift_seconds(self) -> float:
        return self._metrics.drift_total_s

    @property
    def drift_ms(self) -> float:
        return self._metrics.drift_last_ms

    @property
    def skipped_count(self) -> int:
        return self._metrics.skipped

    @property
    def execution_count(self) -> int:
        """Callbacks that completed without raising"""
        return self._metrics.executions

    @property
    def last_execution_time(self) -> float:
        return self._metrics.last_duration_s

    def get_stats(self) -> dict:
        m = self._metrics
        return {
            "name": self.name,
            "interval_s": self.interval,
            "execution_count": m.executions,
            "error_count": m.errors,
            "drift_total_s": round(m.drift_total_s, 3),
            "drift_last_ms": round(m.drift_last_ms, 1),
            "skipped_count": m.skipped,
            "last_execution_s": round(m.last_duration_s, 3),
        }
