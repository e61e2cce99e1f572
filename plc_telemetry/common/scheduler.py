"""
Interval Scheduler for Polling Loops

Provides ScheduledLoop class that fires callbacks at exact intervals,
accounting for callback execution time to prevent drift.

Unlike asyncio.sleep()-based loops, this scheduler:
- Fires on a fixed schedule relative to its start (or wall-clock boundaries)
- Awaits each callback, so two executions of one loop never overlap
- Skips missed intervals instead of queueing them
- Reports drift metrics for observability

Usage:
    async def poll():
        ...

    loop = ScheduledLoop(1.0, poll, name="10.0.0.5:502", run_immediately=True)
    await loop.start()

    # Later:
    loop.stop()
"""

import asyncio
import time
from typing import Awaitable, Callable

from .logging_setup import get_service_logger

logger = get_service_logger("scheduler")


def next_boundary(now: float, interval: float, utc_offset: float | None = None) -> float:
    """
    Next interval boundary on the local wall clock, as an epoch timestamp.

    With interval=3600 in a +05:30 zone, 09:40 local gives 10:00 local.
    utc_offset defaults to the local zone offset at `now`.
    """
    if utc_offset is None:
        utc_offset = time.localtime(now).tm_gmtoff
    local = now + utc_offset
    return ((local // interval) + 1) * interval - utc_offset


class ScheduledLoop:
    """
    Precise interval scheduler that accounts for execution time.

    The next iteration is scheduled relative to the original schedule,
    not relative to when the callback finished. Stopping the loop while
    a callback is running does not cancel that callback; the loop exits
    once it returns.

    Attributes:
        interval: The interval in seconds between executions
        callback: Async function to call each interval
        skipped_count: Number of intervals skipped (to catch up)
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
        name: str = "unnamed",
        align: bool = False,
        run_immediately: bool = False,
    ):
        """
        Initialize a scheduled loop.

        Args:
            interval_seconds: Time between executions (supports sub-second)
            callback: Async function to call each interval
            name: Name for logging/identification
            align: Align runs to local wall-clock interval boundaries
            run_immediately: Execute once right after start()
        """
        if interval_seconds <= 0:
            raise ValueError(f"interval must be positive, got {interval_seconds}")

        self.interval = interval_seconds
        self.callback = callback
        self.name = name
        self.align = align
        self.run_immediately = run_immediately

        self._next_run: float = 0
        self._running = False
        self._in_callback = False
        self._task: asyncio.Task | None = None

        # Observability metrics
        self._drift_total: float = 0
        self._skipped_count: int = 0
        self._execution_count: int = 0
        self._error_count: int = 0
        self._last_execution_time: float = 0
        self._last_drift_ms: float = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the scheduled loop in a background task."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run(), name=f"scheduled:{self.name}")

    def stop(self) -> None:
        """Stop the scheduled loop. An in-flight callback is left to finish."""
        self._running = False
        if self._task and not self._in_callback:
            self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        """Main loop that fires callback at exact intervals."""
        now = time.time()
        if self.run_immediately:
            self._next_run = now
        elif self.align:
            # Align first run to the next local wall-clock boundary
            self._next_run = next_boundary(now, self.interval)
        else:
            self._next_run = now + self.interval

        while self._running:
            now = time.time()

            sleep_duration = self._next_run - now
            if sleep_duration > 0:
                try:
                    await asyncio.sleep(sleep_duration)
                except asyncio.CancelledError:
                    break

            if not self._running:
                break

            actual_time = time.time()
            drift = actual_time - self._next_run

            if drift > 30:
                # Clock jump (NTP sync, suspend/resume); not real drift
                logger.info(
                    f"Scheduler '{self.name}' clock jump detected ({drift:.0f}s), realigning"
                )
                self._last_drift_ms = 0
            else:
                self._drift_total += max(0, drift)
                self._last_drift_ms = drift * 1000

            self._in_callback = True
            start = time.time()
            try:
                await self.callback()
                self._execution_count += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._error_count += 1
                logger.error(f"Scheduled callback '{self.name}' error: {e}")
            finally:
                self._last_execution_time = time.time() - start
                self._in_callback = False

            # Skip missed intervals to catch up (don't queue up missed executions)
            now = time.time()
            skipped = 0
            while self._next_run <= now:
                self._next_run += self.interval
                skipped += 1

            # First skip is expected (the one we just executed)
            if skipped > 1:
                self._skipped_count += skipped - 1
                logger.warning(
                    f"Scheduler '{self.name}' skipped {skipped - 1} intervals "
                    f"(execution took {self._last_execution_time:.3f}s)"
                )

    @property
    def drift_seconds(self) -> float:
        """Total accumulated drift in seconds."""
        return self._drift_total

    @property
    def skipped_count(self) -> int:
        """Number of intervals skipped to catch up."""
        return self._skipped_count

    @property
    def execution_count(self) -> int:
        """Total number of successful executions."""
        return self._execution_count

    def get_stats(self) -> dict:
        """Get scheduler statistics for observability."""
        return {
            "name": self.name,
            "interval_s": self.interval,
            "running": self._running,
            "execution_count": self._execution_count,
            "error_count": self._error_count,
            "drift_total_s": round(self._drift_total, 3),
            "drift_last_ms": round(self._last_drift_ms, 1),
            "skipped_count": self._skipped_count,
            "last_execution_s": round(self._last_execution_time, 3),
        }
