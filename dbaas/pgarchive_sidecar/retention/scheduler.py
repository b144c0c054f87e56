"""
Interval ticker for long-running maintenance loops.

The scheduler runs a cycle, sleeps for the interval the cycle returned,
and repeats until cancelled. A failing cycle is logged and retried after
the default interval; it never ends the loop.

Invariants:
    - Cancellation is observed only at the sleep boundary, a cycle that
      has started always completes
    - A non-positive interval is replaced by the default interval
    - Time is read only through the injected Clock

How to change safely:
    - Tests drive the loop with a fake Clock, keep all waiting in Clock.wait
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from ..metadata import DEFAULT_RETENTION_INTERVAL_SECONDS

logger = logging.getLogger(__name__)


class Clock(Protocol):
    """Time source of a scheduler."""

    def monotonic(self) -> float:
        ...

    async def wait(self, event: asyncio.Event, timeout: float) -> bool:
        """Wait until ``event`` is set or ``timeout`` seconds passed.

        Returns:
            True if the event was set
        """
        ...


class SystemClock:
    """Wall-clock implementation of Clock."""

    def monotonic(self) -> float:
        loop = asyncio.get_running_loop()
        return loop.time()

    async def wait(self, event: asyncio.Event, timeout: float) -> bool:
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True


class IntervalScheduler:
    """Runs a cycle at the interval it returns.

    Attributes:
        name: Loop name used in logs
        default_interval_seconds: Interval after a failure or a
            non-positive result

    Example:
        >>> scheduler = IntervalScheduler("retention", runner.cycle)
        >>> task = asyncio.create_task(scheduler.run())
        >>> scheduler.cancel()
    """

    def __init__(
        self,
        name: str,
        cycle: Callable[[], Awaitable[float]],
        default_interval_seconds: float = DEFAULT_RETENTION_INTERVAL_SECONDS,
        clock: Clock | None = None,
    ) -> None:
        self.name = name
        self.default_interval_seconds = default_interval_seconds
        self._cycle = cycle
        self._clock = clock or SystemClock()
        self._cancelled = asyncio.Event()
        self._running = False
        self._cycles = 0
        self._failures = 0
        self._last_interval: float | None = None
        self._last_duration: float | None = None

    def cancel(self) -> None:
        """Stop the loop at its next sleep boundary."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def run(self) -> None:
        """Run cycles until cancelled."""
        self._running = True
        logger.info(f"Starting {self.name} loop")
        try:
            while not self._cancelled.is_set():
                interval = await self.run_once()
                logger.debug(
                    f"{self.name} loop sleeping",
                    extra={"interval_seconds": interval},
                )
                if await self._clock.wait(self._cancelled, interval):
                    break
        finally:
            self._running = False
            logger.info(f"{self.name} loop stopped", extra={"cycles": self._cycles})

    async def run_once(self) -> float:
        """Run one cycle and return the interval to sleep before the next."""
        start = self._clock.monotonic()
        try:
            interval = await self._cycle()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._failures += 1
            logger.error(
                f"{self.name} cycle failed",
                extra={"error": str(e), "retry_in_seconds": self.default_interval_seconds},
                exc_info=True,
            )
            interval = self.default_interval_seconds
        finally:
            self._cycles += 1
            self._last_duration = self._clock.monotonic() - start

        if interval <= 0:
            interval = self.default_interval_seconds
        self._last_interval = interval
        return interval

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "cycles": self._cycles,
            "failures": self._failures,
            "last_interval_seconds": self._last_interval,
            "last_duration_seconds": self._last_duration,
        }
