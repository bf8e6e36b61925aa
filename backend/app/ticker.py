"""Cancellable, non-overlapping periodic task.

The callback is awaited inline, so a tick always finishes before the next
one starts. Ticks that fall due while a slow tick is still running are
skipped (counted and logged), never queued up or run concurrently.
"""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run an async callback every `interval` seconds until stopped.

    Usage:
        task = PeriodicTask(service.tick, interval=60.0, name="rule-engine")
        task.start()
        ...
        await task.stop()
    """

    def __init__(
        self,
        callback: Callable[[], Awaitable[None]],
        interval: float,
        name: str = "periodic",
        run_immediately: bool = True,
    ):
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        self._callback = callback
        self.interval = interval
        self.name = name
        self._run_immediately = run_immediately
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()
        self.ticks = 0
        self.skipped = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            raise RuntimeError(f"{self.name} is already running")
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.info("Started %s (every %.1fs)", self.name, self.interval)

    async def stop(self, timeout: float | None = None) -> None:
        """Stop after the in-flight tick; cancel it if `timeout` elapses first."""
        if self._task is None:
            return
        self._stop.set()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("%s did not finish within %.1fs, cancelling", self.name, timeout)
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
        logger.info(
            "Stopped %s: %d ticks, %d skipped, %d failed",
            self.name, self.ticks, self.skipped, self.failures,
        )

    async def run_once(self) -> None:
        """Run a single tick; errors are logged, not raised."""
        self.ticks += 1
        try:
            await self._callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failures += 1
            logger.error("%s tick %d failed", self.name, self.ticks, exc_info=True)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_due = loop.time() + (0 if self._run_immediately else self.interval)

        while not self._stop.is_set():
            delay = next_due - loop.time()
            if delay > 0:
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=delay)
                    break
                except asyncio.TimeoutError:
                    pass

            await self.run_once()

            next_due += self.interval
            now = loop.time()
            if now > next_due:
                missed = int((now - next_due) // self.interval) + 1
                self.skipped += missed
                next_due += missed * self.interval
                logger.warning(
                    "%s tick overran the %.1fs interval, skipped %d tick(s)",
                    self.name, self.interval, missed,
                )
