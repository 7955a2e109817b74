"""Periodic asyncio tasks driving flushes, health checks and cleanup.

Each :class:`PeriodicTask` sleeps on a stop event rather than a bare
``asyncio.sleep`` so that :meth:`PeriodicTask.stop` takes effect at once.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run *callback* every *interval* seconds until stopped.

    Parameters
    ----------
    name:
        Label used in logs and the asyncio task name.
    interval:
        Seconds between runs; the first run happens one interval after
        :meth:`start`.
    callback:
        Coroutine function invoked on every tick. Exceptions are logged and
        the loop continues.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[object]],
    ) -> None:
        self.name = name
        self._interval = interval
        self._callback = callback
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        logger.debug("Started %s (every %.0fs)", self.name, self._interval)

    async def stop(self) -> None:
        """Stop the loop and wait for an in-flight callback to finish."""
        if self._task is None:
            return
        self._stop.set()
        task, self._task = self._task, None
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Stopped %s", self.name)

    async def restart(self, interval: float) -> None:
        """Apply a new interval, restarting the timer only if it changed."""
        if interval == self._interval and self.running:
            return
        was_running = self.running
        await self.stop()
        self._interval = interval
        if was_running:
            self.start()
        logger.info("Timer %s interval set to %.0fs", self.name, interval)

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
                break
            except asyncio.TimeoutError:
                pass  # interval elapsed normally

            try:
                await self._callback()
            except Exception:
                logger.exception("Periodic task %s failed", self.name)
