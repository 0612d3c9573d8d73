"""Interval scheduling for periodic syncs."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)


class SystemClock:
    """Wall clock backed by the running event loop."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class Ticker:
    """
    Run an async callback every `interval` seconds until stopped.

    Each tick launches the callback as its own task, so a slow callback never
    delays the next tick. Callback errors are logged and do not stop the ticker.
    Must be started from inside a running event loop.
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[[], Awaitable[object]],
        clock: Optional[SystemClock] = None,
        name: str = "ticker",
    ):
        if interval <= 0:
            raise ValueError("Ticker interval must be positive")
        self.interval = interval
        self.name = name
        self._callback = callback
        self._clock = clock or SystemClock()
        self._task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending(self) -> int:
        """Number of launched callbacks still running."""
        return len(self._pending)

    def start(self, run_immediately: bool = False) -> None:
        if self.running:
            logger.warning(f"[{self.name}] already running")
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(run_immediately))
        logger.info(f"[{self.name}] started, interval {self.interval:g}s")

    def stop(self) -> None:
        """Stop future ticks. Callbacks already launched keep running."""
        if self._task is None:
            return
        self._task.cancel()
        self._task = None
        logger.info(f"[{self.name}] stopped")

    async def shutdown(self) -> None:
        """Stop ticking, cancel launched callbacks and wait until they have all finished."""
        loop_task = self._task
        self.stop()
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        if loop_task is not None:
            pending.append(loop_task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _loop(self, run_immediately: bool) -> None:
        if run_immediately:
            self._fire()
        while True:
            await self._clock.sleep(self.interval)
            self._fire()

    def _fire(self) -> None:
        task = asyncio.ensure_future(self._callback())
        self._pending.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[{self.name}] tick failed: {exc!r}", exc_info=exc)
