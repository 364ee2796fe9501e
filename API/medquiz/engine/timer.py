from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable

from medquiz.core.logging import DOMAIN_TIMER, get_domain_logger

logger = get_domain_logger(__name__, DOMAIN_TIMER)


class RecurringTask:
    """Run ``callback`` every ``interval_seconds`` on the running loop until stopped.

    Start and stop are idempotent. A failing callback is logged and the loop keeps going.
    """

    def __init__(self, name: str, interval_seconds: float, callback: Callable[[], object]):
        self.name = name
        self.interval_seconds = interval_seconds
        self._callback = callback
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=self.name)

    def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval_seconds)
            if not self._running:
                break
            try:
                result = self._callback()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Recurring task %s failed", self.name)


class TimerController:
    """One tick per interval while the session clock runs; each tick adds one second."""

    def __init__(self, on_tick: Callable[[], object], *, tick_seconds: float = 1.0, name: str = "session-clock"):
        self._task = RecurringTask(name, tick_seconds, on_tick)

    @property
    def running(self) -> bool:
        return self._task.running

    def start(self) -> None:
        if not self.running:
            logger.debug("Clock %s started", self._task.name)
        self._task.start()

    def stop(self) -> None:
        if self.running:
            logger.debug("Clock %s stopped", self._task.name)
        self._task.stop()
