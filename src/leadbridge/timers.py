"""Cancellable one-shot timers on the running event loop.

The transfer coordinator only depends on the ``Scheduler`` shape
(``schedule(delay, callback) -> handle`` with ``handle.cancel()``), so tests
substitute a manual scheduler and a fake clock.
"""

import asyncio
import inspect
import logging
from typing import Callable

logger = logging.getLogger(__name__)


class TimerHandle:
    def __init__(self, handle: asyncio.TimerHandle | None = None):
        self._handle = handle
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True
        if self._handle is not None:
            self._handle.cancel()


class Scheduler:
    """Runs callbacks after a delay. Coroutine callbacks become tasks."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self._loop = loop
        self._tasks: set[asyncio.Task] = set()

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def schedule(self, delay: float, callback: Callable) -> TimerHandle:
        handle = TimerHandle()
        loop = self._get_loop()

        def _fire():
            if handle.cancelled:
                return
            try:
                result = callback()
            except Exception as e:
                logger.error("Timer callback failed: %s", e)
                return
            if inspect.isawaitable(result):
                task = loop.create_task(result)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

        handle._handle = loop.call_later(delay, _fire)
        return handle
