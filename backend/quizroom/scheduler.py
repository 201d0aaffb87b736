from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Set

logger = logging.getLogger(__name__)


async def _call(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class Scheduler:
    """Named timers owned by one screen controller.

    Scheduling a name that is already running replaces the old timer, so
    callers never have to remember to cancel before re-arming. Everything is
    cancelled together on teardown.
    """

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def call_later(self, name: str, delay: float, callback: Callable[..., Any], *args: Any) -> asyncio.Task:
        self.cancel(name)
        task = asyncio.create_task(self._later(name, max(0.0, delay), callback, args))
        self._tasks[name] = task
        return task

    def call_every(self, name: str, interval: float, callback: Callable[..., Any], *args: Any) -> asyncio.Task:
        self.cancel(name)
        task = asyncio.create_task(self._every(name, interval, callback, args))
        self._tasks[name] = task
        return task

    def cancel(self, name: str) -> bool:
        task = self._tasks.pop(name, None)
        if task is None:
            return False
        if task is not asyncio.current_task():
            task.cancel()
        return True

    def cancel_all(self) -> None:
        for name in list(self._tasks):
            self.cancel(name)

    def is_active(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    @property
    def active(self) -> Set[str]:
        return {name for name, task in self._tasks.items() if not task.done()}

    async def _later(self, name: str, delay: float, callback: Callable[..., Any], args: tuple) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        # the timer is spent; drop it before running so the callback may re-arm it
        if self._tasks.get(name) is asyncio.current_task():
            del self._tasks[name]
        try:
            await _call(callback, *args)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Timer %s failed", name)

    async def _every(self, name: str, interval: float, callback: Callable[..., Any], args: tuple) -> None:
        while True:
            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                return
            if self._tasks.get(name) is not asyncio.current_task():
                return
            try:
                await _call(callback, *args)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Interval %s failed", name)
