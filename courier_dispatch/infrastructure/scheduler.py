import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Set

from courier_dispatch.application.interfaces import Scheduler, TimerCallback, TimerHandle

logger = logging.getLogger(__name__)


class _AsyncioTimer(TimerHandle):
    def __init__(self, handle: asyncio.TimerHandle):
        self._handle = handle

    def cancel(self) -> None:
        self._handle.cancel()

    def cancelled(self) -> bool:
        return self._handle.cancelled()


class AsyncioScheduler(Scheduler):
    """Таймеры поверх event loop: асинхронные колбэки запускаются задачами"""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        loop = asyncio.get_running_loop()
        handle = loop.call_later(max(delay, 0), self._run, callback)
        return _AsyncioTimer(handle)

    def _run(self, callback: TimerCallback) -> None:
        try:
            result = callback()
        except Exception as e:
            logger.error(f"Ошибка в таймере: {e}", exc_info=True)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Ошибка в фоновой задаче таймера: {error}")

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
