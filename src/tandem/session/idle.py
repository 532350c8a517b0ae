import asyncio
import inspect
import logging
from collections import deque
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

IdleCallback = Callable[[], Awaitable[Any] | Any]


class IdleScheduler:
    """Runs low-priority callbacks only while the session has no active turn."""

    def __init__(self, is_idle: Callable[[], bool], interval_s: float = 1.0):
        self._is_idle = is_idle
        self.interval_s = interval_s
        self._callbacks: deque[IdleCallback] = deque()
        self._handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._callbacks)

    def on_idle(self, callback: IdleCallback) -> None:
        if self._is_idle():
            asyncio.get_running_loop().call_soon(self._run, callback)
        else:
            self._callbacks.append(callback)

    def schedule(self) -> None:
        if self._handle is not None and not self._handle.cancelled():
            return
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.interval_s, self._tick)

    def _tick(self) -> None:
        self._handle = None
        if not self._is_idle():
            # The end of the running turn schedules again.
            return
        if not self._callbacks:
            return
        self._run(self._callbacks.popleft())
        if self._callbacks:
            self.schedule()

    def _run(self, callback: IdleCallback) -> None:
        try:
            result = callback()
        except Exception:
            logger.exception("Idle callback failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Idle callback failed", exc_info=error)

    def close(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._callbacks.clear()
        for task in list(self._tasks):
            task.cancel()
