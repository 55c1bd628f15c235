from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional, Protocol, Set


logger = logging.getLogger("mterm.timers")


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Anything with `call_later(delay, callback)`; an asyncio loop qualifies."""

    def call_later(self, delay: float, callback: Callable[[], Any]) -> TimerHandle: ...


class TimerScope:
    """Owns every timer and background task of one connection.

    Callbacks may be plain functions or coroutine functions; coroutines are run
    as tasks owned by the scope. `close()` cancels everything still pending and
    makes later scheduling a no-op.
    """

    def __init__(self, *, name: str = "", loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.name = name
        self._loop = loop
        self._handles: Set[asyncio.TimerHandle] = set()
        self._tasks: Set["asyncio.Task[Any]"] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def call_later(self, delay: float, callback: Callable[[], Any]) -> Optional[TimerHandle]:
        if self._closed:
            return None
        handle: Optional[asyncio.TimerHandle] = None

        def _fire() -> None:
            if handle is not None:
                self._handles.discard(handle)
            if self._closed:
                return
            try:
                result = callback()
            except Exception:
                logger.exception("timer callback failed", extra={"op": self.name})
                return
            if inspect.isawaitable(result):
                self.spawn(result)

        handle = self._get_loop().call_later(max(0.0, float(delay)), _fire)
        self._handles.add(handle)
        return handle

    def spawn(self, awaitable: Any) -> Optional["asyncio.Task[Any]"]:
        if self._closed:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return None
        task = asyncio.ensure_future(awaitable, loop=self._get_loop())
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("scoped task failed: %s", exc, extra={"op": self.name}, exc_info=exc)

    def pending(self) -> int:
        return len(self._handles) + len(self._tasks)

    def close(self) -> None:
        self._closed = True
        for h in list(self._handles):
            h.cancel()
        self._handles.clear()
        for t in list(self._tasks):
            t.cancel()
        self._tasks.clear()
