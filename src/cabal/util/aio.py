"""Supervised fire-and-forget tasks.

Callers that must not block (bus handler coroutines, broadcast fan-out,
background notifications) hand their coroutine to `BackgroundTasks.spawn`.
The task is kept referenced until it finishes; a failure is logged and
forwarded to the error hook instead of disappearing with the task object.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

logger = logging.getLogger("cabal.tasks")

ErrorHook = Callable[[str, BaseException], None]


class BackgroundTasks:
    def __init__(self, *, name: str = "cabal", on_error: Optional[ErrorHook] = None) -> None:
        self._name = name
        self._tasks: Set[asyncio.Task[Any]] = set()
        self._on_error = on_error
        self._failures = 0

    @property
    def failures(self) -> int:
        return self._failures

    def set_error_hook(self, hook: Optional[ErrorHook]) -> None:
        self._on_error = hook

    def spawn(self, coro: Awaitable[Any], *, label: str = "") -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        tag = label or self._name
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finished(t, tag))
        return task

    def _finished(self, task: asyncio.Task[Any], label: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        self._failures += 1
        logger.error(
            "background task failed: %s: %s",
            label,
            exc,
            exc_info=(type(exc), exc, exc.__traceback__),
        )
        hook = self._on_error
        if hook is not None:
            try:
                hook(label, exc)
            except Exception:
                logger.exception("error hook failed for %s", label)

    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, *, timeout: Optional[float] = None) -> None:
        """Wait until no supervised task is left (tasks may spawn more tasks)."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + float(timeout)
        while self._tasks:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            if remaining == 0.0:
                raise TimeoutError(f"{self._name}: {len(self._tasks)} task(s) still running")
            await asyncio.wait(list(self._tasks), timeout=remaining)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
