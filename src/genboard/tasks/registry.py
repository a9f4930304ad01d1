# src/genboard/tasks/registry.py

"""
Sub-task registry.

Owned by the scheduler and keyed by sub-task id:
- cancellation tokens of in-flight attempts (at most one per id),
- pending single-shot retry timers (at most one per id),
- strong references to spawned attempts so they are not garbage collected.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class CancelToken:
    """Abort flag for one attempt, bound to the asyncio task running it."""

    __slots__ = ("_aborted", "_task")

    def __init__(self, task: asyncio.Task[Any] | None = None) -> None:
        self._aborted = False
        self._task = task

    @property
    def aborted(self) -> bool:
        return self._aborted

    def abort(self) -> None:
        if self._aborted:
            return
        self._aborted = True
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def bind(self, task: asyncio.Task[Any]) -> None:
        self._task = task

    def raise_if_cancelled(self) -> None:
        if self._aborted:
            raise asyncio.CancelledError()


class SubtaskRegistry:
    def __init__(self) -> None:
        self._handles: dict[str, CancelToken] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._running: set[asyncio.Task[Any]] = set()

    # ---- cancellation handles ----

    def has_handle(self, subtask_id: str) -> bool:
        return subtask_id in self._handles

    def acquire(self, subtask_id: str) -> CancelToken | None:
        """Register a token for a new attempt; None if an attempt is already in flight."""
        if subtask_id in self._handles:
            return None
        token = CancelToken()
        self._handles[subtask_id] = token
        return token

    def release(self, subtask_id: str, token: CancelToken) -> None:
        # A newer attempt may own the slot by now.
        if self._handles.get(subtask_id) is token:
            del self._handles[subtask_id]

    def abort(self, subtask_id: str) -> bool:
        token = self._handles.pop(subtask_id, None)
        if token is None:
            return False
        token.abort()
        return True

    # ---- retry timers ----

    def has_timer(self, subtask_id: str) -> bool:
        return subtask_id in self._timers

    def set_timer(self, subtask_id: str, handle: asyncio.TimerHandle) -> None:
        previous = self._timers.get(subtask_id)
        if previous is not None and previous is not handle:
            previous.cancel()
        self._timers[subtask_id] = handle

    def pop_timer(self, subtask_id: str) -> asyncio.TimerHandle | None:
        return self._timers.pop(subtask_id, None)

    def clear_timer(self, subtask_id: str) -> bool:
        handle = self._timers.pop(subtask_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    # ---- spawned work ----

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._running.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._running.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Sub-task worker %s failed", task.get_name(), exc_info=exc)

    async def shutdown(self) -> None:
        """Abort every attempt, drop every timer and wait for spawned work to finish."""
        for subtask_id in list(self._timers):
            self.clear_timer(subtask_id)
        for subtask_id in list(self._handles):
            self.abort(subtask_id)
        pending = list(self._running)
        for task in pending:
            if not task.done():
                task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
