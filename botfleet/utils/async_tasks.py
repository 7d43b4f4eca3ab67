"""Utilities for running detached background tasks.

Tasks spawned here never fail silently: a done-callback logs any exception
with its traceback. The registry keeps one task per name so callers can
look a task up, avoid starting a duplicate, and cancel everything on
shutdown.
"""
from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Coroutine, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _log_task_result(task: asyncio.Task) -> None:
    if task.cancelled():
        logger.debug(f"Task '{task.get_name()}' was cancelled")
        return

    exc = task.exception()
    if exc is not None:
        tb_str = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        logger.error(
            f"Background task '{task.get_name()}' failed with {type(exc).__name__}: {exc}\n{tb_str}"
        )


def safe_create_task(coro: Coroutine[object, object, T], *, name: str | None = None) -> asyncio.Task[T]:
    """Create a task whose exception, if any, is logged when it finishes."""
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_log_task_result)
    return task


class TaskRegistry:
    """Named background tasks, at most one live task per name."""

    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}

    def spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        """Start ``coro`` under ``name`` unless a task by that name is still running.

        When one is already running the new coroutine is closed unstarted
        and the existing task is returned.
        """
        existing = self._tasks.get(name)
        if existing is not None and not existing.done():
            coro.close()
            return existing

        task = safe_create_task(coro, name=name)
        self._tasks[name] = task

        def _forget(t: asyncio.Task) -> None:
            if self._tasks.get(name) is t:
                del self._tasks[name]

        task.add_done_callback(_forget)
        return task

    def get(self, name: str) -> asyncio.Task | None:
        return self._tasks.get(name)

    def running(self) -> list[str]:
        return [name for name, task in self._tasks.items() if not task.done()]

    async def cancel_all(self, timeout: float = 5.0) -> None:
        """Cancel all registered tasks and wait for them to finish."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()

        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            if pending:
                logger.warning(f"{len(pending)} tasks did not complete within {timeout}s timeout")
