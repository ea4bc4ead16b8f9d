"""Tracking of detached background tasks (e.g. serial console streams)."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

from loguru import logger

log = logger.bind(component="tasks")


class TaskTracker:
    """Owns background tasks so shutdown can join or abandon them deterministically."""

    __slots__ = ("_tasks",)

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        if (exc := task.exception()) is not None:
            log.error("Background task {name} failed: {err}", name=task.get_name(), err=exc)

    @property
    def active(self) -> tuple[asyncio.Task[Any], ...]:
        return tuple(t for t in self._tasks if not t.done())

    def __len__(self) -> int:
        return len(self.active)

    async def join(self, timeout: float | None = None) -> bool:
        """Wait for all tasks; True if none are left running."""
        pending = self.active
        if not pending:
            return True
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        return not still_running

    async def cancel_all(self) -> None:
        pending = self.active
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if pending:
            log.debug("Cancelled {n} background tasks", n=len(pending))
