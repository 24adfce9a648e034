"""
Fire-and-forget background tasks on the running event loop.

asyncio only keeps weak references to tasks, so spawned coroutines are held
in a set until they finish.  Exceptions that escape a task are logged here;
callers that need the outcome record it themselves (e.g. the research job
store).
"""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine, Optional, Set

from vitachat.log import get_logger

logger = get_logger(__name__)


class BackgroundTasks:

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[tasks] background task %s failed: %r", task.get_name(), exc)

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until every task spawned so far has finished (tests, graceful shutdown)."""
        pending = set(self._tasks)
        if pending:
            await asyncio.wait(pending, timeout=timeout)

    async def cancel_all(self) -> None:
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if pending:
            logger.info("[tasks] cancelled %d background task(s)", len(pending))


background_tasks = BackgroundTasks()
