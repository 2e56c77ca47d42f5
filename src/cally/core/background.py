"""Detached background tasks for fire-and-forget side effects.

Provider pushes and notification emails are spawned here instead of being
awaited by the request that triggered them.  The spawner holds a strong
reference to every pending task (the event loop only keeps weak ones) and
logs, rather than propagates, any failure.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_HISTORY = 100


class BackgroundTasks:
    """Owns detached tasks spawned on behalf of the scheduling core.

    ``failures`` keeps only the most recent *failure_history* failed tasks.
    """

    def __init__(self, failure_history: int = DEFAULT_FAILURE_HISTORY) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self.failures: deque[tuple[str, BaseException]] = deque(maxlen=failure_history)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        """Schedule *coro* without awaiting it; failures are logged only."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug("Background task %s cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            self.failures.append((task.get_name(), exc))
            logger.warning(
                "Background task %s failed: %s",
                task.get_name(),
                exc,
                exc_info=exc,
            )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for every pending task, including ones spawned while draining."""
        while self._tasks:
            pending = list(self._tasks)
            _, still_pending = await asyncio.wait(pending, timeout=timeout)
            if still_pending:
                logger.warning("Timed out draining %d background task(s)", len(still_pending))
                return
            # Let done-callbacks run before re-checking the set.
            await asyncio.sleep(0)

    async def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
