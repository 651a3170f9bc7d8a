"""Coalescing registry for long-running per-key async work.

At most one task runs per key. Late callers join the running task instead of
starting their own, and the registration is dropped as soon as the task
settles, whether it succeeded or failed, so a failure never blocks a retry.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class InFlightRegistry:
    """Maps a key (a wallet address) to the task currently working on it."""

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def get(self, key: str) -> Optional[asyncio.Task]:
        return self._tasks.get(key)

    def get_or_create(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
    ) -> Tuple[asyncio.Task, bool]:
        """Return ``(task, created)`` for *key*.

        The task is registered before this call returns and before the
        coroutine gets a chance to run, so any caller arriving afterwards
        joins it.
        """
        existing = self._tasks.get(key)
        if existing is not None:
            return existing, False

        task = asyncio.ensure_future(factory())
        self._tasks[key] = task
        task.add_done_callback(lambda t: self._forget(key, t))
        return task, True

    async def join(self, key: str) -> Any:
        """Await the task registered for *key*.

        Shielded: cancelling one waiter never cancels work other callers
        are sharing.
        """
        task = self._tasks.get(key)
        if task is None:
            raise KeyError(key)
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"In-flight work for {key} failed: {task.exception()}")
