"""
Named background tasks for the call bridge.

Delayed session evictions and recording lookups run beside the event loop's
main read path. Each is registered under a name derived from its channel so
it can be cancelled when the channel is reused or the bridge shuts down.
Failures are logged and counted, never raised into the caller.
"""

import asyncio
import logging
from typing import Any, Coroutine, Dict, Set

logger = logging.getLogger("callbridge.tasks")


class TaskRegistry:
    """Registry of named, self-removing asyncio tasks."""

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}
        self._failed_tasks: Set[str] = set()
        self._completed_count: int = 0

    def register(
        self,
        name: str,
        coro: Coroutine[Any, Any, Any],
    ) -> asyncio.Task:
        """
        Start ``coro`` as a task tracked under ``name``.

        A running task already registered under the same name is cancelled
        and replaced.
        """
        previous = self._tasks.get(name)
        if previous is not None and not previous.done():
            logger.debug(f"Replacing task: {name}")
            previous.cancel()

        task = asyncio.create_task(coro)
        self._tasks[name] = task
        task.add_done_callback(lambda t: self._on_task_complete(name, t))
        logger.debug(f"Task registered: {name}")
        return task

    def _on_task_complete(self, name: str, task: asyncio.Task) -> None:
        if self._tasks.get(name) is task:
            del self._tasks[name]
        self._completed_count += 1

        if task.cancelled():
            logger.debug(f"Task '{name}' was cancelled")
            return

        exc = task.exception()
        if exc:
            self._failed_tasks.add(name)
            logger.error(f"Task '{name}' failed with exception: {exc}", exc_info=exc)

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    @property
    def failed_count(self) -> int:
        return len(self._failed_tasks)

    @property
    def completed_count(self) -> int:
        return self._completed_count

    def get(self, name: str):
        return self._tasks.get(name)

    def get_active_tasks(self) -> Dict[str, asyncio.Task]:
        return dict(self._tasks)

    def get_failed_task_names(self) -> Set[str]:
        return set(self._failed_tasks)

    def cancel_nowait(self, name: str) -> bool:
        """Request cancellation without waiting. Returns True if a task was found."""
        task = self._tasks.get(name)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def wait_idle(self, timeout: float = 5.0) -> None:
        """Wait until every registered task has finished."""
        if not self._tasks:
            return
        await asyncio.wait_for(
            asyncio.gather(*list(self._tasks.values()), return_exceptions=True),
            timeout=timeout,
        )

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel every task and wait up to ``timeout`` for them to unwind."""
        if not self._tasks:
            logger.debug("No active tasks to shutdown")
            return

        logger.info(f"Shutting down {len(self._tasks)} active tasks (timeout={timeout}s)")

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()

        try:
            await asyncio.wait_for(
                asyncio.gather(*tasks, return_exceptions=True),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            remaining = len([t for t in tasks if not t.done()])
            logger.warning(f"Shutdown timeout: {remaining} tasks still running")

        logger.info(f"Task registry shutdown complete. Failed tasks: {len(self._failed_tasks)}")
