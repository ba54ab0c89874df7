import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class Subscription:
    """Removes a listener when cancelled. Cancelling twice is a no-op."""

    def __init__(self, unsubscribe: Callable[[], None]):
        self._unsubscribe: Callable[[], None] | None = unsubscribe

    @property
    def done(self) -> bool:
        return self._unsubscribe is None

    def cancel(self) -> None:
        if self._unsubscribe is None:
            return

        unsubscribe, self._unsubscribe = self._unsubscribe, None
        unsubscribe()


class TaskHandle:
    """Owns a background task started on the running loop."""

    def __init__(self, coro: Coroutine[Any, Any, Any], name: str | None = None):
        self.task: asyncio.Task[Any] = asyncio.create_task(coro, name=name)
        self.task.add_done_callback(self._log_failure)

    @staticmethod
    def _log_failure(task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return

        if (exc := task.exception()) is not None:
            logger.error(f"Background task {task.get_name()} failed", exc_info=exc)

    @property
    def done(self) -> bool:
        return self.task.done()

    def cancel(self) -> None:
        # A task tearing down its own group finishes on its own
        if self.task is asyncio.current_task():
            return

        self.task.cancel()

    async def wait(self) -> None:
        if self.task is asyncio.current_task():
            return

        await asyncio.gather(self.task, return_exceptions=True)


class HandleGroup:
    """Cancels every handle added to it in one call."""

    def __init__(self) -> None:
        self._handles: list[Subscription | TaskHandle] = []

    def __len__(self) -> int:
        return len(self._handles)

    def add(self, handle: Subscription | TaskHandle) -> None:
        self._handles = [h for h in self._handles if not h.done]
        self._handles.append(handle)

    def spawn(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> TaskHandle:
        handle = TaskHandle(coro, name=name)
        self.add(handle)
        return handle

    def cancel(self) -> None:
        for handle in self._handles:
            handle.cancel()

    async def aclose(self) -> None:
        """Cancel every handle and wait for the tasks to finish."""
        handles, self._handles = self._handles, []

        for handle in handles:
            handle.cancel()

        for handle in handles:
            if isinstance(handle, TaskHandle):
                await handle.wait()
