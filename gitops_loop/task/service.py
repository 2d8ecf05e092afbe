"""Task tracking service for gitops-loop.

This service provides a simple way to track and wait for asynchronous tasks.
Keyed tasks give single-flight semantics: at most one task runs per key and a
newer task for the same key supersedes the older one.
"""

import asyncio
from functools import partial
import logging
from typing import Any, Coroutine, Set
from abc import ABC, abstractmethod

_LOGGER = logging.getLogger(__name__)

__all__: list[str] = []


class TaskService(ABC):
    """Service for tracking and waiting for asynchronous tasks."""

    @abstractmethod
    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new task."""

    @abstractmethod
    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new long running background task."""

    @abstractmethod
    def create_keyed_task(
        self, key: str, coro: Coroutine[None, None, Any]
    ) -> asyncio.Task[Any]:
        """Create a task for a key, cancelling any task still running for it.

        Args:
            key: Identity the task is single-flight for
            coro: The coroutine to run as a task

        Returns:
            The created task
        """

    @abstractmethod
    def get_keyed_task(self, key: str) -> asyncio.Task[Any] | None:
        """Return the task running for a key, if any."""

    @abstractmethod
    def cancel_keyed_task(self, key: str) -> bool:
        """Cancel the task running for a key.

        Returns:
            True if a running task was cancelled
        """

    @abstractmethod
    def cancel_keyed_tasks(self) -> int:
        """Cancel every keyed task still running and return how many."""

    @abstractmethod
    async def block_till_done(self) -> None:
        """Wait for all active non-background tasks to complete."""

    @abstractmethod
    def get_num_active_tasks(self) -> int:
        """Get the number of active non-background tasks."""

    @abstractmethod
    async def close(self) -> None:
        """Cancel every tracked task and wait for them to finish."""


class TaskServiceImpl(TaskService):
    """Service for tracking and waiting for asynchronous tasks."""

    def __init__(self) -> None:
        """Initialize the task service."""
        self._active_tasks: Set[asyncio.Task[Any]] = set()
        self._background_tasks: Set[asyncio.Task[Any]] = set()
        self._keyed_tasks: dict[str, asyncio.Task[Any]] = {}

    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new task."""
        task = asyncio.create_task(coro, name=name)
        self._active_tasks.add(task)
        task.add_done_callback(partial(self._task_done, self._active_tasks))
        return task

    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new background task."""
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(partial(self._task_done, self._background_tasks))
        return task

    def create_keyed_task(
        self, key: str, coro: Coroutine[None, None, Any]
    ) -> asyncio.Task[Any]:
        """Create a task for a key, cancelling any task still running for it."""
        if self.cancel_keyed_task(key):
            _LOGGER.debug("Superseded running task for %s", key)
        task = self.create_task(coro, name=key)
        self._keyed_tasks[key] = task
        task.add_done_callback(partial(self._keyed_task_done, key))
        return task

    def get_keyed_task(self, key: str) -> asyncio.Task[Any] | None:
        """Return the task running for a key, if any."""
        task = self._keyed_tasks.get(key)
        if task is None or task.done():
            return None
        return task

    def cancel_keyed_task(self, key: str) -> bool:
        """Cancel the task running for a key."""
        if (task := self.get_keyed_task(key)) is None:
            return False
        task.cancel()
        return True

    def cancel_keyed_tasks(self) -> int:
        """Cancel every keyed task still running and return how many."""
        running = [
            task
            for task in self._keyed_tasks.values()
            if not task.done() and not task.get_loop().is_closed()
        ]
        for task in running:
            task.cancel()
        return len(running)

    def _keyed_task_done(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._keyed_tasks.get(key) is task:
            del self._keyed_tasks[key]

    def _task_done(
        self, task_set: Set[asyncio.Task[Any]], task: asyncio.Task[Any]
    ) -> None:
        """Callback when a task is done."""
        try:
            # This will raise any exception that occurred in the task
            task.result()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            _LOGGER.error("Task %s failed: %s", task.get_name(), e)
        finally:
            task_set.discard(task)

    async def block_till_done(self) -> None:
        """Wait for all active tasks to complete.

        This method creates a copy of the current active tasks and waits
        for them to complete. It's safe to call even if new tasks are created
        while waiting.
        """
        active_tasks = list(self._active_tasks)
        if active_tasks:
            _LOGGER.debug("Waiting for %d tasks to complete", len(active_tasks))
            await asyncio.gather(*active_tasks, return_exceptions=True)
        else:
            _LOGGER.debug("No active tasks to wait for")
            await asyncio.sleep(0)

    def get_num_active_tasks(self) -> int:
        """Get the number of active tasks."""
        return len(self._active_tasks)

    async def close(self) -> None:
        """Cancel every tracked task and wait for them to finish."""
        tasks = list(self._active_tasks | self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._keyed_tasks.clear()
