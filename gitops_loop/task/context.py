"""The TaskService installed for the running control loop or command.

Controllers look up the service when they are created, so every command and
control loop runs inside its own `task_service_context`. Syncs still in flight
when the context exits are cancelled and do not leak into the next one.
"""

from collections.abc import Iterator
import contextlib
import contextvars
import logging

from .service import TaskService, TaskServiceImpl

__all__: list[str] = []

_LOGGER = logging.getLogger(__name__)

_current: contextvars.ContextVar[TaskService] = contextvars.ContextVar("task_service")


def get_task_service() -> TaskService:
    """Return the TaskService for the current context, installing one if needed."""
    try:
        return _current.get()
    except LookupError:
        service = TaskServiceImpl()
        _current.set(service)
        return service


@contextlib.contextmanager
def task_service_context(service: TaskService | None = None) -> Iterator[TaskService]:
    """Install a TaskService for the enclosed block.

    Keyed tasks still running when the block exits are cancelled.
    """
    service = service or TaskServiceImpl()
    token = _current.set(service)
    try:
        yield service
    finally:
        _current.reset(token)
        if cancelled := service.cancel_keyed_tasks():
            _LOGGER.debug("Cancelled %d unfinished keyed tasks", cancelled)
