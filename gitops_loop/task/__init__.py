"""Task tracking module for gitops-loop.

This module provides a task tracking service that lets controllers track,
wait for and cancel asynchronous tasks, including single-flight tasks keyed by
Application.
"""

from .context import task_service_context, get_task_service
from .service import TaskService

__all__ = ["get_task_service", "task_service_context", "TaskService"]
