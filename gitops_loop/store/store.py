"""Store module for holding Application state while reconciling."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import Any, TypeVar

from gitops_loop.manifest import Application, DesiredState, NamedResource

from .status import AppStatus

T = TypeVar("T", bound=Application)


class StoreEvent(str, Enum):
    """Enum for store events."""

    OBJECT_ADDED = "object_added"
    STATUS_UPDATED = "status_updated"
    DESIRED_STATE_UPDATED = "desired_state_updated"


class Store(ABC):
    """Abstract base class for the Application store with listener support."""

    @abstractmethod
    def add_object(self, obj: Application) -> None:
        """Add or replace an Application in the store."""

    @abstractmethod
    def get_object(self, resource_id: NamedResource, cls: type[T]) -> T | None:
        """Retrieve an Application by resource identity and type."""

    @abstractmethod
    def list_objects(self) -> list[Application]:
        """List all Applications in the store."""

    @abstractmethod
    def update_status(self, resource_id: NamedResource, status: AppStatus) -> None:
        """Record the latest status for an Application."""

    @abstractmethod
    def get_status(self, resource_id: NamedResource) -> AppStatus | None:
        """Retrieve the latest status for an Application."""

    @abstractmethod
    def set_desired_state(
        self, resource_id: NamedResource, desired: DesiredState
    ) -> None:
        """Replace the desired state snapshot for an Application."""

    @abstractmethod
    def get_desired_state(self, resource_id: NamedResource) -> DesiredState | None:
        """Retrieve the latest desired state snapshot for an Application."""

    @abstractmethod
    def has_degraded_applications(self) -> bool:
        """Check if any Application is Degraded or Halted."""

    @abstractmethod
    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, Any], None],
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a specific event.

        Returns a callable that can be called to remove the listener.
        """
