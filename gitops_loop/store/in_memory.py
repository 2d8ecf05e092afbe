"""Module for in memory Application store."""

import dataclasses
from collections import defaultdict
from collections.abc import Callable
import logging
from typing import Any, DefaultDict, TypeVar

from gitops_loop.manifest import Application, DesiredState, NamedResource

from .status import AppStatus, Health
from .store import Store, StoreEvent

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T", bound=Application)


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.
    Stores Applications, status, and desired state keyed by NamedResource.
    Supports event listeners for object, status, and desired state changes.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryStore."""
        self._objects: dict[NamedResource, Application] = {}
        self._status: dict[NamedResource, AppStatus] = {}
        self._desired: dict[NamedResource, DesiredState] = {}
        self._listeners: DefaultDict[StoreEvent, list[Callable[..., None]]] = (
            defaultdict(list)
        )

    def add_object(self, obj: Application) -> None:
        """Add or replace an Application in the store."""
        resource_id = obj.resource_id
        if (existing := self._objects.get(resource_id)) is not None:
            if dataclasses.asdict(existing) == dataclasses.asdict(obj):
                _LOGGER.debug(
                    "Object %s already exists in store, skipping", resource_id
                )
                return
            _LOGGER.debug("Updating existing object %s in store", resource_id)
        else:
            _LOGGER.debug("Adding object %s to store", resource_id)
        self._objects[resource_id] = obj
        self._fire_event(StoreEvent.OBJECT_ADDED, resource_id, obj)

    def get_object(self, resource_id: NamedResource, cls: type[T]) -> T | None:
        """Retrieve an Application by resource identity and type."""
        obj = self._objects.get(resource_id)
        if obj is not None:
            if isinstance(obj, cls):
                return obj
            raise ValueError(
                f"Object {resource_id.namespaced_name} is not of type {cls.__name__} (was {obj.__class__.__name__})"
            )
        return None

    def list_objects(self) -> list[Application]:
        """List all Applications in the store."""
        return list(self._objects.values())

    def update_status(self, resource_id: NamedResource, status: AppStatus) -> None:
        """Record the latest status for an Application."""
        if status.health in (Health.DEGRADED, Health.HALTED):
            _LOGGER.error(
                "Application %s status %s",
                resource_id.namespaced_name,
                status,
            )
        else:
            _LOGGER.debug(
                "Updating status for Application %s to %s",
                resource_id.namespaced_name,
                status,
            )
        self._status[resource_id] = status
        self._fire_event(StoreEvent.STATUS_UPDATED, resource_id, status)

    def get_status(self, resource_id: NamedResource) -> AppStatus | None:
        """Retrieve the latest status for an Application."""
        return self._status.get(resource_id)

    def set_desired_state(
        self, resource_id: NamedResource, desired: DesiredState
    ) -> None:
        """Replace the desired state snapshot for an Application."""
        if not isinstance(desired, DesiredState):
            raise ValueError(
                f"DesiredState/set {resource_id.namespaced_name} is not of type {DesiredState.__name__} (was {desired.__class__.__name__})"
            )
        self._desired[resource_id] = desired
        self._fire_event(StoreEvent.DESIRED_STATE_UPDATED, resource_id, desired)

    def get_desired_state(self, resource_id: NamedResource) -> DesiredState | None:
        """Retrieve the latest desired state snapshot for an Application."""
        return self._desired.get(resource_id)

    def has_degraded_applications(self) -> bool:
        """Check if any Application is Degraded or Halted."""
        return any(
            status.health in (Health.DEGRADED, Health.HALTED)
            for status in self._status.values()
        )

    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, Any], None],
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a specific event."""

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)

        if flush:
            _LOGGER.debug("Flushing objects for event type %s", event)
            for rid, obj in list(self._objects.items()):
                if event == StoreEvent.OBJECT_ADDED:
                    callback(rid, obj)
                elif event == StoreEvent.STATUS_UPDATED:
                    if status := self._status.get(rid):
                        callback(rid, status)
                elif event == StoreEvent.DESIRED_STATE_UPDATED:
                    if desired := self._desired.get(rid):
                        callback(rid, desired)

        return remove

    def _fire_event(self, event: StoreEvent, *args: Any) -> None:
        for cb in list(self._listeners[event]):  # Iterate over a copy for safe removal
            try:
                cb(*args)
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)
