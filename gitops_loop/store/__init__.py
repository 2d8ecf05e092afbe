"""
The store module provides a central repository for tracking Applications, their
latest desired-state snapshot and their last observed status during a run.

- Uses NamedResource as the key for all objects.
- Provides query and update APIs for the Application controllers.
- Notifies listeners when objects, snapshots or status change.
"""

from .store import Store, StoreEvent
from .in_memory import InMemoryStore
from .status import AppStatus, Health

__all__ = [
    "Store",
    "StoreEvent",
    "InMemoryStore",
    "AppStatus",
    "Health",
]
