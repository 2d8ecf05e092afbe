"""Module for an in-process cluster.

The in-memory cluster behaves like an API server for the purposes of the
reconciler: it stores whole objects, populates server fields on write and can
be told to fail specific writes.
"""

import asyncio
import copy
from collections import defaultdict
from dataclasses import dataclass
import logging
from typing import Any, DefaultDict

from gitops_loop.exceptions import GitOpsException
from gitops_loop.manifest import NamedResource, Resource

from .cluster import ClusterClient

_LOGGER = logging.getLogger(__name__)


@dataclass
class _Failure:
    exc: GitOpsException
    remaining: int


class InMemoryCluster(ClusterClient):
    """In-memory implementation of the ClusterClient interface."""

    def __init__(self, write_delay: float = 0.0) -> None:
        """Initialize the InMemoryCluster."""
        self._objects: dict[NamedResource, dict[str, Any]] = {}
        self._version = 0
        self._write_delay = write_delay
        self._failures: DefaultDict[tuple[str, NamedResource], list[_Failure]] = (
            defaultdict(list)
        )
        self.writes: list[tuple[str, NamedResource]] = []
        """Log of successful writes as (action, resource id)."""

    def add(self, doc: dict[str, Any], default_namespace: str | None = None) -> None:
        """Seed a raw object directly, bypassing the write log."""
        resource = Resource.parse_doc(doc, default_namespace)
        self._store(resource.key, copy.deepcopy(doc))

    def raw(self, resource_id: NamedResource) -> dict[str, Any] | None:
        """Return the raw stored object including server fields."""
        return copy.deepcopy(self._objects.get(resource_id))

    def fail(
        self,
        action: str,
        resource_id: NamedResource,
        exc: GitOpsException,
        times: int = 1,
    ) -> None:
        """Make the next `times` writes of an action on a resource raise `exc`."""
        self._failures[(action, resource_id)].append(_Failure(exc, times))

    def _check_failure(self, action: str, resource_id: NamedResource) -> None:
        failures = self._failures.get((action, resource_id))
        if not failures:
            return
        failure = failures[0]
        failure.remaining -= 1
        if failure.remaining <= 0:
            failures.pop(0)
        _LOGGER.debug("Injected %s failure for %s", action, resource_id)
        raise failure.exc

    def _store(self, resource_id: NamedResource, doc: dict[str, Any]) -> None:
        self._version += 1
        metadata = doc.setdefault("metadata", {})
        metadata["resourceVersion"] = str(self._version)
        metadata.setdefault("uid", f"uid-{self._version}")
        if resource_id.namespace:
            metadata["namespace"] = resource_id.namespace
        doc.setdefault("status", {})
        self._objects[resource_id] = doc

    async def list(self, kind: str, namespace: str | None) -> list[Resource]:
        """Return the live resources of a kind, optionally within a namespace."""
        await asyncio.sleep(0)
        return [
            Resource.parse_doc(copy.deepcopy(doc))
            for resource_id, doc in self._objects.items()
            if resource_id.kind == kind
            and (namespace is None or resource_id.namespace == namespace)
        ]

    async def apply(self, resource: Resource) -> Resource:
        """Replace the stored object with the resource."""
        if self._write_delay:
            await asyncio.sleep(self._write_delay)
        self._check_failure("apply", resource.key)
        existing = self._objects.get(resource.key)
        doc = resource.to_doc()
        if existing is not None:
            doc["metadata"]["uid"] = existing["metadata"].get("uid")
            doc["status"] = existing.get("status", {})
        self._store(resource.key, doc)
        self.writes.append(("apply", resource.key))
        _LOGGER.debug("Applied %s", resource.key)
        return Resource.parse_doc(copy.deepcopy(doc))

    async def delete(self, resource_id: NamedResource) -> None:
        """Delete the stored object if present."""
        if self._write_delay:
            await asyncio.sleep(self._write_delay)
        self._check_failure("delete", resource_id)
        if self._objects.pop(resource_id, None) is not None:
            self.writes.append(("delete", resource_id))
            _LOGGER.debug("Deleted %s", resource_id)
