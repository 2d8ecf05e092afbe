"""Cluster control interface."""

import asyncio
from abc import ABC, abstractmethod
import logging

from gitops_loop.manifest import (
    Application,
    CLUSTER_SCOPED_KINDS,
    DesiredState,
    LiveState,
    NamedResource,
    Resource,
)

_LOGGER = logging.getLogger(__name__)


class ClusterClient(ABC):
    """Capability set the reconciler needs from a cluster.

    Reads are side effect free and may run concurrently. Writes for a single
    Application are serialized by the caller.
    """

    @abstractmethod
    async def list(self, kind: str, namespace: str | None) -> list[Resource]:
        """Return the live resources of a kind, optionally within a namespace."""

    @abstractmethod
    async def apply(self, resource: Resource) -> Resource:
        """Create or replace the resource, returning the live result."""

    @abstractmethod
    async def delete(self, resource_id: NamedResource) -> None:
        """Delete the resource if it exists."""

    async def get(self, resource_id: NamedResource) -> Resource | None:
        """Return a single live resource, or None when absent."""
        for resource in await self.list(resource_id.kind, resource_id.namespace):
            if resource.name == resource_id.name:
                return resource
        return None


async def read_live_state(
    cluster: ClusterClient, app: Application, desired: DesiredState | None
) -> LiveState:
    """Read a fresh snapshot of the live resources an Application is tracking.

    Every kind declared in desired state or listed in the Application's tracked
    kinds is read from the destination namespace and any other namespace the
    desired manifests target.
    """
    kinds = set(app.tracked_kinds)
    namespaces = {app.destination_namespace}
    if desired is not None:
        kinds |= desired.kinds
        namespaces |= {r.namespace for r in desired.resources if r.namespace}
    queries: list[tuple[str, str | None]] = []
    for kind in sorted(kinds):
        if kind in CLUSTER_SCOPED_KINDS:
            queries.append((kind, None))
            continue
        queries.extend((kind, namespace) for namespace in sorted(namespaces))
    _LOGGER.debug("Reading live state for %s: %s", app.name, queries)
    results = await asyncio.gather(
        *(cluster.list(kind, namespace) for kind, namespace in queries)
    )
    resources: dict[NamedResource, Resource] = {}
    for listed in results:
        for resource in listed:
            resources[resource.key] = resource
    if desired is not None:
        # Cluster scoped kinds are only tracked when declared by name.
        declared = {r.key for r in desired.resources}
        resources = {
            key: value
            for key, value in resources.items()
            if key.namespace is not None or key in declared
        }
    return LiveState.from_resources(resources.values())
