"""Cluster backend that shells out to kubectl."""

import logging
from typing import Any

import yaml

from gitops_loop import command
from gitops_loop.exceptions import (
    CommandException,
    ConflictError,
    GitOpsException,
    TransientInfraError,
)
from gitops_loop.manifest import NamedResource, Resource

from .cluster import ClusterClient

_LOGGER = logging.getLogger(__name__)

KUBECTL_BIN = "kubectl"
FIELD_MANAGER = "gitops-loop"

# Error output fragments that indicate the request may succeed if retried.
TRANSIENT_ERRORS = (
    "Unable to connect to the server",
    "connection refused",
    "i/o timeout",
    "TLS handshake timeout",
    "etcdserver: request timed out",
    "the server is currently unable to handle the request",
    "ServiceUnavailable",
)
CONFLICT_ERRORS = (
    "the object has been modified",
    "Operation cannot be fulfilled",
    "(Conflict)",
)


def _classify(err: CommandException) -> GitOpsException:
    """Map a failed kubectl invocation onto the error taxonomy."""
    # The first line echoes the command itself, classify on the output only.
    message = str(err)
    output = message.split("\n", 1)[1] if "\n" in message else ""
    if any(fragment in output for fragment in TRANSIENT_ERRORS):
        return TransientInfraError(message)
    if any(fragment in output for fragment in CONFLICT_ERRORS):
        return ConflictError(message)
    return err


class KubectlCluster(ClusterClient):
    """ClusterClient implementation using the kubectl command line tool."""

    def __init__(
        self,
        kubeconfig: str | None = None,
        context: str | None = None,
        server_side: bool = True,
    ) -> None:
        """Initialize KubectlCluster."""
        self._kubeconfig = kubeconfig
        self._context = context
        self._server_side = server_side

    def _base_args(self) -> list[str]:
        args = [KUBECTL_BIN]
        if self._kubeconfig:
            args.extend(["--kubeconfig", self._kubeconfig])
        if self._context:
            args.extend(["--context", self._context])
        return args

    async def _run(self, args: list[str], stdin: bytes | None = None) -> str:
        try:
            return await command.run(command.Command(self._base_args() + args), stdin)
        except CommandException as err:
            if (classified := _classify(err)) is err:
                raise
            raise classified from err

    async def list(self, kind: str, namespace: str | None) -> list[Resource]:
        """Return the live resources of a kind via `kubectl get`."""
        args = ["get", kind, "-o", "yaml"]
        if namespace:
            args.extend(["--namespace", namespace])
        out = await self._run(args)
        doc: dict[str, Any] = yaml.load(out, Loader=yaml.SafeLoader) or {}
        return [Resource.parse_doc(item) for item in doc.get("items") or []]

    async def apply(self, resource: Resource) -> Resource:
        """Apply the resource via `kubectl apply`."""
        args = ["apply", "-f", "-", "-o", "yaml"]
        if self._server_side:
            args.extend(
                ["--server-side", "--force-conflicts", f"--field-manager={FIELD_MANAGER}"]
            )
        out = await self._run(args, resource.yaml().encode("utf-8"))
        _LOGGER.debug("Applied %s", resource.key)
        return Resource.parse_doc(yaml.load(out, Loader=yaml.SafeLoader))

    async def delete(self, resource_id: NamedResource) -> None:
        """Delete the resource via `kubectl delete`."""
        args = ["delete", resource_id.kind, resource_id.name, "--ignore-not-found"]
        if resource_id.namespace:
            args.extend(["--namespace", resource_id.namespace])
        await self._run(args)
        _LOGGER.debug("Deleted %s", resource_id)
