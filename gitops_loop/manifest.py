"""Representation of Applications and the resources they manage.

An Application points at a desired-state location in a version-controlled
repository and a destination namespace. Desired and live state are both
snapshots of `Resource` objects keyed by `NamedResource`, normalized so that
fields populated by the cluster do not show up as differences.
"""

import copy
from dataclasses import dataclass, field
import logging
from typing import Any, ClassVar, Iterable

import yaml
from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig

from .exceptions import FatalConfigError, InputException

__all__ = [
    "NamedResource",
    "Resource",
    "SyncPolicy",
    "Application",
    "DesiredState",
    "LiveState",
    "parse_documents",
    "normalize",
]

_LOGGER = logging.getLogger(__name__)


APPLICATION_DOMAIN = "argoproj.io"
APPLICATION_KIND = "Application"
LIST_KIND = "List"
DEFAULT_NAMESPACE = "default"

# Fields written by the API server that never appear in desired state.
SERVER_METADATA_FIELDS = [
    "resourceVersion",
    "uid",
    "generation",
    "creationTimestamp",
    "managedFields",
    "selfLink",
]
SERVER_ANNOTATIONS = [
    "kubectl.kubernetes.io/last-applied-configuration",
    "deployment.kubernetes.io/revision",
]

# Kinds that are not namespaced; their NamedResource has namespace None.
CLUSTER_SCOPED_KINDS = {
    "Namespace",
    "ClusterRole",
    "ClusterRoleBinding",
    "CustomResourceDefinition",
    "PersistentVolume",
    "StorageClass",
    "PriorityClass",
}


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    class Config(BaseConfig):
        omit_none = True


@dataclass(frozen=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    @property
    def sort_key(self) -> tuple[str, str, str]:
        """Key used to order resources deterministically."""
        return (self.kind, self.namespace or "", self.name)

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


def _strip_empty(metadata: dict[str, Any], key: str) -> None:
    if key in metadata and not metadata[key]:
        del metadata[key]


def normalize(doc: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of the raw object with server populated fields removed."""
    result = copy.deepcopy(doc)
    result.pop("status", None)
    if (metadata := result.get("metadata")) is None:
        return result
    for key in SERVER_METADATA_FIELDS:
        metadata.pop(key, None)
    if annotations := metadata.get("annotations"):
        for key in SERVER_ANNOTATIONS:
            annotations.pop(key, None)
    _strip_empty(metadata, "annotations")
    _strip_empty(metadata, "labels")
    return result


@dataclass
class Resource(BaseManifest):
    """A normalized kubernetes object."""

    kind: str
    """The kind of the object."""

    api_version: str = field(metadata=field_options(alias="apiVersion"))
    """The apiVersion of the object."""

    name: str
    """The name of the object."""

    namespace: str | None
    """The namespace of the object, None when cluster scoped."""

    labels: dict[str, str] = field(default_factory=dict)
    """Object labels."""

    annotations: dict[str, str] = field(default_factory=dict)
    """Object annotations, minus server populated ones."""

    body: dict[str, Any] = field(default_factory=dict)
    """All other top level fields of the object e.g. spec or data."""

    @classmethod
    def parse_doc(
        cls, doc: dict[str, Any], default_namespace: str | None = None
    ) -> "Resource":
        """Parse a Resource from a raw kubernetes object."""
        if not isinstance(doc, dict):
            raise InputException(f"Invalid object is not a mapping: {doc}")
        if not isinstance(kind := doc.get("kind"), str) or not kind:
            raise InputException(f"Invalid object missing kind: {doc}")
        if not isinstance(api_version := doc.get("apiVersion"), str) or not api_version:
            raise InputException(f"Invalid object missing apiVersion: {doc}")
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid object missing metadata: {doc}")
        if not isinstance(metadata, dict):
            raise InputException(f"Invalid object metadata is not a mapping: {doc}")
        for key in ("labels", "annotations"):
            if not isinstance(metadata.get(key) or {}, dict):
                raise InputException(
                    f"Invalid object metadata.{key} is not a mapping: {doc}"
                )
        if not isinstance(name := metadata.get("name"), str) or not name:
            raise InputException(f"Invalid object missing metadata.name: {doc}")
        normalized = normalize(doc)
        metadata = normalized["metadata"]
        namespace: str | None = None
        if kind not in CLUSTER_SCOPED_KINDS:
            namespace = metadata.get("namespace", default_namespace)
        body = {
            k: v
            for k, v in normalized.items()
            if k not in ("apiVersion", "kind", "metadata")
        }
        return cls(
            kind=kind,
            api_version=api_version,
            name=name,
            namespace=namespace,
            labels=dict(metadata.get("labels", {})),
            annotations=dict(metadata.get("annotations", {})),
            body=body,
        )

    @property
    def key(self) -> NamedResource:
        """Return the identity of this resource."""
        return NamedResource(kind=self.kind, namespace=self.namespace, name=self.name)

    def content(self) -> dict[str, Any]:
        """Return the fields that participate in a comparison."""
        metadata: dict[str, Any] = {}
        if self.labels:
            metadata["labels"] = self.labels
        if self.annotations:
            metadata["annotations"] = self.annotations
        result: dict[str, Any] = dict(self.body)
        if metadata:
            result["metadata"] = metadata
        return result

    def to_doc(self) -> dict[str, Any]:
        """Render the resource back into a kubernetes object."""
        metadata: dict[str, Any] = {"name": self.name}
        if self.namespace:
            metadata["namespace"] = self.namespace
        if self.labels:
            metadata["labels"] = dict(self.labels)
        if self.annotations:
            metadata["annotations"] = dict(self.annotations)
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": metadata,
            **copy.deepcopy(self.body),
        }

    def yaml(self) -> str:
        """Return the YAML kubernetes object for this resource."""
        return yaml.dump(self.to_doc(), sort_keys=False, explicit_start=True)


@dataclass
class SyncPolicy(BaseManifest):
    """Policy controlling what the Sync Executor may do automatically."""

    prune: bool = False
    """Delete live resources absent from desired state."""

    self_heal: bool = field(default=False, metadata=field_options(alias="selfHeal"))
    """Correct drift automatically without a manual trigger."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any] | None) -> "SyncPolicy":
        """Parse the `spec.syncPolicy` block of an Application."""
        if not doc or not (automated := doc.get("automated")):
            return cls()
        return cls(
            prune=bool(automated.get("prune", False)),
            self_heal=bool(automated.get("selfHeal", False)),
        )


@dataclass
class Application(BaseManifest):
    """An Application owns one desired-state location and one destination."""

    kind: ClassVar[str] = APPLICATION_KIND
    """The kind of the object."""

    name: str
    """The name of the Application."""

    repo_url: str = field(metadata=field_options(alias="repoURL"))
    """Repository holding the desired state manifests."""

    path: str
    """Directory in the repository containing manifests."""

    target_revision: str = field(
        default="HEAD", metadata=field_options(alias="targetRevision")
    )
    """Branch, tag or commit to track."""

    destination_namespace: str = field(
        default=DEFAULT_NAMESPACE,
        metadata=field_options(alias="destinationNamespace"),
    )
    """Namespace resources are deployed into when they do not declare one."""

    sync_policy: SyncPolicy = field(
        default_factory=SyncPolicy, metadata=field_options(alias="syncPolicy")
    )
    """Automated sync policy."""

    tracked_kinds: list[str] = field(
        default_factory=list, metadata=field_options(alias="trackedKinds")
    )
    """Kinds read from the cluster even when not declared in desired state."""

    namespace: str | None = None
    """The namespace the Application object itself lives in."""

    @property
    def resource_id(self) -> NamedResource:
        """Return the identity of the Application in the store."""
        return NamedResource(
            kind=APPLICATION_KIND, namespace=self.namespace, name=self.name
        )

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Application":
        """Parse an Application from an ArgoCD style Application object."""
        if not (api_version := doc.get("apiVersion")):
            raise FatalConfigError(f"Invalid object missing apiVersion: {doc}")
        if not api_version.startswith(APPLICATION_DOMAIN):
            raise FatalConfigError(
                f"Invalid object expected '{APPLICATION_DOMAIN}': {doc}"
            )
        if doc.get("kind") != APPLICATION_KIND:
            raise FatalConfigError(f"Invalid object expected Application: {doc}")
        if not isinstance(metadata := doc.get("metadata"), dict) or not (
            name := metadata.get("name")
        ):
            raise FatalConfigError(f"Invalid {cls.__name__} missing metadata.name: {doc}")
        if not (spec := doc.get("spec")):
            raise FatalConfigError(f"Invalid {cls.__name__} missing spec: {doc}")
        if not (source := spec.get("source")):
            raise FatalConfigError(f"Invalid {cls.__name__} missing spec.source: {doc}")
        if not (repo_url := source.get("repoURL")):
            raise FatalConfigError(
                f"Invalid {cls.__name__} missing spec.source.repoURL: {doc}"
            )
        destination = spec.get("destination") or {}
        return cls(
            name=name,
            namespace=metadata.get("namespace"),
            repo_url=repo_url,
            path=source.get("path", "."),
            target_revision=source.get("targetRevision", "HEAD"),
            destination_namespace=destination.get("namespace", DEFAULT_NAMESPACE),
            sync_policy=SyncPolicy.parse_doc(spec.get("syncPolicy")),
            tracked_kinds=list(spec.get("trackedKinds", [])),
        )


def _expand_lists(docs: Iterable[Any]) -> Iterable[dict[str, Any]]:
    for doc in docs:
        if doc is None:
            continue
        if isinstance(doc, dict) and doc.get("kind") == LIST_KIND:
            if not isinstance(items := doc.get("items") or [], list):
                raise FatalConfigError(f"Invalid List items is not a list: {doc}")
            yield from _expand_lists(items)
            continue
        yield doc


def parse_documents(
    docs: Iterable[Any], default_namespace: str | None
) -> list[Resource]:
    """Parse raw objects into Resources, raising FatalConfigError on bad input."""
    resources: dict[NamedResource, Resource] = {}
    for doc in _expand_lists(docs):
        try:
            resource = Resource.parse_doc(doc, default_namespace)
        except InputException as err:
            raise FatalConfigError(str(err)) from err
        if resource.key in resources:
            raise FatalConfigError(f"Duplicate resource in desired state: {resource.key}")
        resources[resource.key] = resource
    return sorted(resources.values(), key=lambda r: r.key.sort_key)


@dataclass(frozen=True)
class DesiredState:
    """Immutable snapshot of the manifests declared at a revision."""

    revision: str
    resources: tuple[Resource, ...] = ()

    @classmethod
    def from_resources(
        cls, revision: str, resources: Iterable[Resource]
    ) -> "DesiredState":
        """Create a snapshot, ordered by resource key."""
        return cls(
            revision=revision,
            resources=tuple(sorted(resources, key=lambda r: r.key.sort_key)),
        )

    @property
    def kinds(self) -> set[str]:
        """Return the set of kinds declared."""
        return {r.kind for r in self.resources}

    def by_key(self) -> dict[NamedResource, Resource]:
        """Return the resources indexed by identity."""
        return {r.key: r for r in self.resources}


@dataclass(frozen=True)
class LiveState:
    """Snapshot of the resources present in the cluster for an Application."""

    resources: tuple[Resource, ...] = ()

    @classmethod
    def from_resources(cls, resources: Iterable[Resource]) -> "LiveState":
        """Create a snapshot, ordered by resource key."""
        return cls(resources=tuple(sorted(resources, key=lambda r: r.key.sort_key)))

    def by_key(self) -> dict[NamedResource, Resource]:
        """Return the resources indexed by identity."""
        return {r.key: r for r in self.resources}
