"""Module for computing the delta between desired and live state.

The delta is the input to the Sync Executor and the source of the sync status
of an Application. It is deterministic: the same desired and live snapshots
always produce the same `DeltaSet`, regardless of the order resources were
listed in.
"""

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
import difflib
from enum import StrEnum
import logging
from typing import Any, Generator, TypeVar

import yaml

from .manifest import DesiredState, LiveState, NamedResource, Resource

__all__ = [
    "DeltaType",
    "ResourceDelta",
    "DeltaSet",
    "SyncStatus",
    "diff",
    "sync_status",
    "changed_fields",
    "perform_object_diff",
]

_LOGGER = logging.getLogger(__name__)

_TRUNCATE = "[Diff truncated by gitops-loop]"

T = TypeVar("T")


class DeltaType(StrEnum):
    """Classification of a single resource difference."""

    MISSING = "Missing"
    EXTRA = "Extra"
    MODIFIED = "Modified"


class SyncStatus(StrEnum):
    """Derived comparison result between desired and live state."""

    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class ResourceDelta:
    """A difference for a single resource key."""

    key: NamedResource
    type: DeltaType
    desired: Resource | None = field(default=None, compare=False)
    live: Resource | None = field(default=None, compare=False)
    fields: tuple[str, ...] = ()
    """Dotted paths of desired fields that differ from live."""

    def __str__(self) -> str:
        if self.fields:
            return f"{self.type} {self.key} ({', '.join(self.fields)})"
        return f"{self.type} {self.key}"


@dataclass(frozen=True)
class DeltaSet:
    """Ordered set of resource differences."""

    deltas: tuple[ResourceDelta, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.deltas)

    def __len__(self) -> int:
        return len(self.deltas)

    def __iter__(self) -> Iterator[ResourceDelta]:
        return iter(self.deltas)

    def _of_type(self, delta_type: DeltaType) -> list[ResourceDelta]:
        return [d for d in self.deltas if d.type == delta_type]

    @property
    def missing(self) -> list[ResourceDelta]:
        return self._of_type(DeltaType.MISSING)

    @property
    def extra(self) -> list[ResourceDelta]:
        return self._of_type(DeltaType.EXTRA)

    @property
    def modified(self) -> list[ResourceDelta]:
        return self._of_type(DeltaType.MODIFIED)

    @property
    def keys(self) -> list[NamedResource]:
        return [d.key for d in self.deltas]


def _unique_keys(k1: dict[T, Any], k2: dict[T, Any]) -> Iterable[T]:
    """Return an ordered set."""
    return {
        **{k: True for k in k1.keys()},
        **{k: True for k in k2.keys()},
    }.keys()


def changed_fields(desired: Any, live: Any, prefix: str = "") -> list[str]:
    """Return the paths of fields declared in desired that differ in live.

    Fields present only in live are not reported since they are populated by
    the server or owned by another writer. Lists are compared whole.
    """
    if isinstance(desired, dict) and isinstance(live, dict):
        results: list[str] = []
        for key in sorted(desired, key=str):
            path = f"{prefix}.{key}" if prefix else str(key)
            if key not in live:
                results.append(path)
                continue
            results.extend(changed_fields(desired[key], live[key], path))
        return results
    if desired != live:
        return [prefix or "."]
    return []


def diff(desired: DesiredState, live: LiveState) -> DeltaSet:
    """Compute the delta between desired and live state."""
    desired_resources = desired.by_key()
    live_resources = live.by_key()
    deltas: list[ResourceDelta] = []
    for key in _unique_keys(desired_resources, live_resources):
        desired_resource = desired_resources.get(key)
        live_resource = live_resources.get(key)
        if live_resource is None:
            deltas.append(
                ResourceDelta(key=key, type=DeltaType.MISSING, desired=desired_resource)
            )
            continue
        if desired_resource is None:
            deltas.append(
                ResourceDelta(key=key, type=DeltaType.EXTRA, live=live_resource)
            )
            continue
        fields = changed_fields(desired_resource.content(), live_resource.content())
        if desired_resource.api_version != live_resource.api_version:
            fields.insert(0, "apiVersion")
        if fields:
            deltas.append(
                ResourceDelta(
                    key=key,
                    type=DeltaType.MODIFIED,
                    desired=desired_resource,
                    live=live_resource,
                    fields=tuple(fields),
                )
            )
    deltas.sort(key=lambda d: d.key.sort_key)
    _LOGGER.debug(
        "Diff at revision %s: %d difference(s)", desired.revision, len(deltas)
    )
    return DeltaSet(deltas=tuple(deltas))


def sync_status(desired: DesiredState | None, live: LiveState | None) -> SyncStatus:
    """Return the sync status, a pure function of the two snapshots."""
    if desired is None or live is None:
        return SyncStatus.UNKNOWN
    if diff(desired, live):
        return SyncStatus.OUT_OF_SYNC
    return SyncStatus.SYNCED


def _yaml_lines(resource: Resource | None) -> list[str]:
    if resource is None:
        return []
    return yaml.dump(resource.to_doc(), sort_keys=True).splitlines(keepends=True)


def perform_object_diff(
    delta: DeltaSet, n: int = 3, limit_bytes: int = 0
) -> Generator[str, None, None]:
    """Generate unified diffs from live to desired for each delta."""
    for resource_delta in delta:
        _LOGGER.debug("Diffing %s (n=%d)", resource_delta.key, n)
        diff_text = difflib.unified_diff(
            a=_yaml_lines(resource_delta.live),
            b=_yaml_lines(resource_delta.desired),
            fromfile=f"live {resource_delta.key}",
            tofile=f"desired {resource_delta.key}",
            n=n,
        )
        size = 0
        for line in diff_text:
            size += len(line)
            if limit_bytes and size > limit_bytes:
                yield _TRUNCATE + "\n"
                break
            yield line
