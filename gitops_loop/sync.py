"""Sync Executor.

Applies the corrective actions for a `DeltaSet` to the cluster, honoring the
Application's prune policy. Creates and updates run before deletes, each
resource is isolated from failures of the others, and transient failures are
retried with exponential backoff up to a bounded number of retries.

Every attempted action emits a `SyncEvent` to registered listeners.
"""

import asyncio
from collections.abc import Awaitable, Callable
import copy
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import StrEnum
import logging
from typing import Any

from .cluster import ClusterClient
from .config import SyncConfig
from .context import current_phase
from .exceptions import (
    ConflictError,
    FatalConfigError,
    GitOpsException,
    PolicyViolation,
    TransientInfraError,
)
from .manifest import NamedResource, Resource, SyncPolicy
from .resource_diff import DeltaSet, DeltaType, ResourceDelta

__all__ = [
    "Action",
    "Outcome",
    "SyncEvent",
    "ResourceResult",
    "SyncResult",
    "SyncExecutor",
    "merge_resource",
]

_LOGGER = logging.getLogger(__name__)


class Action(StrEnum):
    """Corrective action for a single resource."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Outcome(StrEnum):
    """Result of a corrective action."""

    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    DRIFT = "Drift"
    """The action is not permitted by policy; the difference is left in place."""
    PLANNED = "Planned"
    """Dry run; the action was not performed."""


_ACTIONS = {
    DeltaType.MISSING: Action.CREATE,
    DeltaType.MODIFIED: Action.UPDATE,
    DeltaType.EXTRA: Action.DELETE,
}


@dataclass(frozen=True)
class SyncEvent:
    """Record of one attempt to act on a resource."""

    timestamp: datetime
    application: str
    key: NamedResource
    action: Action
    outcome: Outcome
    attempt: int = 1
    error: str | None = None


@dataclass
class ResourceResult:
    """Final outcome for a single resource in a sync."""

    key: NamedResource
    action: Action
    outcome: Outcome
    attempts: int = 0
    error: str | None = None

    @property
    def retries(self) -> int:
        return max(self.attempts - 1, 0)


@dataclass
class SyncResult:
    """Outcome of a whole sync."""

    results: list[ResourceResult] = field(default_factory=list)

    def _with_outcome(self, outcome: Outcome) -> list[ResourceResult]:
        return [r for r in self.results if r.outcome == outcome]

    @property
    def succeeded(self) -> list[ResourceResult]:
        return self._with_outcome(Outcome.SUCCEEDED)

    @property
    def failed(self) -> list[ResourceResult]:
        return self._with_outcome(Outcome.FAILED)

    @property
    def drift(self) -> list[NamedResource]:
        return [r.key for r in self._with_outcome(Outcome.DRIFT)]

    @property
    def degraded(self) -> bool:
        """True when at least one resource exhausted its retries."""
        return bool(self.failed)

    @property
    def error(self) -> str | None:
        """Message of the last failure, if any."""
        if failed := self.failed:
            return f"{failed[-1].key}: {failed[-1].error}"
        return None

    @property
    def retry_count(self) -> int:
        return max((r.retries for r in self.failed), default=0)


def _merge(live: Any, desired: Any) -> Any:
    if isinstance(live, dict) and isinstance(desired, dict):
        merged = copy.deepcopy(live)
        for key, value in desired.items():
            merged[key] = _merge(live.get(key), value)
        return merged
    return copy.deepcopy(desired)


def merge_resource(live: Resource | None, desired: Resource) -> Resource:
    """Overlay desired fields onto live, leaving fields absent from desired."""
    if live is None:
        return desired
    return Resource(
        kind=desired.kind,
        api_version=desired.api_version,
        name=desired.name,
        namespace=desired.namespace,
        labels={**live.labels, **desired.labels},
        annotations={**live.annotations, **desired.annotations},
        body=_merge(live.body, desired.body),
    )


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _complete(write: Awaitable[Any]) -> Any:
    """Run a cluster write to completion even if the caller is cancelled.

    On cancellation the write is awaited before the CancelledError propagates,
    so the caller does not release its Application lock while the write is
    still in flight.
    """
    task = asyncio.ensure_future(write)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        while not task.done():
            try:
                await asyncio.wait([task])
            except asyncio.CancelledError:
                continue
        if not task.cancelled() and (err := task.exception()) is not None:
            _LOGGER.debug("Write failed after cancellation: %s", err)
        raise


class SyncExecutor:
    """Applies corrective actions for a DeltaSet to a cluster."""

    def __init__(
        self,
        cluster: ClusterClient,
        config: SyncConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        """Initialize the SyncExecutor.

        Args:
            cluster: The cluster to apply actions to
            config: Retry and backoff settings
            sleep: Awaitable used to wait between retries
            clock: Source of event timestamps
        """
        self._cluster = cluster
        self._config = config or SyncConfig()
        self._sleep = sleep
        self._clock = clock
        self._listeners: list[Callable[[SyncEvent], None]] = []

    def add_listener(self, callback: Callable[[SyncEvent], None]) -> Callable[[], None]:
        """Register a callback for every SyncEvent.

        Returns a callable that can be called to remove the listener.
        """

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        self._listeners.append(callback)
        return remove

    def _emit(
        self,
        application: str,
        key: NamedResource,
        action: Action,
        outcome: Outcome,
        attempt: int,
        error: str | None = None,
    ) -> None:
        event = SyncEvent(
            self._clock(), application, key, action, outcome, attempt, error
        )
        for cb in list(self._listeners):
            try:
                cb(event)
            except Exception:
                _LOGGER.exception("SyncEvent listener failed for %s", event.key)

    async def sync(
        self,
        delta: DeltaSet,
        policy: SyncPolicy,
        application: str = "",
        dry_run: bool = False,
    ) -> SyncResult:
        """Apply the delta to the cluster according to the policy.

        Raises:
            FatalConfigError: If the desired state can not be applied at all.
        """
        if not application and (phase := current_phase()) is not None:
            application = phase.application
        # Creates and updates before deletes to avoid transient unavailability.
        ordered = sorted(
            delta,
            key=lambda d: (d.type == DeltaType.EXTRA, d.key.sort_key),
        )
        result = SyncResult()
        for resource_delta in ordered:
            action = _ACTIONS[resource_delta.type]
            if dry_run:
                outcome = Outcome.PLANNED
                if action == Action.DELETE and not policy.prune:
                    outcome = Outcome.DRIFT
                result.results.append(
                    ResourceResult(key=resource_delta.key, action=action, outcome=outcome)
                )
                continue
            result.results.append(
                await self._execute(application, action, resource_delta, policy)
            )
        _LOGGER.info(
            "Sync %s: %d succeeded, %d failed, %d drift",
            application,
            len(result.succeeded),
            len(result.failed),
            len(result.drift),
        )
        return result

    async def _write(
        self, action: Action, resource_delta: ResourceDelta, policy: SyncPolicy
    ) -> None:
        if action == Action.DELETE:
            if not policy.prune:
                raise PolicyViolation(
                    f"Refusing to delete {resource_delta.key} without prune"
                )
            await _complete(self._cluster.delete(resource_delta.key))
            return
        if resource_delta.desired is None:
            raise FatalConfigError(f"No desired state for {resource_delta.key}")
        resource = resource_delta.desired
        if action == Action.UPDATE and not policy.prune:
            resource = merge_resource(resource_delta.live, resource_delta.desired)
        await _complete(self._cluster.apply(resource))

    async def _execute(
        self,
        application: str,
        action: Action,
        resource_delta: ResourceDelta,
        policy: SyncPolicy,
    ) -> ResourceResult:
        key = resource_delta.key
        attempt = 0
        error: str | None = None
        while True:
            attempt += 1
            try:
                await self._write(action, resource_delta, policy)
            except PolicyViolation as err:
                _LOGGER.info("Leaving %s in place: %s", key, err)
                self._emit(application, key, action, Outcome.DRIFT, attempt, str(err))
                return ResourceResult(key, action, Outcome.DRIFT, attempt, str(err))
            except ConflictError as err:
                error = str(err)
                _LOGGER.debug("Conflict on %s, re-reading live state", key)
                try:
                    live = await self._cluster.get(key)
                except TransientInfraError as read_err:
                    _LOGGER.debug("Unable to re-read %s: %s", key, read_err)
                else:
                    resource_delta = replace(resource_delta, live=live)
            except TransientInfraError as err:
                error = str(err)
            except FatalConfigError:
                raise
            except GitOpsException as err:
                _LOGGER.error("Failed to %s %s: %s", action, key, err)
                self._emit(application, key, action, Outcome.FAILED, attempt, str(err))
                return ResourceResult(key, action, Outcome.FAILED, attempt, str(err))
            else:
                _LOGGER.debug("%s %s succeeded (attempt %d)", action, key, attempt)
                self._emit(application, key, action, Outcome.SUCCEEDED, attempt)
                return ResourceResult(key, action, Outcome.SUCCEEDED, attempt)

            self._emit(application, key, action, Outcome.FAILED, attempt, error)
            if attempt > self._config.max_retries:
                _LOGGER.error(
                    "Giving up on %s %s after %d retries: %s",
                    action,
                    key,
                    attempt - 1,
                    error,
                )
                return ResourceResult(key, action, Outcome.FAILED, attempt, error)
            delay = self._config.backoff(attempt)
            _LOGGER.warning(
                "Attempt %d to %s %s failed, retrying in %.0fs: %s",
                attempt,
                action,
                key,
                delay,
                error,
            )
            await self._sleep(delay)
