"""
Application Controller implementation.

The controller reconciles one Application. It is driven by three independent
triggers:

    - poll: fetch the desired state from the source. A new revision replaces
      the stored snapshot and supersedes any sync still in flight.
    - refresh: read the live state, diff it against the desired state and
      record the resulting status and metrics.
    - sync: apply the corrective actions for the current delta.

Syncs for an Application are single-flight. They run as a keyed task in the
task service, so a newer sync cancels an older one, and hold a per-Application
lock while reading and writing the cluster. A refresh is skipped while that
lock is held.

Automatic syncs only run when the Application's sync policy enables self-heal.
An Application that exhausted its retries is Degraded and is not retried
automatically until its revision changes or a manual sync runs.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timezone
import logging
from typing import Any

from gitops_loop import metrics
from gitops_loop.cluster import ClusterClient, read_live_state
from gitops_loop.context import Phase, reconcile_context
from gitops_loop.exceptions import FatalConfigError, TransientInfraError
from gitops_loop.manifest import Application, DesiredState
from gitops_loop.metrics import InMemoryMetrics
from gitops_loop.resource_diff import DeltaSet, DeltaType, SyncStatus, diff, sync_status
from gitops_loop.source import DesiredStateSource
from gitops_loop.store import AppStatus, Health, Store
from gitops_loop.sync import Action, Outcome, SyncEvent, SyncExecutor, SyncResult
from gitops_loop.task import get_task_service

_LOGGER = logging.getLogger(__name__)

SYNC_TASK_PREFIX = "sync"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ApplicationController:
    """Controller for reconciling one Application."""

    def __init__(
        self,
        app: Application,
        store: Store,
        source: DesiredStateSource,
        cluster: ClusterClient,
        executor: SyncExecutor,
        recorder: InMemoryMetrics | None = None,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        """
        Initialize the controller.

        Args:
            app: The Application to reconcile
            store: The central store for Application status and snapshots
            source: Where the desired state is fetched from
            cluster: The cluster holding the live state
            executor: Applies corrective actions to the cluster
            recorder: Optional series store the Application state is written to
            clock: Source of timestamps
        """
        self._app = app
        self._store = store
        self._source = source
        self._cluster = cluster
        self._executor = executor
        self._recorder = recorder
        self._clock = clock
        self._lock = asyncio.Lock()
        self._syncs = 0
        self._task_service = get_task_service()
        self._remove_listener = executor.add_listener(self._on_sync_event)

    @property
    def app(self) -> Application:
        return self._app

    @property
    def sync_key(self) -> str:
        """Key of the single-flight sync task for this Application."""
        return f"{SYNC_TASK_PREFIX}/{self._app.name}"

    @property
    def syncing(self) -> bool:
        """True while a sync holds the Application lock."""
        return self._lock.locked()

    @property
    def status(self) -> AppStatus:
        """Return the last recorded status."""
        return self._store.get_status(self._app.resource_id) or AppStatus()

    def close(self) -> None:
        """Stop listening for sync events and cancel any in-flight sync."""
        self._remove_listener()
        self._task_service.cancel_keyed_task(self.sync_key)

    def _update_status(self, status: AppStatus) -> None:
        self._store.update_status(self._app.resource_id, status)
        self._record(status)

    def _record(self, status: AppStatus) -> None:
        if self._recorder is None:
            return
        labels = {"app": self._app.name}
        self._recorder.record(
            metrics.OUT_OF_SYNC,
            labels,
            int(status.sync_status == SyncStatus.OUT_OF_SYNC),
        )
        self._recorder.record(
            metrics.UNKNOWN, labels, int(status.sync_status == SyncStatus.UNKNOWN)
        )
        self._recorder.record(
            metrics.DEGRADED,
            labels,
            int(status.health in (Health.DEGRADED, Health.HALTED)),
        )
        self._recorder.record(metrics.DRIFT, labels, len(status.drift))

    def _record_phase(self, phase: Phase, elapsed: float) -> None:
        if self._recorder is not None:
            self._recorder.record(
                metrics.RECONCILE_DURATION,
                {"app": phase.application, "phase": phase.name},
                elapsed,
            )

    def _on_sync_event(self, event: SyncEvent) -> None:
        if self._recorder is None or event.application != self._app.name:
            return
        if event.outcome not in (Outcome.SUCCEEDED, Outcome.FAILED):
            return
        labels: dict[str, Any] = {
            "app": self._app.name,
            "kind": event.key.kind,
            "namespace": event.key.namespace or "",
            "name": event.key.name,
        }
        if event.action == Action.DELETE and event.outcome == Outcome.SUCCEEDED:
            self._recorder.remove(labels)
            return
        self._recorder.record(
            metrics.RESOURCE_SYNC_FAILED,
            labels,
            int(event.outcome == Outcome.FAILED),
            event.timestamp,
        )

    def _drift(self, delta: DeltaSet) -> list[Any]:
        if self._app.sync_policy.prune:
            return []
        return [d.key for d in delta if d.type == DeltaType.EXTRA]

    def _halt(self, err: FatalConfigError, revision: str | None = None) -> None:
        _LOGGER.error("Application %s halted: %s", self._app.name, err)
        previous = self.status
        self._update_status(
            AppStatus(
                sync_status=SyncStatus.UNKNOWN,
                health=Health.HALTED,
                revision=revision or previous.revision,
                drift=previous.drift,
                error=str(err),
                last_synced=previous.last_synced,
            )
        )

    async def poll(self) -> DesiredState | None:
        """Fetch the desired state, storing it when the revision changed.

        Returns the latest desired state, or None if it could not be fetched.
        """
        resource_id = self._app.resource_id
        with reconcile_context(self._app.name, "poll", self._record_phase):
            try:
                desired = await self._source.fetch(self._app)
            except FatalConfigError as err:
                self._halt(err)
                return None
            except TransientInfraError as err:
                _LOGGER.warning(
                    "Unable to fetch desired state for %s: %s", self._app.name, err
                )
                return self._store.get_desired_state(resource_id)

        previous = self._store.get_desired_state(resource_id)
        status = self.status
        if (
            previous is not None
            and previous.revision == desired.revision
            and status.health != Health.HALTED
        ):
            return previous

        _LOGGER.info(
            "Application %s desired state at revision %s", self._app.name, desired.revision
        )
        self._store.set_desired_state(resource_id, desired)
        if self._task_service.cancel_keyed_task(self.sync_key):
            _LOGGER.info("Cancelled in-flight sync for %s", self._app.name)
        # A new revision clears any Degraded or Halted state.
        self._update_status(
            AppStatus(
                sync_status=status.sync_status,
                health=Health.PROGRESSING,
                revision=desired.revision,
                drift=status.drift,
                last_synced=status.last_synced,
            )
        )
        if self._app.sync_policy.self_heal:
            self.schedule_sync()
        return desired

    async def refresh(self) -> DeltaSet | None:
        """Compare the live state with the desired state and record the status.

        Returns the current delta, or None when the refresh was skipped or the
        live state could not be read.
        """
        if self._lock.locked():
            _LOGGER.debug("Sync in progress for %s, skipping refresh", self._app.name)
            return None
        resource_id = self._app.resource_id
        status = self.status
        syncs = self._syncs
        desired = self._store.get_desired_state(resource_id)
        if desired is None:
            self._update_status(
                AppStatus(
                    sync_status=sync_status(None, None),
                    health=status.health,
                    error=status.error,
                )
            )
            return None

        with reconcile_context(self._app.name, "refresh", self._record_phase):
            try:
                live = await read_live_state(self._cluster, self._app, desired)
            except TransientInfraError as err:
                _LOGGER.warning(
                    "Unable to read live state for %s: %s", self._app.name, err
                )
                self._update_status(
                    AppStatus(
                        sync_status=sync_status(desired, None),
                        health=status.health,
                        revision=desired.revision,
                        drift=status.drift,
                        error=str(err),
                        retry_count=status.retry_count,
                        last_synced=status.last_synced,
                    )
                )
                return None
            delta = diff(desired, live)

        if (
            self._lock.locked()
            or syncs != self._syncs
            or self._store.get_desired_state(resource_id) is not desired
        ):
            _LOGGER.debug("State changed during refresh of %s, discarding", self._app.name)
            return None
        status = self.status
        health = status.health
        if not delta and health != Health.HALTED:
            health = Health.HEALTHY
        self._update_status(
            AppStatus(
                sync_status=SyncStatus.OUT_OF_SYNC if delta else SyncStatus.SYNCED,
                health=health,
                revision=desired.revision,
                drift=self._drift(delta),
                error=status.error if health != Health.HEALTHY else None,
                retry_count=status.retry_count,
                last_synced=status.last_synced,
            )
        )
        if (
            delta
            and self._app.sync_policy.self_heal
            and health not in (Health.DEGRADED, Health.HALTED)
            and self._task_service.get_keyed_task(self.sync_key) is None
            and self._has_fixable(delta)
        ):
            self.schedule_sync()
        return delta

    def _has_fixable(self, delta: DeltaSet) -> bool:
        if self._app.sync_policy.prune:
            return bool(delta)
        return any(d.type != DeltaType.EXTRA for d in delta)

    def schedule_sync(self, manual: bool = False) -> asyncio.Task[Any]:
        """Start a sync as the single-flight task for this Application."""
        return self._task_service.create_keyed_task(self.sync_key, self.sync(manual))

    async def sync(self, manual: bool = False, dry_run: bool = False) -> SyncResult | None:
        """Apply the corrective actions for the current delta.

        Returns the result, or None when the sync did not run.

        Raises:
            FatalConfigError: If the desired state could not be applied.
        """
        resource_id = self._app.resource_id
        async with self._lock:
            self._syncs += 1
            desired = self._store.get_desired_state(resource_id)
            status = self.status
            if desired is None:
                _LOGGER.warning("No desired state for %s, skipping sync", self._app.name)
                return None
            if status.health == Health.HALTED:
                _LOGGER.warning("Application %s is halted, skipping sync", self._app.name)
                return None
            if not manual and status.health == Health.DEGRADED:
                _LOGGER.debug("Application %s is degraded, skipping sync", self._app.name)
                return None

            with reconcile_context(self._app.name, "sync", self._record_phase):
                try:
                    live = await read_live_state(self._cluster, self._app, desired)
                except TransientInfraError as err:
                    _LOGGER.warning(
                        "Unable to read live state for %s: %s", self._app.name, err
                    )
                    return None
                delta = diff(desired, live)
                try:
                    result = await self._executor.sync(
                        delta,
                        self._app.sync_policy,
                        application=self._app.name,
                        dry_run=dry_run,
                    )
                except FatalConfigError as err:
                    self._halt(err, desired.revision)
                    raise
                if dry_run:
                    return result

                try:
                    after = diff(
                        desired, await read_live_state(self._cluster, self._app, desired)
                    )
                except TransientInfraError as err:
                    _LOGGER.debug("Unable to re-read live state: %s", err)
                    after = delta

            if result.degraded:
                health = Health.DEGRADED
            elif self._has_fixable(after):
                health = Health.PROGRESSING
            else:
                health = Health.HEALTHY
            drift = sorted(
                set(result.drift) | set(self._drift(after)), key=lambda k: k.sort_key
            )
            self._update_status(
                AppStatus(
                    sync_status=SyncStatus.OUT_OF_SYNC if after else SyncStatus.SYNCED,
                    health=health,
                    revision=desired.revision,
                    drift=drift,
                    error=result.error,
                    retry_count=result.retry_count,
                    last_synced=self._clock(),
                )
            )
            return result
