"""Control loop driving every Application controller.

The loop runs independent fixed-interval timers as background tasks:

    - poll: fetch desired state for every Application
    - refresh: diff live state and schedule automatic syncs
    - evaluate: advance alert state and route notifications

Failures are isolated per Application, and there is no lock shared across
Applications. Notifications are delivered as tasks so delivery never blocks
alert evaluation.
"""

import asyncio
from collections.abc import Awaitable, Callable, Coroutine, Iterable
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from gitops_loop.alerts import (
    AlertEvaluator,
    AlertInstance,
    AlertState,
    AlertTransition,
    default_inhibit_rules,
    default_rules,
    inhibited,
)
from gitops_loop.cluster import ClusterClient
from gitops_loop.config import LoopConfig
from gitops_loop.exceptions import GitOpsException
from gitops_loop.manifest import Application, NamedResource
from gitops_loop.metrics import InMemoryMetrics, MetricsSource, PrometheusMetrics
from gitops_loop.notify import Channel, NotificationRouter, build_channel
from gitops_loop.source import DesiredStateSource
from gitops_loop.store import InMemoryStore, Store, StoreEvent
from gitops_loop.sync import SyncExecutor
from gitops_loop.task import get_task_service

from .application import ApplicationController

_LOGGER = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ControlLoop:
    """Reconciles every configured Application and routes alerts."""

    def __init__(
        self,
        config: LoopConfig,
        source: DesiredStateSource,
        cluster: ClusterClient,
        store: Store | None = None,
        metrics_source: MetricsSource | None = None,
        channels: Iterable[Channel] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        """
        Initialize the control loop.

        Args:
            config: Loop configuration including the Applications
            source: Where desired state is fetched from
            cluster: The cluster the Applications deploy to
            store: Store for Application status, a new one when not given
            metrics_source: Source alert rules are evaluated against. Defaults
                to Prometheus when configured, otherwise the recorded series.
            channels: Notification channels, built from config when not given
            sleep: Awaitable used for timers and retry backoff
            clock: Source of timestamps
        """
        self._config = config
        self._source = source
        self._cluster = cluster
        self._store = store or InMemoryStore()
        self._sleep = sleep
        self._clock = clock
        self._task_service = get_task_service()
        self._tasks: list[asyncio.Task[None]] = []
        self._notified: set[str] = set()

        self._recorder = InMemoryMetrics(
            retention=timedelta(seconds=config.metrics.retention), clock=clock
        )
        if metrics_source is None:
            if config.metrics.prometheus_url:
                metrics_source = PrometheusMetrics(config.metrics.prometheus_url)
            else:
                metrics_source = self._recorder
        self._metrics_source = metrics_source
        self._executor = SyncExecutor(cluster, config.sync, sleep=sleep, clock=clock)
        alerting = config.alerting
        self._evaluator = AlertEvaluator(
            metrics_source,
            alerting.rules or default_rules(),
            lookback=timedelta(seconds=alerting.lookback),
            resolved_retention=timedelta(seconds=alerting.resolved_retention),
            clock=clock,
        )
        self._inhibit_rules = alerting.inhibit_rules or (
            default_inhibit_rules() if not alerting.rules else []
        )
        if channels is None:
            channels = [build_channel(c) for c in config.notifications.channels]
        self._router = NotificationRouter(channels, config.notifications, sleep=sleep)

        self._controllers: dict[NamedResource, ApplicationController] = {}
        self._store.add_listener(
            StoreEvent.OBJECT_ADDED, self._on_application_added, flush=True
        )
        for app in config.parse_applications():
            self._store.add_object(app)

    @property
    def store(self) -> Store:
        return self._store

    @property
    def recorder(self) -> InMemoryMetrics:
        """Series recorded for the Applications."""
        return self._recorder

    @property
    def evaluator(self) -> AlertEvaluator:
        return self._evaluator

    @property
    def router(self) -> NotificationRouter:
        return self._router

    @property
    def controllers(self) -> list[ApplicationController]:
        return list(self._controllers.values())

    def controller(self, name: str) -> ApplicationController | None:
        """Return the controller for the named Application."""
        for controller in self._controllers.values():
            if controller.app.name == name:
                return controller
        return None

    def _on_application_added(self, resource_id: NamedResource, obj: Any) -> None:
        if not isinstance(obj, Application):
            _LOGGER.warning("Received non-Application object %s, skipping", obj)
            return
        if (existing := self._controllers.get(resource_id)) is not None:
            existing.close()
        _LOGGER.info("Watching Application %s", obj.name)
        self._controllers[resource_id] = ApplicationController(
            obj,
            self._store,
            self._source,
            self._cluster,
            self._executor,
            recorder=self._recorder,
            clock=self._clock,
        )

    async def _isolated(
        self, name: str, coro: Coroutine[None, None, Any]
    ) -> None:
        try:
            await coro
        except GitOpsException as err:
            _LOGGER.error("Application %s failed: %s", name, err)
        except Exception:
            _LOGGER.exception("Unexpected error reconciling Application %s", name)

    async def poll(self) -> None:
        """Fetch desired state for every Application."""
        await asyncio.gather(
            *(self._isolated(c.app.name, c.poll()) for c in self.controllers)
        )

    async def refresh(self) -> None:
        """Refresh live state for every Application."""
        await asyncio.gather(
            *(self._isolated(c.app.name, c.refresh()) for c in self.controllers)
        )

    async def evaluate(self, now: datetime | None = None) -> list[AlertTransition]:
        """Evaluate alert rules and schedule delivery of the notifications.

        Every Firing alert that has not been delivered yet is routed once it is
        not inhibited, so an alert suppressed when it started firing is still
        delivered after the inhibiting alert resolves.
        """
        transitions = await self._evaluator.evaluate(now or self._clock())
        for transition in transitions:
            if transition.current != AlertState.RESOLVED:
                continue
            alert = transition.alert
            if alert.fingerprint not in self._notified:
                _LOGGER.debug("Alert %s was never delivered, not resolving", alert)
                continue
            self._notified.discard(alert.fingerprint)
            self._deliver(alert)
        firing = self._evaluator.firing()
        for alert in firing:
            if alert.fingerprint in self._notified:
                continue
            if inhibited(alert, firing, self._inhibit_rules):
                _LOGGER.debug("Alert %s is inhibited", alert)
                continue
            self._notified.add(alert.fingerprint)
            self._deliver(alert)
        return transitions

    def _deliver(self, alert: AlertInstance) -> None:
        self._task_service.create_task(
            self._router.route(alert), name=f"notify/{alert.fingerprint}"
        )

    async def run_once(self) -> list[AlertTransition]:
        """Run one poll, refresh, sync and evaluate cycle."""
        await self.poll()
        await self.refresh()
        await self._task_service.block_till_done()
        transitions = await self.evaluate()
        await self._task_service.block_till_done()
        return transitions

    async def _run_timer(
        self, name: str, interval: float, func: Callable[[], Awaitable[Any]]
    ) -> None:
        _LOGGER.info("Starting %s timer every %.0fs", name, interval)
        while True:
            try:
                await func()
            except GitOpsException as err:
                _LOGGER.error("%s failed: %s", name, err)
            except Exception:
                _LOGGER.exception("Unexpected error in %s timer", name)
            await self._sleep(interval)

    def start(self) -> None:
        """Start the poll, refresh and evaluate timers."""
        intervals = self._config.intervals
        for name, interval, func in (
            ("poll", intervals.poll, self.poll),
            ("refresh", intervals.refresh, self.refresh),
            ("evaluate", intervals.evaluate, self.evaluate),
        ):
            self._tasks.append(
                self._task_service.create_background_task(
                    self._run_timer(name, interval, func), name=name
                )
            )

    async def stop(self) -> None:
        """Stop the timers and any in-flight syncs."""
        _LOGGER.info("Stopping control loop, cancelling tasks")
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        for controller in self._controllers.values():
            controller.close()
        await self._task_service.block_till_done()
        for channel in self._router.channels:
            await channel.close()
        if isinstance(self._metrics_source, PrometheusMetrics):
            await self._metrics_source.close()
