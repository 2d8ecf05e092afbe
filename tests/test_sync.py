"""Tests for the Sync Executor."""

import asyncio
from typing import Any

import pytest

from gitops_loop.cluster import InMemoryCluster, read_live_state
from gitops_loop.config import SyncConfig
from gitops_loop.exceptions import (
    CommandException,
    ConflictError,
    FatalConfigError,
    TransientInfraError,
)
from gitops_loop.manifest import (
    Application,
    DesiredState,
    NamedResource,
    Resource,
    SyncPolicy,
)
from gitops_loop.resource_diff import DeltaSet, DeltaType, ResourceDelta, diff
from gitops_loop.sync import (
    Action,
    Outcome,
    SyncEvent,
    SyncExecutor,
    merge_resource,
)

DEPLOYMENT = NamedResource("Deployment", "web", "web")
LEGACY = NamedResource("ConfigMap", "web", "legacy-config")
SETTINGS = NamedResource("ConfigMap", "web", "settings")

PRUNE = SyncPolicy(prune=True, self_heal=True)
NO_PRUNE = SyncPolicy(prune=False, self_heal=True)


def deployment(replicas: int, **extra: Any) -> dict[str, Any]:
    """Return the web Deployment object."""
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "web", "namespace": "web"},
        "spec": {"replicas": replicas, **extra},
    }


def configmap(name: str, **data: str) -> dict[str, Any]:
    """Return a ConfigMap object."""
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": "web"},
        "data": data,
    }


def application(policy: SyncPolicy) -> Application:
    return Application(
        name="web",
        repo_url="https://example.com/deploy.git",
        path="apps/web",
        destination_namespace="web",
        sync_policy=policy,
    )


class RecordingSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def events() -> list[SyncEvent]:
    return []


@pytest.fixture
def executor(
    cluster: InMemoryCluster, sleep: RecordingSleep, events: list[SyncEvent]
) -> SyncExecutor:
    executor = SyncExecutor(cluster, SyncConfig(), sleep=sleep)
    executor.add_listener(events.append)
    return executor


async def compute_delta(
    cluster: InMemoryCluster, policy: SyncPolicy, *docs: dict[str, Any]
) -> tuple[DesiredState, DeltaSet]:
    """Return the desired state for the documents and its delta to the cluster."""
    app = application(policy)
    desired = DesiredState.from_resources(
        "rev1", [Resource.parse_doc(doc) for doc in docs]
    )
    live = await read_live_state(cluster, app, desired)
    return desired, diff(desired, live)


async def test_replicas_drift_is_corrected(
    cluster: InMemoryCluster, executor: SyncExecutor, events: list[SyncEvent]
) -> None:
    """Test a modified Deployment is updated back to desired state."""
    cluster.add(deployment(5))
    desired, delta = await compute_delta(cluster, PRUNE, deployment(3))
    assert [(d.key, d.type) for d in delta] == [(DEPLOYMENT, DeltaType.MODIFIED)]

    result = await executor.sync(delta, PRUNE, application="web")

    assert not result.degraded
    assert [(r.key, r.action, r.outcome) for r in result.results] == [
        (DEPLOYMENT, Action.UPDATE, Outcome.SUCCEEDED)
    ]
    assert cluster.raw(DEPLOYMENT)["spec"]["replicas"] == 3  # type: ignore[index]
    assert [(e.application, e.key, e.outcome) for e in events] == [
        ("web", DEPLOYMENT, Outcome.SUCCEEDED)
    ]

    # Converged
    live = await read_live_state(cluster, application(PRUNE), desired)
    assert not diff(desired, live)


async def test_extra_without_prune_is_drift(
    cluster: InMemoryCluster, executor: SyncExecutor, events: list[SyncEvent]
) -> None:
    """Test a live-only resource is never deleted when prune is disabled."""
    cluster.add(deployment(3))
    cluster.add(configmap("legacy-config", a="1"))
    _, delta = await compute_delta(cluster, NO_PRUNE, deployment(3))
    assert [(d.key, d.type) for d in delta] == [(LEGACY, DeltaType.EXTRA)]

    result = await executor.sync(delta, NO_PRUNE, application="web")

    assert result.drift == [LEGACY]
    assert not result.degraded
    assert cluster.raw(LEGACY) is not None
    assert cluster.writes == []
    assert [e.outcome for e in events] == [Outcome.DRIFT]


async def test_extra_with_prune_is_deleted(
    cluster: InMemoryCluster, executor: SyncExecutor
) -> None:
    """Test a live-only resource is deleted when prune is enabled."""
    cluster.add(deployment(3))
    cluster.add(configmap("legacy-config", a="1"))
    _, delta = await compute_delta(cluster, PRUNE, deployment(3))

    result = await executor.sync(delta, PRUNE)

    assert [(r.action, r.outcome) for r in result.results] == [
        (Action.DELETE, Outcome.SUCCEEDED)
    ]
    assert cluster.raw(LEGACY) is None
    assert result.drift == []


async def test_transient_failure_backoff_then_degraded(
    cluster: InMemoryCluster,
    executor: SyncExecutor,
    sleep: RecordingSleep,
    events: list[SyncEvent],
) -> None:
    """Test transient failures are retried with backoff up to the bound."""
    cluster.add(deployment(5))
    cluster.fail("apply", DEPLOYMENT, TransientInfraError("timeout"), times=4)
    _, delta = await compute_delta(cluster, PRUNE, deployment(3))

    result = await executor.sync(delta, PRUNE, application="web")

    assert sleep.delays == [5, 10, 20]
    assert result.degraded
    assert result.retry_count == 3
    assert result.error == "Deployment/web/web: timeout"
    assert [(e.outcome, e.attempt) for e in events] == [
        (Outcome.FAILED, 1),
        (Outcome.FAILED, 2),
        (Outcome.FAILED, 3),
        (Outcome.FAILED, 4),
    ]
    assert cluster.raw(DEPLOYMENT)["spec"]["replicas"] == 5  # type: ignore[index]


async def test_transient_failure_recovers(
    cluster: InMemoryCluster, executor: SyncExecutor, sleep: RecordingSleep
) -> None:
    """Test a write that succeeds on retry is not degraded."""
    cluster.add(deployment(5))
    cluster.fail("apply", DEPLOYMENT, TransientInfraError("timeout"), times=2)
    _, delta = await compute_delta(cluster, PRUNE, deployment(3))

    result = await executor.sync(delta, PRUNE)

    assert sleep.delays == [5, 10]
    assert not result.degraded
    assert result.results[0].attempts == 3
    assert result.results[0].retries == 2


async def test_backoff_capped(cluster: InMemoryCluster, sleep: RecordingSleep) -> None:
    """Test the backoff delay never exceeds the cap."""
    config = SyncConfig(retry_base=5, retry_cap=30, max_retries=5)
    executor = SyncExecutor(cluster, config, sleep=sleep)
    cluster.fail("apply", DEPLOYMENT, TransientInfraError("timeout"), times=6)
    _, delta = await compute_delta(cluster, PRUNE, deployment(3))

    result = await executor.sync(delta, PRUNE)

    assert sleep.delays == [5, 10, 20, 30, 30]
    assert result.degraded


async def test_conflict_rereads_live_state(
    cluster: InMemoryCluster, executor: SyncExecutor, sleep: RecordingSleep
) -> None:
    """Test a conflicting write is retried against the latest live object."""
    cluster.add(deployment(5))
    cluster.fail("apply", DEPLOYMENT, ConflictError("object has been modified"))
    _, delta = await compute_delta(cluster, NO_PRUNE, deployment(3))

    # Another writer changes the object after the delta was computed
    cluster.add(deployment(5, paused=True))

    result = await executor.sync(delta, NO_PRUNE)

    assert sleep.delays == [5]
    assert result.results[0].outcome == Outcome.SUCCEEDED
    assert result.results[0].attempts == 2
    spec = cluster.raw(DEPLOYMENT)["spec"]  # type: ignore[index]
    assert spec == {"replicas": 3, "paused": True}


async def test_other_errors_not_retried(
    cluster: InMemoryCluster, executor: SyncExecutor, sleep: RecordingSleep
) -> None:
    """Test a non transient failure fails the resource without retry."""
    cluster.fail("apply", SETTINGS, CommandException("forbidden"))
    _, delta = await compute_delta(
        cluster, PRUNE, deployment(3), configmap("settings", a="1")
    )

    result = await executor.sync(delta, PRUNE)

    assert sleep.delays == []
    outcomes = {r.key: r.outcome for r in result.results}
    assert outcomes == {SETTINGS: Outcome.FAILED, DEPLOYMENT: Outcome.SUCCEEDED}
    assert result.degraded
    assert cluster.raw(DEPLOYMENT) is not None


async def test_fatal_error_propagates(executor: SyncExecutor) -> None:
    """Test a fatal configuration error aborts the sync."""
    delta = DeltaSet(deltas=(ResourceDelta(key=SETTINGS, type=DeltaType.MISSING),))
    with pytest.raises(FatalConfigError):
        await executor.sync(delta, PRUNE)


async def test_deletes_run_last(cluster: InMemoryCluster, executor: SyncExecutor) -> None:
    """Test creates and updates are applied before deletes."""
    cluster.add(configmap("a-old", a="1"))
    cluster.add(deployment(5))
    _, delta = await compute_delta(
        cluster, PRUNE, deployment(3), configmap("z-new", a="1")
    )

    await executor.sync(delta, PRUNE)

    assert cluster.writes == [
        ("apply", NamedResource("ConfigMap", "web", "z-new")),
        ("apply", DEPLOYMENT),
        ("delete", NamedResource("ConfigMap", "web", "a-old")),
    ]


async def test_dry_run(cluster: InMemoryCluster, executor: SyncExecutor) -> None:
    """Test a dry run reports planned actions without writing."""
    cluster.add(deployment(5))
    cluster.add(configmap("legacy-config", a="1"))
    _, delta = await compute_delta(
        cluster, NO_PRUNE, deployment(3), configmap("settings", a="1")
    )

    result = await executor.sync(delta, NO_PRUNE, dry_run=True)

    assert [(r.key, r.action, r.outcome) for r in result.results] == [
        (SETTINGS, Action.CREATE, Outcome.PLANNED),
        (DEPLOYMENT, Action.UPDATE, Outcome.PLANNED),
        (LEGACY, Action.DELETE, Outcome.DRIFT),
    ]
    assert cluster.writes == []


async def test_update_without_prune_merges(
    cluster: InMemoryCluster, executor: SyncExecutor
) -> None:
    """Test fields only present live survive an update without prune."""
    cluster.add(deployment(5, paused=True))
    _, delta = await compute_delta(cluster, NO_PRUNE, deployment(3))

    await executor.sync(delta, NO_PRUNE)

    spec = cluster.raw(DEPLOYMENT)["spec"]  # type: ignore[index]
    assert spec == {"replicas": 3, "paused": True}


async def test_update_with_prune_replaces(
    cluster: InMemoryCluster, executor: SyncExecutor
) -> None:
    """Test the desired object replaces live wholesale with prune."""
    cluster.add(deployment(5, paused=True))
    _, delta = await compute_delta(cluster, PRUNE, deployment(3))

    await executor.sync(delta, PRUNE)

    spec = cluster.raw(DEPLOYMENT)["spec"]  # type: ignore[index]
    assert spec == {"replicas": 3}


async def test_cancelled_sync_finishes_write(sleep: RecordingSleep) -> None:
    """Test cancelling a sync lets the in-progress write complete."""
    cluster = InMemoryCluster(write_delay=0.05)
    executor = SyncExecutor(cluster, SyncConfig(), sleep=sleep)
    _, delta = await compute_delta(
        cluster, PRUNE, configmap("a", x="1"), configmap("b", x="1")
    )

    task = asyncio.create_task(executor.sync(delta, PRUNE))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await asyncio.sleep(0.1)

    assert cluster.writes == [("apply", NamedResource("ConfigMap", "web", "a"))]


def test_merge_resource() -> None:
    """Test desired fields are overlaid on live."""
    live = Resource.parse_doc(deployment(5, paused=True, template={"a": 1, "b": 2}))
    live.labels = {"owner": "ops"}
    desired = Resource.parse_doc(deployment(3, template={"a": 3}))
    desired.labels = {"app": "web"}

    merged = merge_resource(live, desired)

    assert merged.labels == {"owner": "ops", "app": "web"}
    assert merged.body == {
        "spec": {"replicas": 3, "paused": True, "template": {"a": 3, "b": 2}}
    }
    assert merge_resource(None, desired) is desired


def test_listener_removal(cluster: InMemoryCluster) -> None:
    """Test a listener can be removed."""
    executor = SyncExecutor(cluster)
    received: list[SyncEvent] = []
    remove = executor.add_listener(received.append)
    remove()
    remove()
    executor._emit("web", DEPLOYMENT, Action.UPDATE, Outcome.SUCCEEDED, 1)
    assert received == []
