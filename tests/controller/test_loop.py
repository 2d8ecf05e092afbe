"""Tests for the control loop."""

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
import shutil
from typing import Any

import pytest

from gitops_loop.alerts import AlertState
from gitops_loop.cluster import InMemoryCluster
from gitops_loop.config import LoopConfig, parse_config
from gitops_loop.controller import ControlLoop
from gitops_loop.exceptions import TransientInfraError
from gitops_loop.manifest import Application, DesiredState, NamedResource
from gitops_loop.metrics import InMemoryMetrics
from gitops_loop.notify import Channel, Notification
from gitops_loop.source import LocalSource
from gitops_loop.store import Health
from gitops_loop.task import get_task_service

START = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
DEPLOYMENT = NamedResource("Deployment", "web", "web")


def application(name: str, path: str = "apps/web") -> dict[str, Any]:
    return {
        "apiVersion": "argoproj.io/v1alpha1",
        "kind": "Application",
        "metadata": {"name": name, "namespace": "argocd"},
        "spec": {
            "source": {"repoURL": "https://example.com/deploy.git", "path": path},
            "destination": {"namespace": "web" if name == "web" else name},
            "syncPolicy": {"automated": {"prune": True, "selfHeal": True}},
        },
    }


class FakeChannel(Channel):
    """Channel that records every notification."""

    def __init__(self, name: str = "fake", match: dict[str, str] | None = None) -> None:
        super().__init__(name, match)
        self.sent: list[Notification] = []

    async def send(self, message: Notification) -> bool:
        self.sent.append(message)
        return True


async def no_sleep(delay: float) -> None:
    pass


def make_loop(
    config: LoopConfig,
    root: Path,
    cluster: InMemoryCluster,
    channel: Channel,
) -> ControlLoop:
    return ControlLoop(
        config,
        LocalSource(root),
        cluster,
        channels=[channel],
        sleep=no_sleep,
        clock=lambda: START,
    )


async def test_run_once_converges(testdata_dir: Path, cluster: InMemoryCluster) -> None:
    """Test one cycle brings the cluster to the desired state."""
    channel = FakeChannel()
    loop = make_loop(
        parse_config({"applications": [application("web")]}),
        testdata_dir,
        cluster,
        channel,
    )
    assert [c.app.name for c in loop.controllers] == ["web"]

    await loop.run_once()

    controller = loop.controller("web")
    assert controller is not None
    assert controller.status.health == Health.HEALTHY
    live = await cluster.get(DEPLOYMENT)
    assert live is not None
    assert live.body["spec"]["replicas"] == 3
    assert channel.sent == []
    await loop.stop()


async def test_degraded_alert_delivered(
    testdata_dir: Path, cluster: InMemoryCluster
) -> None:
    """Test a Degraded Application raises a notification."""
    cluster.fail("apply", DEPLOYMENT, TransientInfraError("i/o timeout"), times=4)
    channel = FakeChannel(match={"severity": "critical"})
    loop = make_loop(
        parse_config({"applications": [application("web")]}),
        testdata_dir,
        cluster,
        channel,
    )

    transitions = await loop.run_once()

    assert (AlertState.PENDING, AlertState.FIRING) in [
        (t.previous, t.current) for t in transitions
    ]
    (message,) = channel.sent
    assert message.status == "firing"
    assert message.alertname == "ApplicationDegraded"
    assert message.labels["app"] == "web"

    # Recovery through a manual sync resolves the alert
    controller = loop.controller("web")
    assert controller is not None
    await controller.sync(manual=True)
    await loop.evaluate()
    await get_task_service().block_till_done()
    assert [m.status for m in channel.sent] == ["firing", "resolved"]
    await loop.stop()


async def test_inhibited_alert_not_delivered(
    testdata_dir: Path, cluster: InMemoryCluster
) -> None:
    """Test a warning is suppressed while a critical alert fires for the app."""
    cluster.fail("apply", DEPLOYMENT, TransientInfraError("i/o timeout"), times=4)
    channel = FakeChannel()
    config = parse_config(
        {
            "applications": [application("web")],
            "alerting": {
                "rules": [
                    {"name": "Degraded", "expr": "gitops_app_degraded", "severity": "critical"},
                    {"name": "OutOfSync", "expr": "gitops_app_out_of_sync"},
                ],
                "inhibit_rules": [
                    {
                        "source_match": {"severity": "critical"},
                        "target_match": {"severity": "warning"},
                        "equal": ["app"],
                    }
                ],
            },
        }
    )
    loop = make_loop(config, testdata_dir, cluster, channel)

    await loop.run_once()

    assert {a.rule for a in loop.evaluator.firing()} == {"Degraded", "OutOfSync"}
    assert [m.alertname for m in channel.sent] == ["Degraded"]
    await loop.stop()


async def test_failures_isolated_per_application(
    testdata_dir: Path, cluster: InMemoryCluster
) -> None:
    """Test a broken Application does not stop the others."""
    channel = FakeChannel()
    loop = make_loop(
        parse_config(
            {
                "applications": [
                    application("web"),
                    application("broken", path="apps/broken"),
                ]
            }
        ),
        testdata_dir,
        cluster,
        channel,
    )

    await loop.run_once()

    web = loop.controller("web")
    broken = loop.controller("broken")
    assert web is not None
    assert broken is not None
    assert web.status.health == Health.HEALTHY
    assert broken.status.health == Health.HALTED
    assert broken.status.error is not None
    assert "Duplicate resource" in broken.status.error
    await loop.stop()


async def test_start_and_stop(testdata_dir: Path, cluster: InMemoryCluster) -> None:
    """Test the timers run in the background until stopped."""
    config = parse_config(
        {
            "applications": [application("web")],
            "intervals": {"poll": "10ms", "refresh": "10ms", "evaluate": "10ms"},
        }
    )
    loop = ControlLoop(
        config, LocalSource(testdata_dir), cluster, channels=[], clock=lambda: START
    )

    loop.start()
    for _ in range(50):
        await asyncio.sleep(0.02)
        if await cluster.get(DEPLOYMENT) is not None:
            break
    await loop.stop()

    assert await cluster.get(DEPLOYMENT) is not None


@pytest.mark.parametrize("configured", [False, True])
async def test_default_rules(
    testdata_dir: Path, cluster: InMemoryCluster, configured: bool
) -> None:
    """Test the default rules apply only when none are configured."""
    doc: dict[str, Any] = {"applications": [application("web")]}
    if configured:
        doc["alerting"] = {"rules": [{"name": "Custom", "expr": "gitops_app_drift"}]}
    loop = make_loop(parse_config(doc), testdata_dir, cluster, FakeChannel())

    names = {rule.name for rule in loop.evaluator.rules}
    if configured:
        assert names == {"Custom"}
    else:
        assert names == {
            "ApplicationOutOfSync",
            "ApplicationDegraded",
            "ResourceSyncFailed",
        }
    await loop.stop()


@pytest.mark.parametrize(
    "filename, content",
    [
        ("configmap.yaml", b"apiVersion: v1\nkind: ConfigMap\nmetadata: oops\n"),
        ("configmap.yaml", b"\xff\xfe\x00kind: ConfigMap\n"),
        ("configmap.yaml", b"apiVersion: v1\nkind: 5\nmetadata:\n  name: x\n"),
        ("list.yaml", b"apiVersion: v1\nkind: List\nitems: 5\n"),
    ],
)
async def test_malformed_manifest_halts_only_its_application(
    testdata_dir: Path,
    tmp_path: Path,
    cluster: InMemoryCluster,
    filename: str,
    content: bytes,
) -> None:
    """Test malformed manifests halt their Application and others keep polling."""
    shutil.copytree(testdata_dir / "apps" / "web", tmp_path / "apps" / "web")
    (tmp_path / "apps" / "bad").mkdir()
    (tmp_path / "apps" / "bad" / filename).write_bytes(content)
    loop = make_loop(
        parse_config(
            {"applications": [application("web"), application("bad", path="apps/bad")]}
        ),
        tmp_path,
        cluster,
        FakeChannel(),
    )

    await loop.poll()

    bad = loop.controller("bad")
    assert bad is not None
    assert bad.status.health == Health.HALTED
    assert bad.status.error is not None

    await loop.run_once()
    web = loop.controller("web")
    assert web is not None
    assert web.status.health == Health.HEALTHY
    assert await cluster.get(DEPLOYMENT) is not None
    await loop.stop()


class ExplodingSource(LocalSource):
    """Raises an unexpected error for one Application."""

    async def fetch(self, app: Application) -> DesiredState:
        if app.name == "boom":
            raise RuntimeError("unexpected")
        return await super().fetch(app)


async def test_unexpected_error_isolated(
    testdata_dir: Path, cluster: InMemoryCluster, caplog: pytest.LogCaptureFixture
) -> None:
    """Test an unexpected error in one Application is logged, not raised."""
    loop = ControlLoop(
        parse_config({"applications": [application("web"), application("boom")]}),
        ExplodingSource(testdata_dir),
        cluster,
        channels=[],
        sleep=no_sleep,
        clock=lambda: START,
    )

    await loop.run_once()

    assert "Unexpected error reconciling Application boom" in caplog.text
    web = loop.controller("web")
    assert web is not None
    assert web.status.health == Health.HEALTHY
    await loop.stop()


async def test_timer_survives_unexpected_error(
    testdata_dir: Path,
    cluster: InMemoryCluster,
    caplog: pytest.LogCaptureFixture,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Test a timer keeps running after its callback raised."""
    config = parse_config(
        {
            "applications": [application("web")],
            "intervals": {"poll": "10ms", "refresh": "10ms", "evaluate": "10ms"},
        }
    )
    loop = ControlLoop(
        config, LocalSource(testdata_dir), cluster, channels=[], clock=lambda: START
    )
    poll = loop.poll
    calls = 0

    async def flaky_poll() -> None:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("unexpected")
        await poll()

    monkeypatch.setattr(loop, "poll", flaky_poll)
    loop.start()
    for _ in range(50):
        await asyncio.sleep(0.02)
        if await cluster.get(DEPLOYMENT) is not None:
            break
    await loop.stop()

    assert calls > 1
    assert "Unexpected error in poll timer" in caplog.text
    assert await cluster.get(DEPLOYMENT) is not None


async def test_alert_delivered_after_inhibition_ends(
    tmp_path: Path, cluster: InMemoryCluster
) -> None:
    """Test a warning suppressed by a critical alert is sent once that resolves."""
    recorded = InMemoryMetrics()
    for name in ("crit", "warn"):
        recorded.record(name, {"app": "web"}, 1, START)
    channel = FakeChannel()
    config = parse_config(
        {
            "alerting": {
                "rules": [
                    {"name": "Crit", "expr": "crit", "severity": "critical"},
                    {"name": "Warn", "expr": "warn", "severity": "warning"},
                ],
                "inhibit_rules": [
                    {
                        "source_match": {"severity": "critical"},
                        "target_match": {"severity": "warning"},
                        "equal": ["app"],
                    }
                ],
            },
        }
    )
    loop = ControlLoop(
        config,
        LocalSource(tmp_path),
        cluster,
        metrics_source=recorded,
        channels=[channel],
        sleep=no_sleep,
        clock=lambda: START,
    )

    await loop.evaluate(START)
    await get_task_service().block_till_done()
    assert [(m.alertname, m.status) for m in channel.sent] == [("Crit", "firing")]

    # Still inhibited on the next evaluation
    later = START + timedelta(seconds=15)
    recorded.record("crit", {"app": "web"}, 1, later)
    recorded.record("warn", {"app": "web"}, 1, later)
    await loop.evaluate(later)
    await get_task_service().block_till_done()
    assert len(channel.sent) == 1

    later = START + timedelta(seconds=30)
    recorded.record("crit", {"app": "web"}, 0, later)
    recorded.record("warn", {"app": "web"}, 1, later)
    await loop.evaluate(later)
    await get_task_service().block_till_done()

    assert {a.rule for a in loop.evaluator.firing()} == {"Warn"}
    assert sorted((m.alertname, m.status) for m in channel.sent) == [
        ("Crit", "firing"),
        ("Crit", "resolved"),
        ("Warn", "firing"),
    ]

    # Delivered once only
    later = START + timedelta(seconds=45)
    recorded.record("warn", {"app": "web"}, 1, later)
    await loop.evaluate(later)
    await get_task_service().block_till_done()
    assert len(channel.sent) == 3
    await loop.stop()
