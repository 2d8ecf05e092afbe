"""Tests for the configuration module."""

from pathlib import Path
from typing import Any

import pytest

from gitops_loop.config import (
    AlertRule,
    LoopConfig,
    SyncConfig,
    load_config,
    parse_config,
    parse_duration,
)
from gitops_loop.exceptions import FatalConfigError, InputException


@pytest.mark.parametrize(
    "value, expected",
    [
        (30, 30.0),
        (1.5, 1.5),
        ("45", 45.0),
        ("30s", 30.0),
        ("5m", 300.0),
        ("1h", 3600.0),
        ("1m30s", 90.0),
        ("250ms", 0.25),
        ("1d", 86400.0),
    ],
)
def test_parse_duration(value: Any, expected: float) -> None:
    """Test parsing durations."""
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["", "5x", "m5", "1m 30s", True, None, [1]])
def test_parse_invalid_duration(value: Any) -> None:
    """Test invalid durations are rejected."""
    with pytest.raises(InputException):
        parse_duration(value)


async def test_load_config(testdata_dir: Path) -> None:
    """Test loading a configuration file."""
    config = await load_config(testdata_dir / "config.yaml")

    assert config.intervals.poll == 60
    assert config.intervals.refresh == 30
    assert config.sync == SyncConfig(retry_base=5, retry_cap=300, max_retries=3)
    assert config.alerting.resolved_retention == 600
    (rule,) = config.alerting.rules
    assert rule.name == "ApplicationDegraded"
    assert rule.for_ == 60
    assert rule.severity == "critical"
    (inhibit,) = config.alerting.inhibit_rules
    assert inhibit.source_match == {"severity": "critical"}
    assert inhibit.equal == ["app"]
    assert config.notifications.backoff == 1.0
    assert [c.name for c in config.notifications.channels] == ["chat", "log"]
    assert config.notifications.channels[0].match == {"severity": "critical"}
    assert config.metrics.prometheus_url is None

    (app,) = config.parse_applications()
    assert app.name == "web"
    assert app.destination_namespace == "web"
    assert app.sync_policy.prune
    assert app.sync_policy.self_heal


def test_defaults() -> None:
    """Test an empty configuration uses defaults."""
    config = parse_config(None)
    assert config == LoopConfig()
    assert config.intervals.poll == 30
    assert config.intervals.evaluate == 15
    assert config.sync.max_retries == 3
    assert config.notifications.max_retries == 2
    assert config.alerting.resolved_retention == 300
    assert config.parse_applications() == []


def test_backoff() -> None:
    """Test the exponential backoff schedule."""
    config = SyncConfig()
    assert [config.backoff(n) for n in range(1, 9)] == [
        5, 10, 20, 40, 80, 160, 300, 300
    ]


@pytest.mark.parametrize(
    "doc",
    [
        ["not", "a", "mapping"],
        {"intervals": {"poll": "soon"}},
        {"alerting": {"rules": [{"expr": "up"}]}},
        {"alerting": {"rules": [{"name": "a", "expr": "up", "op": "~"}]}},
        {"notifications": {"channels": [{"name": "chat"}]}},
        {"applications": [{"kind": "Application"}]},
    ],
)
def test_invalid_config(doc: Any) -> None:
    """Test invalid configuration is a fatal error."""
    with pytest.raises(FatalConfigError):
        parse_config(doc)


def test_duplicate_application() -> None:
    """Test Application names must be unique."""
    app = {
        "apiVersion": "argoproj.io/v1alpha1",
        "kind": "Application",
        "metadata": {"name": "web"},
        "spec": {"source": {"repoURL": "https://example.com/repo.git"}},
    }
    with pytest.raises(FatalConfigError, match="Duplicate Application"):
        parse_config({"applications": [app, app]})


async def test_load_missing_config(tmp_path: Path) -> None:
    """Test a missing configuration file is a fatal error."""
    with pytest.raises(FatalConfigError, match="Unable to read"):
        await load_config(tmp_path / "missing.yaml")


async def test_load_invalid_yaml(tmp_path: Path) -> None:
    """Test a malformed configuration file is a fatal error."""
    config_file = tmp_path / "config.yaml"
    config_file.write_text("intervals: [poll\n")
    with pytest.raises(FatalConfigError, match="Unable to parse"):
        await load_config(config_file)


@pytest.mark.parametrize(
    "op, value, expected",
    [
        (">", 1, True),
        (">", 0, False),
        (">=", 0, True),
        ("<", -1, True),
        ("<=", 1, False),
        ("==", 0, True),
        ("!=", 0, False),
    ],
)
def test_alert_rule_holds(op: str, value: float, expected: bool) -> None:
    """Test alert rule comparisons against a threshold of zero."""
    rule = AlertRule(name="test", expr="up", op=op, threshold=0)
    assert rule.holds(value) is expected
