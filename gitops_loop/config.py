"""Configuration objects for gitops-loop.

The configuration file is YAML. Durations may be given as a number of seconds
or as a string such as `30s`, `5m`, `1h` or `1m30s`.

```yaml
applications:
  - apiVersion: argoproj.io/v1alpha1
    kind: Application
    metadata:
      name: web
    spec:
      source:
        repoURL: https://github.com/example/deploy.git
        path: apps/web
        targetRevision: main
      destination:
        namespace: web
      syncPolicy:
        automated:
          prune: true
          selfHeal: true
intervals:
  poll: 30s
sync:
  max_retries: 3
notifications:
  channels:
    - name: chat
      type: webhook
      url: https://chat.example.com/hooks/alerts
```
"""

from dataclasses import dataclass, field
import logging
from pathlib import Path
import re
from typing import Any, ClassVar

import aiofiles
import yaml
from mashumaro import DataClassDictMixin, field_options
from mashumaro.exceptions import InvalidFieldValue, MissingField

from .exceptions import FatalConfigError, InputException
from .manifest import Application

__all__ = [
    "AlertRule",
    "InhibitRule",
    "SyncConfig",
    "IntervalConfig",
    "MetricsConfig",
    "AlertingConfig",
    "ChannelConfig",
    "NotificationConfig",
    "LoopConfig",
    "parse_duration",
    "load_config",
]

_LOGGER = logging.getLogger(__name__)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0}

COMPARISON_OPS = (">", ">=", "<", "<=", "==", "!=")


def parse_duration(value: Any) -> float:
    """Return a duration in seconds from a number or a string like `1m30s`."""
    if isinstance(value, bool):
        raise InputException(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str) or not value.strip():
        raise InputException(f"Invalid duration: {value!r}")
    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass
    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise InputException(f"Invalid duration: {value!r}")
    return total


@dataclass
class _ConfigBase(DataClassDictMixin):
    """Base class that converts duration strings before decoding."""

    _durations: ClassVar[tuple[str, ...]] = ()

    @classmethod
    def __pre_deserialize__(cls, d: dict[Any, Any]) -> dict[Any, Any]:
        d = dict(d)
        for key in cls._durations:
            if key in d and d[key] is not None:
                d[key] = parse_duration(d[key])
        return d


@dataclass
class AlertRule(_ConfigBase):
    """A condition over a series that raises an alert when it holds."""

    _durations: ClassVar[tuple[str, ...]] = ("for",)

    name: str
    """Name of the alert, also set as the `alertname` label."""

    expr: str
    """Series selector evaluated against the metrics source."""

    op: str = ">"
    """Comparison between the latest sample value and the threshold."""

    threshold: float = 0.0

    for_: float = field(default=0.0, metadata=field_options(alias="for"))
    """Seconds the condition must hold continuously before firing."""

    severity: str = "warning"

    labels: dict[str, str] = field(default_factory=dict)

    annotations: dict[str, str] = field(default_factory=dict)
    """Annotations may reference series labels e.g. `{app}` and `{value}`."""

    def __post_init__(self) -> None:
        if self.op not in COMPARISON_OPS:
            raise InputException(
                f"Alert rule {self.name} has unsupported op {self.op!r}"
            )
        if self.for_ < 0:
            raise InputException(f"Alert rule {self.name} has negative duration")

    def holds(self, value: float) -> bool:
        """Return True if the value satisfies the rule condition."""
        if self.op == ">":
            return value > self.threshold
        if self.op == ">=":
            return value >= self.threshold
        if self.op == "<":
            return value < self.threshold
        if self.op == "<=":
            return value <= self.threshold
        if self.op == "==":
            return value == self.threshold
        return value != self.threshold


@dataclass
class InhibitRule(_ConfigBase):
    """A Firing source alert suppresses delivery of matching target alerts."""

    source_match: dict[str, str]
    target_match: dict[str, str]
    equal: list[str] = field(default_factory=lambda: ["app"])
    """Labels that must have the same value on source and target."""


@dataclass
class SyncConfig(_ConfigBase):
    """Retry settings for the Sync Executor."""

    _durations: ClassVar[tuple[str, ...]] = ("retry_base", "retry_cap")

    retry_base: float = 5.0
    retry_cap: float = 300.0
    max_retries: int = 3

    def backoff(self, attempt: int) -> float:
        """Return the delay after the given failed attempt (1 based)."""
        return min(self.retry_base * 2 ** (attempt - 1), self.retry_cap)


@dataclass
class IntervalConfig(_ConfigBase):
    """Timer intervals for the control loop, in seconds."""

    _durations: ClassVar[tuple[str, ...]] = ("poll", "refresh", "evaluate")

    poll: float = 30.0
    refresh: float = 30.0
    evaluate: float = 15.0


@dataclass
class MetricsConfig(_ConfigBase):
    """Where alert rules read series from."""

    _durations: ClassVar[tuple[str, ...]] = ("retention",)

    retention: float = 3600.0
    prometheus_url: str | None = None
    """Query an external Prometheus instead of the in-process series."""


@dataclass
class AlertingConfig(_ConfigBase):
    """Alert rules and how long alert state is kept."""

    _durations: ClassVar[tuple[str, ...]] = ("resolved_retention", "lookback")

    rules: list[AlertRule] = field(default_factory=list)
    inhibit_rules: list[InhibitRule] = field(default_factory=list)
    resolved_retention: float = 300.0
    lookback: float = 300.0


@dataclass
class ChannelConfig(_ConfigBase):
    """A notification channel."""

    _durations: ClassVar[tuple[str, ...]] = ("timeout",)

    name: str
    type: str
    """One of `webhook`, `email` or `log`."""

    match: dict[str, str] = field(default_factory=dict)
    """Only alerts carrying all of these labels are delivered."""

    url: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float = 10.0

    host: str | None = None
    port: int = 587
    sender: str | None = None
    recipients: list[str] = field(default_factory=list)
    username: str | None = None
    password_env: str | None = None
    """Environment variable holding the SMTP password."""
    starttls: bool = True


@dataclass
class NotificationConfig(_ConfigBase):
    """Channels and delivery retry settings."""

    _durations: ClassVar[tuple[str, ...]] = ("backoff",)

    channels: list[ChannelConfig] = field(default_factory=list)
    max_retries: int = 2
    backoff: float = 1.0
    """Linear backoff step; attempt n waits n times this long."""


@dataclass
class LoopConfig(_ConfigBase):
    """Top level configuration for the control loop."""

    applications: list[dict[str, Any]] = field(default_factory=list)
    """ArgoCD style Application objects."""

    intervals: IntervalConfig = field(default_factory=IntervalConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    alerting: AlertingConfig = field(default_factory=AlertingConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)

    def parse_applications(self) -> list[Application]:
        """Parse and validate the Application objects."""
        apps: list[Application] = []
        names: set[str] = set()
        for doc in self.applications:
            app = Application.parse_doc(doc)
            if app.name in names:
                raise FatalConfigError(f"Duplicate Application name: {app.name}")
            names.add(app.name)
            apps.append(app)
        return apps


def parse_config(doc: Any) -> LoopConfig:
    """Decode a configuration document, raising FatalConfigError if invalid."""
    if doc is None:
        doc = {}
    if not isinstance(doc, dict):
        raise FatalConfigError(f"Configuration must be a mapping, got: {doc!r}")
    try:
        config = LoopConfig.from_dict(doc)
    except (MissingField, InvalidFieldValue, InputException, ValueError) as err:
        raise FatalConfigError(f"Invalid configuration: {err}") from err
    config.parse_applications()
    return config


async def load_config(path: Path) -> LoopConfig:
    """Read and validate a YAML configuration file."""
    try:
        async with aiofiles.open(str(path)) as config_file:
            content = await config_file.read()
    except OSError as err:
        raise FatalConfigError(f"Unable to read configuration {path}: {err}") from err
    try:
        doc = yaml.load(content, Loader=yaml.SafeLoader)
    except yaml.YAMLError as err:
        raise FatalConfigError(f"Unable to parse configuration {path}: {err}") from err
    _LOGGER.debug("Loaded configuration from %s", path)
    return parse_config(doc)
