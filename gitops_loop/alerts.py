"""Alert Evaluator.

Each alert rule is evaluated against the metrics source on a fixed interval.
Every series for which the rule's condition holds gets its own alert, which
moves through the states:

    Inactive -> Pending -> Firing -> Resolved -> Inactive

An alert only fires after its condition held continuously for the rule's `for`
duration. Resolved alerts are retained for a grace period before they are
forgotten.

Inhibition does not change alert state. It is a pure function over the current
set of Firing alerts that is checked at delivery time.
"""

from collections.abc import Callable, Iterable
import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import StrEnum
import hashlib
import logging

from . import metrics
from .config import AlertRule, InhibitRule
from .exceptions import GitOpsException
from .metrics import MetricsSource, NAME_LABEL

__all__ = [
    "AlertState",
    "AlertInstance",
    "AlertTransition",
    "AlertEvaluator",
    "inhibited",
    "default_rules",
    "default_inhibit_rules",
]

_LOGGER = logging.getLogger(__name__)

ALERTNAME_LABEL = "alertname"
SEVERITY_LABEL = "severity"


class AlertState(StrEnum):
    """State of an alert for one rule and label set."""

    INACTIVE = "Inactive"
    PENDING = "Pending"
    FIRING = "Firing"
    RESOLVED = "Resolved"


class _FormatLabels(dict[str, str]):
    def __missing__(self, key: str) -> str:
        return ""


def _render(template: str, labels: dict[str, str], value: float) -> str:
    try:
        return template.format_map(_FormatLabels(labels, value=f"{value:g}"))
    except (ValueError, IndexError, AttributeError):
        return template


@dataclass
class AlertInstance:
    """An alert for one rule and one label set."""

    rule: str
    severity: str
    labels: dict[str, str]
    """Series labels plus rule labels, `alertname` and `severity`."""
    state: AlertState
    first_seen: datetime
    last_seen: datetime
    active_since: datetime
    """Start of the current continuous period the condition held."""
    annotations: dict[str, str] = field(default_factory=dict)
    value: float = 0.0
    fired_at: datetime | None = None
    resolved_at: datetime | None = None

    @property
    def fingerprint(self) -> str:
        """Stable identity over the alert's labels."""
        digest = hashlib.sha256()
        for key, value in sorted(self.labels.items()):
            digest.update(f"{key}\0{value}\0".encode("utf-8"))
        return digest.hexdigest()[:16]

    def __str__(self) -> str:
        labels = ",".join(
            f"{k}={v}"
            for k, v in sorted(self.labels.items())
            if k not in (ALERTNAME_LABEL, SEVERITY_LABEL)
        )
        return f"{self.rule}{{{labels}}} {self.state}"


@dataclass(frozen=True)
class AlertTransition:
    """A change of state for one alert."""

    alert: AlertInstance
    previous: AlertState
    current: AlertState
    at: datetime


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _alert_key(rule: AlertRule, labels: dict[str, str]) -> tuple[str, frozenset[tuple[str, str]]]:
    return (rule.name, frozenset(labels.items()))


class AlertEvaluator:
    """Advances the alert state machine for every rule."""

    def __init__(
        self,
        source: MetricsSource,
        rules: Iterable[AlertRule],
        lookback: timedelta = timedelta(minutes=5),
        resolved_retention: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = _now,
    ) -> None:
        """Initialize the AlertEvaluator.

        Args:
            source: Metrics source the rule expressions are queried from
            rules: Alert rules to evaluate
            lookback: How far back a query looks for the latest sample
            resolved_retention: How long Resolved alerts are kept
            clock: Source of the evaluation time
        """
        self._source = source
        self._rules = list(rules)
        self._lookback = lookback
        self._resolved_retention = resolved_retention
        self._clock = clock
        self._alerts: dict[tuple[str, frozenset[tuple[str, str]]], AlertInstance] = {}

    @property
    def rules(self) -> list[AlertRule]:
        return list(self._rules)

    def alerts(self) -> list[AlertInstance]:
        """Return every alert that is not Inactive."""
        return sorted(self._alerts.values(), key=lambda a: (a.rule, sorted(a.labels.items())))

    def firing(self) -> list[AlertInstance]:
        """Return the alerts currently Firing."""
        return [a for a in self.alerts() if a.state == AlertState.FIRING]

    def _labels(self, rule: AlertRule, series_labels: dict[str, str]) -> dict[str, str]:
        labels = {k: v for k, v in series_labels.items() if k != NAME_LABEL}
        labels.update(rule.labels)
        labels[ALERTNAME_LABEL] = rule.name
        labels[SEVERITY_LABEL] = rule.severity
        return labels

    async def evaluate(self, now: datetime | None = None) -> list[AlertTransition]:
        """Evaluate every rule once and return the resulting transitions."""
        now = now or self._clock()
        transitions: list[AlertTransition] = []
        for rule in self._rules:
            try:
                series = await self._source.query(rule.expr, now - self._lookback, now)
            except GitOpsException as err:
                # State is left untouched so a flaky query neither fires nor resolves.
                _LOGGER.error("Failed to evaluate alert rule %s: %s", rule.name, err)
                continue
            transitions.extend(self._evaluate_rule(rule, series, now))
        return transitions

    def _transition(
        self,
        transitions: list[AlertTransition],
        alert: AlertInstance,
        current: AlertState,
        now: datetime,
    ) -> None:
        previous = alert.state
        alert.state = current
        _LOGGER.info("Alert %s: %s -> %s", alert.rule, previous, current)
        transitions.append(AlertTransition(copy.deepcopy(alert), previous, current, now))

    def _evaluate_rule(
        self, rule: AlertRule, series: list[metrics.Series], now: datetime
    ) -> list[AlertTransition]:
        transitions: list[AlertTransition] = []
        active: set[tuple[str, frozenset[tuple[str, str]]]] = set()
        for item in series:
            if (sample := item.latest) is None or not rule.holds(sample.value):
                continue
            labels = self._labels(rule, item.labels)
            key = _alert_key(rule, labels)
            active.add(key)
            alert = self._alerts.get(key)
            if alert is None or alert.state == AlertState.RESOLVED:
                alert = AlertInstance(
                    rule=rule.name,
                    severity=rule.severity,
                    labels=labels,
                    state=AlertState.INACTIVE,
                    first_seen=now,
                    last_seen=now,
                    active_since=now,
                )
                self._alerts[key] = alert
                self._transition(transitions, alert, AlertState.PENDING, now)
            alert.last_seen = now
            alert.value = sample.value
            alert.annotations = {
                k: _render(v, labels, sample.value) for k, v in rule.annotations.items()
            }
            if (
                alert.state == AlertState.PENDING
                and now - alert.active_since >= timedelta(seconds=rule.for_)
            ):
                alert.fired_at = now
                self._transition(transitions, alert, AlertState.FIRING, now)

        for key, alert in list(self._alerts.items()):
            if key[0] != rule.name or key in active:
                continue
            if alert.state == AlertState.PENDING:
                self._transition(transitions, alert, AlertState.INACTIVE, now)
                del self._alerts[key]
            elif alert.state == AlertState.FIRING:
                alert.resolved_at = now
                self._transition(transitions, alert, AlertState.RESOLVED, now)
            elif (
                alert.state == AlertState.RESOLVED
                and alert.resolved_at is not None
                and now - alert.resolved_at >= self._resolved_retention
            ):
                self._transition(transitions, alert, AlertState.INACTIVE, now)
                del self._alerts[key]
        return transitions


def _matches(labels: dict[str, str], match: dict[str, str]) -> bool:
    return all(labels.get(k) == v for k, v in match.items())


def inhibited(
    alert: AlertInstance,
    firing: Iterable[AlertInstance],
    rules: Iterable[InhibitRule],
) -> bool:
    """Return True if delivery of the alert is suppressed by a Firing alert."""
    sources = [a for a in firing if a.state == AlertState.FIRING]
    for rule in rules:
        if not _matches(alert.labels, rule.target_match):
            continue
        for source in sources:
            if source.fingerprint == alert.fingerprint:
                continue
            if not _matches(source.labels, rule.source_match):
                continue
            if all(source.labels.get(k) == alert.labels.get(k) for k in rule.equal):
                _LOGGER.debug("Alert %s inhibited by %s", alert, source)
                return True
    return False


def default_rules() -> list[AlertRule]:
    """Rules used when the configuration declares none."""
    return [
        AlertRule(
            name="ApplicationOutOfSync",
            expr=metrics.OUT_OF_SYNC,
            op=">",
            threshold=0,
            for_=300.0,
            severity="warning",
            annotations={"summary": "Application {app} is out of sync"},
        ),
        AlertRule(
            name="ApplicationDegraded",
            expr=metrics.DEGRADED,
            op=">",
            threshold=0,
            severity="critical",
            annotations={"summary": "Application {app} is degraded"},
        ),
        AlertRule(
            name="ResourceSyncFailed",
            expr=metrics.RESOURCE_SYNC_FAILED,
            op=">",
            threshold=0,
            for_=60.0,
            severity="warning",
            annotations={
                "summary": "Sync of {kind} {namespace}/{name} in {app} is failing"
            },
        ),
    ]


def default_inhibit_rules() -> list[InhibitRule]:
    """Critical alerts for an Application suppress its warnings."""
    return [
        InhibitRule(
            source_match={SEVERITY_LABEL: "critical"},
            target_match={SEVERITY_LABEL: "warning"},
            equal=["app"],
        )
    ]
