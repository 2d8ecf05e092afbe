"""Time series query interface used to evaluate alert rules.

The control loop records Application state as time series. Alert rules are
evaluated against any `MetricsSource`: the in-process `InMemoryMetrics` the
loop writes to, or an external Prometheus server.

Expressions are series selectors in the Prometheus style, for example
`gitops_app_out_of_sync{app="web"}` or `gitops_app_degraded{app=~"web|api"}`.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
import re
from typing import Any

import httpx

from .exceptions import InputException, TransientInfraError

__all__ = [
    "Sample",
    "Series",
    "Matcher",
    "Selector",
    "MetricsSource",
    "InMemoryMetrics",
    "PrometheusMetrics",
]

_LOGGER = logging.getLogger(__name__)

NAME_LABEL = "__name__"

OUT_OF_SYNC = "gitops_app_out_of_sync"
UNKNOWN = "gitops_app_unknown"
DEGRADED = "gitops_app_degraded"
DRIFT = "gitops_app_drift"
RESOURCE_SYNC_FAILED = "gitops_resource_sync_failed"
RECONCILE_DURATION = "gitops_reconcile_duration_seconds"

_SELECTOR_RE = re.compile(
    r"^\s*(?P<name>[a-zA-Z_:][a-zA-Z0-9_:]*)?\s*(?:\{(?P<matchers>.*)\})?\s*$"
)
_MATCHER_RE = re.compile(
    r'\s*(?P<label>[a-zA-Z_][a-zA-Z0-9_]*)\s*(?P<op>=~|!~|!=|=)\s*"(?P<value>(?:[^"\\]|\\.)*)"\s*'
)


@dataclass(frozen=True)
class Sample:
    """A single value at a point in time."""

    timestamp: datetime
    value: float


@dataclass
class Series:
    """A labelled sequence of samples ordered by time."""

    labels: dict[str, str]
    samples: list[Sample] = field(default_factory=list)

    @property
    def name(self) -> str | None:
        return self.labels.get(NAME_LABEL)

    @property
    def latest(self) -> Sample | None:
        return self.samples[-1] if self.samples else None


@dataclass(frozen=True)
class Matcher:
    """A label matcher within a selector."""

    label: str
    op: str
    value: str

    def matches(self, labels: dict[str, str]) -> bool:
        actual = labels.get(self.label, "")
        if self.op == "=":
            return actual == self.value
        if self.op == "!=":
            return actual != self.value
        found = re.fullmatch(self.value, actual) is not None
        return found if self.op == "=~" else not found


@dataclass(frozen=True)
class Selector:
    """A parsed series selector expression."""

    matchers: tuple[Matcher, ...]

    @classmethod
    def parse(cls, expr: str) -> "Selector":
        """Parse a `name{label="value",...}` expression."""
        if not (match := _SELECTOR_RE.match(expr)):
            raise InputException(f"Invalid series selector: {expr!r}")
        matchers: list[Matcher] = []
        if name := match.group("name"):
            matchers.append(Matcher(NAME_LABEL, "=", name))
        if inner := match.group("matchers"):
            remainder = _MATCHER_RE.sub("", inner).replace(",", "").strip()
            if remainder:
                raise InputException(f"Invalid series selector: {expr!r}")
            for found in _MATCHER_RE.finditer(inner):
                value = found.group("value").replace('\\"', '"')
                if found.group("op") in ("=~", "!~"):
                    try:
                        re.compile(value)
                    except re.error as err:
                        raise InputException(
                            f"Invalid regular expression in {expr!r}: {err}"
                        ) from err
                matchers.append(Matcher(found.group("label"), found.group("op"), value))
        if not matchers:
            raise InputException(f"Empty series selector: {expr!r}")
        return cls(matchers=tuple(matchers))

    def matches(self, labels: dict[str, str]) -> bool:
        return all(matcher.matches(labels) for matcher in self.matchers)


class MetricsSource(ABC):
    """An external or in-process time series store."""

    @abstractmethod
    async def query(self, expr: str, start: datetime, end: datetime) -> list[Series]:
        """Return every series matching the expression within [start, end]."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryMetrics(MetricsSource):
    """In-process time series store with a bounded retention window."""

    def __init__(
        self,
        retention: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = _now,
    ) -> None:
        """Initialize InMemoryMetrics."""
        self._retention = retention
        self._clock = clock
        self._series: dict[frozenset[tuple[str, str]], Series] = {}
        self._latest: datetime | None = None

    def record(
        self,
        name: str,
        labels: dict[str, str],
        value: float,
        timestamp: datetime | None = None,
    ) -> None:
        """Append a sample to the series identified by name and labels."""
        timestamp = timestamp or self._clock()
        all_labels = {**labels, NAME_LABEL: name}
        key = frozenset(all_labels.items())
        series = self._series.get(key)
        if series is None:
            series = Series(labels=all_labels)
            self._series[key] = series
        series.samples.append(Sample(timestamp, float(value)))
        if self._latest is None or timestamp > self._latest:
            self._latest = timestamp
        cutoff = timestamp - self._retention
        while series.samples and series.samples[0].timestamp < cutoff:
            series.samples.pop(0)

    def _prune(self) -> None:
        """Drop samples outside the retention window and series left empty."""
        if self._latest is None:
            return
        cutoff = self._latest - self._retention
        for key, series in list(self._series.items()):
            series.samples = [s for s in series.samples if s.timestamp >= cutoff]
            if not series.samples:
                del self._series[key]

    def remove(self, labels: dict[str, str]) -> None:
        """Drop every series carrying all of the given labels."""
        matching = [
            key
            for key, series in self._series.items()
            if labels.items() <= series.labels.items()
        ]
        for key in matching:
            del self._series[key]

    async def query(self, expr: str, start: datetime, end: datetime) -> list[Series]:
        """Return every series matching the expression within [start, end]."""
        selector = Selector.parse(expr)
        self._prune()
        results: list[Series] = []
        for series in self._series.values():
            if not selector.matches(series.labels):
                continue
            samples = [s for s in series.samples if start <= s.timestamp <= end]
            if samples:
                results.append(Series(labels=dict(series.labels), samples=samples))
        results.sort(key=lambda s: sorted(s.labels.items()))
        return results


class PrometheusMetrics(MetricsSource):
    """Queries a Prometheus compatible HTTP API."""

    def __init__(
        self,
        url: str,
        step: timedelta = timedelta(seconds=15),
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize PrometheusMetrics."""
        self._url = url.rstrip("/")
        self._step = step
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def query(self, expr: str, start: datetime, end: datetime) -> list[Series]:
        """Run a range query and return the resulting series."""
        params = {
            "query": expr,
            "start": start.timestamp(),
            "end": end.timestamp(),
            "step": self._step.total_seconds(),
        }
        try:
            response = await self._client.get(
                f"{self._url}/api/v1/query_range", params=params
            )
        except httpx.TransportError as err:
            raise TransientInfraError(f"Prometheus query failed: {err}") from err
        if response.status_code >= 500:
            raise TransientInfraError(
                f"Prometheus query failed with status {response.status_code}"
            )
        if response.status_code >= 400:
            raise InputException(
                f"Prometheus rejected query {expr!r}: {response.text}"
            )
        payload: dict[str, Any] = response.json()
        if payload.get("status") != "success":
            raise InputException(f"Prometheus query {expr!r} failed: {payload}")
        results: list[Series] = []
        for item in payload.get("data", {}).get("result", []):
            samples = [
                Sample(datetime.fromtimestamp(float(ts), timezone.utc), float(value))
                for ts, value in item.get("values", [])
            ]
            results.append(Series(labels=dict(item.get("metric", {})), samples=samples))
        _LOGGER.debug("Prometheus query %s returned %d series", expr, len(results))
        return results
