"""Timing of the reconcile phases of an Application.

Poll, refresh and sync each run inside `reconcile_context`. The phase being
run is available to log records made while it runs, and its duration is
handed to an optional callback once it finishes.
"""

from collections.abc import Callable, Iterator
from contextlib import contextmanager
import contextvars
from dataclasses import dataclass
import logging
from time import perf_counter


_LOGGER = logging.getLogger(__name__)

__all__ = ["Phase", "reconcile_context", "current_phase"]


@dataclass(frozen=True)
class Phase:
    """One reconcile phase of an Application."""

    application: str
    name: str

    def __str__(self) -> str:
        return f"{self.name} {self.application}"


_phase: contextvars.ContextVar[Phase | None] = contextvars.ContextVar(
    "phase", default=None
)


def current_phase() -> Phase | None:
    """Return the reconcile phase running in this context, if any."""
    return _phase.get()


@contextmanager
def reconcile_context(
    application: str,
    name: str,
    on_done: Callable[[Phase, float], None] | None = None,
) -> Iterator[Phase]:
    """Run a reconcile phase, reporting how long it took."""
    phase = Phase(application, name)
    token = _phase.set(phase)
    start = perf_counter()
    _LOGGER.debug("Starting %s", phase)
    try:
        yield phase
    finally:
        elapsed = perf_counter() - start
        _phase.reset(token)
        _LOGGER.debug("Finished %s in %0.2fs", phase, elapsed)
        if on_done is not None:
            on_done(phase, elapsed)
