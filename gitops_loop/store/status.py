"""Status information for an Application."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from gitops_loop.manifest import NamedResource
from gitops_loop.resource_diff import SyncStatus


class Health(StrEnum):
    """Health of an Application's reconciliation."""

    HEALTHY = "Healthy"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"
    """Retries for a resource were exhausted; no further automatic sync."""
    HALTED = "Halted"
    """Desired state is malformed; sync is halted until corrected."""


@dataclass
class AppStatus:
    """Last observed status of an Application.

    The sync status is cached here for display only. It is always recomputed
    from the latest desired and live snapshots.
    """

    sync_status: SyncStatus = SyncStatus.UNKNOWN
    health: Health = Health.PROGRESSING
    revision: str | None = None
    drift: list[NamedResource] = field(default_factory=list)
    """Live resources that differ from desired state but policy forbids fixing."""
    error: str | None = None
    retry_count: int = 0
    last_synced: datetime | None = None

    def __str__(self) -> str:
        """Return a string representation of the status."""
        text = f"{self.sync_status}/{self.health}"
        if self.drift:
            text += f" drift={len(self.drift)}"
        if self.error:
            text += f" (retries={self.retry_count}): {self.error}"
        return text
