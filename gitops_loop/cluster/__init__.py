"""The cluster module.

This module provides the cluster control interface used to read live state and
apply corrective actions, with an in-process and a kubectl backed
implementation.
"""

from .cluster import ClusterClient, read_live_state
from .in_memory import InMemoryCluster
from .kubectl import KubectlCluster

__all__ = [
    "ClusterClient",
    "InMemoryCluster",
    "KubectlCluster",
    "read_live_state",
]
