"""
gitops-loop reconciles Applications declared in git to a cluster and routes
alerts about their state to notification channels.
"""

__all__ = [
    "manifest",
    "resource_diff",
    "sync",
    "alerts",
    "notify",
    "metrics",
    "config",
    "exceptions",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
