"""The source module.

This module provides the desired-state sources an Application can be polled
from: a git repository or a local directory.
"""

from .source import DesiredStateSource, LocalSource, parse_manifest_text
from .git import GitSource
from .cache import GitCache, get_git_cache

__all__ = [
    "DesiredStateSource",
    "LocalSource",
    "GitSource",
    "GitCache",
    "get_git_cache",
    "parse_manifest_text",
]
