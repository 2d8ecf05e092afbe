"""Cache management for git repositories."""

import hashlib
import logging
import tempfile
from pathlib import Path
from urllib.parse import urlparse

from slugify import slugify

from gitops_loop.exceptions import FatalConfigError

_LOGGER = logging.getLogger(__name__)

CACHE_DIR_NAME = "gitops-loop-cache"


class GitCache:
    """Cache manager for git repositories.

    Each repository URL maps to one mirror clone that persists for the lifetime
    of the process and is refreshed on every poll.
    """

    def __init__(self, cache_dir: Path | None = None) -> None:
        """Initialize the cache manager."""
        self._cache_dir = cache_dir or Path(tempfile.gettempdir()) / CACHE_DIR_NAME
        self._repos: dict[str, Path] = {}

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def _slugify_url(self, url: str) -> str:
        """Return a readable directory name for a repository URL."""
        parsed = urlparse(url)
        path = parsed.path
        # SSH URLs of the form git@github.com:user/repo.git
        if parsed.scheme == "" and "@" in url and ":" in url:
            path = url.split(":", 1)[1]
        path = path.rstrip("/")
        if path.endswith(".git"):
            path = path[:-4]
        slug = path.split("/")[-1]
        if not slug:
            raise FatalConfigError(f"Invalid repository URL format: {url}")
        return slugify(slug, max_length=50, lowercase=True, separator="-")

    def get_repo_path(self, url: str) -> Path:
        """Return the local directory a repository is cached in."""
        if (existing := self._repos.get(url)) is not None:
            return existing
        hash_str = hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]
        cache_path = self._cache_dir / self._slugify_url(url) / hash_str
        try:
            cache_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            _LOGGER.error("Error creating cache directory for %s: %s", url, err)
            raise FatalConfigError(f"Failed to create cache directory: {err}") from err
        self._repos[url] = cache_path
        return cache_path


_git_cache: GitCache | None = None


def get_git_cache() -> GitCache:
    """Get the process wide GitCache instance."""
    global _git_cache
    if _git_cache is None:
        _git_cache = GitCache()
    return _git_cache
