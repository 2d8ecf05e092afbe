"""Desired-state source backed by a git repository."""

import asyncio
import logging
from pathlib import PurePosixPath

import git

from gitops_loop.exceptions import FatalConfigError, TransientInfraError
from gitops_loop.manifest import Application, DesiredState

from .cache import GitCache, get_git_cache
from .source import DesiredStateSource, MANIFEST_SUFFIXES, build_desired_state

_LOGGER = logging.getLogger(__name__)


def _open_mirror(url: str, cache: GitCache) -> git.Repo:
    """Clone the repository as a mirror, or refresh an existing mirror."""
    repo_path = cache.get_repo_path(url)
    try:
        if repo_path.exists():
            _LOGGER.debug("Updating existing repository at %s", repo_path)
            repo = git.Repo(str(repo_path))
            repo.git.remote("update", "--prune")
            return repo
        _LOGGER.info("Cloning repository %s to %s", url, repo_path)
        return git.Repo.clone_from(url, str(repo_path), mirror=True)
    except git.exc.GitCommandError as err:
        raise TransientInfraError(f"Git operation failed for {url}: {err}") from err


def _decode(blob: git.Blob) -> str:
    try:
        return blob.data_stream.read().decode("utf-8")
    except UnicodeDecodeError as err:
        raise FatalConfigError(f"Manifest {blob.path} is not valid UTF-8: {err}") from err


def _read_files(commit: git.Commit, path: str) -> dict[str, str]:
    """Return manifest file contents below a path at a commit."""
    tree = commit.tree
    normalized = str(PurePosixPath(path))
    if normalized not in (".", "", "/"):
        try:
            obj = tree / normalized.strip("/")
        except KeyError as err:
            raise FatalConfigError(
                f"Path {path} does not exist at revision {commit.hexsha}"
            ) from err
        if isinstance(obj, git.Blob):
            return {obj.path: _decode(obj)}
        tree = obj
    files: dict[str, str] = {}
    for item in tree.traverse():
        if not isinstance(item, git.Blob):
            continue
        if PurePosixPath(item.path).suffix not in MANIFEST_SUFFIXES:
            continue
        files[item.path] = _decode(item)
    return files


class GitSource(DesiredStateSource):
    """Polls Application manifests from git repositories.

    Files are read from the resolved commit's tree so the cached repository is
    never checked out, and the revision reported is the full commit sha.
    """

    def __init__(self, cache: GitCache | None = None) -> None:
        """Initialize GitSource."""
        self._cache = cache or get_git_cache()
        self._locks: dict[str, asyncio.Lock] = {}

    def _fetch(self, app: Application) -> DesiredState:
        repo = _open_mirror(app.repo_url, self._cache)
        try:
            commit = repo.commit(app.target_revision)
        except (git.exc.BadName, ValueError) as err:
            raise FatalConfigError(
                f"Unknown revision {app.target_revision} for {app.repo_url}"
            ) from err
        _LOGGER.debug(
            "Resolved %s@%s to %s", app.repo_url, app.target_revision, commit.hexsha
        )
        files = _read_files(commit, app.path)
        return build_desired_state(app, commit.hexsha, files)

    async def fetch(self, app: Application) -> DesiredState:
        """Fetch the repository and read the manifests at the target revision."""
        # Applications sharing a repository share one mirror.
        lock = self._locks.setdefault(app.repo_url, asyncio.Lock())
        async with lock:
            return await asyncio.to_thread(self._fetch, app)
