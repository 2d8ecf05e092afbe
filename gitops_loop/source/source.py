"""Desired-state source interface and a local directory implementation."""

from abc import ABC, abstractmethod
import hashlib
import logging
from pathlib import Path
from typing import Any

import aiofiles
import yaml

from gitops_loop.exceptions import FatalConfigError
from gitops_loop.manifest import Application, DesiredState, Resource, parse_documents

_LOGGER = logging.getLogger(__name__)

MANIFEST_SUFFIXES = {".yaml", ".yml", ".json"}


def parse_manifest_text(content: str, filename: str) -> list[Any]:
    """Return the raw documents in a YAML or JSON manifest file."""
    try:
        return list(yaml.load_all(content, Loader=yaml.SafeLoader))
    except yaml.YAMLError as err:
        raise FatalConfigError(f"Unable to parse manifest {filename}: {err}") from err


def build_desired_state(
    app: Application, revision: str, files: dict[str, str]
) -> DesiredState:
    """Parse manifest file contents into a desired state snapshot."""
    docs: list[Any] = []
    for filename in sorted(files):
        docs.extend(parse_manifest_text(files[filename], filename))
    resources: list[Resource] = parse_documents(docs, app.destination_namespace)
    _LOGGER.debug(
        "Parsed %d resources from %d files for %s at %s",
        len(resources),
        len(files),
        app.name,
        revision,
    )
    return DesiredState.from_resources(revision, resources)


def content_revision(files: dict[str, str]) -> str:
    """Return a digest of the manifest contents to use as a revision."""
    digest = hashlib.sha256()
    for filename in sorted(files):
        digest.update(filename.encode("utf-8"))
        digest.update(b"\0")
        digest.update(files[filename].encode("utf-8"))
    return digest.hexdigest()


class DesiredStateSource(ABC):
    """A version-controlled location that desired state is polled from."""

    @abstractmethod
    async def fetch(self, app: Application) -> DesiredState:
        """Return the desired state declared for the Application's revision.

        Raises:
            FatalConfigError: If the manifests are malformed or missing.
            TransientInfraError: If the source could not be reached.
        """


class LocalSource(DesiredStateSource):
    """Reads manifests from a directory on disk.

    The Application `path` is resolved relative to the root directory and the
    revision is a digest of the manifest contents.
    """

    def __init__(self, root: Path) -> None:
        """Initialize LocalSource."""
        self._root = Path(root).expanduser().resolve()

    async def fetch(self, app: Application) -> DesiredState:
        """Read all manifests under the Application path."""
        path = (self._root / app.path).resolve()
        if not path.is_relative_to(self._root):
            raise FatalConfigError(
                f"Application {app.name} path {app.path} escapes {self._root}"
            )
        if not path.exists():
            raise FatalConfigError(
                f"Application {app.name} path does not exist: {path}"
            )
        files: dict[str, str] = {}
        candidates = [path] if path.is_file() else sorted(path.rglob("*"))
        for file_path in candidates:
            if not file_path.is_file() or file_path.suffix not in MANIFEST_SUFFIXES:
                continue
            filename = str(file_path.relative_to(self._root))
            try:
                async with aiofiles.open(file_path, encoding="utf-8") as manifest_file:
                    files[filename] = await manifest_file.read()
            except UnicodeDecodeError as err:
                raise FatalConfigError(
                    f"Manifest {filename} is not valid UTF-8: {err}"
                ) from err
        return build_desired_state(app, content_revision(files), files)
