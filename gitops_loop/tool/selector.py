"""Library for common command line flags."""

from argparse import ArgumentParser
import logging
import pathlib

from gitops_loop.cluster import ClusterClient, KubectlCluster
from gitops_loop.config import LoopConfig, load_config
from gitops_loop.exceptions import InputException
from gitops_loop.manifest import Application
from gitops_loop.source import DesiredStateSource, GitCache, GitSource, LocalSource

_LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG = "gitops-loop.yaml"


def add_config_flags(args: ArgumentParser) -> None:
    """Add flags for the configuration, source and cluster."""
    args.add_argument(
        "--config",
        "-c",
        help="Path to the gitops-loop configuration file",
        type=pathlib.Path,
        default=pathlib.Path(DEFAULT_CONFIG),
    )
    args.add_argument(
        "--source-root",
        help="Read manifests from this directory instead of cloning each repoURL",
        type=pathlib.Path,
        default=None,
    )
    args.add_argument(
        "--cache-dir",
        help="Directory for cached git repositories",
        type=pathlib.Path,
        default=None,
    )
    args.add_argument(
        "--kubeconfig",
        help="Path to the kubeconfig file used by kubectl",
        type=str,
        default=None,
    )
    args.add_argument(
        "--context",
        help="The kubeconfig context to use",
        type=str,
        default=None,
    )


def add_app_flags(args: ArgumentParser) -> None:
    """Add a flag selecting a single Application."""
    args.add_argument(
        "--app",
        "-a",
        help="Only act on the Application with this name",
        type=str,
        default=None,
    )


async def load(config: pathlib.Path, **kwargs) -> LoopConfig:  # type: ignore[no-untyped-def]
    """Load the configuration file named by the flags."""
    return await load_config(config)


def build_source(
    source_root: pathlib.Path | None = None,
    cache_dir: pathlib.Path | None = None,
    **kwargs,  # pylint: disable=unused-argument
) -> DesiredStateSource:
    """Return the desired state source named by the flags."""
    if source_root is not None:
        return LocalSource(source_root)
    return GitSource(GitCache(cache_dir) if cache_dir is not None else None)


def build_cluster(
    kubeconfig: str | None = None,
    context: str | None = None,
    **kwargs,  # pylint: disable=unused-argument
) -> ClusterClient:
    """Return the cluster named by the flags."""
    return KubectlCluster(kubeconfig=kubeconfig, context=context)


def select_apps(config: LoopConfig, app: str | None = None) -> list[Application]:
    """Return the configured Applications, optionally only the named one."""
    apps = config.parse_applications()
    if app is None:
        return apps
    selected = [a for a in apps if a.name == app]
    if not selected:
        raise InputException(
            f"Application '{app}' not found in configuration, "
            f"choices: {', '.join(a.name for a in apps)}"
        )
    return selected
