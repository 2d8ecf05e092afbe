"""Gitops-loop sync action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
from typing import cast, Any

from gitops_loop.controller import ApplicationController
from gitops_loop.exceptions import FatalConfigError, GitOpsException
from gitops_loop.store import InMemoryStore
from gitops_loop.sync import SyncExecutor
from gitops_loop.task import task_service_context

from .format import TableFormatter
from .status import manual
from . import selector

_LOGGER = logging.getLogger(__name__)


class SyncAction:
    """Manually sync Applications to the cluster."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "sync",
                help="Sync Applications to the cluster",
                description=(
                    "The sync command applies the corrective actions for each "
                    "Application according to its sync policy, even when "
                    "self-heal is disabled."
                ),
            ),
        )
        selector.add_config_flags(args)
        selector.add_app_flags(args)
        args.add_argument(
            "--dry-run",
            action="store_true",
            default=False,
            help="Print the planned actions without changing the cluster",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        app: str | None,
        dry_run: bool,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        config = await selector.load(**kwargs)
        apps = selector.select_apps(config, app)
        source = selector.build_source(**kwargs)
        cluster = selector.build_cluster(**kwargs)
        store = InMemoryStore()
        executor = SyncExecutor(cluster, config.sync)

        rows: list[dict[str, Any]] = []
        with task_service_context():
            for application in apps:
                controller = ApplicationController(
                    manual(application), store, source, cluster, executor
                )
                if await controller.poll() is None:
                    raise FatalConfigError(
                        controller.status.error
                        or f"Unable to fetch desired state for {application.name}"
                    )
                result = await controller.sync(manual=True, dry_run=dry_run)
                if result is None:
                    continue
                for resource in result.results:
                    rows.append(
                        {
                            "app": application.name,
                            "kind": resource.key.kind,
                            "namespace": resource.key.namespace,
                            "name": resource.key.name,
                            "action": resource.action,
                            "outcome": resource.outcome,
                            "retries": resource.retries,
                            "error": resource.error,
                        }
                    )
        TableFormatter().print(rows)
        if store.has_degraded_applications():
            raise GitOpsException("One or more Applications are degraded")
