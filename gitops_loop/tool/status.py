"""Gitops-loop status action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import dataclasses
import logging
from typing import cast, Any

from gitops_loop.controller import ApplicationController
from gitops_loop.manifest import Application
from gitops_loop.store import InMemoryStore, Store
from gitops_loop.sync import SyncExecutor
from gitops_loop.task import task_service_context

from .format import TableFormatter
from . import selector

_LOGGER = logging.getLogger(__name__)

REVISION_LENGTH = 12


def manual(app: Application) -> Application:
    """Return the Application with automatic sync disabled."""
    return dataclasses.replace(
        app, sync_policy=dataclasses.replace(app.sync_policy, self_heal=False)
    )


def status_rows(apps: list[Application], store: Store) -> list[dict[str, Any]]:
    """Return a row describing the status of each Application."""
    rows: list[dict[str, Any]] = []
    for app in apps:
        status = store.get_status(app.resource_id)
        if status is None:
            continue
        rows.append(
            {
                "name": app.name,
                "revision": (status.revision or "")[:REVISION_LENGTH],
                "sync": status.sync_status,
                "health": status.health,
                "drift": len(status.drift),
                "error": status.error,
            }
        )
    return rows


class StatusAction:
    """Print the sync status of each Application."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "status",
                help="Print the sync status of Applications",
                description=(
                    "The status command fetches desired state, reads the "
                    "cluster and prints whether each Application is in sync."
                ),
            ),
        )
        selector.add_config_flags(args)
        selector.add_app_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        app: str | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        config = await selector.load(**kwargs)
        apps = selector.select_apps(config, app)
        source = selector.build_source(**kwargs)
        cluster = selector.build_cluster(**kwargs)
        store = InMemoryStore()
        executor = SyncExecutor(cluster, config.sync)
        with task_service_context():
            for application in apps:
                controller = ApplicationController(
                    manual(application), store, source, cluster, executor
                )
                await controller.poll()
                await controller.refresh()
        TableFormatter().print(status_rows(apps, store))
