"""Gitops-loop run action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import asyncio
import logging
from typing import cast

from gitops_loop.controller import ControlLoop
from gitops_loop.exceptions import GitOpsException
from gitops_loop.task import task_service_context

from .format import TableFormatter
from .status import status_rows
from . import selector

_LOGGER = logging.getLogger(__name__)


class RunAction:
    """Run the reconciliation and alerting control loop."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "run",
                help="Run the control loop",
                description=(
                    "The run command polls desired state, reconciles the cluster "
                    "and routes alert notifications until interrupted."
                ),
            ),
        )
        selector.add_config_flags(args)
        args.add_argument(
            "--once",
            action="store_true",
            default=False,
            help="Run a single poll, refresh, sync and evaluate cycle then exit",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        once: bool,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        config = await selector.load(**kwargs)
        with task_service_context():
            loop = ControlLoop(
                config,
                selector.build_source(**kwargs),
                selector.build_cluster(**kwargs),
            )
            try:
                if once:
                    await loop.run_once()
                    apps = [c.app for c in loop.controllers]
                    TableFormatter().print(status_rows(apps, loop.store))
                    if loop.store.has_degraded_applications():
                        raise GitOpsException("One or more Applications are degraded")
                    return
                loop.start()
                await asyncio.Event().wait()
            finally:
                await loop.stop()
