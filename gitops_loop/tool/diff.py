"""Gitops-loop diff action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import sys
from typing import cast, Any

from gitops_loop.cluster import read_live_state
from gitops_loop.resource_diff import diff, perform_object_diff

from .format import TableFormatter, YamlFormatter
from . import selector

_LOGGER = logging.getLogger(__name__)


class DiffAction:
    """Print the difference between desired and live state."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "diff",
                help="Diff desired state against the cluster",
                description=(
                    "The diff command fetches desired state for each Application "
                    "and prints how the live cluster state differs from it."
                ),
            ),
        )
        selector.add_config_flags(args)
        selector.add_app_flags(args)
        args.add_argument(
            "--output",
            "-o",
            choices=["diff", "summary", "yaml"],
            default="diff",
            help="Output format of the command",
        )
        args.add_argument(
            "--unified",
            "-u",
            type=int,
            default=3,
            help="output NUM (default 3) lines of unified context",
        )
        args.add_argument(
            "--limit-bytes",
            help="Maximum bytes for each diff output (0=unlimited)",
            type=int,
            default=0,
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        app: str | None,
        output: str,
        unified: int,
        limit_bytes: int,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        config = await selector.load(**kwargs)
        apps = selector.select_apps(config, app)
        source = selector.build_source(**kwargs)
        cluster = selector.build_cluster(**kwargs)

        rows: list[dict[str, Any]] = []
        docs: list[dict[str, Any]] = []
        for application in apps:
            desired = await source.fetch(application)
            live = await read_live_state(cluster, application, desired)
            delta = diff(desired, live)
            if output == "diff":
                for line in perform_object_diff(delta, n=unified, limit_bytes=limit_bytes):
                    sys.stdout.write(line)
                continue
            for resource_delta in delta:
                rows.append(
                    {
                        "app": application.name,
                        "kind": resource_delta.key.kind,
                        "namespace": resource_delta.key.namespace,
                        "name": resource_delta.key.name,
                        "type": resource_delta.type,
                        "fields": resource_delta.fields,
                    }
                )
                if resource_delta.desired is not None:
                    docs.append(resource_delta.desired.to_doc())

        if output == "summary":
            TableFormatter().print(rows)
        elif output == "yaml":
            YamlFormatter().print(docs)
