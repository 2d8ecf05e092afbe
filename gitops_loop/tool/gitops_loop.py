"""Command line tool for diffing, syncing and running the gitops control loop."""

import argparse
import asyncio
import logging
import sys
import traceback
from typing import Any

import yaml

from gitops_loop.exceptions import GitOpsException
from . import diff, run, status, sync

_LOGGER = logging.getLogger(__name__)


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Command line utility for reconciling Applications to a cluster.",
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )

    subparsers = parser.add_subparsers(dest="command", help="Command", required=True)

    diff.DiffAction.register(subparsers)
    sync.SyncAction.register(subparsers)
    status.StatusAction.register(subparsers)
    run.RunAction.register(subparsers)
    return parser


def main() -> None:
    """Gitops-loop command line tool main entry point."""

    def str_presenter(dumper: yaml.Dumper, data: Any) -> Any:
        """Represent multi-line yaml strings as you'd expect.

        See https://github.com/yaml/pyyaml/issues/240
        """
        return dumper.represent_scalar(
            "tag:yaml.org,2002:str", data, style="|" if data.count("\n") > 0 else None
        )

    yaml.add_representer(str, str_presenter)

    parser = _make_parser()
    args = parser.parse_args()

    if args.log_level:
        logging.basicConfig(level=args.log_level)

    action = args.cls()
    try:
        asyncio.run(action.run(**vars(args)))
    except GitOpsException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("gitops-loop error: ", err, file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        _LOGGER.info("Interrupted")


if __name__ == "__main__":
    main()
