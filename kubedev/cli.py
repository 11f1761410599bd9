"""
Command line entry point.

Usage:
    kubedev up [--no-build] [--deploy] [--shell zsh] ...
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from . import __version__
from .config import get_settings
from .exceptions import KubedevError
from .logging_setup import configure_logging
from .services.up import UpCommand, UpOptions

logger = logging.getLogger(__name__)

UP_DESCRIPTION = """\
Starts and connects your DevSpace:
1. Builds your Docker image (if your Dockerfile has changed)
2. Deploys the Helm chart in /chart
3. Starts port forwarding and the sync client
4. Enters the container shell"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kubedev", description="Kubernetes development environments")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    up = subparsers.add_parser(
        "up",
        help="Starts your DevSpace",
        description=UP_DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    up.add_argument(
        "--init-registries",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Create image pull secrets for the configured registries",
    )
    # default None records whether the flag was given explicitly
    up.add_argument(
        "-b", "--build",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Build image if Dockerfile has been modified (given explicitly: always build)",
    )
    up.add_argument("-s", "--shell", default=None, help="Shell command (default: bash, fallback: sh)")
    up.add_argument(
        "--sync",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Enable code synchronization",
    )
    up.add_argument(
        "--portforwarding",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Enable port forwarding",
    )
    up.add_argument(
        "-d", "--deploy",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Deploy chart",
    )
    up.add_argument(
        "--no-sleep",
        dest="no_sleep",
        action="store_true",
        help="Run the image's own command instead of the chart's sleep command",
    )
    return parser


def options_from_args(args: argparse.Namespace) -> UpOptions:
    return UpOptions(
        init_registries=args.init_registries,
        build=True if args.build is None else args.build,
        build_explicit=args.build is not None,
        shell=args.shell or None,
        sync=args.sync,
        portforwarding=args.portforwarding,
        deploy=args.deploy,
        no_sleep=args.no_sleep,
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings)

    if args.command == "up":
        try:
            asyncio.run(UpCommand(options_from_args(args)).run())
        except KubedevError as e:
            logger.error(f"[UP] {e}")
            return 1
        except KeyboardInterrupt:
            return 130

    return 0


if __name__ == "__main__":
    sys.exit(main())
