"""Argument parsing for the distwatch command line."""

import argparse

from .constants import DistTag


def _add_shared_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("NAME",
                        help="npm package to watch, e.g. my-package or @scope/pkg",
                        type=str)
    parser.add_argument("--registry",
                        dest="REGISTRY",
                        help="Registry base URL (default: https://registry.npmjs.org)",
                        action="store",
                        type=str)
    parser.add_argument("--cdn-registry",
                        dest="CDN_REGISTRY",
                        help="CDN mirror serving <name>/info.json and tarballs",
                        action="store",
                        type=str)
    parser.add_argument("--install-root",
                        dest="INSTALL_ROOT",
                        help="Directory that holds installed versions",
                        action="store",
                        type=str)
    parser.add_argument("--period",
                        dest="PERIOD",
                        help="Seconds between polls",
                        action="store",
                        type=float)
    parser.add_argument("--dependencies",
                        dest="DEPENDENCIES",
                        help="Also install the declared dependencies of the package.",
                        action="store_true")
    parser.add_argument("--child-module",
                        dest="CHILD_MODULES",
                        help="Restrict dependency installs to this module (repeatable)",
                        action="append",
                        type=str)
    parser.add_argument("--no-fallback",
                        dest="NO_FALLBACK",
                        help="Do not fall back to a locally installed copy on errors.",
                        action="store_true")
    parser.add_argument("--config",
                        dest="CONFIG",
                        help="Path to a YAML or JSON config file",
                        action="store",
                        type=str)
    parser.add_argument("--loglevel",
                        dest="LOG_LEVEL",
                        help="Set the logging level",
                        action="store",
                        type=str,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        default='INFO')
    parser.add_argument("--logfile",
                        dest="LOG_FILE",
                        help="Log output file",
                        action="store",
                        type=str)


def build_parser() -> argparse.ArgumentParser:
    """Build the top-level parser with its ``resolve`` and ``watch`` commands."""
    parser = argparse.ArgumentParser(
        prog="distwatch",
        description="Keep an npm dist-tag installed on local disk",
        add_help=True,
    )
    subparsers = parser.add_subparsers(dest="COMMAND", required=True)

    resolve = subparsers.add_parser(
        "resolve",
        help="Poll once and print the installed module details as JSON",
    )
    _add_shared_arguments(resolve)
    resolve.add_argument("--tag",
                         dest="TAGS",
                         help="Dist-tag to resolve (default: latest)",
                         action="store",
                         type=str,
                         default=DistTag.LATEST.value)

    watch = subparsers.add_parser(
        "watch",
        help="Keep polling until interrupted",
    )
    _add_shared_arguments(watch)
    watch.add_argument("--tag",
                       dest="TAGS",
                       help="Dist-tag to watch (repeatable, default: latest)",
                       action="append",
                       type=str)
    return parser


def parse_args(argv=None):
    """Parses the arguments passed to the program."""
    return build_parser().parse_args(argv)
