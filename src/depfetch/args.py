"""Argument parsing for the depfetch command."""

import argparse

from depfetch.constants import Constants, VERSION


def _add_common(parser):
    parser.add_argument("-c", "--config",
                        dest="CONFIG",
                        help="Path to configuration file (YAML, YML, or JSON)",
                        action="store",
                        type=str)
    parser.add_argument("--source",
                        dest="SOURCES",
                        help="Registry URI to use; repeat for several, highest priority first",
                        action="append",
                        type=str,
                        default=[])
    parser.add_argument("--local",
                        dest="LOCAL",
                        help="Do not contact registries; use cached and installed packages only.",
                        action="store_true")
    parser.add_argument("--full-index",
                        dest="FULL_INDEX",
                        help="Always download the full registry index instead of querying by name.",
                        action="store_true")
    parser.add_argument("-j", "--jobs",
                        dest="JOBS",
                        help="Number of registries queried concurrently (default: 1)",
                        action="store",
                        type=int)
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
    parser.add_argument("-q", "--quiet",
                        dest="QUIET",
                        help="Only print warnings and errors.",
                        action="store_true")
    parser.add_argument("packages",
                        metavar="PACKAGE",
                        help="Package to select: NAME, NAME:VERSION or NAME==VERSION",
                        nargs="+")


def build_parser():
    """Build the top-level parser with its subcommands."""
    parser = argparse.ArgumentParser(
        prog=Constants.SELF_NAME,
        description="depfetch - aggregate package registries and install packages",
        add_help=True,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    subparsers = parser.add_subparsers(dest="COMMAND", metavar="COMMAND")
    subparsers.required = True

    install = subparsers.add_parser("install", help="Install packages")
    _add_common(install)
    target = install.add_mutually_exclusive_group()
    target.add_argument("--path",
                        dest="PATH",
                        help="Install into this directory",
                        action="store",
                        type=str)
    target.add_argument("--system",
                        dest="SYSTEM",
                        help=f"Install into the system location ({Constants.SYSTEM_INSTALL_PATH})",
                        action="store_true")
    install.add_argument("--trust-policy",
                         dest="TRUST_POLICY",
                         help="Artifact trust policy",
                         action="store",
                         type=str,
                         choices=Constants.SUPPORTED_TRUST_POLICIES)
    install.add_argument("--no-install",
                         dest="NO_INSTALL",
                         help="Download and cache artifacts without installing them.",
                         action="store_true")
    install.add_argument("--force",
                         dest="FORCE",
                         help="Reinstall packages that are already installed.",
                         action="store_true")
    install.add_argument("--cache",
                         dest="CACHE",
                         help="Also copy the artifacts into the project cache (vendor/cache).",
                         action="store_true")
    install.add_argument("--ignore-messages",
                         dest="IGNORE_MESSAGES",
                         help="Do not print post-install messages.",
                         action="store_true")

    lock = subparsers.add_parser("lock", help="Print the lockfile section for the selected packages")
    _add_common(lock)
    return parser


def parse_args(argv=None):
    """Parses the arguments passed to the program."""
    return build_parser().parse_args(argv)
