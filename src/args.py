"""Argument parsing functionality for boxpm."""

import argparse

from constants import Constants


def _add_common(parser):
    """Options shared by every subcommand."""
    parser.add_argument("-m", "--manifest",
                        dest="MANIFEST",
                        help=f"Path to the project manifest (default: ./{Constants.MANIFEST_FILE})",
                        action="store",
                        type=str,
                        default=Constants.MANIFEST_FILE)
    parser.add_argument("-c", "--config",
                        dest="CONFIG",
                        help="Path to configuration file (YAML, YML, or JSON)",
                        action="store",
                        type=str)
    parser.add_argument("--set",
                        dest="SETTINGS",
                        help="Override a setting (KEY=VALUE format, can be used multiple times)",
                        action="append",
                        type=str,
                        default=[])
    parser.add_argument("--production",
                        dest="PRODUCTION",
                        help="Skip devDependencies.",
                        action="store_true")
    parser.add_argument("--strict",
                        dest="STRICT",
                        help="Fail on version conflicts instead of nesting private copies.",
                        action="store_true")
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
                        help="Do not output to console.",
                        action="store_true")
    parser.add_argument("--json",
                        dest="JSON",
                        help="Print the run result as JSON.",
                        action="store_true")


def build_parser():
    """Build the top-level parser with its subcommands."""
    parser = argparse.ArgumentParser(
        prog="boxpm",
        description="boxpm - dependency resolver and package installer",
        add_help=True,
    )
    sub = parser.add_subparsers(dest="COMMAND", metavar="<command>")
    sub.required = True

    install = sub.add_parser("install", aliases=["add", "i"], help="Install dependencies (and add packages)")
    install.add_argument("PACKAGES", nargs="*", help="Packages to add, e.g. foo@^1.2 or github:owner/repo#v1")
    install.add_argument("-D", "--save-dev",
                         dest="SAVE_DEV",
                         help="Record added packages under devDependencies.",
                         action="store_true")
    install.add_argument("-f", "--force",
                         dest="FORCE",
                         help="Reinstall every package and ignore the lock fast path.",
                         action="store_true")
    _add_common(install)

    update = sub.add_parser("update", aliases=["up"], help="Re-resolve ignoring locked versions")
    update.add_argument("PACKAGES", nargs="*", help="Packages to update (default: all)")
    _add_common(update)

    remove = sub.add_parser("remove", aliases=["rm", "uninstall"], help="Remove packages from the manifest")
    remove.add_argument("PACKAGES", nargs="+", help="Packages to remove")
    _add_common(remove)

    resolve = sub.add_parser("resolve", aliases=["plan"], help="Show what install would do")
    _add_common(resolve)

    return parser


def parse_args(argv=None):
    """Parses the arguments passed to the program."""
    return build_parser().parse_args(argv)
