"""boxpm - dependency resolver and package installer.

    Returns:
        int: Exit code (see constants.ExitCodes)
"""
import json
import logging
import signal
import sys
from pathlib import Path

from args import parse_args
from common.logging_utils import configure_logging, extra_context, is_debug_enabled
from constants import ExitCodes
from context import InstallOptions
from service import PackageService, ResultCode, RunResult
from settings import load_settings

EXIT_CODES = {
    ResultCode.SUCCESS: ExitCodes.SUCCESS,
    ResultCode.RESOLUTION_FAILED: ExitCodes.RESOLUTION_FAILED,
    ResultCode.NETWORK_FAILED: ExitCodes.CONNECTION_ERROR,
    ResultCode.PARTIAL_INSTALL_FAILED: ExitCodes.PARTIAL_INSTALL_FAILED,
    ResultCode.PERSISTENCE_FAILED: ExitCodes.PERSISTENCE_FAILED,
    ResultCode.CANCELLED: ExitCodes.CANCELLED,
}


def parse_overrides(pairs):
    """Turn ``KEY=VALUE`` strings into a settings override mapping."""
    overrides = {}
    for pair in pairs or []:
        if "=" not in pair:
            logging.warning("Ignoring malformed --set value: %s", pair)
            continue
        key, value = pair.split("=", 1)
        overrides[key.strip().replace("-", "_")] = value.strip()
    return overrides


def print_result(result: RunResult, as_json: bool) -> None:
    """Render the outcome on stdout."""
    if as_json:
        print(json.dumps(result.to_dict(), indent=2))
        return
    if result.plan is not None:
        for op in result.plan.mutating:
            print(f"  {op}")
        if result.plan.is_noop:
            print("  up to date")
    for diagnostic in result.diagnostics:
        print(f"error: {diagnostic.get('message')}", file=sys.stderr)
        for failure in diagnostic.get("failures") or []:
            print(f"  {failure.get('package')}: {failure.get('message')}", file=sys.stderr)


def run_command(args, service: PackageService) -> RunResult:
    options = InstallOptions(
        dev=not args.PRODUCTION,
        strict=args.STRICT,
        force=getattr(args, "FORCE", False),
        save_dev=getattr(args, "SAVE_DEV", False),
    )
    manifest = Path(args.MANIFEST)
    command = args.COMMAND
    if command in ("install", "add", "i"):
        return service.install(manifest, options, packages=args.PACKAGES)
    if command in ("update", "up"):
        return service.update(manifest, args.PACKAGES, options)
    if command in ("remove", "rm", "uninstall"):
        return service.remove(manifest, args.PACKAGES, options)
    return service.resolve(manifest, options)


def main(argv=None):
    """Main function of the program."""
    logger = logging.getLogger(__name__)
    args = parse_args(argv)
    configure_logging(level=args.LOG_LEVEL, log_file=args.LOG_FILE, quiet=args.QUIET)

    manifest = Path(args.MANIFEST)
    project_dir = manifest.absolute().parent
    settings = load_settings(
        project_dir,
        config_path=Path(args.CONFIG) if args.CONFIG else None,
        overrides=parse_overrides(args.SETTINGS),
    )
    service = PackageService(settings=settings)

    def _interrupt(signum, frame):  # pylint: disable=unused-argument
        logger.warning("Interrupt received; stopping at the next safe point")
        service.cancel()

    previous = signal.signal(signal.SIGINT, _interrupt)
    if is_debug_enabled(logger):
        logger.debug(
            "CLI start",
            extra=extra_context(event="function_entry", component="cli", action=args.COMMAND)
        )
    try:
        result = run_command(args, service)
    finally:
        signal.signal(signal.SIGINT, previous)

    if not args.QUIET:
        print_result(result, args.JSON)
    sys.exit(EXIT_CODES[result.code].value)


if __name__ == "__main__":
    main()
