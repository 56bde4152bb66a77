#!/usr/bin/env python3
"""
Command-line entry point: ``aura-deploy [linux|windows|macos|all]``.

Exit codes: 0 when every non-skipped target reached its success terminal,
1 when any target failed, 2 on a malformed invocation.
"""

import argparse
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from rich.console import Console

from config.logging_config import get_logger, setup_logging
from config.settings import Settings

from .core.command import CommandRunner
from .core.error_handling import ManifestError, UnknownPlatformError
from .manifest import load_manifest
from .orchestrator import DeployOptions, Orchestrator
from .platforms import detect_host_signal
from .services import CancelToken

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="aura-deploy",
        description="Build, package, install and start AuraDB as a native system service",
    )

    parser.add_argument(
        "target",
        nargs="?",
        default=None,
        help="Target platform: linux, windows, macos or all (default: all)",
    )
    parser.add_argument("--manifest", type=Path, help="YAML deployment manifest")
    parser.add_argument("--workspace", type=Path, help="Cargo workspace root")
    parser.add_argument("--output-dir", type=Path, help="Directory receiving packages")
    parser.add_argument(
        "--package-only",
        action="store_true",
        default=None,
        help="Stop after producing packages; do not install",
    )
    parser.add_argument(
        "--parallel",
        action="store_true",
        default=None,
        help="Run targets concurrently",
    )
    parser.add_argument(
        "--start-timeout",
        type=float,
        help="Seconds to wait for the service to report running",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        help="Seconds between service status checks",
    )
    parser.add_argument(
        "--run-timeout",
        type=float,
        help="Cancel outstanding start-up checks after this many seconds",
    )
    parser.add_argument(
        "--host-signal",
        help="Override the host platform signal (e.g. linux-gnu, darwin23, msys)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
        help="Logging level",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Log external tool output",
    )

    return parser.parse_args(argv)


def settings_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Settings fields given explicitly on the command line."""
    mapping = {
        "manifest": "manifest_path",
        "workspace": "workspace_dir",
        "output_dir": "output_dir",
        "package_only": "package_only",
        "parallel": "parallel",
        "start_timeout": "start_timeout",
        "poll_interval": "poll_interval",
        "run_timeout": "run_timeout",
        "host_signal": "host_signal",
        "log_level": "log_level",
    }
    overrides = {}
    for arg, field_name in mapping.items():
        value = getattr(args, arg)
        if value is not None:
            overrides[field_name] = value
    return overrides


def options_from_settings(settings: Settings) -> DeployOptions:
    return DeployOptions(
        workspace=settings.workspace_dir,
        output_dir=settings.output_dir,
        staging_dir=settings.staging_dir,
        install_root=settings.install_root,
        package_only=settings.package_only,
        parallel=settings.parallel,
        start_timeout=settings.start_timeout,
        poll_interval=settings.poll_interval,
        run_timeout=settings.run_timeout,
        winsw=settings.winsw_path,
    )


def install_interrupt_handler(cancel: CancelToken):
    """First Ctrl-C cancels the run gracefully; a second one aborts. Returns the previous handler."""

    def handle(signum, frame):
        logger.warning("Interrupted, cancelling outstanding work")
        cancel.cancel()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    return signal.signal(signal.SIGINT, handle)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_arguments(argv)
    console = Console()
    error_console = Console(stderr=True)

    try:
        settings = Settings(**settings_overrides(args))
    except ValidationError as e:
        error_console.print(f"Invalid configuration:\n{e}", markup=False)
        return EXIT_USAGE

    setup_logging(level=settings.log_level, log_file=settings.log_file, log_dir=settings.log_dir)

    try:
        manifest = load_manifest(settings.manifest_path)
    except ManifestError as e:
        logger.error("Invalid manifest", source=e.context.get("source"), error=e.message)
        error_console.print(f"Invalid manifest: {e.message}", markup=False)
        return EXIT_USAGE

    cancel = CancelToken()
    previous_handler = install_interrupt_handler(cancel)

    orchestrator = Orchestrator(
        manifest,
        options_from_settings(settings),
        host_signal=detect_host_signal(settings.host_signal),
        runner=CommandRunner(verbose=args.verbose, timeout=settings.command_timeout),
        cancel=cancel,
    )

    try:
        summary = orchestrator.run(args.target)
    except UnknownPlatformError as e:
        error_console.print(e.message, markup=False)
        return EXIT_USAGE
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    console.print(summary.digest(), markup=False, highlight=False)
    return EXIT_OK if summary.exit_code() == 0 else EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
