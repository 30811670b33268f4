"""
Command line interface for the WolfServe upgrader.

Usage:
    wolfserve-upgrade upgrade [BINARY] [--build]
    wolfserve-upgrade rollback
    wolfserve-upgrade status [--json]
    wolfserve-upgrade help

Without BINARY, ``upgrade`` looks for an existing build next to the source
checkout and falls back to building one.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from collections.abc import Callable, Coroutine, Sequence
from pathlib import Path
from typing import Any, NoReturn, TextIO

from wolfserve_upgrader import __version__
from wolfserve_upgrader.config import AppConfig, load_config
from wolfserve_upgrader.errors import (
    InternalError,
    LockContentionError,
    PermissionDeniedError,
    RollbackFailedError,
    UpgradeError,
)
from wolfserve_upgrader.exit_codes import ExitCode
from wolfserve_upgrader.logging import get_logger, setup_logging
from wolfserve_upgrader.upgrades.backups import BackupStore
from wolfserve_upgrader.upgrades.health_check import HealthProber
from wolfserve_upgrader.upgrades.locking import UpgradeLock
from wolfserve_upgrader.upgrades.resolver import BinaryResolver
from wolfserve_upgrader.upgrades.service import (
    ServiceController,
    ServiceSupervisor,
    SystemdController,
)
from wolfserve_upgrader.upgrades.state_machine import UpgradeOrchestrator, UpgradeOutcome
from wolfserve_upgrader.upgrades.status import StatusReport, collect_status

logger = get_logger(__name__)

ENVIRONMENT_HELP = """\
environment variables:
  WOLFSERVE_DIR       installation directory (default: /opt/wolfserve)
  WOLFSERVE_SOURCE    source directory for building (default: current directory)
  HEALTH_CHECK_URL    health check URL (default: http://127.0.0.1:3000/)
  WOLFSERVE_UPGRADER_<SECTION>__<KEY>
                      any configuration key, e.g. WOLFSERVE_UPGRADER_UPGRADE__MAX_BACKUPS=3

examples:
  sudo wolfserve-upgrade upgrade                             # auto-find or build
  sudo wolfserve-upgrade upgrade --build                     # force rebuild
  sudo wolfserve-upgrade upgrade ./target/release/wolfserve  # use specific binary
  sudo wolfserve-upgrade rollback                            # rollback to previous
"""


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(ExitCode.USAGE, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = _ArgumentParser(
        prog="wolfserve-upgrade",
        description="Upgrade the WolfServe binary with automatic rollback.",
        epilog=ENVIRONMENT_HELP,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", "-c", type=str, help="Path to configuration file")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    upgrade = subparsers.add_parser(
        "upgrade",
        help="Install a new binary, verify it and roll back on failure",
    )
    upgrade.add_argument(
        "binary",
        nargs="?",
        help="New binary (default: auto-find, or build from source)",
    )
    upgrade.add_argument(
        "--build",
        action="store_true",
        help="Force a rebuild from source before upgrading",
    )

    subparsers.add_parser("rollback", help="Restore the most recent backup")

    status = subparsers.add_parser("status", help="Show version, service and backups")
    status.add_argument("--json", action="store_true", help="Emit the report as JSON")

    subparsers.add_parser("help", help="Show this help")

    return parser


def _config_overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if args.log_level:
        overrides.setdefault("logging", {})["level"] = args.log_level
    if args.json_logs:
        overrides.setdefault("logging", {})["json_format"] = True
    return overrides


# =============================================================================
# Wiring
# =============================================================================


def build_supervisor(
    config: AppConfig,
    controller: ServiceController | None = None,
) -> ServiceSupervisor:
    """Create the service supervisor from configuration."""
    if controller is None:
        controller = SystemdController(
            systemctl_bin=config.service.systemctl_bin,
            command_timeout=config.service.command_timeout,
        )
    return ServiceSupervisor(
        controller,
        config.service.name,
        stop_timeout=config.upgrade.stop_timeout,
        poll_interval=config.upgrade.stop_poll_interval,
        settle_delay=config.upgrade.start_settle_delay,
    )


def build_store(config: AppConfig) -> BackupStore:
    """Create the backup store from configuration."""
    return BackupStore(
        config.upgrade.backup_path,
        config.service.binary_name,
        max_backups=config.upgrade.max_backups,
    )


def build_orchestrator(
    config: AppConfig,
    controller: ServiceController | None = None,
) -> UpgradeOrchestrator:
    """Wire an orchestrator from configuration."""
    prober = HealthProber(
        config.health.url,
        timeout=config.health.timeout,
        interval=config.health.interval,
        probe_timeout=config.health.probe_timeout,
        require_success_status=config.health.require_success_status,
    )
    return UpgradeOrchestrator(
        config.install_path,
        build_store(config),
        build_supervisor(config, controller),
        prober,
        UpgradeLock(config.upgrade.lock_path),
        config.upgrade.journal_path,
        health_url=config.health.url,
    )


def build_resolver(config: AppConfig) -> BinaryResolver:
    """Create the binary resolver from configuration."""
    return BinaryResolver(
        config.service.binary_name,
        config.source_dir,
        manifest=config.build.manifest,
        build_command=config.build.command,
        build_output=config.build.output,
        build_timeout=config.build.timeout,
    )


def check_root(config: AppConfig) -> None:
    """
    Refuse to mutate the install directory without root privileges.

    Raises:
        PermissionDeniedError: If not root and ``require_root`` is set.
    """
    if config.upgrade.require_root and os.geteuid() != 0:
        raise PermissionDeniedError(
            "This command must be run as root (use sudo)",
            details={"euid": os.geteuid()},
        )


# =============================================================================
# Output
# =============================================================================


def _human_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "K", "M", "G"):
        if value < 1024 or unit == "G":
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}G"


def _human_age(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.0f}s ago"
    if seconds < 3600:
        return f"{seconds / 60:.0f}m ago"
    if seconds < 86400:
        return f"{seconds / 3600:.1f}h ago"
    return f"{seconds / 86400:.1f}d ago"


def print_outcome(outcome: UpgradeOutcome, out: TextIO = sys.stdout) -> None:
    """Print the classification line for a terminal outcome."""
    print(f"result: {outcome.classification.value}", file=out)
    if outcome.error is not None:
        print(f"error: {outcome.error.error_code}", file=out)
    print(f"message: {outcome.message}", file=out)


def print_error(error: UpgradeError, out: TextIO = sys.stdout) -> None:
    """Print the classification lines for an attempt that raised."""
    print("result: failed", file=out)
    cause = error.details.get("cause") if isinstance(error, RollbackFailedError) else None
    suffix = f" (cause: {cause})" if cause else ""
    print(f"error: {error.error_code}{suffix}", file=out)
    print(f"message: {error.message}", file=out)


def print_status(report: StatusReport, out: TextIO = sys.stdout) -> None:
    """Render a status report for humans."""
    print("=== WolfServe Status ===", file=out)
    print(f"Install directory: {report.install_dir}", file=out)
    print(f"Current version: {report.version}", file=out)
    print("", file=out)
    print(f"Service status: {report.run_state.value.replace('_', ' ')}", file=out)
    print("", file=out)
    print("Available backups:", file=out)
    if report.backups:
        for backup in report.backups:
            print(
                f"  {backup.path} ({_human_size(backup.size_bytes)}, "
                f"{_human_age(backup.age_seconds)})",
                file=out,
            )
    else:
        print("  (none)", file=out)

    if report.problems:
        print("", file=out)
        print("Problems detected:", file=out)
        for problem in report.problems:
            print(f"  - {problem}", file=out)


# =============================================================================
# Commands
# =============================================================================


async def _run_upgrade(
    config: AppConfig,
    orchestrator: UpgradeOrchestrator,
    binary: str | None,
    force_build: bool,
) -> UpgradeOutcome:
    if binary is None:
        candidate = await build_resolver(config).resolve(force_build=force_build)
    else:
        candidate = Path(binary)
    return await orchestrator.upgrade(candidate)


async def _collect_status(
    config: AppConfig,
    controller: ServiceController | None,
) -> StatusReport:
    return await collect_status(
        config.install_path,
        build_store(config),
        build_supervisor(config, controller),
        UpgradeLock(config.upgrade.lock_path),
        config.upgrade.journal_path,
    )


def _execute(
    coro_factory: Callable[[], Coroutine[Any, Any, UpgradeOutcome]],
    out: TextIO,
) -> int:
    try:
        outcome: UpgradeOutcome = asyncio.run(coro_factory())
    except RollbackFailedError as e:
        print_error(e, out)
        return ExitCode.FAILED
    except LockContentionError as e:
        print_error(e, out)
        return ExitCode.LOCK_CONTENTION
    except UpgradeError as e:
        logger.error(e.message)
        print_error(e, out)
        return ExitCode.ERROR
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        print_error(InternalError(f"Unexpected error: {type(e).__name__}: {e}"), out)
        return ExitCode.ERROR

    print_outcome(outcome, out)
    if outcome.succeeded:
        return ExitCode.OK
    return ExitCode.ROLLED_BACK


def main(
    argv: Sequence[str] | None = None,
    *,
    controller: ServiceController | None = None,
    out: TextIO | None = None,
) -> int:
    """
    Entry point for ``wolfserve-upgrade``.

    Args:
        argv: Arguments (defaults to ``sys.argv[1:]``).
        controller: Service controller to use instead of systemd.
        out: Stream for command output (defaults to stdout).

    Returns:
        Process exit code.
    """
    out = out or sys.stdout
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command in (None, "help"):
        parser.print_help(out)
        return ExitCode.OK if args.command == "help" else ExitCode.USAGE

    if args.command == "upgrade" and args.binary is not None and args.build:
        parser.error("--build cannot be combined with an explicit binary path")

    try:
        config = load_config(args.config, overrides=_config_overrides(args))
    except UpgradeError as e:
        print(f"error: {e.error_code}: {e.message}", file=sys.stderr)
        return ExitCode.ERROR

    setup_logging(config.logging)

    try:
        if args.command == "status":
            report = asyncio.run(_collect_status(config, controller))
            if args.json:
                print(report.model_dump_json(indent=2), file=out)
            else:
                print_status(report, out)
            return ExitCode.OK

        try:
            check_root(config)
        except PermissionDeniedError as e:
            logger.error(e.message)
            print_error(e, out)
            return ExitCode.ERROR

        orchestrator = build_orchestrator(config, controller)

        if args.command == "rollback":
            return _execute(orchestrator.rollback, out)

        return _execute(
            lambda: _run_upgrade(config, orchestrator, args.binary, args.build),
            out,
        )
    except KeyboardInterrupt:
        logger.error("Interrupted; run 'wolfserve-upgrade status' to inspect the install")
        return ExitCode.INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
