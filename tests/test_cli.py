"""
Tests for the command line interface.

The CLI is driven through ``main()`` with an in-memory service controller
and a patched health prober; configuration comes from the environment.
"""

from __future__ import annotations

import io
import json
from unittest.mock import AsyncMock, patch

import pytest

from wolfserve_upgrader.cli import build_parser, check_root, main
from wolfserve_upgrader.config import AppConfig, UpgradeConfig
from wolfserve_upgrader.errors import PermissionDeniedError
from wolfserve_upgrader.exit_codes import ExitCode
from wolfserve_upgrader.upgrades.backups import BackupStore
from wolfserve_upgrader.upgrades.health_check import HealthCheckResult, HealthProber
from wolfserve_upgrader.upgrades.state_machine import UpgradeOrchestrator


@pytest.fixture
def cli_env(install, monkeypatch: pytest.MonkeyPatch):
    """Point the CLI at the temporary install and make it fast."""
    for var in ("WOLFSERVE_DIR", "WOLFSERVE_SOURCE", "HEALTH_CHECK_URL"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("WOLFSERVE_DIR", str(install.install_dir))
    monkeypatch.setenv("WOLFSERVE_UPGRADER_UPGRADE__REQUIRE_ROOT", "false")
    monkeypatch.setenv("WOLFSERVE_UPGRADER_UPGRADE__START_SETTLE_DELAY", "0")
    monkeypatch.setenv("WOLFSERVE_UPGRADER_UPGRADE__STOP_TIMEOUT", "0.2")
    monkeypatch.setenv("WOLFSERVE_UPGRADER_UPGRADE__STOP_POLL_INTERVAL", "0.01")
    return install


def _healthy(passed: bool = True):
    return patch.object(
        HealthProber,
        "check",
        AsyncMock(return_value=HealthCheckResult("http_health", passed, "scripted")),
    )


def _run(env, *argv: str) -> tuple[int, str]:
    out = io.StringIO()
    code = main(list(argv), controller=env.controller, out=out)
    return code, out.getvalue()


class TestParser:
    """Tests for argument parsing."""

    def test_no_command(self) -> None:
        out = io.StringIO()
        assert main([], out=out) == ExitCode.USAGE
        assert "upgrade" in out.getvalue()

    def test_help(self) -> None:
        out = io.StringIO()
        assert main(["help"], out=out) == ExitCode.OK
        assert "WOLFSERVE_DIR" in out.getvalue()

    def test_unknown_command(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(["deploy"])
        assert exc_info.value.code == ExitCode.USAGE

    def test_upgrade_arguments(self) -> None:
        args = build_parser().parse_args(["upgrade", "--build"])
        assert args.command == "upgrade"
        assert args.build is True
        assert args.binary is None


class TestUpgradeCommand:
    """Tests for 'upgrade'."""

    def test_commit(self, cli_env) -> None:
        candidate = cli_env.candidate("2.0")

        with _healthy():
            code, output = _run(cli_env, "upgrade", str(candidate))

        assert code == ExitCode.OK
        assert "result: committed" in output
        assert cli_env.install_path.read_bytes() == candidate.read_bytes()

    def test_rolled_back(self, cli_env) -> None:
        old_bytes = cli_env.install_path.read_bytes()

        with _healthy(False):
            code, output = _run(cli_env, "upgrade", str(cli_env.candidate("2.0")))

        assert code == ExitCode.ROLLED_BACK
        assert "result: rolled_back" in output
        assert "error: health_check_timeout" in output
        assert cli_env.install_path.read_bytes() == old_bytes

    def test_rollback_failed(self, cli_env) -> None:
        cli_env.controller.start_succeeds = [False, False]

        with _healthy():
            code, output = _run(cli_env, "upgrade", str(cli_env.candidate("2.0")))

        assert code == ExitCode.FAILED
        assert "result: failed" in output
        assert "error: rollback_failed (cause: service_start_failed)" in output

    def test_lock_contention(self, cli_env) -> None:
        with cli_env.lock.acquire("upgrade"), _healthy():
            code, output = _run(cli_env, "upgrade", str(cli_env.candidate("2.0")))

        assert code == ExitCode.LOCK_CONTENTION
        assert "error: lock_contention" in output

    def test_unexpected_error_is_classified(self, cli_env) -> None:
        with patch.object(
            UpgradeOrchestrator,
            "upgrade",
            AsyncMock(side_effect=RuntimeError("event loop exploded")),
        ):
            code, output = _run(cli_env, "upgrade", str(cli_env.candidate("2.0")))

        assert code == ExitCode.ERROR
        assert "result: failed" in output
        assert "error: internal_error" in output
        assert "RuntimeError" in output

    def test_lock_unavailable(self, cli_env, monkeypatch: pytest.MonkeyPatch) -> None:
        blocker = cli_env.root / "run"
        blocker.write_text("not a directory")
        monkeypatch.setenv("WOLFSERVE_UPGRADER_UPGRADE__LOCK_FILE", str(blocker / "ws.lock"))

        with _healthy():
            code, output = _run(cli_env, "upgrade", str(cli_env.candidate("2.0")))

        assert code == ExitCode.ERROR
        assert "result: failed" in output
        assert "error: lock_unavailable" in output
        assert cli_env.controller.calls == []

    def test_missing_binary(self, cli_env) -> None:
        code, output = _run(cli_env, "upgrade", str(cli_env.root / "missing"))

        assert code == ExitCode.ERROR
        assert "error: no_candidate_binary" in output

    def test_auto_find(self, cli_env, monkeypatch: pytest.MonkeyPatch, make_binary) -> None:
        """Test the candidate is found in the source directory."""
        source = cli_env.root / "src"
        built = make_binary(source / "target" / "release" / "wolfserve", "2.0")
        monkeypatch.setenv("WOLFSERVE_SOURCE", str(source))

        with _healthy():
            code, _ = _run(cli_env, "upgrade")

        assert code == ExitCode.OK
        assert cli_env.install_path.read_bytes() == built.read_bytes()

    def test_build_with_binary_rejected(self, cli_env) -> None:
        with pytest.raises(SystemExit) as exc_info:
            _run(cli_env, "upgrade", "--build", str(cli_env.candidate("2.0")))
        assert exc_info.value.code == ExitCode.USAGE

    def test_requires_root(self, cli_env, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("WOLFSERVE_UPGRADER_UPGRADE__REQUIRE_ROOT", "true")

        with patch("wolfserve_upgrader.cli.os.geteuid", return_value=1000):
            code, output = _run(cli_env, "upgrade", str(cli_env.candidate("2.0")))

        assert code == ExitCode.ERROR
        assert "error: permission_denied" in output
        assert cli_env.controller.calls == []

    def test_interrupted(self, cli_env) -> None:
        def interrupt(coro):
            coro.close()
            raise KeyboardInterrupt

        with patch("wolfserve_upgrader.cli.asyncio.run", side_effect=interrupt):
            code, _ = _run(cli_env, "upgrade", str(cli_env.candidate("2.0")))

        assert code == ExitCode.INTERRUPTED

    def test_invalid_config(self, cli_env, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("WOLFSERVE_UPGRADER_UPGRADE__MAX_BACKUPS", "0")

        code, _ = _run(cli_env, "status")

        assert code == ExitCode.ERROR


class TestRollbackCommand:
    """Tests for 'rollback'."""

    def test_no_backup(self, cli_env) -> None:
        code, output = _run(cli_env, "rollback")

        assert code == ExitCode.ERROR
        assert "error: no_backup_available" in output
        assert cli_env.controller.calls == []

    def test_rollback(self, cli_env) -> None:
        old_bytes = cli_env.install_path.read_bytes()
        with _healthy():
            _run(cli_env, "upgrade", str(cli_env.candidate("2.0")))
            code, output = _run(cli_env, "rollback")

        assert code == ExitCode.OK
        assert "result: rolled_back" in output
        assert cli_env.install_path.read_bytes() == old_bytes


class TestStatusCommand:
    """Tests for 'status'."""

    def test_text(self, cli_env) -> None:
        code, output = _run(cli_env, "status")

        assert code == ExitCode.OK
        assert "=== WolfServe Status ===" in output
        assert "Current version: wolfserve 1.0" in output
        assert "Service status: running" in output
        assert "(none)" in output

    def test_json(self, cli_env) -> None:
        cli_env.store.snapshot(cli_env.install_path)

        code, output = _run(cli_env, "status", "--json")

        data = json.loads(output)
        assert code == ExitCode.OK
        assert data["version"] == "wolfserve 1.0"
        assert len(data["backups"]) == 1

    def test_status_with_unreadable_files(self, cli_env, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test status reports unreadable state instead of failing."""
        monkeypatch.setenv("WOLFSERVE_UPGRADER_UPGRADE__REQUIRE_ROOT", "true")
        cli_env.lock_path.touch()
        denied = PermissionError(13, "Permission denied")

        with patch("wolfserve_upgrader.cli.os.geteuid", return_value=1000), patch(
            "wolfserve_upgrader.upgrades.locking.open", side_effect=denied, create=True
        ), patch.object(BackupStore, "list_records", side_effect=denied):
            code, output = _run(cli_env, "status")

        assert code == ExitCode.OK
        assert "Current version: wolfserve 1.0" in output
        assert "Problems detected:" in output
        assert "Cannot inspect lock" in output
        assert "Cannot read backup directory" in output


class TestCheckRoot:
    """Tests for check_root()."""

    def test_not_root(self) -> None:
        with patch("wolfserve_upgrader.cli.os.geteuid", return_value=1000), \
                pytest.raises(PermissionDeniedError):
            check_root(AppConfig())

    def test_disabled(self) -> None:
        config = AppConfig(upgrade=UpgradeConfig(require_root=False))
        with patch("wolfserve_upgrader.cli.os.geteuid", return_value=1000):
            check_root(config)

    def test_root(self) -> None:
        with patch("wolfserve_upgrader.cli.os.geteuid", return_value=0):
            check_root(AppConfig())
