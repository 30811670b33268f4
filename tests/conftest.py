"""
Pytest configuration and shared fixtures for the WolfServe upgrader tests.

Service control is faked in memory and health probing is scripted, so the
state machine can be driven through every path without systemd or a
network. Binaries are small shell scripts that answer ``--version``.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from collections.abc import Iterator
from pathlib import Path

import pytest

from wolfserve_upgrader.upgrades.backups import BackupStore
from wolfserve_upgrader.upgrades.health_check import HealthCheckResult
from wolfserve_upgrader.upgrades.locking import UpgradeLock
from wolfserve_upgrader.upgrades.service import ServiceSupervisor
from wolfserve_upgrader.upgrades.state_machine import UpgradeOrchestrator

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


def write_binary(path: Path, version: str) -> Path:
    """Write an executable shell script that prints *version*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"#!/bin/sh\necho 'wolfserve {version}'\n")
    os.chmod(path, 0o755)
    return path


class FakeController:
    """
    In-memory ServiceController.

    Attributes:
        running: Current run state.
        start_succeeds: Whether a start leaves the service running. May be a
            list consumed one entry per start call.
        stop_hangs: Whether a graceful stop is ignored.
        calls: Ordered log of (verb, name) calls.
    """

    def __init__(
        self,
        *,
        running: bool = True,
        start_succeeds: bool | list[bool] = True,
        stop_hangs: bool = False,
    ) -> None:
        self.running = running
        self.start_succeeds = start_succeeds
        self.stop_hangs = stop_hangs
        self.calls: list[tuple[str, str]] = []

    async def start(self, name: str) -> bool:
        self.calls.append(("start", name))
        if isinstance(self.start_succeeds, list):
            outcome = self.start_succeeds.pop(0)
        else:
            outcome = self.start_succeeds
        self.running = outcome
        return True

    async def stop(self, name: str) -> bool:
        self.calls.append(("stop", name))
        if not self.stop_hangs:
            self.running = False
        return True

    async def is_running(self, name: str) -> bool:
        return self.running

    async def force_kill(self, name: str) -> bool:
        self.calls.append(("force_kill", name))
        self.running = False
        return True

    def verbs(self) -> list[str]:
        return [verb for verb, _ in self.calls]


class ScriptedProber:
    """Health prober returning pre-scripted results, one per check."""

    def __init__(self, *results: bool) -> None:
        self.results = list(results) or [True]
        self.urls: list[str | None] = []

    async def check(self, url: str | None = None, **_kwargs: object) -> HealthCheckResult:
        self.urls.append(url)
        passed = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        return HealthCheckResult(
            name="http_health",
            passed=passed,
            message="ok" if passed else "No successful probe within 0.1s",
        )

    @property
    def calls(self) -> int:
        return len(self.urls)


class Install:
    """Bundle of paths and collaborators around one temporary install dir."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.install_dir = root / "opt" / "wolfserve"
        self.install_path = self.install_dir / "wolfserve"
        self.backup_dir = self.install_dir / "backups"
        self.lock_path = self.install_dir / ".upgrade.lock"
        self.journal_path = self.install_dir / ".upgrade_state.json"
        self.controller = FakeController()
        self.prober = ScriptedProber(True)
        self.store = BackupStore(self.backup_dir, "wolfserve", max_backups=5)
        self.lock = UpgradeLock(self.lock_path)

    def supervisor(self) -> ServiceSupervisor:
        return ServiceSupervisor(
            self.controller,
            "wolfserve",
            stop_timeout=0.2,
            poll_interval=0.01,
            settle_delay=0,
        )

    def orchestrator(self) -> UpgradeOrchestrator:
        return UpgradeOrchestrator(
            self.install_path,
            self.store,
            self.supervisor(),
            self.prober,  # type: ignore[arg-type]
            self.lock,
            self.journal_path,
            health_url="http://127.0.0.1:3000/",
        )

    def candidate(self, version: str, name: str = "candidate") -> Path:
        return write_binary(self.root / "build" / name / "wolfserve", version)


@pytest.fixture
def make_binary():
    """Factory writing fake versioned executables."""
    return write_binary


@pytest.fixture
def fake_controller() -> FakeController:
    """A running in-memory service."""
    return FakeController()


@pytest.fixture
def install(tmp_path: Path) -> Iterator[Install]:
    """An install directory with version 1.0 installed and running."""
    env = Install(tmp_path)
    write_binary(env.install_path, "1.0")
    yield env


@pytest.fixture
def empty_install(tmp_path: Path) -> Iterator[Install]:
    """An install directory with nothing installed and nothing running."""
    env = Install(tmp_path)
    env.install_dir.mkdir(parents=True)
    env.controller.running = False
    yield env


@pytest.fixture
def shared_install() -> Iterator[Install]:
    """An install under a world-traversable directory, for privilege tests."""
    root = Path(tempfile.mkdtemp(prefix="wolfserve-test-"))
    os.chmod(root, 0o755)
    env = Install(root)
    write_binary(env.install_path, "1.0")
    try:
        yield env
    finally:
        shutil.rmtree(root, ignore_errors=True)
