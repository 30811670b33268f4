"""
Upgrade state machine for the WolfServe upgrader.

This module sequences one upgrade or rollback attempt:

    idle -> backing_up -> stopping -> installing -> starting
         -> health_checking -> committed
                            \\-> rolling_back -> idle   (old binary running again)
                                              \\-> failed (state indeterminate)

Every attempt runs under the install directory's exclusive lock. The
current ``Attempt`` is an immutable value handed from phase to phase; each
transition is logged and written to a small journal file so that an
interrupted attempt can be diagnosed by ``status`` on the next launch.
"""

from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from wolfserve_upgrader.errors import (
    CopyFailedError,
    HealthCheckTimeoutError,
    InternalError,
    InvalidStateTransitionError,
    NoBackupAvailableError,
    NoCandidateBinaryError,
    RollbackFailedError,
    ServiceStartFailedError,
    UpgradeError,
)
from wolfserve_upgrader.logging import get_logger
from wolfserve_upgrader.upgrades.operations import atomic_copy, get_binary_version

if TYPE_CHECKING:
    from wolfserve_upgrader.upgrades.backups import BackupRecord, BackupStore
    from wolfserve_upgrader.upgrades.health_check import HealthProber
    from wolfserve_upgrader.upgrades.locking import UpgradeLock
    from wolfserve_upgrader.upgrades.service import ServiceSupervisor

logger = get_logger(__name__)


class UpgradeState(str, Enum):
    """
    States for the upgrade state machine.

    State transitions:
    - idle → backing_up (upgrade requested)
    - idle → rolling_back (manual rollback requested)
    - backing_up → stopping (snapshot taken, or nothing installed)
    - backing_up → idle (snapshot failed, nothing was touched)
    - stopping → installing
    - installing → starting (candidate copied into place)
    - installing → rolling_back (copy failed)
    - starting → health_checking (service running)
    - starting → rolling_back (service did not start)
    - health_checking → committed (healthy)
    - health_checking → rolling_back (unhealthy)
    - rolling_back → idle (previous binary restored and running)
    - rolling_back → failed (restore could not be confirmed)
    """

    IDLE = "idle"
    BACKING_UP = "backing_up"
    STOPPING = "stopping"
    INSTALLING = "installing"
    STARTING = "starting"
    HEALTH_CHECKING = "health_checking"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"


# Valid state transitions
_VALID_TRANSITIONS: dict[UpgradeState, set[UpgradeState]] = {
    UpgradeState.IDLE: {UpgradeState.BACKING_UP, UpgradeState.ROLLING_BACK},
    UpgradeState.BACKING_UP: {UpgradeState.STOPPING, UpgradeState.IDLE},
    UpgradeState.STOPPING: {UpgradeState.INSTALLING},
    UpgradeState.INSTALLING: {UpgradeState.STARTING, UpgradeState.ROLLING_BACK},
    UpgradeState.STARTING: {UpgradeState.HEALTH_CHECKING, UpgradeState.ROLLING_BACK},
    UpgradeState.HEALTH_CHECKING: {UpgradeState.COMMITTED, UpgradeState.ROLLING_BACK},
    UpgradeState.ROLLING_BACK: {UpgradeState.IDLE, UpgradeState.FAILED},
    UpgradeState.COMMITTED: set(),
    UpgradeState.FAILED: set(),
}

TERMINAL_STATES = frozenset({UpgradeState.COMMITTED, UpgradeState.FAILED})


class Classification(str, Enum):
    """Single classification reported for every terminal outcome."""

    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


@dataclass(frozen=True)
class Attempt:
    """
    One run of the upgrade or rollback state machine.

    Attributes:
        operation: "upgrade" or "rollback".
        phase: Current state.
        candidate_path: New executable (upgrades only).
        backup_taken: Backup created (upgrade) or being restored (rollback).
        started_at: When the attempt began.
        error: The error that sent the attempt into rollback, if any.
    """

    operation: str
    phase: UpgradeState = UpgradeState.IDLE
    candidate_path: Path | None = None
    backup_taken: BackupRecord | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    error: UpgradeError | None = None


class AttemptJournal(BaseModel):
    """
    On-disk record of the attempt in progress.

    Written at every transition and removed when an attempt ends cleanly,
    so a journal found by ``status`` means an attempt was interrupted or
    ended in the failed state.
    """

    operation: str = Field(description="upgrade or rollback")
    state: str = Field(default=UpgradeState.IDLE.value, description="Current state")
    pid: int = Field(default_factory=os.getpid, description="Orchestrating process")
    candidate_path: str | None = Field(default=None, description="Candidate binary")
    backup_path: str | None = Field(default=None, description="Backup involved")
    started_at: str | None = Field(default=None, description="ISO 8601 start time")
    last_transition_at: str | None = Field(
        default=None,
        description="ISO 8601 timestamp of last state transition",
    )
    error_code: str | None = Field(default=None, description="Error kind, if any")
    error_message: str | None = Field(default=None, description="Error message")


def load_journal(path: Path) -> AttemptJournal | None:
    """Load the attempt journal, or None if absent or unreadable."""
    try:
        with open(path, encoding="utf-8") as f:
            return AttemptJournal(**json.load(f))
    except FileNotFoundError:
        return None
    except (OSError, ValueError, TypeError) as e:
        logger.warning(f"Failed to load attempt journal {path}: {e}")
        return None


@dataclass
class UpgradeOutcome:
    """Result of an attempt that reached a terminal state without raising."""

    operation: str
    classification: Classification
    state: UpgradeState
    message: str
    error: UpgradeError | None = None
    backup: BackupRecord | None = None
    old_version: str | None = None
    new_version: str | None = None

    @property
    def succeeded(self) -> bool:
        """True for a commit or a successful manual rollback."""
        if self.classification is Classification.COMMITTED:
            return True
        return (
            self.classification is Classification.ROLLED_BACK
            and self.operation == "rollback"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "result": self.classification.value,
            "state": self.state.value,
            "message": self.message,
            "error": self.error.to_dict() if self.error else None,
            "backup": str(self.backup.path) if self.backup else None,
            "old_version": self.old_version,
            "new_version": self.new_version,
        }


class UpgradeOrchestrator:
    """
    Runs upgrade and rollback attempts against one install path.

    Attributes:
        install_path: Path of the installed executable.
        store: Backup store for the executable.
        supervisor: Service start/stop policy.
        prober: Health prober for the service's liveness URL.
        lock: Exclusive lock held for the duration of each attempt.
        journal_path: Where the attempt journal is written (optional).
    """

    def __init__(
        self,
        install_path: Path | str,
        store: BackupStore,
        supervisor: ServiceSupervisor,
        prober: HealthProber,
        lock: UpgradeLock,
        journal_path: Path | str | None = None,
        *,
        health_url: str | None = None,
    ) -> None:
        self.install_path = Path(install_path)
        self.store = store
        self.supervisor = supervisor
        self.prober = prober
        self.lock = lock
        self.journal_path = Path(journal_path) if journal_path else None
        self.health_url = health_url
        self._journal: AttemptJournal | None = None

    # ------------------------------------------------------------------
    # Transitions and journal
    # ------------------------------------------------------------------

    def _transition(
        self,
        attempt: Attempt,
        new_state: UpgradeState,
        *,
        error: UpgradeError | None = None,
    ) -> Attempt:
        """
        Move *attempt* to *new_state*.

        Raises:
            InvalidStateTransitionError: If the transition is not valid.
        """
        current = attempt.phase
        if new_state not in _VALID_TRANSITIONS[current]:
            raise InvalidStateTransitionError(
                f"Invalid state transition from {current.value} to {new_state.value}",
                details={
                    "current_state": current.value,
                    "target_state": new_state.value,
                    "valid_transitions": sorted(
                        s.value for s in _VALID_TRANSITIONS[current]
                    ),
                },
            )

        logger.info(
            f"State transition: {current.value} -> {new_state.value}",
            extra={
                "operation": attempt.operation,
                "old_state": current.value,
                "new_state": new_state.value,
            },
        )

        attempt = replace(attempt, phase=new_state, error=error or attempt.error)
        self._write_journal(attempt)
        return attempt

    def _write_journal(self, attempt: Attempt) -> None:
        """Persist the attempt's state; failures are logged, not raised."""
        self._journal = AttemptJournal(
            operation=attempt.operation,
            state=attempt.phase.value,
            candidate_path=str(attempt.candidate_path) if attempt.candidate_path else None,
            backup_path=str(attempt.backup_taken.path) if attempt.backup_taken else None,
            started_at=attempt.started_at.isoformat(),
            last_transition_at=datetime.now(UTC).isoformat(),
            error_code=attempt.error.error_code if attempt.error else None,
            error_message=attempt.error.message if attempt.error else None,
        )
        if self.journal_path is None:
            return

        try:
            self.journal_path.parent.mkdir(parents=True, exist_ok=True)
            temp_file = self.journal_path.with_suffix(".tmp")
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(self._journal.model_dump(), f, indent=2)
            temp_file.replace(self.journal_path)
        except OSError as e:
            logger.warning(f"Failed to save attempt journal: {e}")

    def _clear_journal(self) -> None:
        self._journal = None
        if self.journal_path is None:
            return
        try:
            self.journal_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove attempt journal: {e}")

    def _warn_previous_attempt(self) -> None:
        if self.journal_path is None:
            return
        previous = load_journal(self.journal_path)
        if previous is not None:
            logger.warning(
                f"Previous {previous.operation} did not complete cleanly "
                f"(state: {previous.state})",
                extra={"previous_pid": previous.pid},
            )

    # ------------------------------------------------------------------
    # Phase helpers
    # ------------------------------------------------------------------

    def _restore(self, record: BackupRecord) -> None:
        logger.warning(f"Restoring backup: {record.path}")
        atomic_copy(record.path, self.install_path, mode=0o755)

    async def _check_health(self) -> HealthCheckTimeoutError | None:
        result = await self.prober.check(self.health_url)
        if result.passed:
            return None
        return HealthCheckTimeoutError(
            result.message or "Health check failed",
            details=result.details,
        )

    def _unexpected(self, attempt: Attempt, error: Exception) -> InternalError:
        logger.error(
            f"Unexpected error during {attempt.phase.value}: {error}",
            exc_info=error,
        )
        return InternalError(
            f"Unexpected error during {attempt.phase.value}: "
            f"{type(error).__name__}: {error}",
            details={"phase": attempt.phase.value, "exception": type(error).__name__},
        )

    def _fail(
        self,
        attempt: Attempt,
        reason: str,
        cause: UpgradeError | None = None,
    ) -> RollbackFailedError:
        """Enter the failed state and build the error to raise."""
        original = attempt.error
        details: dict[str, Any] = {
            "operation": attempt.operation,
            "install_path": str(self.install_path),
            "cause": cause.error_code if cause else None,
            "original_error": original.error_code if original else None,
        }
        if attempt.backup_taken is not None:
            details["backup"] = str(attempt.backup_taken.path)

        error = RollbackFailedError(
            f"Rollback failed: {reason}; system state is indeterminate",
            details=details,
        )
        self._transition(attempt, UpgradeState.FAILED, error=error)
        logger.critical(error.message, extra={"error_code": error.error_code, **details})
        return error

    # ------------------------------------------------------------------
    # Upgrade
    # ------------------------------------------------------------------

    def _validate_candidate(self, candidate: Path) -> None:
        if not candidate.is_file():
            raise NoCandidateBinaryError(
                f"New binary not found: {candidate}",
                details={"candidate_path": str(candidate)},
            )

    async def upgrade(self, candidate_path: Path | str) -> UpgradeOutcome:
        """
        Replace the installed binary with *candidate_path*.

        Returns:
            A ``committed`` outcome when the new binary is healthy, or a
            ``rolled_back`` outcome when the previous binary was restored
            and restarted.

        Raises:
            NoCandidateBinaryError: The candidate does not exist.
            LockContentionError: Another attempt is in progress.
            CopyFailedError: The backup could not be written (nothing was
                changed).
            RollbackFailedError: The previous binary could not be confirmed
                running again.
        """
        candidate = Path(candidate_path)
        self._validate_candidate(candidate)

        with self.lock.acquire("upgrade"):
            self._validate_candidate(candidate)
            self._warn_previous_attempt()
            attempt = Attempt(operation="upgrade", candidate_path=candidate)
            try:
                return await self._run_upgrade(attempt, candidate)
            except asyncio.CancelledError:
                self._log_interrupted()
                raise

    def _log_interrupted(self) -> None:
        state = self._journal.state if self._journal else "unknown"
        logger.error(
            f"Attempt interrupted during {state}; run 'status' to inspect",
            extra={"state": state},
        )

    async def _run_upgrade(self, attempt: Attempt, candidate: Path) -> UpgradeOutcome:
        old_version = await get_binary_version(self.install_path)
        logger.info("=== WolfServe Upgrade ===")
        logger.info(f"Current version: {old_version}")
        logger.info(f"New binary: {attempt.candidate_path}")

        attempt = self._transition(attempt, UpgradeState.BACKING_UP)
        try:
            backup = self.store.snapshot(self.install_path)
        except CopyFailedError as e:
            self._transition(attempt, UpgradeState.IDLE, error=e)
            self._clear_journal()
            logger.error(f"Backup failed, aborting upgrade: {e.message}")
            raise
        attempt = replace(attempt, backup_taken=backup)

        attempt = self._transition(attempt, UpgradeState.STOPPING)
        await self.supervisor.stop()

        attempt = self._transition(attempt, UpgradeState.INSTALLING)
        cause: UpgradeError | None = None
        try:
            atomic_copy(candidate, self.install_path, mode=0o755)
            logger.info(f"Installed new binary to {self.install_path}")

            attempt = self._transition(attempt, UpgradeState.STARTING)
            if await self.supervisor.start():
                attempt = self._transition(attempt, UpgradeState.HEALTH_CHECKING)
                cause = await self._check_health()
            else:
                cause = ServiceStartFailedError(
                    f"New version of {self.supervisor.name} failed to start",
                    details={"service": self.supervisor.name},
                )
        except UpgradeError as e:
            logger.error(f"{attempt.phase.value.capitalize()} failed: {e.message}")
            cause = e
        except Exception as e:
            # The new binary may already be in place: anything that escapes
            # from here on must still restore the previous one.
            cause = self._unexpected(attempt, e)

        if cause is not None:
            return await self._auto_rollback(attempt, cause, old_version)

        attempt = self._transition(attempt, UpgradeState.COMMITTED)
        self._clear_journal()
        new_version = await get_binary_version(self.install_path)
        logger.info("=== Upgrade completed successfully ===")
        logger.info(f"New version: {new_version}")

        return UpgradeOutcome(
            operation="upgrade",
            classification=Classification.COMMITTED,
            state=UpgradeState.COMMITTED,
            message=f"Upgraded {old_version} -> {new_version}",
            backup=backup,
            old_version=old_version,
            new_version=new_version,
        )

    async def _auto_rollback(
        self,
        attempt: Attempt,
        cause: UpgradeError,
        old_version: str,
    ) -> UpgradeOutcome:
        attempt = self._transition(attempt, UpgradeState.ROLLING_BACK, error=cause)
        logger.warning(f"{cause.message}, rolling back...")

        backup = attempt.backup_taken
        if backup is None or not backup.exists():
            raise self._fail(attempt, "no backup of the previous binary to restore")

        try:
            await self.supervisor.stop()
            self._restore(backup)
            started = await self.supervisor.start()
        except CopyFailedError as e:
            raise self._fail(attempt, f"could not restore {backup.path}", e) from e
        except Exception as e:
            unexpected = self._unexpected(attempt, e)
            raise self._fail(attempt, "unexpected error while restoring", unexpected) from e

        if not started:
            error = ServiceStartFailedError(
                f"Restored version of {self.supervisor.name} failed to start",
                details={"service": self.supervisor.name},
            )
            raise self._fail(attempt, "restored binary did not start", error)

        self._transition(attempt, UpgradeState.IDLE)
        self._clear_journal()

        if isinstance(cause, CopyFailedError):
            reason = "install failure"
        elif isinstance(cause, InternalError):
            reason = "unexpected error"
        else:
            reason = "health-check/start failure"
        message = f"Rolled back after {reason}"
        logger.error(f"{message} ({cause.error_code})")

        return UpgradeOutcome(
            operation="upgrade",
            classification=Classification.ROLLED_BACK,
            state=UpgradeState.IDLE,
            message=message,
            error=cause,
            backup=backup,
            old_version=old_version,
            new_version=old_version,
        )

    # ------------------------------------------------------------------
    # Manual rollback
    # ------------------------------------------------------------------

    def _require_backup(self) -> BackupRecord:
        record = self.store.latest()
        if record is None:
            raise NoBackupAvailableError(
                "No backup found to rollback to",
                details={"backup_dir": str(self.store.backup_dir)},
            )
        return record

    async def rollback(self) -> UpgradeOutcome:
        """
        Restore the most recent backup.

        On success the restored backup is consumed. A failed manual rollback
        is reported but never followed by a further rollback.

        Raises:
            NoBackupAvailableError: The store is empty (nothing is touched).
            LockContentionError: Another attempt is in progress.
            RollbackFailedError: The restored binary did not start or failed
                its health check.
        """
        self._require_backup()

        with self.lock.acquire("rollback"):
            record = self._require_backup()
            self._warn_previous_attempt()
            attempt = Attempt(operation="rollback", backup_taken=record)
            try:
                return await self._run_rollback(attempt, record)
            except asyncio.CancelledError:
                self._log_interrupted()
                raise

    async def _run_rollback(
        self,
        attempt: Attempt,
        record: BackupRecord,
    ) -> UpgradeOutcome:
        old_version = await get_binary_version(self.install_path)
        logger.warning(f"Rolling back to: {record.path}")

        attempt = self._transition(attempt, UpgradeState.ROLLING_BACK)
        try:
            await self.supervisor.stop()
            self._restore(record)
            started = await self.supervisor.start()
            health_error = await self._check_health() if started else None
        except CopyFailedError as e:
            raise self._fail(attempt, f"could not restore {record.path}", e) from e
        except Exception as e:
            cause = self._unexpected(attempt, e)
            raise self._fail(attempt, "unexpected error while restoring", cause) from e

        if not started:
            error = ServiceStartFailedError(
                f"Restored version of {self.supervisor.name} failed to start",
                details={"service": self.supervisor.name},
            )
            raise self._fail(attempt, "service won't start", error)

        if health_error is not None:
            raise self._fail(attempt, "health check failed after restore", health_error)

        self._transition(attempt, UpgradeState.IDLE)
        self._clear_journal()
        try:
            self.store.consume(record)
        except CopyFailedError as e:
            logger.warning(f"{e.message}; remove it manually before the next rollback")

        new_version = await get_binary_version(self.install_path)
        logger.info("Rollback completed successfully")

        return UpgradeOutcome(
            operation="rollback",
            classification=Classification.ROLLED_BACK,
            state=UpgradeState.IDLE,
            message=f"Rolled back to {record.name}",
            backup=record,
            old_version=old_version,
            new_version=new_version,
        )
