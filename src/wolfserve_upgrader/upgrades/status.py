"""
Read-only status report for an install directory.

Gathers the installed version, the service run state, the retained
backups, the lock marker and the attempt journal, and flags combinations
that indicate an interrupted or failed attempt. Nothing here writes to disk
or needs write access. The lock is only probed with a momentary shared
flock, which a concurrent ``acquire`` rides out. Status keeps working
during an attempt and without root; files that cannot be read are reported
in ``problems`` instead of failing the report.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field

from wolfserve_upgrader.upgrades.backups import BackupStore
from wolfserve_upgrader.upgrades.locking import LockInfo, UpgradeLock
from wolfserve_upgrader.upgrades.operations import NOT_INSTALLED, get_binary_version
from wolfserve_upgrader.upgrades.service import ServiceRunState, ServiceSupervisor
from wolfserve_upgrader.upgrades.state_machine import (
    AttemptJournal,
    UpgradeState,
    load_journal,
)


class BackupInfo(BaseModel):
    """A retained backup as shown by ``status``."""

    name: str
    path: str
    size_bytes: int
    created_at: str
    age_seconds: float


class StatusReport(BaseModel):
    """Snapshot of the install directory and the managed service."""

    install_dir: str
    install_path: str
    version: str
    service: str
    run_state: ServiceRunState
    backups: list[BackupInfo] = Field(default_factory=list)
    lock: LockInfo
    last_attempt: AttemptJournal | None = None
    problems: list[str] = Field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.problems


def _detect_problems(
    version: str,
    run_state: ServiceRunState,
    lock: LockInfo,
    journal: AttemptJournal | None,
) -> list[str]:
    problems: list[str] = []

    if version == NOT_INSTALLED and run_state is not ServiceRunState.RUNNING:
        problems.append("No binary is installed and the service is not running")

    if lock.held is None:
        problems.append(f"Cannot inspect lock {lock.path}: {lock.error}")
    elif lock.held:
        holder = lock.holder
        who = f" by pid {holder.pid} ({holder.operation})" if holder else ""
        if lock.holder_alive is False:
            problems.append(f"Lock is held{who} but that process is no longer alive")
        else:
            problems.append(f"An attempt is in progress{who}")
    elif lock.stale and lock.holder is not None:
        problems.append(
            f"Stale lock marker left by pid {lock.holder.pid} "
            f"({lock.holder.operation}); that attempt did not release the lock"
        )

    if journal is not None and not lock.held:
        if journal.state == UpgradeState.FAILED.value:
            problems.append(
                f"Last {journal.operation} ended in the failed state: "
                f"{journal.error_message or 'rollback could not be confirmed'}"
            )
        else:
            problems.append(
                f"Last {journal.operation} was interrupted during '{journal.state}'"
                + (
                    f" (candidate {journal.candidate_path})"
                    if journal.candidate_path
                    else ""
                )
            )

    return problems


async def collect_status(
    install_path: Path,
    store: BackupStore,
    supervisor: ServiceSupervisor,
    lock: UpgradeLock,
    journal_path: Path | None = None,
) -> StatusReport:
    """
    Build a status report.

    Args:
        install_path: Path of the installed executable.
        store: Backup store to enumerate.
        supervisor: Used to query the service run state.
        lock: Lock marker to inspect.
        journal_path: Attempt journal location.

    Returns:
        The report, including any detected inconsistencies in ``problems``.
    """
    version = await get_binary_version(install_path)
    run_state = await supervisor.run_state()
    lock_info = lock.inspect()
    journal = load_journal(journal_path) if journal_path else None

    problems = _detect_problems(version, run_state, lock_info, journal)

    try:
        records = store.list_records()
    except OSError as e:
        records = []
        problems.append(f"Cannot read backup directory {store.backup_dir}: {e}")

    now = datetime.now(UTC)
    backups = [
        BackupInfo(
            name=record.name,
            path=str(record.path),
            size_bytes=record.size_bytes,
            created_at=record.timestamp.isoformat(),
            age_seconds=round(record.age_seconds(now), 1),
        )
        for record in records
    ]

    return StatusReport(
        install_dir=str(install_path.parent),
        install_path=str(install_path),
        version=version,
        service=supervisor.name,
        run_state=run_state,
        backups=backups,
        lock=lock_info,
        last_attempt=journal,
        problems=problems,
    )
