"""
Upgrade and rollback machinery for the WolfServe binary.

This package implements:
- Atomic install/restore operations
- The timestamped backup store with retention
- The exclusive attempt lock
- Service start/stop policy over a service controller (systemd)
- HTTP health probing
- Candidate binary lookup and build fallback
- The upgrade/rollback state machine
- The read-only status report
"""

from wolfserve_upgrader.upgrades.backups import BackupRecord, BackupStore
from wolfserve_upgrader.upgrades.health_check import HealthCheckResult, HealthProber
from wolfserve_upgrader.upgrades.locking import LockHolder, LockInfo, UpgradeLock
from wolfserve_upgrader.upgrades.operations import (
    atomic_copy,
    ensure_directory,
    get_binary_version,
)
from wolfserve_upgrader.upgrades.resolver import BinaryResolver
from wolfserve_upgrader.upgrades.service import (
    ServiceController,
    ServiceRunState,
    ServiceSupervisor,
    SystemdController,
)
from wolfserve_upgrader.upgrades.state_machine import (
    Attempt,
    AttemptJournal,
    Classification,
    UpgradeOrchestrator,
    UpgradeOutcome,
    UpgradeState,
)
from wolfserve_upgrader.upgrades.status import StatusReport, collect_status

__all__ = [
    # Backups
    "BackupRecord",
    "BackupStore",
    # Health checks
    "HealthCheckResult",
    "HealthProber",
    # Locking
    "LockHolder",
    "LockInfo",
    "UpgradeLock",
    # Operations
    "atomic_copy",
    "ensure_directory",
    "get_binary_version",
    # Resolver
    "BinaryResolver",
    # Service control
    "ServiceController",
    "ServiceRunState",
    "ServiceSupervisor",
    "SystemdController",
    # State machine
    "Attempt",
    "AttemptJournal",
    "Classification",
    "UpgradeOrchestrator",
    "UpgradeOutcome",
    "UpgradeState",
    # Status
    "StatusReport",
    "collect_status",
]
