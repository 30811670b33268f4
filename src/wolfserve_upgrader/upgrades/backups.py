"""
Backup store for previously installed executables.

Each backup is a plain file in the backup directory named
``<binary>_<YYYYmmdd>_<HHMMSS>_<microseconds>``, stamped in UTC. A new
stamp is always later than the newest existing one, so a clock that steps
backwards cannot reorder the store. Names without the microsecond suffix
(written by the legacy upgrade.sh script, in local time) are recognised too.

Backups are written to a hidden temporary file and renamed into place, so a
crash mid-copy never leaves a record visible to ``latest()``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from wolfserve_upgrader.errors import CopyFailedError
from wolfserve_upgrader.logging import get_logger
from wolfserve_upgrader.upgrades.operations import atomic_copy, ensure_directory

logger = get_logger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S_%f"
LEGACY_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class BackupRecord:
    """A retained copy of a previously installed executable."""

    path: Path
    timestamp: datetime

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def size_bytes(self) -> int:
        try:
            return self.path.stat().st_size
        except OSError:
            return 0

    def age_seconds(self, now: datetime | None = None) -> float:
        """Seconds elapsed since the backup was taken."""
        now = now or datetime.now(UTC)
        return max((now - self.timestamp).total_seconds(), 0.0)

    def exists(self) -> bool:
        return self.path.is_file()


class BackupStore:
    """
    Manage timestamped backups of the installed executable.

    The store never holds more than ``max_backups`` records after a
    snapshot: the oldest excess records are deleted immediately.

    Attributes:
        backup_dir: Directory containing one file per retained backup.
        binary_name: Name of the executable; prefixes every record name.
        max_backups: Retention limit.
    """

    def __init__(
        self,
        backup_dir: Path | str,
        binary_name: str,
        max_backups: int = 5,
    ) -> None:
        if max_backups < 1:
            raise ValueError(f"max_backups must be at least 1, got {max_backups}")
        self.backup_dir = Path(backup_dir)
        self.binary_name = binary_name
        self.max_backups = max_backups
        self._pattern = re.compile(
            rf"^{re.escape(binary_name)}_(\d{{8}}_\d{{6}})(?:_(\d{{6}}))?$"
        )

    def _parse_name(self, name: str) -> datetime | None:
        match = self._pattern.match(name)
        if match is None:
            return None
        stamp, micros = match.groups()
        try:
            if micros is None:
                # Legacy names carry local wall-clock time.
                return datetime.strptime(stamp, LEGACY_TIMESTAMP_FORMAT).astimezone(UTC)
            return datetime.strptime(f"{stamp}_{micros}", TIMESTAMP_FORMAT).replace(
                tzinfo=UTC
            )
        except (ValueError, OverflowError, OSError):
            return None

    def _new_record_path(self) -> tuple[Path, datetime]:
        # Never stamp a record at or before the newest one, even if the
        # clock stepped backwards, and skip names that are already taken.
        stamp = _utcnow()
        newest = self.latest()
        if newest is not None and stamp <= newest.timestamp:
            stamp = newest.timestamp + timedelta(microseconds=1)
        while True:
            path = self.backup_dir / f"{self.binary_name}_{stamp.strftime(TIMESTAMP_FORMAT)}"
            if not path.exists():
                return path, stamp
            stamp += timedelta(microseconds=1)

    def list_records(self) -> list[BackupRecord]:
        """
        List the backups currently in the store.

        Returns:
            Records ordered newest first.
        """
        if not self.backup_dir.is_dir():
            return []

        records: list[BackupRecord] = []
        for entry in self.backup_dir.iterdir():
            timestamp = self._parse_name(entry.name)
            if timestamp is None or not entry.is_file():
                continue
            records.append(BackupRecord(path=entry, timestamp=timestamp))

        records.sort(key=lambda r: (r.timestamp, r.name), reverse=True)
        return records

    def latest(self) -> BackupRecord | None:
        """Return the most recent backup, or None if the store is empty."""
        records = self.list_records()
        return records[0] if records else None

    def snapshot(self, installed_binary: Path) -> BackupRecord | None:
        """
        Copy the installed executable into the store.

        Args:
            installed_binary: Path of the currently installed executable.

        Returns:
            The new record, or None when nothing is installed.

        Raises:
            CopyFailedError: If the copy fails. No record is created.
        """
        if not installed_binary.is_file():
            logger.info(
                "No installed binary to back up",
                extra={"install_path": str(installed_binary)},
            )
            return None

        ensure_directory(self.backup_dir, mode=0o755)
        path, timestamp = self._new_record_path()
        atomic_copy(
            installed_binary,
            path,
            mode=0o755,
            temp_prefix=f".{self.binary_name}.partial.",
        )
        record = BackupRecord(path=path, timestamp=timestamp)
        logger.info(f"Created backup: {path}", extra={"backup": str(path)})

        self.prune()
        return record

    def prune(self, max_count: int | None = None) -> list[BackupRecord]:
        """
        Delete the oldest backups beyond *max_count*.

        Deletion failures (already removed, permission problems) are logged
        and skipped.

        Returns:
            The records that were removed.
        """
        limit = self.max_backups if max_count is None else max_count
        excess = self.list_records()[limit:]
        removed: list[BackupRecord] = []

        for record in excess:
            try:
                record.path.unlink()
            except FileNotFoundError:
                logger.debug(f"Backup already removed: {record.path}")
                continue
            except OSError as e:
                logger.warning(
                    f"Failed to remove old backup {record.path}: {e}",
                    extra={"backup": str(record.path)},
                )
                continue
            removed.append(record)

        if removed:
            logger.info(
                f"Cleaned up old backups (keeping {limit})",
                extra={"removed": [r.name for r in removed]},
            )
        return removed

    def consume(self, record: BackupRecord) -> None:
        """
        Delete a backup after it has been restored.

        Raises:
            CopyFailedError: If the file exists but cannot be removed.
        """
        try:
            record.path.unlink(missing_ok=True)
        except OSError as e:
            raise CopyFailedError(
                f"Failed to remove used backup {record.path}: {e}",
                details={"backup": str(record.path)},
            ) from e
        logger.info(f"Removed used backup: {record.path}")
