"""
Exclusive lock for upgrade and rollback attempts.

Only one attempt may mutate the install path and the backup directory at a
time. The lock is a non-blocking ``flock`` on a marker file; the holder
writes its pid and operation into the marker so contention and stale
markers can be reported.

The kernel drops the flock when the holding process dies, so a crashed
attempt never blocks future ones. Its marker content survives though, which
is how ``inspect()`` detects an attempt that was interrupted.
"""

from __future__ import annotations

import fcntl
import json
import os
import socket
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Any

import psutil
from pydantic import BaseModel, Field

from wolfserve_upgrader.errors import LockContentionError, LockUnavailableError
from wolfserve_upgrader.logging import get_logger

logger = get_logger(__name__)


class LockHolder(BaseModel):
    """Metadata written into the lock marker by the holder."""

    pid: int
    operation: str
    hostname: str = Field(default_factory=socket.gethostname)
    acquired_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())


class LockInfo(BaseModel):
    """Observed state of the lock marker."""

    path: str
    held: bool | None = False
    holder: LockHolder | None = None
    holder_alive: bool | None = None
    stale: bool = False
    error: str | None = None


def _pid_alive(pid: int) -> bool:
    try:
        return psutil.pid_exists(pid)
    except (psutil.Error, OSError):
        return False


def _read_holder(handle: Any) -> LockHolder | None:
    handle.seek(0)
    raw = handle.read().strip()
    if not raw:
        return None
    try:
        return LockHolder(**json.loads(raw))
    except (ValueError, TypeError):
        return None


class UpgradeLock:
    """
    Advisory lock guarding a single install directory.

    Example:
        >>> lock = UpgradeLock("/opt/wolfserve/.upgrade.lock")
        >>> with lock.acquire("upgrade"):
        ...     ...  # install path and backups are ours
    """

    def __init__(self, path: Path | str, *, contention_grace: float = 0.1) -> None:
        """
        Initialize the lock.

        Args:
            path: Lock marker file.
            contention_grace: How long ``acquire`` keeps retrying before
                reporting contention. ``inspect`` holds a shared lock for
                an instant, which must not fail a concurrent attempt.
        """
        self.path = Path(path)
        self.contention_grace = contention_grace

    def _open_marker(self) -> IO[str]:
        try:
            self.path.parent.mkdir(parents=True, mode=0o755, exist_ok=True)
            return open(self.path, "a+", encoding="utf-8")
        except OSError as e:
            raise LockUnavailableError(
                f"Cannot open lock file {self.path}: {e}",
                details={"lock_file": str(self.path), "error": str(e)},
            ) from e

    def _try_lock(self, handle: IO[str]) -> bool:
        deadline = time.monotonic() + self.contention_grace
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                return True
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    return False
                time.sleep(0.01)
            except OSError as e:
                raise LockUnavailableError(
                    f"Cannot lock {self.path}: {e}",
                    details={"lock_file": str(self.path), "error": str(e)},
                ) from e

    @contextmanager
    def acquire(self, operation: str) -> Iterator[LockHolder]:
        """
        Hold the lock for the duration of the ``with`` block.

        Fails fast instead of waiting. The lock is released on every exit
        path, including exceptions and task cancellation.

        Raises:
            LockContentionError: If another process holds the lock.
            LockUnavailableError: If the lock file cannot be opened or locked.
        """
        handle = self._open_marker()
        try:
            if not self._try_lock(handle):
                holder = _read_holder(handle)
                details: dict[str, Any] = {"lock_file": str(self.path)}
                suffix = ""
                if holder is not None:
                    details["holder"] = holder.model_dump()
                    details["holder_alive"] = _pid_alive(holder.pid)
                    suffix = f" by pid {holder.pid} ({holder.operation})"
                raise LockContentionError(
                    f"Another upgrade or rollback is already in progress{suffix}",
                    details=details,
                )

            previous = _read_holder(handle)
            if previous is not None and previous.pid != os.getpid():
                logger.warning(
                    f"Recovered stale lock left by pid {previous.pid} "
                    f"({previous.operation}, started {previous.acquired_at})",
                    extra={"lock_file": str(self.path)},
                )

            holder = LockHolder(pid=os.getpid(), operation=operation)
            handle.seek(0)
            handle.truncate()
            handle.write(holder.model_dump_json())
            handle.flush()
            logger.debug(f"Acquired lock {self.path}", extra={"operation": operation})

            try:
                yield holder
            finally:
                # Clear the marker before unlocking so the next holder sees
                # a clean release. The file itself stays: unlinking a flocked
                # path would let two processes lock different inodes.
                handle.seek(0)
                handle.truncate()
                handle.flush()
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                logger.debug(f"Released lock {self.path}")
        finally:
            handle.close()

    def inspect(self) -> LockInfo:
        """
        Report whether the lock is held and by whom.

        The marker is opened read-only, so this works for users who cannot
        write to the install directory. Testing the lock takes a shared
        flock for an instant; ``acquire`` retries for ``contention_grace``
        seconds so that window never fails an attempt.

        A marker with holder metadata that nobody holds is reported as
        stale: the attempt that wrote it ended without releasing. When the
        marker cannot be read, ``held`` is None and ``error`` says why.
        """
        info = LockInfo(path=str(self.path))
        try:
            with open(self.path, encoding="utf-8") as handle:
                info.holder = _read_holder(handle)
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_SH | fcntl.LOCK_NB)
                except BlockingIOError:
                    info.held = True
                else:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except FileNotFoundError:
            return info
        except OSError as e:
            logger.debug(f"Cannot inspect lock {self.path}: {e}")
            info.held = None
            info.error = str(e)
            return info

        if info.holder is not None:
            info.holder_alive = _pid_alive(info.holder.pid)
            info.stale = not info.held
        return info
