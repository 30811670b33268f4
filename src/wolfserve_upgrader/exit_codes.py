"""Process exit codes of the ``wolfserve-upgrade`` command."""

from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes, one per kind of terminal outcome."""

    OK = 0
    ROLLED_BACK = 1
    FAILED = 2
    LOCK_CONTENTION = 3
    ERROR = 4
    USAGE = 64
    INTERRUPTED = 130
