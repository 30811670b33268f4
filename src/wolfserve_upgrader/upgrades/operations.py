"""
Atomic file operations for installing and restoring executables.

CRITICAL: the install path must never be momentarily empty or partial.
Every copy onto a live path follows the same pattern:
1. Copy into a hidden temporary file in the destination directory
2. fsync, chmod and verify the digest of the temporary file
3. Atomic rename: os.replace(temp_path, final_path)

A crash at any point leaves either the old file or the new file in place,
never a truncated one.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import shutil
import tempfile
from pathlib import Path

from wolfserve_upgrader.errors import CopyFailedError
from wolfserve_upgrader.logging import get_logger

logger = get_logger(__name__)

NOT_INSTALLED = "not installed"
UNKNOWN_VERSION = "unknown"

_CHUNK_SIZE = 1024 * 1024


def ensure_directory(path: Path, *, mode: int = 0o755) -> Path:
    """
    Ensure a directory exists, creating parents as needed.

    Raises:
        CopyFailedError: If the directory cannot be created.
    """
    try:
        path.mkdir(parents=True, mode=mode, exist_ok=True)
        return path
    except OSError as e:
        raise CopyFailedError(
            f"Failed to create directory: {path}",
            details={"path": str(path), "error": str(e)},
        ) from e


def file_digest(path: Path) -> str:
    """Return the SHA-256 hex digest of *path*."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def atomic_copy(
    source: Path,
    destination: Path,
    *,
    mode: int = 0o755,
    temp_prefix: str | None = None,
) -> str:
    """
    Atomically copy *source* over *destination*.

    Args:
        source: File to copy.
        destination: Final path; replaced in a single rename.
        mode: Permissions applied to the new file.
        temp_prefix: Prefix for the temporary file (defaults to
            ``.<destination name>.``).

    Returns:
        SHA-256 digest of the copied content.

    Raises:
        CopyFailedError: If the source is missing or any step fails. The
            destination is untouched in that case.
    """
    if not source.is_file():
        raise CopyFailedError(
            f"Source file does not exist: {source}",
            details={"source": str(source), "destination": str(destination)},
        )

    ensure_directory(destination.parent)
    prefix = temp_prefix or f".{destination.name}."

    try:
        fd, temp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=prefix)
    except OSError as e:
        raise CopyFailedError(
            f"Failed to create temporary file next to {destination}: {e}",
            details={"source": str(source), "destination": str(destination)},
        ) from e

    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "wb") as out, open(source, "rb") as src:
            shutil.copyfileobj(src, out, _CHUNK_SIZE)
            out.flush()
            os.fsync(out.fileno())
        os.chmod(temp_path, mode)

        expected = file_digest(source)
        actual = file_digest(temp_path)
        if expected != actual:
            raise CopyFailedError(
                f"Digest mismatch copying {source} to {destination}",
                details={
                    "source": str(source),
                    "destination": str(destination),
                    "expected": expected,
                    "actual": actual,
                },
            )

        os.replace(temp_path, destination)
    except CopyFailedError:
        temp_path.unlink(missing_ok=True)
        raise
    except OSError as e:
        temp_path.unlink(missing_ok=True)
        raise CopyFailedError(
            f"Failed to copy {source} to {destination}: {e}",
            details={
                "source": str(source),
                "destination": str(destination),
                "error": str(e),
            },
        ) from e

    logger.debug(
        "Atomic copy completed",
        extra={"source": str(source), "destination": str(destination)},
    )
    return actual


def is_installed(path: Path) -> bool:
    """Return True when an executable file exists at *path*."""
    return path.is_file()


async def get_binary_version(path: Path, timeout: float = 5.0) -> str:
    """
    Ask an installed binary for its version via ``--version``.

    Returns:
        The first line of the binary's output, ``"not installed"`` when no
        file exists at *path*, or ``"unknown"`` if the binary cannot report.
    """
    if not is_installed(path):
        return NOT_INSTALLED

    try:
        proc = await asyncio.create_subprocess_exec(
            str(path),
            "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        logger.debug(f"Cannot execute {path}: {e}")
        return UNKNOWN_VERSION

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        return UNKNOWN_VERSION

    output = stdout.decode(errors="replace").strip() if stdout else ""
    if proc.returncode != 0 or not output:
        return UNKNOWN_VERSION
    return output.splitlines()[0]
