"""
Tests for atomic file operations.

Tests cover:
- atomic_copy success, permissions and failure cleanup
- get_binary_version for installed, missing and broken binaries
"""

from __future__ import annotations

import os
import stat
from pathlib import Path
from unittest.mock import patch

import pytest

from wolfserve_upgrader.errors import CopyFailedError
from wolfserve_upgrader.upgrades.operations import (
    NOT_INSTALLED,
    UNKNOWN_VERSION,
    atomic_copy,
    ensure_directory,
    file_digest,
    get_binary_version,
    is_installed,
)


class TestAtomicCopy:
    """Tests for atomic_copy."""

    def test_copy_new_file(self, tmp_path: Path) -> None:
        """Test copying into a directory that does not exist yet."""
        source = tmp_path / "src.bin"
        source.write_bytes(b"payload")
        destination = tmp_path / "opt" / "wolfserve" / "wolfserve"

        digest = atomic_copy(source, destination)

        assert destination.read_bytes() == b"payload"
        assert digest == file_digest(source)
        assert stat.S_IMODE(destination.stat().st_mode) == 0o755

    def test_replaces_existing(self, tmp_path: Path) -> None:
        """Test an existing destination is replaced."""
        source = tmp_path / "new"
        source.write_bytes(b"new")
        destination = tmp_path / "installed"
        destination.write_bytes(b"old")

        atomic_copy(source, destination, mode=0o700)

        assert destination.read_bytes() == b"new"
        assert stat.S_IMODE(destination.stat().st_mode) == 0o700

    def test_missing_source(self, tmp_path: Path) -> None:
        """Test a missing source leaves the destination untouched."""
        destination = tmp_path / "installed"
        destination.write_bytes(b"old")

        with pytest.raises(CopyFailedError):
            atomic_copy(tmp_path / "missing", destination)

        assert destination.read_bytes() == b"old"

    def test_failed_replace_cleans_up(self, tmp_path: Path) -> None:
        """Test a failure before the rename removes the temp file."""
        source = tmp_path / "new"
        source.write_bytes(b"new")
        dest_dir = tmp_path / "dest"
        dest_dir.mkdir()
        destination = dest_dir / "installed"
        destination.write_bytes(b"old")

        with patch(
            "wolfserve_upgrader.upgrades.operations.os.replace",
            side_effect=OSError("disk full"),
        ), pytest.raises(CopyFailedError) as exc_info:
            atomic_copy(source, destination)

        assert "disk full" in exc_info.value.message
        assert destination.read_bytes() == b"old"
        assert sorted(p.name for p in dest_dir.iterdir()) == ["installed"]

    def test_digest_mismatch(self, tmp_path: Path) -> None:
        """Test a verification mismatch aborts the copy."""
        source = tmp_path / "new"
        source.write_bytes(b"new")
        destination = tmp_path / "installed"
        destination.write_bytes(b"old")

        digests = iter(["aaa", "bbb"])
        with patch(
            "wolfserve_upgrader.upgrades.operations.file_digest",
            side_effect=lambda _p: next(digests),
        ), pytest.raises(CopyFailedError, match="Digest mismatch"):
            atomic_copy(source, destination)

        assert destination.read_bytes() == b"old"

    def test_temp_prefix(self, tmp_path: Path) -> None:
        """Test the temporary file uses the requested prefix."""
        source = tmp_path / "new"
        source.write_bytes(b"new")
        seen: list[str] = []
        real_replace = os.replace

        def spy(src: str, dst: str) -> None:
            seen.append(Path(src).name)
            real_replace(src, dst)

        with patch("wolfserve_upgrader.upgrades.operations.os.replace", side_effect=spy):
            atomic_copy(source, tmp_path / "out", temp_prefix=".wolfserve.partial.")

        assert seen[0].startswith(".wolfserve.partial.")


class TestEnsureDirectory:
    """Tests for ensure_directory."""

    def test_creates_parents(self, tmp_path: Path) -> None:
        path = ensure_directory(tmp_path / "a" / "b")
        assert path.is_dir()

    def test_failure(self, tmp_path: Path) -> None:
        """Test a file in the way raises CopyFailedError."""
        blocker = tmp_path / "file"
        blocker.write_text("x")

        with pytest.raises(CopyFailedError):
            ensure_directory(blocker / "sub")


class TestGetBinaryVersion:
    """Tests for get_binary_version."""

    @pytest.mark.asyncio
    async def test_installed(self, tmp_path: Path, make_binary) -> None:
        """Test the first output line is returned."""
        binary = make_binary(tmp_path / "wolfserve", "1.2.3")

        assert await get_binary_version(binary) == "wolfserve 1.2.3"
        assert is_installed(binary)

    @pytest.mark.asyncio
    async def test_not_installed(self, tmp_path: Path) -> None:
        """Test a missing binary reports 'not installed'."""
        assert await get_binary_version(tmp_path / "missing") == NOT_INSTALLED

    @pytest.mark.asyncio
    async def test_not_executable(self, tmp_path: Path) -> None:
        """Test a binary that cannot run reports 'unknown'."""
        binary = tmp_path / "wolfserve"
        binary.write_bytes(b"\x00\x01garbage")
        os.chmod(binary, 0o644)

        assert await get_binary_version(binary) == UNKNOWN_VERSION

    @pytest.mark.asyncio
    async def test_failing_binary(self, tmp_path: Path) -> None:
        """Test a nonzero exit reports 'unknown'."""
        binary = tmp_path / "wolfserve"
        binary.write_text("#!/bin/sh\nexit 3\n")
        os.chmod(binary, 0o755)

        assert await get_binary_version(binary) == UNKNOWN_VERSION
