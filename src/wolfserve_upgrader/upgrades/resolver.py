"""
Locate or build the candidate executable for an upgrade.

Lookup order:
1. ``<source>/target/release/<binary>``
2. ``<source>/target/debug/<binary>``
3. ``<source>/<binary>``
4. The same three locations under the current working directory
5. A release build in the source directory
"""

from __future__ import annotations

import asyncio
import os
import shutil
from collections.abc import Sequence
from pathlib import Path

from wolfserve_upgrader.errors import (
    BuildFailedError,
    BuildManifestMissingError,
    NoCandidateBinaryError,
    ToolchainUnavailableError,
)
from wolfserve_upgrader.logging import get_logger

logger = get_logger(__name__)


def _is_executable_file(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


class BinaryResolver:
    """
    Find an existing build of the service binary or produce one.

    Attributes:
        binary_name: Executable name.
        source_dir: Source checkout.
        manifest: Build description required before building.
        build_command: Command run in ``source_dir`` to build.
        build_output: Expected build output, relative to ``source_dir``.
        build_timeout: Build timeout in seconds.
    """

    def __init__(
        self,
        binary_name: str,
        source_dir: Path | str,
        *,
        manifest: str = "Cargo.toml",
        build_command: Sequence[str] = ("cargo", "build", "--release"),
        build_output: str | None = None,
        build_timeout: float = 1800.0,
        search_roots: Sequence[Path] | None = None,
    ) -> None:
        self.binary_name = binary_name
        self.source_dir = Path(source_dir)
        self.manifest = manifest
        self.build_command = list(build_command)
        self.build_output = build_output or f"target/release/{binary_name}"
        self.build_timeout = build_timeout
        self._search_roots = (
            list(search_roots) if search_roots is not None else [self.source_dir, Path.cwd()]
        )

    def candidate_locations(self) -> list[Path]:
        """Return the lookup locations in priority order, without duplicates."""
        locations: list[Path] = []
        for root in self._search_roots:
            for relative in (
                Path("target") / "release" / self.binary_name,
                Path("target") / "debug" / self.binary_name,
                Path(self.binary_name),
            ):
                candidate = root / relative
                if candidate not in locations:
                    locations.append(candidate)
        return locations

    def find(self) -> Path | None:
        """Return the first existing executable, or None."""
        for location in self.candidate_locations():
            if _is_executable_file(location):
                logger.info(f"Found existing binary: {location}")
                return location
        return None

    async def build(self) -> Path:
        """
        Build the binary from source.

        Returns:
            Path of the built executable.

        Raises:
            BuildManifestMissingError: No build description in the source dir.
            ToolchainUnavailableError: The build tool is not installed.
            BuildFailedError: The build failed, timed out or left no binary.
        """
        manifest_path = self.source_dir / self.manifest
        if not manifest_path.is_file():
            raise BuildManifestMissingError(
                f"Cannot find {self.manifest} in {self.source_dir}",
                details={
                    "source_dir": str(self.source_dir),
                    "hint": "Set WOLFSERVE_SOURCE to the source directory "
                    "or run from the source directory",
                },
            )

        tool = self.build_command[0]
        if shutil.which(tool) is None:
            raise ToolchainUnavailableError(
                f"Build tool '{tool}' not found on PATH",
                details={"tool": tool, "hint": "Install Rust: https://rustup.rs"},
            )

        logger.info(
            f"Building {self.binary_name} from source "
            "(this may take a few minutes)...",
            extra={"command": self.build_command, "source_dir": str(self.source_dir)},
        )

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.build_command,
                cwd=str(self.source_dir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise ToolchainUnavailableError(
                f"Failed to run build command: {e}",
                details={"command": self.build_command},
            ) from e

        try:
            stdout, _ = await asyncio.wait_for(
                proc.communicate(), timeout=self.build_timeout
            )
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise BuildFailedError(
                f"Build timed out after {self.build_timeout}s",
                details={"command": self.build_command},
            ) from e

        output = stdout.decode(errors="replace") if stdout else ""
        if proc.returncode != 0:
            raise BuildFailedError(
                f"Build failed with exit code {proc.returncode}",
                details={
                    "command": self.build_command,
                    "returncode": proc.returncode,
                    "output_tail": output[-2000:],
                },
            )

        built = self.source_dir / self.build_output
        if not _is_executable_file(built):
            raise BuildFailedError(
                f"Build succeeded but {built} is missing or not executable",
                details={"expected": str(built)},
            )

        logger.info("Build completed successfully", extra={"binary": str(built)})
        return built

    async def resolve(self, *, force_build: bool = False) -> Path:
        """
        Return a candidate executable, building one if none is found.

        Args:
            force_build: Skip the lookup and always build.

        Raises:
            NoCandidateBinaryError: Or one of its build-specific subclasses.
        """
        if not force_build:
            found = self.find()
            if found is not None:
                return found
            logger.warning("No binary found, attempting to build...")

        try:
            return await self.build()
        except NoCandidateBinaryError:
            raise
        except OSError as e:
            raise NoCandidateBinaryError(
                f"Could not find or build {self.binary_name}: {e}",
                details={"source_dir": str(self.source_dir)},
            ) from e
