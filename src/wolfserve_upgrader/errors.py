"""
Error types for the WolfServe upgrader.

This module defines the UpgradeError base class and one subclass per error
kind the upgrade/rollback workflow can surface. Callers distinguish failure
modes by class (or by ``error_code`` when serialised), never by parsing
messages.

Severity ordering, from least to most severe:
- ServiceStopTimeoutError: absorbed internally by a forced kill
- LockContentionError, LockUnavailableError, NoCandidateBinaryError,
  NoBackupAvailableError, CopyFailedError: the attempt did not mutate the
  running service
- ServiceStartFailedError, HealthCheckTimeoutError, InternalError: reported
  as the cause of an automatic rollback
- RollbackFailedError: the system is in an indeterminate state
"""

from __future__ import annotations

from typing import Any


class UpgradeError(Exception):
    """
    Base exception class for upgrader errors.

    Attributes:
        error_code: Internal error code string (e.g., "copy_failed",
            "lock_contention", "rollback_failed").
        message: Human-readable error message.
        details: Optional structured details (paths, pids, timings).

    Example:
        >>> raise UpgradeError(
        ...     error_code="copy_failed",
        ...     message="Failed to install /tmp/wolfserve",
        ...     details={"destination": "/opt/wolfserve/wolfserve"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize an UpgradeError.

        Args:
            error_code: Internal error code string identifying the error kind.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class NoCandidateBinaryError(UpgradeError):
    """
    Error raised when no new executable can be found or produced.

    Raised before any mutation: the installed binary and the service are
    left untouched.
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        error_code: str = "no_candidate_binary",
    ) -> None:
        """Initialize a NoCandidateBinaryError."""
        super().__init__(error_code=error_code, message=message, details=details)


class BuildError(NoCandidateBinaryError):
    """Base class for failures of the build fallback."""


class BuildManifestMissingError(BuildError):
    """Error raised when the source directory has no build description."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a BuildManifestMissingError."""
        super().__init__(message, details, error_code="build_manifest_missing")


class ToolchainUnavailableError(BuildError):
    """Error raised when the build toolchain is not installed."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ToolchainUnavailableError."""
        super().__init__(message, details, error_code="toolchain_unavailable")


class BuildFailedError(BuildError):
    """Error raised when the build command fails or produces no binary."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a BuildFailedError."""
        super().__init__(message, details, error_code="build_failed")


class CopyFailedError(UpgradeError):
    """
    Error raised when copying a binary fails (backup, install or restore).

    Copies are atomic, so the destination still holds its previous content
    when this error is raised.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a CopyFailedError."""
        super().__init__(error_code="copy_failed", message=message, details=details)


class ServiceControlError(UpgradeError):
    """
    Error raised when the service manager cannot be reached.

    Raised by controller implementations when e.g. systemctl is missing or a
    command does not return within its timeout.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ServiceControlError."""
        super().__init__(
            error_code="service_unavailable", message=message, details=details
        )


class ServiceStopTimeoutError(UpgradeError):
    """
    Error raised when a graceful stop does not complete within its timeout.

    The service supervisor handles this error itself by forcing termination;
    it is logged but never escalates out of a stop phase.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ServiceStopTimeoutError."""
        super().__init__(
            error_code="service_stop_timeout", message=message, details=details
        )


class ServiceStartFailedError(UpgradeError):
    """Error raised when the service is not running after a start command."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ServiceStartFailedError."""
        super().__init__(
            error_code="service_start_failed", message=message, details=details
        )


class HealthCheckTimeoutError(UpgradeError):
    """Error raised when the health endpoint never answered within the budget."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a HealthCheckTimeoutError."""
        super().__init__(
            error_code="health_check_timeout", message=message, details=details
        )


class RollbackFailedError(UpgradeError):
    """
    Error raised when restoring the previous binary could not be confirmed.

    This is the most severe error kind: the previous binary may be in place
    but the service is not confirmed running. ``details["cause"]`` holds the
    error code of the failure that made the rollback unconfirmable.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a RollbackFailedError."""
        super().__init__(error_code="rollback_failed", message=message, details=details)


class LockContentionError(UpgradeError):
    """Error raised when another upgrade or rollback already holds the lock."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a LockContentionError."""
        super().__init__(error_code="lock_contention", message=message, details=details)


class NoBackupAvailableError(UpgradeError):
    """Error raised when a rollback is requested but the backup store is empty."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a NoBackupAvailableError."""
        super().__init__(
            error_code="no_backup_available", message=message, details=details
        )


class PermissionDeniedError(UpgradeError):
    """Error raised when a mutating command is run without root privileges."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a PermissionDeniedError."""
        super().__init__(
            error_code="permission_denied", message=message, details=details
        )


class ConfigurationError(UpgradeError):
    """Error raised when the configuration cannot be loaded or validated."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ConfigurationError."""
        super().__init__(
            error_code="invalid_configuration", message=message, details=details
        )


class InvalidStateTransitionError(UpgradeError):
    """Error raised when the state machine is asked for an illegal transition."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidStateTransitionError."""
        super().__init__(
            error_code="invalid_transition", message=message, details=details
        )


class LockUnavailableError(UpgradeError):
    """Error raised when the lock file cannot be created or opened."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a LockUnavailableError."""
        super().__init__(
            error_code="lock_unavailable", message=message, details=details
        )


class InternalError(UpgradeError):
    """
    Error wrapping an unexpected exception raised during an attempt.

    Lets the orchestrator roll back and the CLI classify failures it has no
    dedicated error kind for.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal_error", message=message, details=details)
