"""
Configuration management for the WolfServe upgrader.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/wolfserve/upgrader.yml or --config path)
3. Legacy environment variables (WOLFSERVE_DIR, WOLFSERVE_SOURCE,
   HEALTH_CHECK_URL)
4. Environment variables (WOLFSERVE_UPGRADER_* prefix, __ for nesting)
5. Command-line arguments (highest precedence)
"""

from __future__ import annotations

import os
import shlex
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import httpx
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from wolfserve_upgrader.errors import ConfigurationError

DEFAULT_CONFIG_PATH = Path("/etc/wolfserve/upgrader.yml")
DEFAULT_ENV_PREFIX = "WOLFSERVE_UPGRADER_"

# Variables understood by the legacy upgrade.sh script.
LEGACY_ENV_VARS: dict[str, tuple[str, str]] = {
    "WOLFSERVE_DIR": ("upgrade", "install_dir"),
    "WOLFSERVE_SOURCE": ("build", "source_dir"),
    "HEALTH_CHECK_URL": ("health", "url"),
}


def _require_positive(value: float, field_name: str) -> float:
    if value <= 0:
        raise ValueError(f"{field_name} must be greater than zero, got {value}")
    return value


# =============================================================================
# Service Configuration
# =============================================================================


class ServiceConfig(BaseModel):
    """Managed service settings.

    Attributes:
        name: systemd unit name of the managed service.
        binary_name: File name of the executable inside the install directory.
        port: Port the service listens on (used for the default health URL).
        systemctl_bin: systemctl executable.
        command_timeout: Timeout for a single systemctl invocation.
    """

    name: str = Field(default="wolfserve", description="systemd unit name")
    binary_name: str = Field(
        default="wolfserve",
        description="Executable file name inside the install directory",
    )
    port: int = Field(default=3000, ge=1, le=65535, description="Service port")
    systemctl_bin: str = Field(default="systemctl", description="systemctl binary")
    command_timeout: float = Field(
        default=30.0,
        description="Timeout in seconds for a single systemctl command",
    )

    @field_validator("name", "binary_name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Reject empty names and names containing path separators."""
        v = v.strip()
        if not v or "/" in v:
            raise ValueError(f"Invalid name: {v!r}")
        return v

    @field_validator("command_timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate timeout is positive."""
        return _require_positive(v, "command_timeout")


# =============================================================================
# Upgrade Configuration
# =============================================================================


class UpgradeConfig(BaseModel):
    """Install, backup and locking settings.

    Attributes:
        install_dir: Directory holding the installed executable.
        backup_dir: Backup directory (defaults to ``<install_dir>/backups``).
        max_backups: Number of backups to retain.
        stop_timeout: Graceful stop budget before forcing termination.
        stop_poll_interval: Run-state polling interval while stopping.
        start_settle_delay: Delay between start and the run-state check.
        require_root: Refuse mutating commands when not running as root.
        lock_file: Lock marker path (defaults to ``<install_dir>/.upgrade.lock``).
        state_file: Attempt journal path
            (defaults to ``<install_dir>/.upgrade_state.json``).
    """

    install_dir: str = Field(default="/opt/wolfserve", description="Install directory")
    backup_dir: str | None = Field(default=None, description="Backup directory")
    max_backups: int = Field(default=5, ge=1, description="Backups to retain")
    stop_timeout: float = Field(default=30.0, description="Graceful stop timeout")
    stop_poll_interval: float = Field(default=1.0, description="Stop poll interval")
    start_settle_delay: float = Field(default=2.0, description="Start settle delay")
    require_root: bool = Field(default=True, description="Require root for mutations")
    lock_file: str | None = Field(default=None, description="Lock marker path")
    state_file: str | None = Field(default=None, description="Attempt journal path")

    @field_validator("stop_timeout", "stop_poll_interval")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Validate durations are positive."""
        return _require_positive(v, "duration")

    @field_validator("start_settle_delay")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        """Validate the settle delay is not negative."""
        if v < 0:
            raise ValueError(f"start_settle_delay must not be negative, got {v}")
        return v

    @model_validator(mode="after")
    def fill_derived_paths(self) -> UpgradeConfig:
        """Derive backup, lock and state paths from the install directory."""
        install_dir = Path(self.install_dir)
        if self.backup_dir is None:
            self.backup_dir = str(install_dir / "backups")
        if self.lock_file is None:
            self.lock_file = str(install_dir / ".upgrade.lock")
        if self.state_file is None:
            self.state_file = str(install_dir / ".upgrade_state.json")
        return self

    @property
    def backup_path(self) -> Path:
        """Backup directory as a path."""
        return Path(self.backup_dir or Path(self.install_dir) / "backups")

    @property
    def lock_path(self) -> Path:
        """Lock marker as a path."""
        return Path(self.lock_file or Path(self.install_dir) / ".upgrade.lock")

    @property
    def journal_path(self) -> Path:
        """Attempt journal as a path."""
        return Path(self.state_file or Path(self.install_dir) / ".upgrade_state.json")


# =============================================================================
# Health Check Configuration
# =============================================================================


class HealthConfig(BaseModel):
    """Health probe settings.

    Attributes:
        url: Liveness URL (defaults to ``http://127.0.0.1:<service.port>/``).
        timeout: Total health-check budget in seconds.
        interval: Delay between probes.
        probe_timeout: Timeout of a single probe request.
        require_success_status: Only 2xx/3xx responses count as healthy.
    """

    url: str | None = Field(default=None, description="Health check URL")
    timeout: float = Field(default=30.0, description="Total health-check budget")
    interval: float = Field(default=1.0, description="Delay between probes")
    probe_timeout: float = Field(default=5.0, description="Single probe timeout")
    require_success_status: bool = Field(
        default=False,
        description="Treat only 2xx/3xx responses as healthy",
    )

    @field_validator("timeout", "interval", "probe_timeout")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Validate durations are positive."""
        return _require_positive(v, "duration")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Only well-formed http(s) URLs with a valid port can be probed."""
        if v is None:
            return v
        try:
            url = httpx.URL(v)
        except httpx.InvalidURL as e:
            raise ValueError(f"Invalid health check URL {v!r}: {e}") from e
        if url.scheme not in ("http", "https") or not url.host:
            raise ValueError(f"Health check URL must be http(s) with a host: {v}")
        if url.port is not None and not 1 <= url.port <= 65535:
            raise ValueError(f"Health check URL port out of range: {v}")
        return v


# =============================================================================
# Build Configuration
# =============================================================================


class BuildConfig(BaseModel):
    """Binary resolver and build fallback settings.

    Attributes:
        source_dir: Source checkout used for lookup and builds.
        manifest: Build description that must exist in ``source_dir``.
        command: Build command (list or shell-style string).
        output: Build output path relative to ``source_dir``.
        timeout: Build timeout in seconds.
    """

    source_dir: str | None = Field(default=None, description="Source directory")
    manifest: str = Field(default="Cargo.toml", description="Build description file")
    command: list[str] = Field(
        default_factory=lambda: ["cargo", "build", "--release"],
        description="Build command",
    )
    output: str | None = Field(
        default=None,
        description="Build output relative to source_dir",
    )
    timeout: float = Field(default=1800.0, description="Build timeout in seconds")

    @field_validator("command", mode="before")
    @classmethod
    def split_command(cls, v: Any) -> Any:
        """Accept the build command as a shell-style string."""
        if isinstance(v, str):
            return shlex.split(v)
        return v

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: list[str]) -> list[str]:
        """Reject an empty build command."""
        if not v:
            raise ValueError("Build command must not be empty")
        return v

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate timeout is positive."""
        return _require_positive(v, "timeout")


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        json_format: Emit JSON log lines instead of console lines.
        log_to_stdout: Log to stdout instead of stderr.
    """

    level: str = Field(default="info", description="Log level")
    json_format: bool = Field(default=False, description="Emit JSON log lines")
    log_to_stdout: bool = Field(default=False, description="Log to stdout")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        service: Managed service settings.
        upgrade: Install, backup and locking settings.
        health: Health probe settings.
        build: Binary resolver settings.
        logging: Logging configuration.
    """

    service: ServiceConfig = Field(default_factory=ServiceConfig)
    upgrade: UpgradeConfig = Field(default_factory=UpgradeConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    build: BuildConfig = Field(default_factory=BuildConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def fill_service_defaults(self) -> AppConfig:
        """Derive the health URL and build output from service settings."""
        if self.health.url is None:
            self.health.url = f"http://127.0.0.1:{self.service.port}/"
        if self.build.output is None:
            self.build.output = f"target/release/{self.service.binary_name}"
        return self

    @property
    def install_path(self) -> Path:
        """Full path of the installed executable."""
        return Path(self.upgrade.install_dir) / self.service.binary_name

    @property
    def source_dir(self) -> Path:
        """Source directory for the resolver (cwd when unset)."""
        if self.build.source_dir:
            return Path(self.build.source_dir)
        return Path.cwd()


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        ConfigurationError: If the file is missing, unreadable or not a mapping.
    """
    if not config_path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {config_path}",
            details={"path": str(config_path)},
        )

    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(
            f"Failed to read configuration file {config_path}: {e}",
            details={"path": str(config_path)},
        ) from e

    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Configuration file must contain a mapping: {config_path}",
            details={"path": str(config_path)},
        )
    return data


def _load_legacy_env(environ: Mapping[str, str]) -> dict[str, Any]:
    """Map the legacy upgrade.sh environment variables onto config sections."""
    result: dict[str, Any] = {}
    for var, (section, key) in LEGACY_ENV_VARS.items():
        value = environ.get(var)
        if value:
            result.setdefault(section, {})[key] = value
    return result


def _load_env_config(
    prefix: str = DEFAULT_ENV_PREFIX,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Rules:
    - Prefix: WOLFSERVE_UPGRADER_ (configurable)
    - Nested keys: Double underscore (__) separator
    - Example: WOLFSERVE_UPGRADER_UPGRADE__MAX_BACKUPS=3

    Values are left as strings; the Pydantic models coerce them.
    """
    if environ is None:
        environ = os.environ

    result: dict[str, Any] = {}

    for key, value in environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})
        current[parts[-1]] = value

    return result


def load_config(
    config_path: Path | str | None = None,
    *,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    overrides: dict[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to a YAML configuration file. If None, the default
            path is used when it exists.
        env_prefix: Prefix for environment variables.
        overrides: Nested dictionary of command-line overrides.
        environ: Environment mapping (defaults to ``os.environ``).

    Returns:
        Fully configured AppConfig instance.

    Raises:
        ConfigurationError: If a file cannot be read or validation fails.

    Example:
        >>> config = load_config(overrides={"upgrade": {"max_backups": 3}})
        >>> config.upgrade.max_backups
        3
    """
    if environ is None:
        environ = os.environ

    config_dict: dict[str, Any] = {}

    if config_path is None:
        if DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    else:
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_legacy_env(environ))
    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix, environ))

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)

    try:
        return AppConfig(**config_dict)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid configuration: {e}",
            details={"errors": e.errors(include_url=False)},
        ) from e
