"""
Structured logging for the WolfServe upgrader.

Two output formats are supported:
- JSON objects, one per line, for journald/log shippers
- Coloured ``[INFO]``/``[WARN]``/``[ERROR]`` lines for interactive use

Log output goes to stderr by default so that machine-readable command
output (``status --json``) on stdout is never interleaved with log lines.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TextIO

if TYPE_CHECKING:
    from wolfserve_upgrader.config import LoggingConfig

PACKAGE_LOGGER = "wolfserve_upgrader"

# Attributes present on every LogRecord; anything else came in via ``extra``.
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and value is not None
    }


class JSONFormatter(logging.Formatter):
    """
    A logging formatter that outputs log records as JSON objects.

    Each log record is formatted as a JSON object with consistent fields:
    - timestamp: ISO 8601 formatted timestamp in UTC
    - level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - logger: Logger name
    - message: Log message
    - Additional fields from the record's extra dict
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Format the log record as a JSON string.

        Args:
            record: The log record to format.

        Returns:
            JSON-formatted string representation of the log record.
        """
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        log_entry.update(_extra_fields(record))

        return json.dumps(log_entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """
    Human-oriented formatter producing ``[LEVEL] message`` lines.

    Colours are only emitted when ``use_color`` is set, which
    ``setup_logging`` does for TTY streams.
    """

    LABELS = {
        logging.DEBUG: ("DEBUG", "\033[0;36m"),
        logging.INFO: ("INFO", "\033[0;32m"),
        logging.WARNING: ("WARN", "\033[1;33m"),
        logging.ERROR: ("ERROR", "\033[0;31m"),
        logging.CRITICAL: ("FATAL", "\033[1;31m"),
    }
    RESET = "\033[0m"

    def __init__(self, *, use_color: bool = False) -> None:
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        label, color = self.LABELS.get(record.levelno, (record.levelname, ""))
        if self.use_color and color:
            prefix = f"{color}[{label}]{self.RESET}"
        else:
            prefix = f"[{label}]"
        line = f"{prefix} {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    json_format: bool = False,
    log_to_stdout: bool = False,
    stream: TextIO | None = None,
) -> logging.Logger:
    """
    Configure the logging system for the upgrader.

    Args:
        config: Optional LoggingConfig object with logging settings.
            If provided, overrides the keyword parameters.
        level: Default log level if no config is provided.
        json_format: Whether to use JSON formatting.
        log_to_stdout: Log to stdout instead of stderr.
        stream: Explicit stream to log to (takes precedence over
            ``log_to_stdout``).

    Returns:
        The package logger.

    Example:
        >>> from wolfserve_upgrader.logging import setup_logging
        >>> logger = setup_logging(level="DEBUG")
        >>> logger.info("Upgrade started", extra={"candidate": "/tmp/wolfserve"})
    """
    if config is not None:
        log_level = config.level.upper()
        json_format = config.json_format
        log_to_stdout = config.log_to_stdout
    else:
        log_level = level.upper()

    numeric_level = getattr(logging, log_level, logging.INFO)

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(numeric_level)

    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()

    if stream is None:
        stream = sys.stdout if log_to_stdout else sys.stderr

    handler = logging.StreamHandler(stream)
    handler.setLevel(numeric_level)

    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        isatty = getattr(stream, "isatty", None)
        handler.setFormatter(ConsoleFormatter(use_color=bool(isatty and isatty())))

    logger.addHandler(handler)
    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module.

    Args:
        name: The name for the logger, typically __name__ of the calling module.
            The package prefix is added automatically if not present.

    Returns:
        A logger that is a child of the package logger.
    """
    if not name.startswith(PACKAGE_LOGGER):
        name = f"{PACKAGE_LOGGER}.{name}"

    return logging.getLogger(name)
