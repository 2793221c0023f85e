"""
hostbackup Logger Module

Provides the logging interface used by every backup component, with session
tracking, text or JSON output, and separate run/error log files.

Usage:
    from hostbackup.logger import Logger, get_logger, create_logger

    # Logger configured from the environment
    logger = get_logger()
    logger.info("Starting backup", host="web1")

    # Or explicitly
    logger = create_logger(
        name="hostbackup",
        log_file="/var/log/backup.log",
        error_log_file="/var/log/backup-error.log",
    )

Environment Variables:
    {PREFIX}_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    {PREFIX}_LOG_FILE: Optional file path for log output
    {PREFIX}_ERROR_LOG_FILE: Optional file path for ERROR and above
    {PREFIX}_LOG_JSON: Set to "true" for JSON output format

    Where {PREFIX} is derived from the logger name (e.g., HOSTBACKUP for "hostbackup")
"""

import logging
import os
from typing import Optional

from .default_logger import DefaultLogger
from .interface import Logger
from .structured_logger import JsonFormatter, StructuredLogger, TextFormatter


def _get_env_prefix(name: str) -> str:
    """Convert logger name to environment variable prefix.

    Examples:
        "hostbackup" -> "HOSTBACKUP"
        "host-backup" -> "HOST_BACKUP"
    """
    return name.upper().replace("-", "_")


def create_logger(
    name: str = "hostbackup",
    level: Optional[int] = None,
    log_file: Optional[str] = None,
    json_format: Optional[bool] = None,
    error_log_file: Optional[str] = None,
) -> Logger:
    """Create a new logger instance with the specified configuration.

    Parameters left as None are read from environment variables using the
    pattern {PREFIX}_LOG_LEVEL, {PREFIX}_LOG_FILE, {PREFIX}_ERROR_LOG_FILE and
    {PREFIX}_LOG_JSON where PREFIX is derived from the name.

    Args:
        name: Logger name
        level: Logging level (defaults to INFO or env var)
        log_file: Optional file path for log output
        json_format: If True, output logs as JSON
        error_log_file: Optional file path for ERROR and above

    Returns:
        A configured Logger instance
    """
    env_prefix = _get_env_prefix(name)

    if level is None:
        level_str = os.environ.get(f"{env_prefix}_LOG_LEVEL", "INFO").upper()
        level = getattr(logging, level_str, logging.INFO)

    if log_file is None:
        log_file = os.environ.get(f"{env_prefix}_LOG_FILE")

    if error_log_file is None:
        error_log_file = os.environ.get(f"{env_prefix}_ERROR_LOG_FILE")

    if json_format is None:
        json_format = os.environ.get(f"{env_prefix}_LOG_JSON", "false").lower() == "true"

    return StructuredLogger(
        name=name,
        level=level,
        log_file=log_file,
        json_format=json_format,
        error_log_file=error_log_file,
    )


def get_logger(name: str = "hostbackup") -> Logger:
    """Get a logger configured from environment variables.

    Args:
        name: Logger name

    Returns:
        A configured Logger instance
    """
    return create_logger(name=name)


__all__ = [
    # Interface
    "Logger",
    # Implementations
    "DefaultLogger",
    "StructuredLogger",
    # Formatters (for custom use)
    "JsonFormatter",
    "TextFormatter",
    # Factory functions
    "create_logger",
    "get_logger",
]
