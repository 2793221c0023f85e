"""
Structured logger with JSON output and file support.

The production logger for backup runs: console output for cron mail, the
main run log, and a separate error log that only receives ERROR and above.
"""

import json
import logging
import logging.handlers
import sys
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .interface import Logger

# LogRecord attributes that must not be overwritten by extra kwargs
RESERVED_KEYS = frozenset({
    "args", "asctime", "created", "exc_info", "exc_text", "filename",
    "funcName", "levelname", "levelno", "lineno", "module",
    "msecs", "message", "msg", "name", "pathname", "process",
    "processName", "relativeCreated", "stack_info", "thread",
    "threadName", "taskName",
})


def _extra_fields(record: logging.LogRecord) -> dict:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in RESERVED_KEYS and key != "session_id"
    }


class JsonFormatter(logging.Formatter):
    """JSON formatter for logging records.

    Formats log records as JSON objects suitable for ingestion by
    log aggregation systems.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        session_id = getattr(record, "session_id", None)
        if session_id:
            log_data["session_id"] = str(session_id)

        for key, value in _extra_fields(record).items():
            log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Text formatter that appends extra kwargs to the message."""

    def format(self, record: logging.LogRecord) -> str:
        s = super().format(record)

        extra_args = _extra_fields(record)
        if extra_args:
            s += " " + " ".join(f"{k}={v}" for k, v in extra_args.items())

        return s


class StructuredLogger(Logger):
    """Logger implementation with structured JSON logging and file output.

    Supports:
    - JSON formatting for log aggregation systems
    - Human-readable text formatting (one line per event)
    - A main log file and an errors-only log file
    - Session tracking across all log entries of one run

    Example:
        logger = StructuredLogger(
            name="hostbackup",
            log_file="/var/log/backup.log",
            error_log_file="/var/log/backup-error.log",
        )
        logger.info("Backing up databases", step="databases")
    """

    def __init__(
        self,
        name: str = "hostbackup",
        level: int = logging.INFO,
        log_file: Optional[str] = None,
        json_format: bool = False,
        error_log_file: Optional[str] = None,
    ):
        """Initialize the structured logger.

        Args:
            name: Logger name
            level: Logging level (logging.DEBUG, logging.INFO, etc.)
            log_file: Optional file path for log output
            json_format: If True, output logs as JSON; otherwise use text format
            error_log_file: Optional file path receiving only ERROR and above
        """
        self._name = name
        self._session_id = str(uuid.uuid4())[:8]
        self._logger = logging.getLogger(name)
        self._logger.setLevel(level)

        # Clear existing handlers to avoid duplication if re-initialized
        if self._logger.hasHandlers():
            for handler in list(self._logger.handlers):
                handler.close()
            self._logger.handlers.clear()

        self._logger.propagate = False

        if json_format:
            self._formatter: logging.Formatter = JsonFormatter()
        else:
            self._formatter = TextFormatter(
                "%(asctime)s [%(levelname)s] [session:%(session_id)s] %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(self._formatter)
        self._logger.addHandler(console_handler)

        self.attach_files(log_file, error_log_file)

    def attach_files(self, log_file: Optional[str] = None,
                     error_log_file: Optional[str] = None) -> None:
        """Add the run log and the errors-only log to the console output"""
        if log_file:
            self._add_file_handler(log_file)
        if error_log_file:
            self._add_file_handler(error_log_file, level=logging.ERROR)

    def _add_file_handler(self, path: str, level: int = logging.NOTSET) -> None:
        try:
            file_handler = logging.handlers.WatchedFileHandler(path)
        except OSError as e:
            # Fallback to console if file cannot be opened
            print(f"Failed to setup log file {path}: {e}", file=sys.stderr)
            return
        file_handler.setLevel(level)
        file_handler.setFormatter(self._formatter)
        self._logger.addHandler(file_handler)

    def get_session_id(self) -> str:
        """Get the current session ID."""
        return self._session_id

    def _emit(self, level: int, message: str, exc_info: bool, fields: Dict[str, Any]) -> None:
        extra = {"session_id": self._session_id}

        for k, v in fields.items():
            if k not in RESERVED_KEYS:
                extra[k] = v
            else:
                # Prefix reserved keys to preserve them but avoid collision
                extra[f"_{k}"] = v

        self._logger.log(level, message, exc_info=exc_info, extra=extra)
