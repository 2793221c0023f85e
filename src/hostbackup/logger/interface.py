"""
Logger interface for hostbackup.

Every backup component logs through a Logger handed to it, so all lines of
one run share a session id and tests can capture them.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class Logger(ABC):
    """Run logger contract.

    Level methods take the message plus keyword context (step=, path=,
    database=) rendered as key=value pairs or JSON fields. exc_info=True
    from inside an except block attaches the active traceback.

    Implementations provide _emit() and get_session_id(); loggers that can
    write files also override attach_files().

    Example:
        class ListLogger(Logger):
            def _emit(self, level, message, exc_info, fields):
                self.lines.append((logging.getLevelName(level), message, fields))

            def get_session_id(self) -> str:
                return "test"
    """

    @abstractmethod
    def _emit(self, level: int, message: str, exc_info: bool, fields: Dict[str, Any]) -> None:
        """Write one log event.

        Args:
            level: A logging module level (logging.INFO, ...)
            message: The message to log
            exc_info: Whether to include the active traceback
            fields: Keyword context passed by the caller
        """
        pass

    @abstractmethod
    def get_session_id(self) -> str:
        """Get the current session ID.

        Returns:
            The unique session identifier for this logger instance.
        """
        pass

    def attach_files(self, log_file: Optional[str] = None,
                     error_log_file: Optional[str] = None) -> None:
        """Start writing the run log and the errors-only log.

        Called once the run owns the run lock, so a refused run never
        writes to another run's log files. Console-only loggers ignore it.
        """
        pass

    def debug(self, message: str, *, exc_info: bool = False, **fields: Any) -> None:
        self._emit(logging.DEBUG, message, exc_info, fields)

    def info(self, message: str, *, exc_info: bool = False, **fields: Any) -> None:
        self._emit(logging.INFO, message, exc_info, fields)

    def warning(self, message: str, *, exc_info: bool = False, **fields: Any) -> None:
        self._emit(logging.WARNING, message, exc_info, fields)

    def error(self, message: str, *, exc_info: bool = False, **fields: Any) -> None:
        self._emit(logging.ERROR, message, exc_info, fields)

    def critical(self, message: str, *, exc_info: bool = False, **fields: Any) -> None:
        self._emit(logging.CRITICAL, message, exc_info, fields)
