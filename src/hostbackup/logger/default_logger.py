"""
Plain stream logger for ad-hoc commands and tests.

One line per event: optional timestamp, level, logger name, short session
id, message, and the keyword context in parentheses. No files, no handlers.
"""

import logging
import sys
import traceback
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, TextIO

from .interface import Logger


class DefaultLogger(Logger):
    """Stream logger with session tracking.

    Example:
        logger = DefaultLogger(output=sys.stdout)
        logger.error("Dump failed", database="master")
        # 2024-03-13T02:00:01+00:00 [ERROR] [hostbackup] [session:1a2b3c4d] Dump failed (database=master)
    """

    def __init__(
        self,
        name: str = "hostbackup",
        output: TextIO = sys.stderr,
        include_timestamp: bool = True,
    ):
        self._name = name
        self._session_id = str(uuid.uuid4())
        self._output = output
        self._include_timestamp = include_timestamp

    def get_session_id(self) -> str:
        return self._session_id

    def _emit(self, level: int, message: str, exc_info: bool, fields: Dict[str, Any]) -> None:
        parts = []
        if self._include_timestamp:
            parts.append(datetime.now(timezone.utc).isoformat())
        parts.extend([
            f"[{logging.getLevelName(level)}]",
            f"[{self._name}]",
            f"[session:{self._session_id[:8]}]",
            message,
        ])
        if fields:
            parts.append("(" + " ".join(f"{k}={v}" for k, v in fields.items()) + ")")

        line = " ".join(parts)
        if exc_info:
            line += "\n" + traceback.format_exc().rstrip()
        print(line, file=self._output, flush=True)
