"""Settings source for hostbackup: a .env file, the environment, overrides.

Values are merged low to high:
1) the .env file (an explicit --env-file, or ./.env when present)
2) OS environment variables
3) explicit overrides from the command line

Only keys under the prefix are kept, with the prefix removed, so
HOSTBACKUP_SITE=AMS3 loads as {"SITE": "AMS3"}.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Mapping, Optional

from dotenv import dotenv_values

from hostbackup.exceptions import ConfigurationError


class EnvLoader:
    """Collect prefixed settings from a .env file, the environment and overrides."""

    def __init__(self, env_file: Optional[Path | str] = None, prefix: str = "HOSTBACKUP") -> None:
        self.env_file = Path(env_file) if env_file else None
        self.prefix = prefix.rstrip("_") + "_"

    def _file_values(self) -> Mapping[str, Optional[str]]:
        if self.env_file is None:
            default = Path.cwd() / ".env"
            return dotenv_values(default) if default.exists() else {}
        if not self.env_file.is_file():
            # A named settings file that is missing would silently back up with defaults
            raise ConfigurationError(
                code="ENV_FILE_MISSING",
                message=f"Settings file not found: {self.env_file}",
                details={"path": str(self.env_file)},
            )
        return dotenv_values(self.env_file)

    def load(self, overrides: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Merged settings keyed by the name after the prefix.

        Raises:
            ConfigurationError: If an explicit env file does not exist
        """
        merged: Dict[str, str] = {}
        for source in (self._file_values(), os.environ, overrides or {}):
            for key, value in source.items():
                if value is not None and key.startswith(self.prefix):
                    merged[key[len(self.prefix):]] = str(value)
        return merged


__all__ = ["EnvLoader"]
