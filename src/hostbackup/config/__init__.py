"""Configuration Module for hostbackup

Typed settings with environment variable and .env file support.

Example:
    from hostbackup.config import BackupSettings

    settings = BackupSettings.from_env()
    settings = BackupSettings.from_env(env_file=Path("/etc/hostbackup.env"))
"""

from hostbackup.config.env_loader import EnvLoader
from hostbackup.config.settings import (
    DEFAULT_PREFIX,
    BackupSettings,
    parse_list,
    parse_pairs,
)

__all__ = [
    "BackupSettings",
    "DEFAULT_PREFIX",
    "EnvLoader",
    "parse_list",
    "parse_pairs",
]
