"""hostbackup - host-level backup orchestrator.

Mounts the site NAS, archives configuration, dumps databases into
daily/weekly/monthly tiers, archives application data, verifies what it
wrote and reports the result.

- backup: the run pipeline and its components
- config: typed settings from environment and .env files
- logger: structured logging with run and error log files
- exceptions: fatal and soft error hierarchy
"""

__version__ = "1.0.0"

from hostbackup.logger import (
    Logger,
    DefaultLogger,
    StructuredLogger,
    get_logger,
    create_logger,
)

from hostbackup.config import BackupSettings

from hostbackup.exceptions import (
    HostBackupError,
    ConfigurationError,
    FatalError,
    StepError,
)

__all__ = [
    "__version__",
    # Logger
    "Logger",
    "DefaultLogger",
    "StructuredLogger",
    "get_logger",
    "create_logger",
    # Config
    "BackupSettings",
    # Exceptions
    "HostBackupError",
    "ConfigurationError",
    "FatalError",
    "StepError",
]
