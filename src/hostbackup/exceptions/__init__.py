"""Exceptions for hostbackup.

All exceptions include structured error information:
- code: Machine-readable error identifier
- message: Human-readable error description
- details: Additional context for debugging/recovery

Usage:
    from hostbackup.exceptions import (
        HostBackupError,
        FatalError,
        StepError,
        MountError,
    )
"""

from hostbackup.exceptions.base import (
    ArchiveError,
    CommandError,
    ConfigurationError,
    DumpError,
    FatalError,
    HostBackupError,
    IntegrityError,
    LockContentionError,
    MissingSourceError,
    MountError,
    PrimaryConfigError,
    RunInterrupted,
    StepError,
)

__all__ = [
    # Base exceptions
    "HostBackupError",
    "ConfigurationError",
    # Fatal
    "FatalError",
    "LockContentionError",
    "MountError",
    "PrimaryConfigError",
    "RunInterrupted",
    # Soft
    "StepError",
    "MissingSourceError",
    "ArchiveError",
    "DumpError",
    "IntegrityError",
    "CommandError",
]
