"""Base exception classes for hostbackup.

All hostbackup exceptions include structured error information:
- code: Machine-readable error identifier
- message: Human-readable error description
- details: Additional context for debugging/recovery

The hierarchy mirrors how a backup run treats a failure:
- FatalError: aborts the remaining stages (cleanup still runs)
- StepError: recorded as a soft error, the pipeline continues
"""

from typing import Any, Dict, Optional


class HostBackupError(Exception):
    """Base exception for all hostbackup errors.

    Attributes:
        code: Machine-readable error code (e.g., "MOUNT_UNREACHABLE")
        message: Human-readable error message
        details: Optional additional context for debugging/recovery
    """

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        """Initialize error with structured information.

        Args:
            code: Machine-readable error code (e.g., "DUMP_FAILED")
            message: Human-readable error message
            details: Optional additional context
        """
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        """Return formatted error string."""
        if self.details:
            return f"{self.code}: {self.message} (details: {self.details})"
        return f"{self.code}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization.

        Returns:
            Dictionary with code, message, and details keys.
        """
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(HostBackupError):
    """Raised when settings are invalid or incomplete."""

    pass


class FatalError(HostBackupError):
    """Base for errors that abort the remainder of a backup run."""

    pass


class LockContentionError(FatalError):
    """Another run already holds the run lock."""

    def __init__(self, lock_path: str):
        super().__init__(
            code="LOCK_HELD",
            message="Another backup instance is already running",
            details={"lock_path": lock_path},
        )


class MountError(FatalError):
    """The backup target could not be mounted or is not writable.

    The code carries the failing mount status (e.g. "MOUNT_UNREACHABLE").
    """

    pass


class PrimaryConfigError(FatalError):
    """The primary configuration root could not be archived."""

    pass


class RunInterrupted(FatalError):
    """An external signal interrupted the run."""

    def __init__(self, signum: int):
        super().__init__(
            code="INTERRUPTED",
            message=f"Backup run interrupted by signal {signum}",
            details={"signal": signum},
        )


class StepError(HostBackupError):
    """Base for soft errors: recorded and counted, the run continues."""

    pass


class MissingSourceError(StepError):
    """An optional backup source does not exist on this host."""

    def __init__(self, path: str):
        super().__init__(
            code="SOURCE_MISSING",
            message=f"Backup source not present: {path}",
            details={"path": path},
        )


class ArchiveError(StepError):
    """An archive could not be produced or read back."""

    pass


class DumpError(StepError):
    """A database dump could not be produced or read back."""

    pass


class IntegrityError(StepError):
    """An artifact produced in this run failed verification."""

    pass


class CommandError(StepError):
    """An external command failed or timed out."""

    pass
