"""Accumulated state of one backup run

Every component records its failures here instead of raising past the
controller. The notifier and the exit-code mapping read it once at the end.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from hostbackup.backup.context import BackupArtifact
from hostbackup.exceptions import HostBackupError


class RunState(str, Enum):
    INIT = "init"
    LOCK_ACQUIRED = "lock_acquired"
    MOUNTED = "mounted"
    CONFIG_DONE = "config_done"
    DATABASES_DONE = "databases_done"
    SNAPSHOTS_DONE = "snapshots_done"
    DATA_DONE = "data_done"
    VERIFIED = "verified"
    NOTIFIED = "notified"
    TERMINATED = "terminated"


class Severity(str, Enum):
    FATAL = "fatal"
    SOFT = "soft"


class RunStatus(str, Enum):
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    FAILED = "FAILED"


@dataclass(frozen=True)
class StepFailure:
    step: str
    error: HostBackupError
    severity: Severity

    def describe(self) -> str:
        return f"[{self.severity.value}] {self.step}: {self.error}"


@dataclass
class RunOutcome:
    """Failures, warnings and artifacts of the current run"""
    failures: List[StepFailure] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    artifacts: List[BackupArtifact] = field(default_factory=list)
    verification_errors: int = 0
    state: RunState = RunState.INIT
    fatal: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_soft(self, step: str, error: HostBackupError) -> None:
        with self._lock:
            self.failures.append(StepFailure(step, error, Severity.SOFT))

    def record_fatal(self, step: str, error: HostBackupError) -> None:
        with self._lock:
            self.failures.append(StepFailure(step, error, Severity.FATAL))
            self.fatal = True

    def record_warning(self, step: str, message: str) -> None:
        """Best-effort items: reported, never counted"""
        with self._lock:
            self.warnings.append(f"{step}: {message}")

    def add_artifact(self, artifact: BackupArtifact) -> None:
        with self._lock:
            self.artifacts.append(artifact)

    @property
    def soft_error_count(self) -> int:
        return sum(1 for f in self.failures if f.severity is Severity.SOFT)

    @property
    def fatal_failure(self) -> Optional[StepFailure]:
        for failure in self.failures:
            if failure.severity is Severity.FATAL:
                return failure
        return None

    @property
    def status(self) -> RunStatus:
        if self.fatal:
            return RunStatus.FAILED
        if self.soft_error_count:
            return RunStatus.WARNING
        return RunStatus.SUCCESS

    @property
    def exit_code(self) -> int:
        return 0 if self.status is RunStatus.SUCCESS else 1

    def summary(self) -> str:
        """Human-readable multi-line summary for the notification body"""
        lines = [
            f"Status: {self.status.value}",
            f"Last stage reached: {self.state.value}",
            f"Artifacts produced: {len(self.artifacts)}",
            f"Soft errors: {self.soft_error_count}",
            f"Verification errors: {self.verification_errors}",
        ]
        if self.failures:
            lines.append("")
            lines.append("Failures:")
            lines.extend(f"  {failure.describe()}" for failure in self.failures)
        if self.warnings:
            lines.append("")
            lines.append("Warnings:")
            lines.extend(f"  {warning}" for warning in self.warnings)
        return "\n".join(lines)
