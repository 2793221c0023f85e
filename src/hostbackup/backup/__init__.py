"""hostbackup Backup Module

The retention-tiered backup pipeline: lock, mount, per-category backup
steps, snapshot promotion and pruning, verification, notification.

Usage:
    from hostbackup.backup import RunContext, build_controller
    from hostbackup.config import BackupSettings

    settings = BackupSettings.from_env()
    context = RunContext.from_settings(settings)
    outcome = build_controller(settings, context, logger).run()
    sys.exit(outcome.exit_code)
"""

from hostbackup.backup.context import (
    ArtifactKind,
    BackupArtifact,
    Category,
    RetentionPolicy,
    RunContext,
    Tier,
    Timeouts,
)
from hostbackup.backup.controller import RunController, build_controller
from hostbackup.backup.lock import LockStatus, RunLock
from hostbackup.backup.mount import (
    MountManager,
    MountProvider,
    MountStatus,
    NfsMountProvider,
    UnmountStatus,
)
from hostbackup.backup.notify import (
    CompositeNotifier,
    MailNotifier,
    NotificationTransport,
    Notifier,
    WebhookNotifier,
    build_notifier,
)
from hostbackup.backup.outcome import RunOutcome, RunState, RunStatus, Severity, StepFailure
from hostbackup.backup.producers import (
    ArchiveProducer,
    CommandFactCollector,
    DumpProducer,
    FactCollector,
    MysqlDumpProducer,
    TarArchiveProducer,
)
from hostbackup.backup.retention import RetentionEngine
from hostbackup.backup.steps import ConfigStep, DatabaseStep, DataStep
from hostbackup.backup.verify import IntegrityVerifier

__all__ = [
    # Run data
    "RunContext",
    "RetentionPolicy",
    "Timeouts",
    "BackupArtifact",
    "ArtifactKind",
    "Category",
    "Tier",
    "RunOutcome",
    "RunState",
    "RunStatus",
    "Severity",
    "StepFailure",
    # Components
    "RunLock",
    "LockStatus",
    "MountManager",
    "MountProvider",
    "MountStatus",
    "UnmountStatus",
    "NfsMountProvider",
    "ArchiveProducer",
    "TarArchiveProducer",
    "DumpProducer",
    "MysqlDumpProducer",
    "FactCollector",
    "CommandFactCollector",
    "ConfigStep",
    "DatabaseStep",
    "DataStep",
    "RetentionEngine",
    "IntegrityVerifier",
    "Notifier",
    "NotificationTransport",
    "MailNotifier",
    "WebhookNotifier",
    "CompositeNotifier",
    "build_notifier",
    # Orchestration
    "RunController",
    "build_controller",
]
