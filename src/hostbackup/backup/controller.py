"""Backup run controller

Sequences one backup run:

    INIT -> LOCK_ACQUIRED -> MOUNTED -> CONFIG_DONE -> DATABASES_DONE
         -> SNAPSHOTS_DONE -> DATA_DONE -> VERIFIED -> NOTIFIED -> TERMINATED

A fatal error at any stage skips the remaining stages. Cleanup is
registered on an ExitStack as soon as the resource exists, so the unmount
and the lock release run exactly once on every exit path, including
SIGTERM/SIGINT.
"""

import signal
import threading
from contextlib import ExitStack, contextmanager
from typing import Callable, Iterator, List, Optional

from hostbackup.backup.context import RunContext
from hostbackup.backup.housekeeping import check_prerequisites, rotate_logs
from hostbackup.backup.lock import LockStatus, RunLock
from hostbackup.backup.mount import MountManager, NfsMountProvider
from hostbackup.backup.notify import Notifier, build_notifier
from hostbackup.backup.outcome import RunOutcome, RunState, RunStatus
from hostbackup.backup.producers import (
    CommandFactCollector,
    MysqlDumpProducer,
    TarArchiveProducer,
)
from hostbackup.backup.retention import RetentionEngine
from hostbackup.backup.steps import ConfigStep, DatabaseStep, DataStep
from hostbackup.backup.verify import IntegrityVerifier
from hostbackup.config import BackupSettings
from hostbackup.exceptions import (
    FatalError,
    LockContentionError,
    MountError,
    RunInterrupted,
)
from hostbackup.logger import Logger

HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGINT)

STATUS_PHRASES = {
    RunStatus.SUCCESS: "completed successfully",
    RunStatus.WARNING: "completed with errors",
    RunStatus.FAILED: "failed",
}


class RunController:
    """Drives one backup run and owns its RunOutcome"""

    def __init__(
        self,
        context: RunContext,
        *,
        lock: RunLock,
        mount: MountManager,
        config_step: ConfigStep,
        database_step: DatabaseStep,
        data_step: DataStep,
        retention: RetentionEngine,
        verifier: IntegrityVerifier,
        notifier: Notifier,
        logger: Logger,
        housekeeping: Optional[Callable[[], List[str]]] = None,
    ):
        self.context = context
        self.lock = lock
        self.mount = mount
        self.config_step = config_step
        self.database_step = database_step
        self.data_step = data_step
        self.retention = retention
        self.verifier = verifier
        self.notifier = notifier
        self.logger = logger
        self.housekeeping = housekeeping
        self.outcome = RunOutcome()
        self._current_stage = "init"
        self._accept_interrupts = False

    def run(self) -> RunOutcome:
        """Execute the pipeline and return the outcome

        Never raises for failures inside the pipeline; they are recorded
        in the outcome and mapped to its exit code.
        """
        self.logger.info(f"Starting backup for {self.context.host}",
                         site=self.context.site, date=self.context.date_stamp)

        with ExitStack() as stack:
            stack.enter_context(self._interruptible())
            try:
                self._run_pipeline(stack)
            except FatalError as e:
                self._abort(e)
            except Exception as e:
                self.logger.critical(f"Unexpected error: {e!r}", stage=self._current_stage,
                                     exc_info=True)
                self._abort(FatalError(
                    code="UNEXPECTED_ERROR",
                    message=f"Unexpected {type(e).__name__}: {e}",
                    details={"stage": self._current_stage},
                ))
            self._accept_interrupts = False
            self._notify()

        self.outcome.state = RunState.TERMINATED
        return self.outcome

    def _run_pipeline(self, stack: ExitStack) -> None:
        self._current_stage = "lock"
        if self.lock.acquire() is LockStatus.ALREADY_HELD:
            raise LockContentionError(str(self.lock.path))
        stack.callback(self.lock.release)
        self.outcome.state = RunState.LOCK_ACQUIRED
        self._attach_log_files()

        self._run_housekeeping()

        stack.callback(self._disconnect)
        self._stage("mount", RunState.MOUNTED, self._connect)
        self._stage("config", RunState.CONFIG_DONE, self._backup_config)
        self._stage("databases", RunState.DATABASES_DONE, self._backup_databases)
        self._stage("snapshots", RunState.SNAPSHOTS_DONE, self._create_snapshots)
        self._stage("data", RunState.DATA_DONE, self._backup_data)
        self._stage("verify", RunState.VERIFIED, self._verify)

    def _stage(self, name: str, reached: RunState, action: Callable[[], None]) -> None:
        self._current_stage = name
        self.logger.info(f"Stage {name} started", stage=name)
        action()
        self.outcome.state = reached
        self.logger.info(f"Stage {name} finished", stage=name,
                         soft_errors=self.outcome.soft_error_count)

    # Stages

    def _attach_log_files(self) -> None:
        context = self.context
        self.logger.attach_files(
            str(context.log_file) if context.log_file else None,
            str(context.error_log_file) if context.error_log_file else None,
        )
        self.logger.info(f"Run lock acquired, backing up {context.host}",
                         site=context.site, date=context.date_stamp)

    def _run_housekeeping(self) -> None:
        if self.housekeeping is None:
            return
        self._current_stage = "housekeeping"
        for warning in self.housekeeping():
            self.outcome.record_warning("housekeeping", warning)

    def _connect(self) -> None:
        status = self.mount.connect(self.context)
        if not status.ok:
            raise MountError(
                code=f"MOUNT_{status.name}",
                message=f"Backup target unavailable: {status.value}",
                details={
                    "remote": f"{self.context.nas_address}:{self.context.remote_path}",
                    "mount_point": str(self.context.mount_point),
                },
            )
        for directory in self.context.destination_dirs():
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise MountError(
                    code="DESTINATION_UNWRITABLE",
                    message=f"Cannot create {directory}: {e}",
                    details={"path": str(directory)},
                ) from e

    def _backup_config(self) -> None:
        self.config_step.run(self.context, self.outcome)
        self.retention.skip_config(self.context)

    def _backup_databases(self) -> None:
        self.database_step.run(self.context, self.outcome)
        self.retention.prune_daily(self.context, self.outcome)

    def _create_snapshots(self) -> None:
        self.retention.promote(self.context, list(self.outcome.artifacts), self.outcome)

    def _backup_data(self) -> None:
        self.data_step.run(self.context, self.outcome)
        self.retention.prune_data(self.context, self.outcome)

    def _verify(self) -> None:
        self.verifier.verify(list(self.outcome.artifacts), self.outcome)

    # Termination

    def _abort(self, error: FatalError) -> None:
        self.outcome.record_fatal(self._current_stage, error)
        self.logger.error(f"Stage {self._current_stage} failed: {error}",
                          stage=self._current_stage)

    def _disconnect(self) -> None:
        self.mount.disconnect()

    def _notify(self) -> None:
        outcome = self.outcome
        status = outcome.status
        phrase = STATUS_PHRASES[status]
        if status is RunStatus.SUCCESS:
            self.logger.info(f"Backup {phrase}")
        else:
            self.logger.error(f"Backup {phrase}", exit_code=outcome.exit_code)

        subject = f"Backup {status.value}: {self.context.host} - {self.context.date_stamp}"
        body = "\n".join([
            f"Backup {phrase} on {self.context.host} at {self.context.now:%Y-%m-%d %H:%M:%S}.",
            "",
            outcome.summary(),
            "",
            f"Detailed log: {self.context.log_file or 'console only'}",
        ])
        self.notifier.notify(status, subject, body)
        outcome.state = RunState.NOTIFIED

    # Signals

    def _on_signal(self, signum: int, frame) -> None:
        if not self._accept_interrupts:
            self.logger.warning(f"Signal {signum} received during cleanup, continuing")
            return
        self._accept_interrupts = False
        self.logger.error(f"Received signal {signum}, aborting run",
                          stage=self._current_stage)
        raise RunInterrupted(signum)

    @contextmanager
    def _interruptible(self) -> Iterator[None]:
        """Turn SIGTERM/SIGINT into RunInterrupted while the pipeline runs"""
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        previous = {sig: signal.getsignal(sig) for sig in HANDLED_SIGNALS}
        for sig in HANDLED_SIGNALS:
            signal.signal(sig, self._on_signal)
        self._accept_interrupts = True
        try:
            yield
        finally:
            self._accept_interrupts = False
            for sig, handler in previous.items():
                signal.signal(sig, handler)


def build_controller(
    settings: BackupSettings,
    context: RunContext,
    logger: Logger,
    notifier: Optional[Notifier] = None,
) -> RunController:
    """Wire a RunController with the production collaborators"""
    timeouts = context.timeouts
    archiver = TarArchiveProducer(timeout=timeouts.archive)
    dumper = MysqlDumpProducer(
        host=settings.db_host,
        defaults_file=settings.mysql_defaults_file,
        options=settings.dump_options,
        timeout=timeouts.dump,
    )

    def housekeeping() -> List[str]:
        warnings = rotate_logs(
            [settings.log_file, settings.error_log_file], settings.max_log_size, logger
        )
        warnings.extend(check_prerequisites(
            logger,
            packages=settings.prerequisite_packages,
            install=settings.install_prerequisites,
        ))
        return warnings

    return RunController(
        context,
        lock=RunLock(settings.lock_file),
        mount=MountManager(NfsMountProvider(), logger),
        config_step=ConfigStep(archiver, CommandFactCollector(timeout=timeouts.fact), logger),
        database_step=DatabaseStep(dumper, logger, max_workers=settings.dump_workers),
        data_step=DataStep(archiver, logger),
        retention=RetentionEngine(logger),
        verifier=IntegrityVerifier(archiver, dumper, logger),
        notifier=notifier or build_notifier(settings, logger),
        logger=logger,
        housekeeping=housekeeping,
    )
