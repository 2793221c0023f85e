"""Category backup steps: configuration, databases, data

Each step is best-effort per sub-item. A missing or failing sub-item is
recorded in the RunOutcome as a soft error and skipped; only the primary
configuration root is allowed to fail the whole run.
"""

import shutil
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from hostbackup.backup.context import (
    ArtifactKind,
    BackupArtifact,
    Category,
    RunContext,
    Tier,
)
from hostbackup.backup.outcome import RunOutcome
from hostbackup.backup.producers import ArchiveProducer, DumpProducer, FactCollector
from hostbackup.exceptions import (
    ArchiveError,
    CommandError,
    DumpError,
    MissingSourceError,
    PrimaryConfigError,
)
from hostbackup.logger import Logger


def _artifact(path: Path, category: Category, kind: ArtifactKind,
              tier: Optional[Tier] = None) -> BackupArtifact:
    return BackupArtifact(path=path, category=category, kind=kind,
                          created=datetime.now(), tier=tier)


class ConfigStep:
    """Archives configuration roots and captures system facts"""

    name = "config"

    def __init__(self, archiver: ArchiveProducer, collector: FactCollector, logger: Logger):
        self.archiver = archiver
        self.collector = collector
        self.logger = logger

    def run(self, context: RunContext, outcome: RunOutcome) -> List[BackupArtifact]:
        self.logger.info("Backing up system configuration files", step=self.name)
        artifacts: List[BackupArtifact] = []

        # Primary root first so a fatal failure stops before the optional work
        roots = sorted(context.config_roots, key=lambda r: r != context.primary_config_root)
        for root in roots:
            artifact = self._archive_root(context, outcome, root)
            if artifact:
                artifacts.append(artifact)

        if context.log_root:
            artifact = self._archive(
                context, outcome, context.log_root,
                context.config_dir / context.snapshot_name("logs", "tgz"),
            )
            if artifact:
                artifacts.append(artifact)

        if context.boot_config:
            artifact = self._copy_boot_config(context, outcome)
            if artifact:
                artifacts.append(artifact)

        for fact in self.collector.facts():
            artifact = self._collect_fact(context, outcome, fact)
            if artifact:
                artifacts.append(artifact)

        for artifact in artifacts:
            outcome.add_artifact(artifact)
        return artifacts

    def _archive_root(self, context: RunContext, outcome: RunOutcome,
                      root: str) -> Optional[BackupArtifact]:
        source = context.source_path(root)
        destination = context.config_dir / context.config_archive_name(root)

        if root != context.primary_config_root:
            return self._archive(context, outcome, root, destination)

        if not source.exists():
            raise PrimaryConfigError(
                code="PRIMARY_CONFIG_MISSING",
                message=f"Primary configuration root not present: {source}",
                details={"path": str(source)},
            )
        try:
            self.archiver.create(context.source_root, [root], destination)
        except ArchiveError as e:
            raise PrimaryConfigError(
                code="PRIMARY_CONFIG_FAILED",
                message=f"Primary configuration backup failed: {e.message}",
                details=e.details,
            ) from e
        self.logger.info(f"Archived {source}", step=self.name, path=str(destination))
        return _artifact(destination, Category.CONFIG, ArtifactKind.ARCHIVE)

    def _archive(self, context: RunContext, outcome: RunOutcome,
                 root: str, destination: Path) -> Optional[BackupArtifact]:
        source = context.source_path(root)
        if not source.exists():
            error = MissingSourceError(str(source))
            self.logger.warning(f"Skipping missing configuration root {source}", step=self.name)
            outcome.record_soft(self.name, error)
            return None
        try:
            self.archiver.create(context.source_root, [root], destination)
        except ArchiveError as e:
            self.logger.error(str(e), step=self.name)
            outcome.record_soft(self.name, e)
            return None
        self.logger.info(f"Archived {source}", step=self.name, path=str(destination))
        return _artifact(destination, Category.CONFIG, ArtifactKind.ARCHIVE)

    def _copy_boot_config(self, context: RunContext,
                          outcome: RunOutcome) -> Optional[BackupArtifact]:
        source = context.source_path(context.boot_config)
        suffix = source.suffix.lstrip(".") or "txt"
        destination = context.config_dir / context.snapshot_name("grub", suffix)
        try:
            shutil.copy2(source, destination)
        except OSError as e:
            self.logger.warning(f"Boot loader config not copied: {e}", step=self.name)
            outcome.record_warning(self.name, f"boot config {source}: {e.strerror or e}")
            return None
        return _artifact(destination, Category.CONFIG, ArtifactKind.SNAPSHOT)

    def _collect_fact(self, context: RunContext, outcome: RunOutcome,
                      fact: str) -> Optional[BackupArtifact]:
        destination = context.config_dir / context.snapshot_name(fact)
        try:
            self.collector.collect(fact, destination)
        except (CommandError, OSError) as e:
            self.logger.warning(f"System fact '{fact}' not captured: {e}", step=self.name)
            outcome.record_warning(self.name, f"fact {fact}: {e}")
            return None
        return _artifact(destination, Category.CONFIG, ArtifactKind.SNAPSHOT)


class DatabaseStep:
    """Dumps every configured database into the daily tier

    With max_workers > 1 dumps run concurrently. Each dump writes its own
    file and records its own failure; one failing dump never cancels the
    others. If the step is left early, for example by RunInterrupted, queued
    dumps are cancelled and running ones are waited for, so no dump thread
    writes to the target after the step returns.
    """

    name = "databases"

    def __init__(self, dumper: DumpProducer, logger: Logger, max_workers: int = 1):
        self.dumper = dumper
        self.logger = logger
        self.max_workers = max(1, max_workers)
        self._cancel = threading.Event()
        self._active = 0
        self._idle = threading.Condition()

    def run(self, context: RunContext, outcome: RunOutcome) -> List[BackupArtifact]:
        self.logger.info("Backing up databases", step=self.name,
                         databases=",".join(context.databases))

        warning = self.dumper.credentials_warning()
        if warning:
            self.logger.warning(warning, step=self.name)
            outcome.record_warning(self.name, warning)

        self._cancel.clear()
        if self.max_workers > 1 and len(context.databases) > 1:
            results = self._dump_concurrently(context, outcome)
        else:
            results = [self._dump(context, outcome, database) for database in context.databases]

        artifacts = [artifact for artifact in results if artifact is not None]
        for artifact in artifacts:
            outcome.add_artifact(artifact)
        return artifacts

    def _dump_concurrently(self, context: RunContext,
                           outcome: RunOutcome) -> List[Optional[BackupArtifact]]:
        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="dump")
        try:
            futures = [pool.submit(self._guarded_dump, context, outcome, database)
                       for database in context.databases]
            return [future.result() for future in futures]
        finally:
            self._drain(pool)

    def _guarded_dump(self, context: RunContext, outcome: RunOutcome,
                      database: str) -> Optional[BackupArtifact]:
        with self._idle:
            if self._cancel.is_set():
                return None
            self._active += 1
        try:
            return self._dump(context, outcome, database)
        finally:
            with self._idle:
                self._active -= 1
                self._idle.notify_all()

    def _drain(self, pool: ThreadPoolExecutor) -> None:
        """Stop new dumps and wait for the running ones

        Counting dumps under the condition covers a worker the executor
        started but has not registered yet, which shutdown() would not join.
        """
        with self._idle:
            self._cancel.set()
        pool.shutdown(wait=False, cancel_futures=True)
        with self._idle:
            self._idle.wait_for(lambda: self._active == 0)
        pool.shutdown(wait=True)

    def _dump(self, context: RunContext, outcome: RunOutcome,
              database: str) -> Optional[BackupArtifact]:
        destination = context.tier_dir(Tier.DAILY) / context.dump_name(database)
        try:
            self.dumper.dump(database, destination, cancel=self._cancel)
        except DumpError as e:
            self.logger.error(str(e), step=self.name, database=database)
            outcome.record_soft(self.name, e)
            return None
        self.logger.info(f"Dumped database {database}", step=self.name, path=str(destination))
        return _artifact(destination, Category.DATABASE, ArtifactKind.DUMP, Tier.DAILY)


class DataStep:
    """Archives large, slowly-changing data roots"""

    name = "data"

    def __init__(self, archiver: ArchiveProducer, logger: Logger):
        self.archiver = archiver
        self.logger = logger

    def run(self, context: RunContext, outcome: RunOutcome) -> List[BackupArtifact]:
        self.logger.info("Backing up web and certificate data", step=self.name)
        artifacts: List[BackupArtifact] = []

        for category, relative in context.data_roots:
            source = context.source_path(relative)
            if not source.exists():
                self.logger.warning(f"Skipping missing data root {source}", step=self.name)
                outcome.record_soft(self.name, MissingSourceError(str(source)))
                continue

            destination = context.data_dir / context.data_archive_name(category)
            try:
                self.archiver.create(context.source_root, [relative], destination)
            except ArchiveError as e:
                self.logger.error(str(e), step=self.name, category=category)
                outcome.record_soft(self.name, e)
                continue

            self.logger.info(f"Archived {source}", step=self.name, path=str(destination))
            artifacts.append(_artifact(destination, Category.DATA, ArtifactKind.ARCHIVE))

        for artifact in artifacts:
            outcome.add_artifact(artifact)
        return artifacts
