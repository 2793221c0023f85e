"""Retention: snapshot promotion and pruning

Two independent policies:

- Age: delete files whose creation time is more than the window before
  "now". Applies to daily database dumps and data archives.
- Count: keep only the N most recently created files. Applies to the weekly
  and monthly database tiers, and only on their calendar boundary.

Configuration archives are never pruned here; they accumulate per run date
and are managed outside this tool.
"""

import shutil
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List

from hostbackup.backup.context import (
    ARCHIVE_EXTENSION,
    DUMP_EXTENSION,
    BackupArtifact,
    Category,
    RunContext,
    Tier,
)
from hostbackup.backup.outcome import RunOutcome
from hostbackup.exceptions import StepError
from hostbackup.logger import Logger

DUMP_PATTERN = f"*.{DUMP_EXTENSION}"
ARCHIVE_PATTERN = f"*.{ARCHIVE_EXTENSION}"


@dataclass(frozen=True)
class StoredFile:
    """A file already on the backup target"""
    path: Path
    created: datetime

    @classmethod
    def from_path(cls, path: Path) -> "StoredFile":
        return cls(path=path, created=datetime.fromtimestamp(path.stat().st_mtime))


class RetentionEngine:
    """Promotes daily dumps into longer tiers and prunes every tier"""

    name = "retention"

    def __init__(self, logger: Logger):
        self.logger = logger

    def scan(self, directory: Path, pattern: str) -> List[StoredFile]:
        """Files in directory matching pattern, newest first"""
        if not directory.is_dir():
            return []
        files = [StoredFile.from_path(p) for p in directory.glob(pattern) if p.is_file()]
        return sorted(files, key=lambda f: (f.created, f.path.name), reverse=True)

    def prune_by_age(
        self,
        directory: Path,
        window: timedelta,
        now: datetime,
        pattern: str,
        outcome: RunOutcome,
    ) -> List[Path]:
        """Remove files created more than window before now

        A file exactly window old is kept.
        """
        cutoff = now - window
        expired = [f for f in self.scan(directory, pattern) if f.created < cutoff]
        removed = self._remove(expired, outcome)
        self.logger.info(
            f"Age pruning of {directory}: removed {len(removed)} file(s)",
            step=self.name, window_days=window.days,
        )
        return removed

    def prune_by_count(self, directory: Path, keep: int, pattern: str,
                       outcome: RunOutcome) -> List[Path]:
        """Keep only the most recent keep files"""
        files = self.scan(directory, pattern)
        removed = self._remove(files[keep:], outcome)
        self.logger.info(
            f"Count pruning of {directory}: kept {min(keep, len(files))}, removed {len(removed)}",
            step=self.name,
        )
        return removed

    def prune_daily(self, context: RunContext, outcome: RunOutcome) -> List[Path]:
        return self.prune_by_age(
            context.tier_dir(Tier.DAILY),
            timedelta(days=context.retention.daily_days),
            context.now,
            DUMP_PATTERN,
            outcome,
        )

    def prune_data(self, context: RunContext, outcome: RunOutcome) -> List[Path]:
        return self.prune_by_age(
            context.data_dir,
            timedelta(days=context.retention.data_days),
            context.now,
            ARCHIVE_PATTERN,
            outcome,
        )

    def skip_config(self, context: RunContext) -> None:
        self.logger.info(
            f"Configuration archives in {context.config_dir} are not pruned by this tool",
            step=self.name,
        )

    def due_tiers(self, context: RunContext) -> List[Tier]:
        """Snapshot tiers whose calendar boundary is today"""
        tiers = []
        if context.day_of_week == context.retention.weekly_day:
            tiers.append(Tier.WEEKLY)
        if context.day_of_month == 1:
            tiers.append(Tier.MONTHLY)
        return tiers

    def promote(self, context: RunContext, artifacts: Iterable[BackupArtifact],
                outcome: RunOutcome) -> Dict[Tier, List[Path]]:
        """Copy this run's daily dumps into the tiers due today, then prune them

        Only dumps produced in this run are promoted, never leftovers
        already sitting in the daily tier. Tiers not due today are left
        untouched.
        """
        daily_dumps = [
            a for a in artifacts
            if a.category is Category.DATABASE and a.tier is Tier.DAILY and a.path.exists()
        ]
        promoted: Dict[Tier, List[Path]] = {}

        for tier in self.due_tiers(context):
            self.logger.info(f"Creating {tier.value} snapshots", step=self.name)
            tier_dir = context.tier_dir(tier)
            copies = []
            for artifact in daily_dumps:
                target = tier_dir / artifact.name
                try:
                    shutil.copy2(artifact.path, target)
                except OSError as e:
                    self.logger.error(f"Failed to copy {artifact.name} to {tier.value}: {e}",
                                      step=self.name)
                    outcome.record_soft(self.name, StepError(
                        code="PROMOTION_FAILED",
                        message=f"Could not copy {artifact.name} to {tier.value} tier: {e}",
                        details={"source": str(artifact.path), "tier": tier.value},
                    ))
                    continue
                copies.append(target)
            promoted[tier] = copies

            keep = context.retention.weekly_keep if tier is Tier.WEEKLY else context.retention.monthly_keep
            self.prune_by_count(tier_dir, keep, DUMP_PATTERN, outcome)

        if not promoted:
            self.logger.info("Not a snapshot day, weekly and monthly tiers untouched",
                             step=self.name)
        return promoted

    def _remove(self, files: Iterable[StoredFile], outcome: RunOutcome) -> List[Path]:
        removed = []
        for stored in files:
            try:
                stored.path.unlink()
            except OSError as e:
                self.logger.error(f"Failed to remove {stored.path}: {e}", step=self.name)
                outcome.record_soft(self.name, StepError(
                    code="PRUNE_FAILED",
                    message=f"Could not remove {stored.path.name}: {e}",
                    details={"path": str(stored.path)},
                ))
                continue
            removed.append(stored.path)
            self.logger.info(f"Removed old backup: {stored.path.name}", step=self.name)
        return removed
