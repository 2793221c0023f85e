"""Run context and artifact records

A RunContext is built once per process from BackupSettings and passed to
every component. It is frozen; nothing mutates it after construction.

Destination layout on the backup target:

    {mount_point}/{host}/config/*
    {mount_point}/{host}/db/{daily,weekly,monthly}/*
    {mount_point}/{host}/data/*
"""

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple

from hostbackup.config import BackupSettings

DATE_FORMAT = "%Y-%m-%d"
ARCHIVE_EXTENSION = "tgz"
DUMP_EXTENSION = "sql.gz"


class Category(str, Enum):
    CONFIG = "config"
    DATABASE = "database"
    DATA = "data"


class Tier(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ArtifactKind(str, Enum):
    ARCHIVE = "archive"
    DUMP = "dump"
    SNAPSHOT = "snapshot"  # plain-text system facts, copied files


@dataclass(frozen=True)
class RetentionPolicy:
    """Retention limits for one run"""
    daily_days: int = 3
    weekly_keep: int = 3
    monthly_keep: int = 3
    data_days: int = 30
    weekly_day: int = 7


@dataclass(frozen=True)
class Timeouts:
    """Upper bounds, in seconds, for every blocking operation"""
    probe: int = 5
    mount: int = 30
    unmount: int = 60
    archive: int = 3600
    dump: int = 3600
    fact: int = 60


@dataclass(frozen=True)
class BackupArtifact:
    """A single file produced by a backup step"""
    path: Path
    category: Category
    kind: ArtifactKind
    created: datetime
    tier: Optional[Tier] = None

    @property
    def name(self) -> str:
        return self.path.name


@dataclass(frozen=True)
class RunContext:
    """Immutable per-run configuration"""
    host: str
    site: str
    nas_address: str
    remote_path: str
    mount_point: Path
    mount_options: str
    now: datetime
    retention: RetentionPolicy
    timeouts: Timeouts
    source_root: Path = Path("/")
    config_roots: Tuple[str, ...] = ()
    primary_config_root: str = "etc"
    log_root: Optional[str] = None
    boot_config: Optional[str] = None
    data_roots: Tuple[Tuple[str, str], ...] = ()
    databases: Tuple[str, ...] = ()
    log_file: Optional[Path] = None
    error_log_file: Optional[Path] = None

    @property
    def today(self) -> date:
        return self.now.date()

    @property
    def date_stamp(self) -> str:
        return self.now.strftime(DATE_FORMAT)

    @property
    def day_of_week(self) -> int:
        """ISO weekday, 1 = Monday ... 7 = Sunday"""
        return self.now.isoweekday()

    @property
    def day_of_month(self) -> int:
        return self.now.day

    @property
    def host_dir(self) -> Path:
        return self.mount_point / self.host

    @property
    def config_dir(self) -> Path:
        return self.host_dir / "config"

    @property
    def db_dir(self) -> Path:
        return self.host_dir / "db"

    @property
    def data_dir(self) -> Path:
        return self.host_dir / "data"

    def tier_dir(self, tier: Tier) -> Path:
        return self.db_dir / tier.value

    def destination_dirs(self) -> Tuple[Path, ...]:
        """Every directory of the destination layout"""
        return (
            self.config_dir,
            *(self.tier_dir(tier) for tier in Tier),
            self.data_dir,
        )

    def source_path(self, relative: str) -> Path:
        return self.source_root / relative.strip("/")

    # Deterministic artifact names

    def config_archive_name(self, root: str) -> str:
        return f"{root.strip('/').replace('/', '-')}-{self.host}-{self.date_stamp}.{ARCHIVE_EXTENSION}"

    def snapshot_name(self, fact: str, extension: str = "txt") -> str:
        return f"{fact}-{self.host}-{self.date_stamp}.{extension}"

    def dump_name(self, database: str) -> str:
        return f"{database}-{self.date_stamp}.{DUMP_EXTENSION}"

    def data_archive_name(self, category: str) -> str:
        return f"{category}-{self.host}-{self.date_stamp}.{ARCHIVE_EXTENSION}"

    @classmethod
    def from_settings(cls, settings: BackupSettings, now: Optional[datetime] = None) -> "RunContext":
        """Build the run context from settings

        Args:
            settings: Loaded backup settings
            now: Run timestamp (default: current local time)
        """
        return cls(
            host=settings.host,
            site=settings.site,
            nas_address=settings.nas_address,
            remote_path=settings.remote_path,
            mount_point=settings.mount_point,
            mount_options=settings.mount_options,
            now=now or datetime.now(),
            retention=RetentionPolicy(
                daily_days=settings.daily_retention_days,
                weekly_keep=settings.weekly_keep,
                monthly_keep=settings.monthly_keep,
                data_days=settings.data_retention_days,
                weekly_day=settings.weekly_day,
            ),
            timeouts=Timeouts(
                probe=settings.probe_timeout,
                mount=settings.mount_timeout,
                unmount=settings.unmount_timeout,
                archive=settings.archive_timeout,
                dump=settings.dump_timeout,
                fact=settings.fact_timeout,
            ),
            source_root=settings.source_root,
            config_roots=tuple(settings.config_roots),
            primary_config_root=settings.primary_config_root,
            log_root=settings.log_root,
            boot_config=settings.boot_config,
            data_roots=tuple(settings.data_roots),
            databases=tuple(settings.databases),
            log_file=settings.log_file,
            error_log_file=settings.error_log_file,
        )
