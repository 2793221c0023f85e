"""Backup settings for hostbackup

Typed settings with environment variable (and .env file) overrides.
Every value has a default matching a stock Debian host backing up to the
site NAS; deployments override only what differs.
"""

import socket
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from hostbackup.config.env_loader import EnvLoader
from hostbackup.exceptions import ConfigurationError

DEFAULT_PREFIX = "HOSTBACKUP"


def _short_hostname() -> str:
    return socket.gethostname().split(".")[0]


def parse_list(value: str) -> List[str]:
    """Parse a comma-separated environment value into a list."""
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_pairs(value: str) -> List[Tuple[str, str]]:
    """Parse comma-separated name:path pairs.

    Format: HOSTBACKUP_DATA_ROOTS="www:var/www,letsencrypt:etc/letsencrypt"
    """
    pairs = []
    for pair in parse_list(value):
        if ":" not in pair:
            raise ConfigurationError(
                code="INVALID_PAIR",
                message=f"Expected name:path, got {pair!r}",
            )
        name, path = pair.split(":", 1)
        pairs.append((name.strip(), path.strip()))
    return pairs


class BackupSettings(BaseModel):
    """Backup run configuration with environment variable overrides"""

    # Site and host identification
    site: str = Field(default="DEN1", description="Site identifier on the NAS")
    host: str = Field(
        default_factory=_short_hostname,
        description="Host identifier used in the destination layout"
    )

    # Remote backup target
    nas_address: str = Field(
        default="tnas1.den1.nas.nas",
        description="NAS host name or address"
    )
    nfs_remote: Optional[str] = Field(
        default=None,
        description="Exported path on the NAS (default: /mnt/z/nfs0/backup/{site})"
    )
    mount_point: Path = Field(default=Path("/backup"), description="Local mount point")
    mount_options: str = Field(
        default="vers=4,rw,hard,intr,timeo=30,retrans=2",
        description="NFS mount options"
    )

    # Process-level files
    lock_file: Path = Field(default=Path("/var/lock/backup.lock"))
    log_file: Path = Field(default=Path("/var/log/backup.log"))
    error_log_file: Path = Field(default=Path("/var/log/backup-error.log"))
    max_log_size: int = Field(
        default=10 * 1024 * 1024,
        description="Rotate log files larger than this many bytes",
        ge=1
    )

    # What to back up
    source_root: Path = Field(
        default=Path("/"),
        description="Filesystem root the source paths below are relative to"
    )
    config_roots: List[str] = Field(
        default_factory=lambda: ["etc", "home", "root", "usr/local/etc", "opt"],
        description="Configuration roots, one archive each"
    )
    primary_config_root: str = Field(
        default="etc",
        description="Configuration root whose backup must succeed"
    )
    log_root: Optional[str] = Field(default="var/log", description="Log directory archived with config")
    boot_config: Optional[str] = Field(
        default="boot/grub/grub.cfg",
        description="Boot loader config copied with config (best-effort)"
    )
    data_roots: List[Tuple[str, str]] = Field(
        default_factory=lambda: [("www", "var/www"), ("letsencrypt", "etc/letsencrypt")],
        description="(category, path) data roots"
    )

    # Databases
    databases: List[str] = Field(default_factory=lambda: ["master", "service"])
    db_host: str = Field(default="mydb1.systems.com")
    mysql_defaults_file: Path = Field(
        default=Path("/root/.my.cnf"),
        description="Access-restricted client option file holding the credentials"
    )
    dump_options: List[str] = Field(
        default_factory=lambda: ["--single-transaction", "--routines", "--triggers"]
    )
    dump_workers: int = Field(default=1, description="Databases dumped concurrently", ge=1, le=8)

    # Retention policies
    daily_retention_days: int = Field(default=3, ge=1)
    weekly_keep: int = Field(default=3, ge=1)
    monthly_keep: int = Field(default=3, ge=1)
    data_retention_days: int = Field(default=30, ge=1)
    weekly_day: int = Field(
        default=7,
        description="ISO weekday of the weekly snapshot (1 = Monday, 7 = Sunday)",
        ge=1,
        le=7
    )

    # Timeouts (seconds)
    probe_timeout: int = Field(default=5, ge=1)
    mount_timeout: int = Field(default=30, ge=1)
    unmount_timeout: int = Field(default=60, ge=1)
    archive_timeout: int = Field(default=3600, ge=1)
    dump_timeout: int = Field(default=3600, ge=1)
    fact_timeout: int = Field(default=60, ge=1)

    # Notification
    admin_email: Optional[str] = Field(default="root@localhost")
    mail_from: Optional[str] = Field(default=None, description="Sender (default: backup@{host})")
    smtp_host: str = Field(default="localhost")
    smtp_port: int = Field(default=25)
    webhook_url: Optional[str] = Field(default=None)
    notify_timeout: int = Field(default=10, ge=1)

    # Housekeeping
    install_prerequisites: bool = Field(default=False)
    prerequisite_packages: List[str] = Field(
        default_factory=lambda: ["nfs-common", "mailutils", "pigz"]
    )

    # Scheduling
    schedule: str = Field(
        default="0 2 * * *",
        description="Schedule in cron format for the 'schedule' command"
    )

    @field_validator("schedule")
    @classmethod
    def validate_schedule(cls, v: str) -> str:
        """Validate cron schedule format (basic check)"""
        parts = v.split()
        if len(parts) != 5:
            raise ValueError("Schedule must be in cron format: 'minute hour day month weekday'")
        return v

    @field_validator("config_roots")
    @classmethod
    def validate_config_roots(cls, v: List[str]) -> List[str]:
        return [root.strip("/") for root in v]

    @model_validator(mode="after")
    def validate_primary_root(self) -> "BackupSettings":
        self.primary_config_root = self.primary_config_root.strip("/")
        if self.primary_config_root not in self.config_roots:
            raise ValueError(
                f"primary_config_root {self.primary_config_root!r} must be one of config_roots"
            )
        return self

    @property
    def remote_path(self) -> str:
        return self.nfs_remote or f"/mnt/z/nfs0/backup/{self.site}"

    @property
    def sender(self) -> str:
        return self.mail_from or f"backup@{self.host}"

    @classmethod
    def from_env(
        cls,
        prefix: str = DEFAULT_PREFIX,
        env_file: Optional[Path] = None,
        overrides: Optional[Mapping[str, str]] = None,
    ) -> "BackupSettings":
        """Create settings from environment variables

        Args:
            prefix: Environment variable prefix (variables are {prefix}_{FIELD})
            env_file: Optional .env file (default: ./.env when present)
            overrides: Highest-precedence values, keyed like the environment

        Returns:
            BackupSettings instance

        Raises:
            ConfigurationError: If a value fails validation or env_file is missing
        """
        env = EnvLoader(env_file, prefix=prefix).load(overrides)

        values: Dict[str, object] = {}
        for name, field in cls.model_fields.items():
            raw = env.get(name.upper())
            if raw is None:
                continue
            if name == "data_roots":
                values[name] = parse_pairs(raw)
            elif field.annotation == List[str]:
                values[name] = parse_list(raw)
            elif raw == "" and field.default is None:
                values[name] = None
            else:
                values[name] = raw

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(
                code="INVALID_SETTINGS",
                message=f"Invalid backup settings: {e.error_count()} error(s)",
                details={"errors": [err["msg"] for err in e.errors()]},
            ) from e
