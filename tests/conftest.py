"""Shared fixtures: a fake host filesystem and in-process collaborators.

The fakes replace only the external tools (NFS client, tar, mysqldump,
system commands, mail). Everything else runs for real against tmp_path.
"""

import gzip
import io
import tarfile
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

import pytest

from hostbackup.backup.context import RetentionPolicy, RunContext, Timeouts
from hostbackup.backup.controller import RunController
from hostbackup.backup.lock import RunLock
from hostbackup.backup.mount import MountManager, MountProvider
from hostbackup.backup.notify import NotificationTransport
from hostbackup.backup.outcome import RunStatus
from hostbackup.backup.producers import ArchiveProducer, DumpProducer, FactCollector
from hostbackup.backup.retention import RetentionEngine
from hostbackup.backup.steps import ConfigStep, DatabaseStep, DataStep
from hostbackup.backup.verify import IntegrityVerifier
from hostbackup.exceptions import ArchiveError, CommandError, DumpError
from hostbackup.logger import DefaultLogger

# Wednesday: neither the weekly (Sunday) nor the monthly boundary
PLAIN_DAY = datetime(2024, 3, 13, 2, 0, 0)
SUNDAY = datetime(2024, 3, 17, 2, 0, 0)
FIRST_OF_MONTH = datetime(2024, 4, 1, 2, 0, 0)

DATABASES = ("master", "service", "reports")


class FakeMountProvider(MountProvider):
    """NFS stand-in: 'mounting' just creates the mount point directory"""

    def __init__(self, reachable=True, mount_fails=False, writable=True,
                 busy=False, connected=False):
        self.reachable = reachable
        self.mount_fails = mount_fails
        self.writable = writable
        self.busy = busy
        self.connected = connected
        self.calls: List[str] = []

    def is_connected(self, mount_point: Path) -> bool:
        return self.connected

    def probe(self, address: str, timeout: int) -> bool:
        self.calls.append("probe")
        return self.reachable

    def mount(self, address, remote_path, mount_point, options, timeout) -> None:
        self.calls.append("mount")
        if self.mount_fails:
            raise CommandError(code="COMMAND_FAILED", message="mount exited with status 32")
        mount_point.mkdir(parents=True, exist_ok=True)
        self.connected = True

    def unmount(self, mount_point: Path, timeout: int) -> None:
        self.calls.append("unmount")
        if self.busy:
            raise CommandError(code="COMMAND_FAILED", message="umount: target is busy")
        self.connected = False

    def write_probe(self, mount_point: Path) -> None:
        self.calls.append("write_probe")
        if not self.writable:
            raise PermissionError(13, "Read-only file system")
        super().write_probe(mount_point)


class InProcessArchiver(ArchiveProducer):
    """Builds real .tgz files with tarfile instead of the tar binary"""

    def __init__(self, fail: Sequence[str] = (), corrupt: Sequence[str] = ()):
        self.fail = set(fail)
        self.corrupt = set(corrupt)
        self.created: List[Path] = []

    def create(self, root: Path, members: Sequence[str], destination: Path) -> None:
        names = {Path(member).name for member in members}
        if names & self.fail:
            raise ArchiveError(code="ARCHIVE_FAILED", message=f"tar failed for {sorted(names)}")
        if names & self.corrupt:
            destination.write_bytes(b"this is not a tar archive")
        else:
            with tarfile.open(destination, "w:gz") as tar:
                for member in members:
                    tar.add(root / member.strip("/"), arcname=member.strip("/"))
        self.created.append(destination)


class FakeDumper(DumpProducer):
    """Writes a small gzip-compressed SQL file per database"""

    def __init__(self, fail: Sequence[str] = (), warning: Optional[str] = None):
        self.fail = set(fail)
        self.warning = warning
        self.dumped: List[str] = []

    def credentials_warning(self) -> Optional[str]:
        return self.warning

    def dump(self, database: str, destination: Path,
             cancel: Optional[threading.Event] = None) -> None:
        if cancel is not None and cancel.is_set():
            raise DumpError(code="DUMP_CANCELLED", message=f"Dump of database {database} cancelled")
        if database in self.fail:
            raise DumpError(code="DUMP_FAILED", message=f"Failed to dump database {database}")
        with gzip.open(destination, "wt") as f:
            f.write(f"-- dump of {database}\nCREATE TABLE t (id INT);\n")
        self.dumped.append(database)


class StaticFactCollector(FactCollector):
    def __init__(self, facts: Sequence[str] = ("uname", "df"), fail: Sequence[str] = ()):
        self._facts = list(facts)
        self.fail = set(fail)

    def facts(self) -> Sequence[str]:
        return self._facts

    def collect(self, fact: str, destination: Path) -> None:
        if fact in self.fail:
            raise CommandError(code="COMMAND_NOT_FOUND", message=f"{fact} is not installed")
        destination.write_text(f"{fact} output\n")


class RecordingNotifier(NotificationTransport):
    def __init__(self, logger):
        super().__init__(logger)
        self.sent: List[tuple] = []

    def _deliver(self, status: RunStatus, subject: str, body: str) -> None:
        self.sent.append((status, subject, body))


def build_source_tree(root: Path) -> Path:
    files = {
        "etc/hosts": "127.0.0.1 localhost\n",
        "home/deploy/.bashrc": "export PATH\n",
        "root/.profile": "umask 022\n",
        "usr/local/etc/app.conf": "debug = false\n",
        "opt/app/VERSION": "4.2\n",
        "var/log/syslog": "boot\n",
        "boot/grub/grub.cfg": "set timeout=5\n",
        "var/www/index.html": "<html></html>\n",
        "etc/letsencrypt/live/example.org/cert.pem": "-----BEGIN CERTIFICATE-----\n",
    }
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


@pytest.fixture
def source_root(tmp_path: Path) -> Path:
    return build_source_tree(tmp_path / "host")


@pytest.fixture
def log_output() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def logger(log_output: io.StringIO) -> DefaultLogger:
    return DefaultLogger(output=log_output, include_timestamp=False)


@pytest.fixture
def make_context(tmp_path: Path, source_root: Path):
    """Factory for RunContext pointing at the fake host and a tmp backup target"""

    def factory(now: datetime = PLAIN_DAY, **overrides) -> RunContext:
        values = dict(
            host="web1",
            site="DEN1",
            nas_address="nas.test",
            remote_path="/mnt/z/nfs0/backup/DEN1",
            mount_point=tmp_path / "backup",
            mount_options="vers=4,rw",
            now=now,
            retention=RetentionPolicy(),
            timeouts=Timeouts(),
            source_root=source_root,
            config_roots=("etc", "home", "root", "usr/local/etc", "opt"),
            primary_config_root="etc",
            log_root="var/log",
            boot_config="boot/grub/grub.cfg",
            data_roots=(("www", "var/www"), ("letsencrypt", "etc/letsencrypt")),
            databases=DATABASES,
            log_file=tmp_path / "backup.log",
        )
        values.update(overrides)
        return RunContext(**values)

    return factory


@pytest.fixture
def context(make_context) -> RunContext:
    return make_context()


@pytest.fixture
def lock_path(tmp_path: Path) -> Path:
    return tmp_path / "lock" / "backup.lock"


@pytest.fixture
def make_controller(lock_path: Path, logger: DefaultLogger):
    """Factory wiring a RunController from fakes; keyword args replace any part"""

    def factory(context: RunContext, **parts) -> RunController:
        provider = parts.pop("provider", None) or FakeMountProvider()
        archiver = parts.pop("archiver", None) or InProcessArchiver()
        dumper = parts.pop("dumper", None) or FakeDumper()
        collector = parts.pop("collector", None) or StaticFactCollector()
        wiring = dict(
            lock=RunLock(lock_path),
            mount=MountManager(provider, logger),
            config_step=ConfigStep(archiver, collector, logger),
            database_step=DatabaseStep(dumper, logger),
            data_step=DataStep(archiver, logger),
            retention=RetentionEngine(logger),
            verifier=IntegrityVerifier(archiver, dumper, logger),
            notifier=RecordingNotifier(logger),
            logger=logger,
        )
        wiring.update(parts)
        return RunController(context, **wiring)

    return factory
