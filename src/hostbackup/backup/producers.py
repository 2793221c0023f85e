"""External producers: archives, database dumps and system facts

The backup steps only depend on the abstract interfaces here. The concrete
classes drive tar, mysqldump and assorted system commands, always with a
timeout.
"""

import gzip
import shutil
import stat
import tarfile
import threading
import zlib
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from hostbackup.backup.commands import run_command
from hostbackup.exceptions import ArchiveError, CommandError, DumpError

# Point-in-time system facts captured alongside configuration archives
DEFAULT_FACTS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("df", ("df", "-h")),
    ("ip", ("ip", "addr")),
    ("routes", ("ip", "route")),
    ("mounts", ("mount",)),
    ("dpkg", ("dpkg", "-l")),
    ("uname", ("uname", "-a")),
    ("services", ("systemctl", "list-unit-files", "--state=enabled", "--no-pager")),
    ("crontab", ("crontab", "-l")),
)

READ_CHUNK = 1024 * 1024


def default_compress_program() -> str:
    """pigz when installed, gzip otherwise"""
    return shutil.which("pigz") or "gzip"


def _discard(path: Path) -> None:
    if path.exists():
        path.unlink()


def _check_cancelled(cancel: Optional[threading.Event], database: str) -> None:
    if cancel is not None and cancel.is_set():
        raise DumpError(
            code="DUMP_CANCELLED",
            message=f"Dump of database {database} cancelled",
            details={"database": database},
        )


class ArchiveProducer(ABC):
    """Turns filesystem paths into a compressed archive"""

    @abstractmethod
    def create(self, root: Path, members: Sequence[str], destination: Path) -> None:
        """Archive members, given relative to root, into destination

        Member names keep their full path below root, so an archive of
        usr/local/etc restores to usr/local/etc and never onto etc.
        Raises ArchiveError.
        """
        pass

    def list_contents(self, path: Path) -> List[str]:
        """List member names without extracting, raising ArchiveError

        Reads every member header, so a truncated or corrupted stream fails.
        """
        try:
            with tarfile.open(path, "r:*") as tar:
                return tar.getnames()
        except (tarfile.TarError, EOFError, OSError, zlib.error) as e:
            raise ArchiveError(
                code="ARCHIVE_UNREADABLE",
                message=f"Tar integrity check failed: {e}",
                details={"path": str(path)},
            ) from e


class TarArchiveProducer(ArchiveProducer):
    """Archives with tar, compressed through pigz or gzip"""

    def __init__(self, timeout: int = 3600, compress_program: Optional[str] = None):
        self.timeout = timeout
        self.compress_program = compress_program or default_compress_program()

    def create(self, root: Path, members: Sequence[str], destination: Path) -> None:
        argv = [
            "tar", f"--use-compress-program={self.compress_program}",
            "-cf", str(destination),
            "-C", str(root),
            *(member.strip("/") for member in members),
        ]

        try:
            # tar exits 1 when files changed while being read; the archive is still complete
            run_command(argv, timeout=self.timeout, ok_codes=(0, 1))
        except CommandError as e:
            _discard(destination)
            raise ArchiveError(
                code="ARCHIVE_FAILED",
                message=f"Failed to archive {', '.join(members)} under {root}: {e.message}",
                details={"destination": str(destination), **e.details},
            ) from e


class DumpProducer(ABC):
    """Serializes one database into a compressed file"""

    @abstractmethod
    def dump(self, database: str, destination: Path,
             cancel: Optional[threading.Event] = None) -> None:
        """Write a compressed dump of database to destination, raising DumpError

        When cancel is set the dump stops at the next command boundary,
        removes its partial files and raises DumpError(DUMP_CANCELLED).
        """
        pass

    def check_integrity(self, path: Path) -> None:
        """Decompress the whole file, raising DumpError if it is damaged"""
        try:
            with gzip.open(path, "rb") as f:
                while f.read(READ_CHUNK):
                    pass
        except (OSError, EOFError, zlib.error) as e:
            raise DumpError(
                code="DUMP_CORRUPTED",
                message=f"Compressed dump failed integrity check: {e}",
                details={"path": str(path)},
            ) from e

    def credentials_warning(self) -> Optional[str]:
        return None


class MysqlDumpProducer(DumpProducer):
    """mysqldump authenticated through a client option file

    The password never appears on the command line: mysqldump reads it from
    the --defaults-file, which should be readable by root only.
    """

    def __init__(
        self,
        host: str,
        defaults_file: Path,
        options: Sequence[str] = ("--single-transaction", "--routines", "--triggers"),
        timeout: int = 3600,
        compress_program: Optional[str] = None,
    ):
        self.host = host
        self.defaults_file = Path(defaults_file)
        self.options = tuple(options)
        self.timeout = timeout
        self.compress_program = compress_program or default_compress_program()

    def credentials_warning(self) -> Optional[str]:
        try:
            mode = self.defaults_file.stat().st_mode
        except OSError as e:
            return f"Cannot stat credentials file {self.defaults_file}: {e.strerror}"
        if mode & (stat.S_IRWXG | stat.S_IRWXO):
            return f"Credentials file {self.defaults_file} is accessible by group or others"
        return None

    def dump(self, database: str, destination: Path,
             cancel: Optional[threading.Event] = None) -> None:
        if not destination.name.endswith(".gz"):
            raise DumpError(
                code="DUMP_BAD_DESTINATION",
                message=f"Dump destination must end in .gz: {destination}",
            )
        plain = destination.with_suffix("")
        argv = [
            "mysqldump",
            f"--defaults-file={self.defaults_file}",
            "-h", self.host,
            *self.options,
            database,
        ]

        try:
            _check_cancelled(cancel, database)
            with open(plain, "w") as out:
                run_command(argv, timeout=self.timeout, stdout=out)
            _check_cancelled(cancel, database)
            run_command([self.compress_program, "-f", str(plain)], timeout=self.timeout)
        except DumpError:
            _discard(plain)
            raise
        except (CommandError, OSError) as e:
            _discard(plain)
            _discard(destination)
            message = e.message if isinstance(e, CommandError) else str(e)
            raise DumpError(
                code="DUMP_FAILED",
                message=f"Failed to dump database {database}: {message}",
                details={"database": database, "destination": str(destination)},
            ) from e


class FactCollector(ABC):
    """Captures point-in-time system state as plain text"""

    @abstractmethod
    def facts(self) -> Sequence[str]:
        """Names of the facts this collector can capture"""
        pass

    @abstractmethod
    def collect(self, fact: str, destination: Path) -> None:
        """Write one fact to destination, raising CommandError"""
        pass


class CommandFactCollector(FactCollector):
    """Captures facts from the standard output of system commands"""

    def __init__(
        self,
        commands: Sequence[Tuple[str, Sequence[str]]] = DEFAULT_FACTS,
        timeout: int = 60,
    ):
        self.commands = {name: tuple(argv) for name, argv in commands}
        self.timeout = timeout

    def facts(self) -> Sequence[str]:
        return list(self.commands)

    def collect(self, fact: str, destination: Path) -> None:
        try:
            with open(destination, "w") as out:
                run_command(self.commands[fact], timeout=self.timeout, stdout=out)
        except CommandError:
            _discard(destination)
            raise
