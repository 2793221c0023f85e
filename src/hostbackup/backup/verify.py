"""Backup verification module

Re-reads every archive and dump produced in the current run. Archives are
listed without extracting; compressed dumps are fully decompressed.
"""

from pathlib import Path
from typing import Iterable, Optional, Tuple

from hostbackup.backup.context import ArtifactKind, BackupArtifact
from hostbackup.backup.outcome import RunOutcome
from hostbackup.backup.producers import ArchiveProducer, DumpProducer
from hostbackup.exceptions import ArchiveError, DumpError, IntegrityError
from hostbackup.logger import Logger


class IntegrityVerifier:
    """Verifies backup file integrity"""

    name = "verify"

    def __init__(self, archiver: ArchiveProducer, dumper: DumpProducer, logger: Logger):
        self.archiver = archiver
        self.dumper = dumper
        self.logger = logger

    def verify_archive(self, path: Path) -> Tuple[bool, Optional[str]]:
        """Verify an archive can be opened and listed

        Args:
            path: Path to the archive

        Returns:
            Tuple of (success, error_message)
        """
        try:
            members = self.archiver.list_contents(path)
        except ArchiveError as e:
            return False, e.message

        self.logger.debug(f"Archive {path.name} contains {len(members)} entries")
        if not members:
            return False, "Archive is empty"
        return True, None

    def verify_dump(self, path: Path) -> Tuple[bool, Optional[str]]:
        """Verify a compressed dump decompresses cleanly

        Returns:
            Tuple of (success, error_message)
        """
        try:
            self.dumper.check_integrity(path)
        except DumpError as e:
            return False, e.message
        return True, None

    def verify(self, artifacts: Iterable[BackupArtifact], outcome: RunOutcome) -> int:
        """Check every archive and dump, counting failures

        Each failure is logged and recorded as a soft error; the remaining
        checks still run.

        Returns:
            Number of artifacts that failed verification
        """
        self.logger.info("Verifying backup integrity", step=self.name)
        error_count = 0
        checked = 0

        for artifact in artifacts:
            if artifact.kind is ArtifactKind.SNAPSHOT:
                continue
            checked += 1

            if not artifact.path.is_file():
                ok, error = False, "File does not exist"
            elif artifact.kind is ArtifactKind.ARCHIVE:
                ok, error = self.verify_archive(artifact.path)
            else:
                ok, error = self.verify_dump(artifact.path)

            if ok:
                continue

            error_count += 1
            label = "Corrupted SQL file" if artifact.kind is ArtifactKind.DUMP else "Corrupted file"
            self.logger.error(f"{label}: {artifact.path}", step=self.name, reason=error)
            outcome.record_soft(self.name, IntegrityError(
                code="INTEGRITY_CHECK_FAILED",
                message=f"{label}: {artifact.name}: {error}",
                details={"path": str(artifact.path), "kind": artifact.kind.value},
            ))

        outcome.verification_errors += error_count
        self.logger.info(
            f"Verification complete: {checked - error_count}/{checked} passed",
            step=self.name,
        )
        return error_count
