"""Single-instance run lock

An exclusive, non-blocking flock on a lock file. The kernel releases the
lock when the descriptor is closed, which includes every way the process can
end, so no code path has to remember to release it.
"""

import fcntl
import os
from enum import Enum
from pathlib import Path
from typing import IO, Optional


class LockStatus(str, Enum):
    ACQUIRED = "acquired"
    ALREADY_HELD = "already_held"


class RunLock:
    """Exclusive lock scoped to a backup run

    Usage:
        with RunLock(Path("/var/lock/backup.lock")) as lock:
            if lock.status is LockStatus.ALREADY_HELD:
                ...
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.status: Optional[LockStatus] = None
        self._handle: Optional[IO[str]] = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> LockStatus:
        """Try to take the lock without waiting

        Returns:
            LockStatus.ACQUIRED, or LockStatus.ALREADY_HELD if another run has it
        """
        if self._handle is not None:
            return LockStatus.ACQUIRED

        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, "a+")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            self.status = LockStatus.ALREADY_HELD
            return self.status
        except OSError:
            handle.close()
            raise

        # PID for whoever finds the lock held
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()

        self._handle = handle
        self.status = LockStatus.ACQUIRED
        return self.status

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
