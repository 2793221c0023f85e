"""Mount management for the remote backup target

MountManager owns the connection to the backup share for one run. The
transport itself (NFS by default) lives behind MountProvider.
"""

import os
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Optional

from hostbackup.backup.commands import run_command
from hostbackup.backup.context import RunContext
from hostbackup.exceptions import CommandError
from hostbackup.logger import Logger

SENTINEL_NAME = ".backup_test"


class MountStatus(str, Enum):
    CONNECTED = "connected"
    ALREADY_CONNECTED = "already_connected"
    FAILED_UNREACHABLE = "failed_unreachable"
    FAILED_MOUNT_ERROR = "failed_mount_error"
    FAILED_NOT_WRITABLE = "failed_not_writable"

    @property
    def ok(self) -> bool:
        return self in (MountStatus.CONNECTED, MountStatus.ALREADY_CONNECTED)


class UnmountStatus(str, Enum):
    DISCONNECTED = "disconnected"
    FAILED_BUSY = "failed_busy"


class MountProvider(ABC):
    """Network filesystem client"""

    @abstractmethod
    def is_connected(self, mount_point: Path) -> bool:
        pass

    @abstractmethod
    def probe(self, address: str, timeout: int) -> bool:
        """Return True if the remote endpoint answers within timeout"""
        pass

    @abstractmethod
    def mount(self, address: str, remote_path: str, mount_point: Path,
              options: str, timeout: int) -> None:
        """Connect, raising CommandError on failure"""
        pass

    @abstractmethod
    def unmount(self, mount_point: Path, timeout: int) -> None:
        """Disconnect, raising CommandError on failure"""
        pass

    def write_probe(self, mount_point: Path) -> None:
        """Write then delete a sentinel file at the mount root"""
        sentinel = mount_point / SENTINEL_NAME
        sentinel.write_text(f"{os.getpid()}\n")
        sentinel.unlink()


class NfsMountProvider(MountProvider):
    """NFS client driven through ping, mount and umount"""

    def is_connected(self, mount_point: Path) -> bool:
        return os.path.ismount(mount_point)

    def probe(self, address: str, timeout: int) -> bool:
        try:
            run_command(["ping", "-c", "1", "-W", str(timeout), address], timeout=timeout + 2)
        except CommandError:
            return False
        return True

    def mount(self, address: str, remote_path: str, mount_point: Path,
              options: str, timeout: int) -> None:
        mount_point.mkdir(parents=True, exist_ok=True)
        run_command(
            ["mount", "-t", "nfs", "-o", options, f"{address}:{remote_path}", str(mount_point)],
            timeout=timeout,
        )

    def unmount(self, mount_point: Path, timeout: int) -> None:
        run_command(["umount", str(mount_point)], timeout=timeout)


class MountManager:
    """Establishes, verifies and tears down the backup target connection"""

    def __init__(self, provider: MountProvider, logger: Logger):
        self.provider = provider
        self.logger = logger
        self._context: Optional[RunContext] = None

    def connect(self, context: RunContext) -> MountStatus:
        """Connect to the backup target

        Idempotent: an existing mount short-circuits to ALREADY_CONNECTED.
        """
        self._context = context
        mount_point = context.mount_point

        if self.provider.is_connected(mount_point):
            self.logger.info("Backup target already mounted", mount_point=str(mount_point))
            return MountStatus.ALREADY_CONNECTED

        if not self.provider.probe(context.nas_address, context.timeouts.probe):
            self.logger.error("Cannot reach backup target", address=context.nas_address)
            return MountStatus.FAILED_UNREACHABLE

        try:
            self.provider.mount(
                context.nas_address,
                context.remote_path,
                mount_point,
                context.mount_options,
                context.timeouts.mount,
            )
        except CommandError as e:
            self.logger.error(f"Failed to mount backup target: {e}", mount_point=str(mount_point))
            return MountStatus.FAILED_MOUNT_ERROR

        try:
            self.provider.write_probe(mount_point)
        except OSError as e:
            self.logger.error(f"Backup target not writable: {e}", mount_point=str(mount_point))
            return MountStatus.FAILED_NOT_WRITABLE

        self.logger.info(
            "Backup target mounted",
            remote=f"{context.nas_address}:{context.remote_path}",
            mount_point=str(mount_point),
        )
        return MountStatus.CONNECTED

    def disconnect(self) -> UnmountStatus:
        """Tear down the connection

        "Not mounted" counts as success. A busy target is logged and
        reported, never raised.
        """
        if self._context is None:
            return UnmountStatus.DISCONNECTED

        mount_point = self._context.mount_point
        if not self.provider.is_connected(mount_point):
            return UnmountStatus.DISCONNECTED

        self.logger.info("Unmounting backup target", mount_point=str(mount_point))
        try:
            self.provider.unmount(mount_point, self._context.timeouts.unmount)
        except CommandError as e:
            if not self.provider.is_connected(mount_point):
                return UnmountStatus.DISCONNECTED
            self.logger.error(f"Failed to unmount {mount_point}: {e}")
            return UnmountStatus.FAILED_BUSY
        return UnmountStatus.DISCONNECTED
