"""Best-effort housekeeping before a run

Log rotation and prerequisite checks. Nothing here can fail a run: every
problem comes back as a warning string for the run outcome.
"""

import os
import shutil
import subprocess
from pathlib import Path
from typing import Iterable, List, Sequence

from hostbackup.backup.commands import run_command
from hostbackup.exceptions import CommandError
from hostbackup.logger import Logger

REQUIRED_TOOLS = ("mount.nfs", "mysqldump", "tar", "gzip")


def rotate_logs(paths: Iterable[Path], max_size: int, logger: Logger) -> List[str]:
    """Move log files larger than max_size bytes aside to *.old"""
    warnings = []
    for path in paths:
        try:
            if not path.is_file() or path.stat().st_size <= max_size:
                continue
            path.replace(path.with_name(path.name + ".old"))
            path.touch()
            logger.info(f"Rotated log file {path}", step="housekeeping")
        except OSError as e:
            message = f"log rotation of {path} failed: {e}"
            logger.warning(message, step="housekeeping")
            warnings.append(message)
    return warnings


def missing_packages(packages: Sequence[str]) -> List[str]:
    missing = []
    for package in packages:
        result = subprocess.run(
            ["dpkg", "-s", package],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=30,
            check=False,
        )
        if result.returncode != 0:
            missing.append(package)
    return missing


def check_prerequisites(
    logger: Logger,
    packages: Sequence[str] = (),
    install: bool = False,
    tools: Sequence[str] = REQUIRED_TOOLS,
) -> List[str]:
    """Check for root and the external tools a run needs

    With install=True, missing Debian packages are installed with apt-get.
    """
    logger.info("Checking prerequisites", step="housekeeping")
    warnings = []

    if os.geteuid() != 0:
        warnings.append("not running as root")

    if install and packages and shutil.which("dpkg"):
        try:
            to_install = missing_packages(packages)
        except (OSError, subprocess.SubprocessError) as e:
            to_install = []
            warnings.append(f"package check failed: {e}")
        if to_install:
            logger.info(f"Installing {', '.join(to_install)}", step="housekeeping")
            try:
                run_command(["apt-get", "update"], timeout=600)
                run_command(["apt-get", "install", "-y", *to_install], timeout=1800)
            except CommandError as e:
                warnings.append(f"package installation failed: {e.message}")

    for tool in tools:
        if shutil.which(tool) is None:
            warnings.append(f"{tool} not found on PATH")

    for warning in warnings:
        logger.warning(warning, step="housekeeping")
    return warnings
