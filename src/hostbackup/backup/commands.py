"""Bounded execution of external commands

Every external tool runs with a timeout. Failures of any kind (missing
binary, non-zero exit, timeout) come back as CommandError so callers can
classify them as fatal or soft.
"""

import subprocess
from typing import IO, Optional, Sequence, Tuple

from hostbackup.exceptions import CommandError


def run_command(
    argv: Sequence[str],
    timeout: float,
    stdout: Optional[IO] = None,
    ok_codes: Tuple[int, ...] = (0,),
) -> subprocess.CompletedProcess:
    """Run a command, raising CommandError on any failure

    Args:
        argv: Command and arguments (never passed through a shell)
        timeout: Seconds before the command is killed
        stdout: Optional file object receiving standard output; output is
            captured as text when omitted
        ok_codes: Exit statuses treated as success

    Returns:
        The completed process
    """
    command = argv[0]
    try:
        result = subprocess.run(
            list(argv),
            stdout=stdout if stdout is not None else subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=timeout,
            text=True,
            check=False,
        )
    except FileNotFoundError as e:
        raise CommandError(
            code="COMMAND_NOT_FOUND",
            message=f"{command} is not installed",
            details={"command": command},
        ) from e
    except subprocess.TimeoutExpired as e:
        raise CommandError(
            code="COMMAND_TIMEOUT",
            message=f"{command} timed out after {timeout}s",
            details={"command": command, "timeout": timeout},
        ) from e

    if result.returncode not in ok_codes:
        stderr = (result.stderr or "").strip()
        raise CommandError(
            code="COMMAND_FAILED",
            message=f"{command} exited with status {result.returncode}",
            details={"command": command, "returncode": result.returncode, "stderr": stderr[-500:]},
        )
    return result
