"""Host command execution.

Every module that shells out to a host tool (lsblk, lsusb, systemctl, ...)
goes through ``run_cmd`` so commands are logged consistently and tests can
patch a single seam per module.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Conventional shell status for "command not found"
COMMAND_NOT_FOUND = 127


class CommandError(Exception):
    """Raised when a checked command exits non-zero."""

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str) -> None:
        message = f"Command failed ({returncode}): {shlex.join(argv)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)
        self.message = message
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr


@dataclass(frozen=True)
class CmdResult:
    """Result of a host command.

    Attributes:
        argv: The command that was executed.
        returncode: Process exit status (127 if the binary is missing).
        stdout: Captured standard output.
        stderr: Captured standard error.
    """

    argv: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        """Whether the command exited zero."""
        return self.returncode == 0


def run_cmd(
    argv: Sequence[str],
    *,
    check: bool = False,
    timeout: float | None = None,
    input_text: str | None = None,
) -> CmdResult:
    """Run a host command and capture its output.

    A missing executable or a timeout is reported as a non-zero result
    rather than an exception, so probes built on top of this never raise
    unless ``check`` is set.

    Args:
        argv: Command and arguments.
        check: Raise CommandError on non-zero exit.
        timeout: Optional timeout in seconds.
        input_text: Optional text fed to stdin.

    Returns:
        CmdResult with exit status and captured output.

    Raises:
        CommandError: If check is True and the command failed.
    """
    argv_list = list(argv)
    logger.debug("CMD %s", shlex.join(argv_list))

    try:
        proc = subprocess.run(
            argv_list,
            input=input_text,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
        result = CmdResult(argv_list, proc.returncode, proc.stdout, proc.stderr)
    except FileNotFoundError:
        result = CmdResult(argv_list, COMMAND_NOT_FOUND, "", f"{argv_list[0]}: not found")
    except subprocess.TimeoutExpired:
        result = CmdResult(argv_list, -1, "", f"timed out after {timeout}s")

    if result.stderr.strip():
        logger.debug("STDERR %s", result.stderr.strip())

    if check and not result.ok:
        raise CommandError(argv_list, result.returncode, result.stderr)

    return result


__all__ = ["COMMAND_NOT_FOUND", "CmdResult", "CommandError", "run_cmd"]
