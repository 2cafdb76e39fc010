"""Flash runner for the vendor initrd flash tool.

This module handles:
- Resolving the partition-layout and QSPI config files in the toolkit
- Composing the flash tool command (optionally under systemd-inhibit)
- Running it as a child process group, tee'ing combined output to the
  run log and the console
- Killing the whole process group on request
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import signal
import subprocess
import threading
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, TYPE_CHECKING

from tinderbox.provision.errors import ProvisioningError, ToolkitLayoutError

if TYPE_CHECKING:
    from tinderbox.config import Settings

logger = logging.getLogger(__name__)

FLASH_TOOL_RELPATH = "tools/kernel_flash/l4t_initrd_flash.sh"
QSPI_CFG_NAME = "flash_t234_qspi.xml"
QSPI_CFG_DIRS = ("bootloader/generic/cfg", "bootloader/t186ref/cfg")
NVME_XML_DIR = "tools/kernel_flash"
NVME_XML_NAME = "flash_l4t_t234_nvme.xml"
SEARCH_MAX_DEPTH = 6

INHIBIT_WHY = "Jetson flashing (NFS over USB)"


class FlashExecutionError(ProvisioningError):
    """The flash tool could not be started."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code="FLASH_EXEC")


def _bounded_glob(root: Path, pattern: str, max_depth: int) -> list[Path]:
    matches: list[Path] = []
    base_depth = len(root.parts)
    for dirpath, dirnames, _filenames in os.walk(root):
        current = Path(dirpath)
        if len(current.parts) - base_depth >= max_depth:
            dirnames[:] = []
        matches.extend(sorted(current.glob(pattern)))
    return sorted(matches)


def resolve_qspi_cfg(l4t_dir: Path) -> str:
    """Find the QSPI flash config, relative to the toolkit root.

    Known locations are tried first, then a bounded search under
    'bootloader/' for 'flash_t234_qspi*.xml'.

    Raises:
        ToolkitLayoutError: No config found.
    """
    for rel in QSPI_CFG_DIRS:
        candidate = l4t_dir / rel / QSPI_CFG_NAME
        if candidate.is_file():
            return f"{rel}/{QSPI_CFG_NAME}"

    bootloader = l4t_dir / "bootloader"
    if bootloader.is_dir():
        found = _bounded_glob(bootloader, "flash_t234_qspi*.xml", SEARCH_MAX_DEPTH)
        if found:
            return str(found[0].relative_to(l4t_dir))

    raise ToolkitLayoutError(f"No {QSPI_CFG_NAME} found under {l4t_dir}/bootloader")


def resolve_nvme_xml(l4t_dir: Path) -> str:
    """Find the external-device partition layout, relative to the toolkit root.

    Raises:
        ToolkitLayoutError: No layout found.
    """
    xml_dir = l4t_dir / NVME_XML_DIR
    if (xml_dir / NVME_XML_NAME).is_file():
        return f"{NVME_XML_DIR}/{NVME_XML_NAME}"

    found = sorted(xml_dir.glob("flash_l4t_t234_nvme*.xml")) if xml_dir.is_dir() else []
    if found:
        return f"{NVME_XML_DIR}/{found[0].name}"

    raise ToolkitLayoutError(f"No {NVME_XML_NAME} found in {xml_dir}")


def require_flash_tool(l4t_dir: Path) -> Path:
    """Ensure the flash tool exists and is executable.

    Raises:
        ToolkitLayoutError: Tool missing or not executable.
    """
    tool = l4t_dir / FLASH_TOOL_RELPATH
    if not tool.is_file() or not os.access(tool, os.X_OK):
        raise ToolkitLayoutError(f"Missing initrd flash tool: {tool}")
    return tool


def compose_flash_command(
    l4t_dir: Path,
    os_partition: str,
    settings: Settings,
    inhibit: bool = True,
) -> list[str]:
    """Compose the initrd flash command for an external NVMe target.

    Args:
        l4t_dir: Toolkit root (the command runs from here).
        os_partition: Target root partition name (e.g., 'nvme0n1p1').
        settings: Run settings (board, transport interface).
        inhibit: Wrap in systemd-inhibit when it is available.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    nvme_xml = resolve_nvme_xml(l4t_dir)
    qspi_cfg = resolve_qspi_cfg(l4t_dir)

    cmd = [
        f"./{FLASH_TOOL_RELPATH}",
        "--external-device",
        os_partition,
        "-c",
        nvme_xml,
        "-p",
        f"-c {qspi_cfg}",
        "--showlogs",
        "--network",
        settings.transport_interface,
        settings.board,
        "internal",
    ]

    if inhibit and shutil.which("systemd-inhibit"):
        cmd = [
            "systemd-inhibit",
            "--what=sleep:shutdown:idle",
            "--mode=block",
            f"--why={INHIBIT_WHY}",
            *cmd,
        ]
    return cmd


class FlashProcess:
    """The flash tool running as its own process group.

    Combined stdout/stderr is appended line by line to ``log_path`` (flushed
    per line so other readers see it live) and passed to ``echo``.
    """

    def __init__(
        self,
        argv: list[str],
        cwd: Path,
        log_path: Path,
        echo: Callable[[str], None] | None = None,
    ) -> None:
        self.argv = argv
        self.cwd = cwd
        self.log_path = log_path
        self.echo = echo
        self.started_at: datetime | None = None
        self.finished_at: datetime | None = None
        self.exit_code: int | None = None
        self._proc: subprocess.Popen[str] | None = None
        self._log: IO[str] | None = None
        self._pump: threading.Thread | None = None

    @property
    def command(self) -> str:
        return shlex.join(self.argv)

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    def start(self) -> None:
        """Open the log, write its header and spawn the child.

        Raises:
            FlashExecutionError: The child could not be spawned.
        """
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.started_at = datetime.now(timezone.utc)
        self._log = self.log_path.open("a")
        self._log.write(f"# Command: {self.command}\n")
        self._log.write(f"# Started: {self.started_at.isoformat()}\n")
        self._log.write(f"# CWD: {self.cwd}\n")
        self._log.write("# " + "=" * 70 + "\n\n")
        self._log.flush()

        logger.info("Executing flash: %s", self.command)
        try:
            self._proc = subprocess.Popen(
                self.argv,
                cwd=self.cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                bufsize=1,
                start_new_session=True,
            )
        except OSError as e:
            self._log.write(f"# Failed to start: {e}\n")
            self._log.close()
            self._log = None
            raise FlashExecutionError(f"Failed to execute flash tool: {e}") from e

        self._pump = threading.Thread(target=self._tee, name="flash-log", daemon=True)
        self._pump.start()

    def _tee(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        assert self._log is not None
        for line in self._proc.stdout:
            self._log.write(line)
            self._log.flush()
            if self.echo:
                self.echo(line.rstrip("\n"))

    def is_running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def kill(self) -> None:
        """SIGKILL the whole process group. No-op if already gone."""
        if self._proc is None or self._proc.poll() is not None:
            return
        logger.warning("Killing flash process group %d", self._proc.pid)
        try:
            os.killpg(self._proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    def wait(self) -> int:
        """Wait for the child, drain its output and close the log.

        Returns:
            The child's exit status (negative if killed by a signal).
        """
        assert self._proc is not None
        exit_code = self._proc.wait()
        if self._pump is not None:
            self._pump.join()

        self.finished_at = datetime.now(timezone.utc)
        self.exit_code = exit_code
        if self._log is not None:
            self._log.write(f"\n# Finished: {self.finished_at.isoformat()}\n")
            self._log.write(f"# Exit code: {exit_code}\n")
            if self.started_at is not None:
                duration = (self.finished_at - self.started_at).total_seconds()
                self._log.write(f"# Duration: {duration:.1f}s\n")
            self._log.close()
            self._log = None

        if exit_code != 0:
            logger.error("Flash failed with exit code %d. See log: %s", exit_code, self.log_path)
        return exit_code


__all__ = [
    "FLASH_TOOL_RELPATH",
    "FlashExecutionError",
    "FlashProcess",
    "compose_flash_command",
    "require_flash_tool",
    "resolve_nvme_xml",
    "resolve_qspi_cfg",
]
