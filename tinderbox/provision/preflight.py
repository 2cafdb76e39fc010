"""Dependency and service preflight.

Everything the flash tool needs is checked (and installed where possible)
before the run starts, so a missing package never surfaces hours into a
transfer.
"""

import logging
import os
import shutil

from tinderbox.command import run_cmd
from tinderbox.provision.errors import (
    MissingDependencyError,
    NotRootError,
    ServicePreflightError,
)

logger = logging.getLogger(__name__)

# Host commands the orchestrator itself calls
REQUIRED_COMMANDS = (
    "lsblk",
    "lsusb",
    "findmnt",
    "ip",
    "systemctl",
    "tar",
    "df",
)

# Debian packages needed by the flash tool's NFS-over-USB mode
FLASH_PACKAGES = (
    "sshpass",
    "abootimg",
    "libxml2-utils",
    "zstd",
    "android-sdk-libsparse-utils",
    "nfs-kernel-server",
    "nfs-common",
    "rpcbind",
    "ethtool",
)

NFS_SERVICES = ("rpcbind", "nfs-kernel-server")


def require_root() -> None:
    """Raise NotRootError unless running with euid 0."""
    if os.geteuid() != 0:
        raise NotRootError()


def missing_commands(commands: tuple[str, ...] = REQUIRED_COMMANDS) -> list[str]:
    """Commands not found on PATH."""
    return [cmd for cmd in commands if shutil.which(cmd) is None]


def require_commands(commands: tuple[str, ...] = REQUIRED_COMMANDS) -> None:
    """Raise MissingDependencyError if any command is not on PATH."""
    missing = missing_commands(commands)
    if missing:
        raise MissingDependencyError(missing)


def package_installed(package: str) -> bool:
    """Whether dpkg reports the package as installed."""
    result = run_cmd(["dpkg", "-s", package])
    return result.ok and "Status: install ok installed" in result.stdout


def missing_packages(packages: tuple[str, ...] = FLASH_PACKAGES) -> list[str]:
    """Packages from the list that are not installed."""
    return [pkg for pkg in packages if not package_installed(pkg)]


def ensure_flash_dependencies(packages: tuple[str, ...] = FLASH_PACKAGES) -> list[str]:
    """Install any missing flash-tool packages via apt-get.

    Returns:
        The packages that were installed.

    Raises:
        MissingDependencyError: Packages are still missing afterwards.
    """
    missing = missing_packages(packages)
    if not missing:
        logger.info("All flash dependencies present")
        return []

    logger.info("Installing missing packages: %s", " ".join(missing))
    run_cmd(["apt-get", "update"])
    result = run_cmd(["apt-get", "install", "-y", *missing])
    if not result.ok:
        logger.error("apt-get install failed: %s", result.stderr.strip())

    still_missing = missing_packages(tuple(missing))
    if still_missing:
        raise MissingDependencyError(still_missing)
    return missing


def ensure_nfs_services(services: tuple[str, ...] = NFS_SERVICES) -> None:
    """Enable and restart the NFS/RPC services and re-export shares.

    Raises:
        ServicePreflightError: A service could not be (re)started.
    """
    for service in services:
        run_cmd(["systemctl", "enable", "--now", service])
        result = run_cmd(["systemctl", "restart", service])
        if not result.ok:
            raise ServicePreflightError(service, result.stderr.strip())
    run_cmd(["exportfs", "-ra"])
    logger.info("NFS services ready: %s", ", ".join(services))


__all__ = [
    "FLASH_PACKAGES",
    "NFS_SERVICES",
    "REQUIRED_COMMANDS",
    "ensure_flash_dependencies",
    "ensure_nfs_services",
    "missing_commands",
    "missing_packages",
    "package_installed",
    "require_commands",
    "require_root",
]
