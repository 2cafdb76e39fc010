"""Local staging of the flashing toolkit.

During flashing the toolkit's payload is served to the target over the USB
network link. When the toolkit sits on the USB installer medium, serving it
shares the same bus as the link and the transfer can stall. Staging copies
the toolkit to local scratch storage first.

The work directory belongs to exactly one run and is removed on exit.
"""

import logging
import os
import shutil
import stat
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from tinderbox.command import run_cmd
from tinderbox.devices.enumerate import resolve_root_disk
from tinderbox.provision.errors import StagingError

logger = logging.getLogger(__name__)

WORK_DIR_PREFIX = "tinderbox-flash."
TOOLKIT_DIR_NAME = "Linux_for_Tegra"


def directory_size(path: Path) -> int:
    """Total size in bytes of regular files under path (symlinks not followed)."""
    total = 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for name in filenames:
            try:
                st = os.lstat(os.path.join(dirpath, name))
            except OSError:
                continue
            if stat.S_ISREG(st.st_mode):
                total += st.st_size
    return total


def check_free_space(source: Path, staging_root: Path) -> int:
    """Ensure staging_root can hold a copy of source.

    Returns:
        Bytes needed.

    Raises:
        StagingError: Not enough free space.
    """
    needed = directory_size(source)
    available = shutil.disk_usage(staging_root).free
    if needed > available:
        raise StagingError(
            f"Not enough space in {staging_root}: need ~{needed // (1024 * 1024)}MB, "
            f"have {available // (1024 * 1024)}MB. Free disk space and retry."
        )
    return needed


def safe_rmtree(path: Path, within: Path) -> None:
    """Remove a directory tree that must live strictly inside ``within``.

    Raises:
        StagingError: The path is empty, '/', or outside ``within``.
    """
    resolved = path.resolve()
    boundary = within.resolve()
    if str(resolved) in ("", "/") or resolved == boundary:
        raise StagingError(f"Refusing to remove {path}")
    try:
        resolved.relative_to(boundary)
    except ValueError:
        raise StagingError(f"Refusing to remove {path}: outside {within}") from None
    shutil.rmtree(resolved)


@contextmanager
def work_directory(staging_root: Path) -> Iterator[Path]:
    """Create a run-owned work directory and always remove it afterwards.

    Args:
        staging_root: Parent directory for the work directory.

    Yields:
        Path of the new work directory.
    """
    staging_root.mkdir(parents=True, exist_ok=True)
    work_dir = Path(tempfile.mkdtemp(prefix=WORK_DIR_PREFIX, dir=staging_root))
    logger.debug("Created work directory %s", work_dir)
    try:
        yield work_dir
    finally:
        try:
            safe_rmtree(work_dir, staging_root)
            logger.debug("Removed work directory %s", work_dir)
        except (OSError, StagingError) as e:
            logger.error("Failed to remove work directory %s: %s", work_dir, e)


def stage_toolkit(source: Path, work_dir: Path) -> Path:
    """Copy the toolkit into the work directory.

    Any previous copy at the destination is removed first so the run always
    starts from a clean tree.

    Args:
        source: Toolkit directory (e.g., .../Linux_for_Tegra).
        work_dir: Run-owned work directory.

    Returns:
        Path of the staged toolkit.

    Raises:
        StagingError: Source missing, not enough space, or copy failed.
    """
    if not source.is_dir():
        raise StagingError(f"Toolkit directory not found: {source}")

    dest = work_dir / source.name
    if dest.exists():
        safe_rmtree(dest, work_dir)

    needed = check_free_space(source, work_dir)
    logger.info(
        "Staging %s -> %s (~%dMB)", source, dest, needed // (1024 * 1024)
    )
    try:
        shutil.copytree(source, dest, symlinks=True)
    except (OSError, shutil.Error) as e:
        raise StagingError(f"Failed to stage toolkit: {e}") from e

    logger.info("Staging complete")
    return dest


def source_on_removable_media(path: Path) -> bool:
    """Whether path lives on a USB or removable disk."""
    result = run_cmd(["findmnt", "-n", "-o", "SOURCE", "--target", str(path)])
    if not result.ok or not result.stdout.strip():
        return False
    disk = resolve_root_disk(result.stdout.strip().splitlines()[0])
    if not disk:
        return False

    info = run_cmd(["lsblk", "-dn", "-o", "RM,TRAN", disk])
    if not info.ok:
        return False
    fields = info.stdout.split()
    removable = bool(fields) and fields[0] == "1"
    usb = len(fields) > 1 and fields[1].lower() == "usb"
    return removable or usb


__all__ = [
    "TOOLKIT_DIR_NAME",
    "WORK_DIR_PREFIX",
    "check_free_space",
    "directory_size",
    "safe_rmtree",
    "source_on_removable_media",
    "stage_toolkit",
    "work_directory",
]
