"""Block device operations used by the first-boot initializer.

Queries return values or None and never raise; mutating operations return
True on success. The initializer decides what a failure means.
"""

import glob
import logging
import time

from tinderbox.command import run_cmd
from tinderbox.devices.enumerate import is_block_device, resolve_root_disk

logger = logging.getLogger(__name__)

PARTITION_WAIT_SECONDS = 10.0


class BlockDeviceOps:
    """Real block-device operations backed by util-linux, parted and e2fsprogs."""

    def root_source(self) -> str | None:
        """Source device of the mounted root filesystem."""
        result = run_cmd(["findmnt", "-n", "-o", "SOURCE", "/"])
        source = result.stdout.strip()
        return source.splitlines()[0] if result.ok and source else None

    def parent_disk(self, source: str) -> str | None:
        """Whole-disk path holding ``source``, through any LVM or LUKS layers."""
        disk = resolve_root_disk(source)
        return disk if disk and disk.startswith("/dev/") else None

    def list_disks(self, pattern: str) -> list[str]:
        """Whole-disk paths matching a glob, sorted and de-duplicated."""
        return sorted(set(glob.glob(pattern)))

    def is_block_device(self, path: str) -> bool:
        return is_block_device(path)

    def fs_signature(self, partition: str) -> str | None:
        """Filesystem type found on a partition, or None if blank.

        Partition-table tags alone (PARTUUID, PARTLABEL) leave TYPE empty;
        that is a blank partition, not a filesystem.
        """
        result = run_cmd(["blkid", "-o", "value", "-s", "TYPE", partition])
        value = result.stdout.strip()
        return value if result.ok and value else None

    def fs_uuid(self, partition: str) -> str | None:
        result = run_cmd(["blkid", "-s", "UUID", "-o", "value", partition])
        value = result.stdout.strip()
        return value if result.ok and value else None

    def partition_disk(self, disk: str, fs_type: str) -> bool:
        """Write a GPT label with one partition spanning the disk."""
        if not run_cmd(["parted", "-s", disk, "mklabel", "gpt"]).ok:
            return False
        return run_cmd(
            ["parted", "-s", disk, "mkpart", "primary", fs_type, "1MiB", "100%"]
        ).ok

    def wait_for_partition(
        self, disk: str, partition: str, timeout: float = PARTITION_WAIT_SECONDS
    ) -> bool:
        """Re-read the partition table and wait for the partition node."""
        run_cmd(["partprobe", disk])
        run_cmd(["udevadm", "settle"])
        deadline = time.monotonic() + timeout
        while not self.is_block_device(partition):
            if time.monotonic() >= deadline:
                logger.error("Partition %s did not appear", partition)
                return False
            time.sleep(0.5)
        return True

    def make_filesystem(self, partition: str, fs_type: str, label: str) -> bool:
        return run_cmd([f"mkfs.{fs_type}", "-F", "-L", label, partition]).ok

    def is_mountpoint(self, path: str) -> bool:
        return run_cmd(["mountpoint", "-q", path]).ok

    def mount(self, path: str) -> bool:
        """Mount a path listed in fstab."""
        result = run_cmd(["mount", path])
        if not result.ok:
            logger.error("mount %s failed: %s", path, result.stderr.strip())
        return result.ok


__all__ = ["BlockDeviceOps"]
