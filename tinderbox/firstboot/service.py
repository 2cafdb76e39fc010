"""First-boot data volume initializer.

Runs once on the module at startup:

    start -> hardware check -> boot disk -> enumerate -> data disk
          -> format decision -> persist mount -> mount -> commit marker

The marker file short-circuits later runs. Nothing is rolled back on
failure; each step re-checks the live system, so a rerun resumes safely.
An existing filesystem on the data partition is never reformatted.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from tinderbox.config import Settings, get_settings
from tinderbox.devices.enumerate import partition_path
from tinderbox.devices.identity import (
    UnsupportedModelError,
    check_model_identity,
    read_model_string,
)
from tinderbox.firstboot.blockops import BlockDeviceOps
from tinderbox.types import DeviceRole

logger = logging.getLogger(__name__)


class FirstBootError(Exception):
    """Base exception for first-boot failures; each maps to an exit status."""

    exit_code = 1

    def __init__(self, message: str, error_code: str) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class UnsupportedHardwareError(FirstBootError):
    exit_code = 42

    def __init__(self, model: str) -> None:
        super().__init__(
            f"Not a supported model ({model or 'unknown'}); refusing to proceed.",
            error_code="UNSUPPORTED_HARDWARE",
        )
        self.model = model


class RootSourceError(FirstBootError):
    exit_code = 43

    def __init__(self) -> None:
        super().__init__(
            "Could not determine the root filesystem source.",
            error_code="ROOT_SOURCE_UNKNOWN",
        )


class DiskCountError(FirstBootError):
    exit_code = 44

    def __init__(self, disks: list[str]) -> None:
        super().__init__(
            f"Expected 2 storage disks; found {len(disks)} ({', '.join(disks) or 'none'}).",
            error_code="DISK_COUNT",
        )
        self.disks = disks


class DataDiskError(FirstBootError):
    exit_code = 45

    def __init__(self, root_disk: str, candidates: list[str]) -> None:
        super().__init__(
            f"Could not identify exactly one data disk (root={root_disk}, "
            f"candidates={', '.join(candidates) or 'none'}).",
            error_code="DATA_DISK_UNRESOLVED",
        )
        self.root_disk = root_disk
        self.candidates = candidates


class VolumeUUIDError(FirstBootError):
    exit_code = 46

    def __init__(self, partition: str) -> None:
        super().__init__(
            f"Could not read filesystem UUID for {partition}.",
            error_code="UUID_UNREADABLE",
        )
        self.partition = partition


class FormatError(FirstBootError):
    exit_code = 47

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code="FORMAT_FAILED")


class MountError(FirstBootError):
    exit_code = 48

    def __init__(self, mount_point: str) -> None:
        super().__init__(f"Failed to mount {mount_point}.", error_code="MOUNT_FAILED")
        self.mount_point = mount_point


@dataclass(frozen=True)
class DataVolumeRecord:
    """The initialized data volume.

    Attributes:
        backing_device: Whole disk holding the volume.
        partition: Data partition.
        fs_uuid: Filesystem UUID used in the mount table.
        mount_point: Where the volume is mounted.
        formatted: Whether this run created the filesystem.
        fstab_updated: Whether this run appended the mount entry.
    """

    backing_device: str
    partition: str
    fs_uuid: str
    mount_point: str
    formatted: bool
    fstab_updated: bool


def classify_storage(disks: list[str], root_disk: str) -> dict[str, DeviceRole]:
    """Role of each module storage disk: the root disk boots, the rest hold data."""
    return {d: DeviceRole.BOOT if d == root_disk else DeviceRole.DATA for d in disks}


def fstab_has_entry(fstab_path: Path, label: str) -> bool:
    """Whether the mount table already references the volume label."""
    try:
        return label in fstab_path.read_text()
    except FileNotFoundError:
        return False


def fstab_entry(settings: Settings, fs_uuid: str) -> str:
    """Marker comment plus the UUID-keyed mount line."""
    return (
        f"# {settings.data_label}\n"
        f"UUID={fs_uuid}  {settings.data_mount_point}  {settings.data_fs_type}  "
        f"{settings.data_mount_options}  0  2\n"
    )


def append_fstab_entry(settings: Settings, fs_uuid: str) -> bool:
    """Append the mount entry unless the label marker is already present.

    Returns:
        True if the entry was appended.
    """
    fstab = settings.fstab_path
    if fstab_has_entry(fstab, settings.data_label):
        return False

    existing = fstab.read_text() if fstab.exists() else ""
    with fstab.open("a") as f:
        if existing and not existing.endswith("\n"):
            f.write("\n")
        f.write(fstab_entry(settings, fs_uuid))
    logger.info("Added %s mount to %s", settings.data_mount_point, fstab)
    return True


class FirstBootInitializer:
    """Discovers, formats (if blank) and mounts the data disk once.

    Args:
        settings: Settings (marker, mount point, label, fstab, model paths).
        ops: Block device operations.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        ops: BlockDeviceOps | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.ops = ops or BlockDeviceOps()

    def already_done(self) -> bool:
        return self.settings.firstboot_marker.exists()

    def check_hardware(self) -> str:
        """Gate on the device-tree model string.

        Raises:
            UnsupportedHardwareError: Model missing or not supported.
        """
        model = read_model_string(self.settings.model_path)
        try:
            check_model_identity(model, self.settings.required_model)
        except UnsupportedModelError:
            raise UnsupportedHardwareError(model) from None
        logger.info("Model: %s", model)
        return model

    def boot_disk(self) -> str:
        """Whole disk backing the live root.

        Raises:
            RootSourceError: Root source or its disk cannot be determined.
        """
        source = self.ops.root_source()
        if not source:
            raise RootSourceError()
        disk = self.ops.parent_disk(source)
        if not disk:
            raise RootSourceError()
        logger.info("Root disk: %s", disk)
        return disk

    def data_disk(self, root_disk: str) -> str:
        """The one storage disk that is not the root disk.

        Raises:
            DiskCountError: Fewer than two disks.
            DataDiskError: Not exactly one non-root disk.
        """
        disks = self.ops.list_disks(self.settings.storage_glob)
        if len(disks) < 2:
            raise DiskCountError(disks)
        roles = classify_storage(disks, root_disk)
        candidates = [d for d, role in roles.items() if role is DeviceRole.DATA]
        if len(candidates) != 1:
            raise DataDiskError(root_disk, candidates)
        logger.info("Data disk: %s", candidates[0])
        return candidates[0]

    def ensure_filesystem(self, disk: str, partition: str) -> bool:
        """Format the data disk unless its partition already has a filesystem.

        Returns:
            True if a new filesystem was created.

        Raises:
            FormatError: Partitioning or formatting failed.
        """
        if self.ops.is_block_device(partition):
            signature = self.ops.fs_signature(partition)
            if signature:
                logger.info("%s already has a %s filesystem; keeping it", partition, signature)
                return False

        logger.warning("Partitioning and formatting %s (this erases it)", disk)
        if not self.ops.partition_disk(disk, self.settings.data_fs_type):
            raise FormatError(f"Failed to partition {disk}")
        if not self.ops.wait_for_partition(disk, partition):
            raise FormatError(f"Partition {partition} did not appear")
        if not self.ops.make_filesystem(
            partition, self.settings.data_fs_type, self.settings.data_label
        ):
            raise FormatError(f"Failed to create filesystem on {partition}")
        return True

    def ensure_mounted(self) -> None:
        """Mount the data volume unless it is already mounted.

        Raises:
            MountError: mount failed.
        """
        mount_point = str(self.settings.data_mount_point)
        if self.ops.is_mountpoint(mount_point):
            return
        if not self.ops.mount(mount_point):
            raise MountError(mount_point)

    def run(self) -> DataVolumeRecord | None:
        """Run the first-boot sequence.

        Returns:
            The data volume, or None if first boot had already completed.

        Raises:
            FirstBootError: Any step failed; see ``exit_code``.
        """
        marker = self.settings.firstboot_marker
        if self.already_done():
            logger.info("First boot already completed (%s)", marker)
            return None

        marker.parent.mkdir(parents=True, exist_ok=True)
        self.check_hardware()
        root_disk = self.boot_disk()
        disk = self.data_disk(root_disk)
        partition = partition_path(disk, 1)

        formatted = self.ensure_filesystem(disk, partition)

        self.settings.data_mount_point.mkdir(parents=True, exist_ok=True)
        fs_uuid = self.ops.fs_uuid(partition)
        if not fs_uuid:
            raise VolumeUUIDError(partition)

        fstab_updated = append_fstab_entry(self.settings, fs_uuid)
        self.ensure_mounted()

        marker.touch()
        logger.info("First boot complete")
        return DataVolumeRecord(
            backing_device=disk,
            partition=partition,
            fs_uuid=fs_uuid,
            mount_point=str(self.settings.data_mount_point),
            formatted=formatted,
            fstab_updated=fstab_updated,
        )


__all__ = [
    "DataDiskError",
    "DataVolumeRecord",
    "DiskCountError",
    "FirstBootError",
    "FirstBootInitializer",
    "FormatError",
    "MountError",
    "RootSourceError",
    "UnsupportedHardwareError",
    "VolumeUUIDError",
    "append_fstab_entry",
    "classify_storage",
    "fstab_entry",
    "fstab_has_entry",
]
