"""Storage device enumeration and target validation.

This module handles the read-only view of host storage:
- Enumerate whole disks with transport, removability, model and serial
- Resolve the whole-disk device backing the running root filesystem
- Classify each disk as boot-backing, candidate (USB/removable) or other
- Re-validate an explicit target path (whole disk, never the root disk)

Nothing here mutates host state. An empty enumeration is not an error;
callers decide what to do with it.
"""

import json
import logging
import os
import re
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tinderbox.command import run_cmd
from tinderbox.types import DeviceRole, Transport

logger = logging.getLogger(__name__)

LSBLK_COLUMNS = "NAME,PATH,TYPE,TRAN,RM,SIZE,MODEL,SERIAL,FSTYPE,LABEL,MOUNTPOINT"

DEFAULT_BY_ID_DIR = Path("/dev/disk/by-id")


@dataclass
class PartitionInfo:
    """A partition on an enumerated disk.

    Attributes:
        path: Partition device path (e.g., '/dev/sdb1').
        fstype: Filesystem type signature, if any.
        label: Filesystem label, if any.
        mountpoint: Current mount point, if mounted.
    """

    path: str
    fstype: str | None = None
    label: str | None = None
    mountpoint: str | None = None


@dataclass
class Device:
    """A whole-disk storage device visible to the host.

    Identity is the resolved OS-level path; the device lifecycle is
    hardware-driven and only observed here.

    Attributes:
        path: Resolved device path (e.g., '/dev/sdb').
        transport: USB or internal.
        removable: Kernel removable flag.
        role: Classification relative to the running root filesystem.
        size_bytes: Size in bytes (if known).
        model: Model string (if known).
        serial: Serial number (if known).
        partitions: Partitions found on the disk.
    """

    path: str
    transport: Transport
    removable: bool
    role: DeviceRole
    size_bytes: int | None = None
    model: str | None = None
    serial: str | None = None
    partitions: list[PartitionInfo] = field(default_factory=list)

    @property
    def name(self) -> str:
        """Kernel name of the device (e.g., 'sdb')."""
        return Path(self.path).name


class DeviceValidationError(Exception):
    """Base exception for device validation errors."""

    def __init__(self, message: str, error_code: str) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class DeviceNotFoundError(DeviceValidationError):
    """Device path does not exist."""

    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Device not found: {device_path}", error_code="DEVICE_NOT_FOUND"
        )
        self.device_path = device_path


class NotBlockDeviceError(DeviceValidationError):
    """Path exists but is not a block device."""

    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Not a block device: {device_path}", error_code="NOT_BLOCK_DEVICE"
        )
        self.device_path = device_path


class PartitionDeviceError(DeviceValidationError):
    """Device is a partition (or other non-disk node), not a whole disk."""

    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Target is not a whole disk: {device_path}. "
            "Only whole devices (e.g., /dev/sdb, /dev/nvme1n1) are accepted.",
            error_code="PARTITION_NOT_ALLOWED",
        )
        self.device_path = device_path


class SystemDeviceError(DeviceValidationError):
    """Device backs the running root filesystem."""

    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Refusing target that backs / ({device_path}).",
            error_code="SYSTEM_DEVICE",
        )
        self.device_path = device_path


# /dev/sdX1, /dev/hdX1, /dev/vdX1
_PARTITION_PATTERN_SD = re.compile(r"^/dev/[shv]d[a-z]+(\d+)$")
# /dev/nvme0n1p1
_PARTITION_PATTERN_NVME = re.compile(r"^/dev/nvme\d+n\d+p(\d+)$")
# /dev/mmcblk0p1
_PARTITION_PATTERN_MMC = re.compile(r"^/dev/mmcblk\d+p(\d+)$")
# /dev/loop0p1
_PARTITION_PATTERN_LOOP = re.compile(r"^/dev/loop\d+p(\d+)$")


def is_partition_path(device_path: str) -> bool:
    """Check if a device path looks like a partition by naming convention.

    Args:
        device_path: Path to the device.

    Returns:
        True if the path appears to be a partition, False otherwise.
    """
    patterns = [
        _PARTITION_PATTERN_SD,
        _PARTITION_PATTERN_NVME,
        _PARTITION_PATTERN_MMC,
        _PARTITION_PATTERN_LOOP,
    ]
    return any(pattern.match(device_path) for pattern in patterns)


def partition_to_whole_device(partition_path: str) -> str:
    """Convert a partition path to its whole device path.

    Args:
        partition_path: Path to a partition (e.g., '/dev/sda1').

    Returns:
        Path to the whole device (e.g., '/dev/sda'); unchanged if the path
        does not look like a partition.
    """
    match = _PARTITION_PATTERN_SD.match(partition_path)
    if match:
        return partition_path[: -len(match.group(1))]

    for pattern in (
        _PARTITION_PATTERN_NVME,
        _PARTITION_PATTERN_MMC,
        _PARTITION_PATTERN_LOOP,
    ):
        if pattern.match(partition_path):
            return partition_path[: partition_path.rfind("p")]

    return partition_path


def partition_path(disk_path: str, number: int = 1) -> str:
    """Compose the path of partition ``number`` on a whole disk.

    Disks whose name ends in a digit (nvme0n1, mmcblk0) use a 'p' separator.

    Args:
        disk_path: Whole-disk path.
        number: Partition number.

    Returns:
        Partition path (e.g., '/dev/nvme1n1p1' or '/dev/sdb1').
    """
    if disk_path[-1:].isdigit():
        return f"{disk_path}p{number}"
    return f"{disk_path}{number}"


def is_block_device(device_path: str) -> bool:
    """Check if a path is a block device.

    Args:
        device_path: Path to check.

    Returns:
        True if the path is a block device, False otherwise.
    """
    try:
        mode = os.stat(device_path).st_mode
        return stat.S_ISBLK(mode)
    except OSError:
        return False


def get_root_source() -> str | None:
    """Get the source device of the mounted root filesystem.

    Uses findmnt, falling back to /proc/mounts.

    Returns:
        Source device path, or None if unknown.
    """
    result = run_cmd(["findmnt", "-n", "-o", "SOURCE", "/"])
    if result.ok and result.stdout.strip():
        return result.stdout.strip().splitlines()[0]

    try:
        with open("/proc/mounts") as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 2 and parts[1] == "/":
                    return parts[0]
    except OSError:
        logger.warning("Could not read /proc/mounts to determine root device")

    return None


def resolve_root_disk(root_source: str | None = None) -> str | None:
    """Resolve the whole-disk device that backs the root filesystem.

    The root source is resolved through symlinks, then walked down its
    dependency chain with 'lsblk -s' until a device of TYPE 'disk' is found,
    so roots on LVM or LUKS resolve to the physical disk rather than the
    partition under the mapper device. Falls back to stripping the partition
    suffix.

    Args:
        root_source: Root source device; looked up if not provided.

    Returns:
        Whole-disk path (e.g., '/dev/nvme0n1'), or None if unknown.
    """
    if root_source is None:
        root_source = get_root_source()
    if not root_source:
        return None

    real = os.path.realpath(root_source)
    result = run_cmd(["lsblk", "-s", "-nr", "-o", "NAME,TYPE", real])
    if result.ok:
        for line in result.stdout.splitlines():
            fields = line.split()
            if len(fields) == 2 and fields[1] == "disk":
                return f"/dev/{fields[0]}"

    return partition_to_whole_device(real)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip() in ("1", "true", "True")


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _collect_partitions(node: dict[str, Any]) -> list[PartitionInfo]:
    partitions: list[PartitionInfo] = []
    for child in node.get("children") or []:
        mountpoint = child.get("mountpoint")
        if mountpoint is None and child.get("mountpoints"):
            mountpoint = next((m for m in child["mountpoints"] if m), None)
        partitions.append(
            PartitionInfo(
                path=child.get("path") or f"/dev/{child.get('name')}",
                fstype=_clean(child.get("fstype")),
                label=_clean(child.get("label")),
                mountpoint=_clean(mountpoint),
            )
        )
        partitions.extend(_collect_partitions(child))
    return partitions


def classify_device(
    path: str,
    transport: Transport,
    removable: bool,
    partitions: list[PartitionInfo],
    root_disk: str | None,
) -> DeviceRole:
    """Classify a disk relative to the running root filesystem.

    A disk is boot-backing if it is the resolved root disk or if any of its
    partitions is mounted at '/'. Otherwise USB or removable disks are
    candidates; everything else is 'other'.
    """
    if root_disk and path == root_disk:
        return DeviceRole.BOOT
    if any(p.mountpoint == "/" for p in partitions):
        return DeviceRole.BOOT
    if transport is Transport.USB or removable:
        return DeviceRole.CANDIDATE
    return DeviceRole.OTHER


def parse_lsblk_json(payload: str, root_disk: str | None) -> list[Device]:
    """Parse ``lsblk --json`` output into classified Device records.

    Only whole disks (TYPE == 'disk') become devices.

    Args:
        payload: JSON text produced by lsblk.
        root_disk: Whole-disk path backing '/', if known.

    Returns:
        List of devices in lsblk order.
    """
    try:
        data = json.loads(payload or "{}")
    except json.JSONDecodeError as e:
        logger.warning("Unable to parse lsblk output: %s", e)
        return []

    devices: list[Device] = []
    for node in data.get("blockdevices") or []:
        if node.get("type") != "disk":
            continue
        path = node.get("path") or f"/dev/{node.get('name')}"
        tran = (_clean(node.get("tran")) or "").lower()
        transport = Transport.USB if tran == "usb" else Transport.INTERNAL
        removable = _as_bool(node.get("rm"))
        partitions = _collect_partitions(node)
        devices.append(
            Device(
                path=path,
                transport=transport,
                removable=removable,
                role=classify_device(path, transport, removable, partitions, root_disk),
                size_bytes=_as_int(node.get("size")),
                model=_clean(node.get("model")),
                serial=_clean(node.get("serial")),
                partitions=partitions,
            )
        )
    return devices


def enumerate_devices(root_disk: str | None = None) -> list[Device]:
    """List whole-disk storage devices visible to the host.

    Args:
        root_disk: Whole-disk path backing '/'; resolved if not provided.

    Returns:
        Classified devices (possibly empty).
    """
    if root_disk is None:
        root_disk = resolve_root_disk()

    result = run_cmd(["lsblk", "--json", "-b", "-o", LSBLK_COLUMNS])
    if not result.ok:
        logger.warning("lsblk failed (%d); no devices enumerated", result.returncode)
        return []

    devices = parse_lsblk_json(result.stdout, root_disk)
    logger.debug(
        "Enumerated %d disk(s), root disk %s", len(devices), root_disk or "unknown"
    )
    return devices


def candidate_devices(devices: list[Device]) -> list[Device]:
    """Filter devices down to selectable candidates (never boot-backing)."""
    return [d for d in devices if d.role is DeviceRole.CANDIDATE]


def preferred_by_id(disk_path: str, by_id_dir: Path = DEFAULT_BY_ID_DIR) -> str | None:
    """Find the best stable /dev/disk/by-id alias for a whole disk.

    Partition links are skipped; 'usb-*' links are preferred.

    Args:
        disk_path: Resolved whole-disk path.
        by_id_dir: Directory holding by-id symlinks.

    Returns:
        Alias path, or None if no link resolves to the disk.
    """
    try:
        links = sorted(by_id_dir.iterdir())
    except OSError:
        return None

    best: str | None = None
    for link in links:
        if not link.is_symlink() or "-part" in link.name:
            continue
        if os.path.realpath(link) != disk_path:
            continue
        if link.name.startswith("usb-"):
            return str(link)
        if best is None:
            best = str(link)
    return best


def mounts_root(disk_path: str) -> bool:
    """Check whether '/' is mounted anywhere below a disk.

    Covers partitions and stacked devices (LVM, LUKS) on top of them.
    """
    result = run_cmd(["lsblk", "-nr", "-o", "MOUNTPOINT", disk_path])
    if not result.ok:
        return False
    return any(line.strip() == "/" for line in result.stdout.splitlines())


def get_device_type(device_path: str) -> str | None:
    """Return the lsblk TYPE of a device node ('disk', 'part', ...)."""
    result = run_cmd(["lsblk", "-dn", "-o", "TYPE", device_path])
    if not result.ok:
        return None
    return result.stdout.strip() or None


def validate_target(device_path: str, root_disk: str | None) -> str:
    """Re-validate an operator-chosen target before it is confirmed.

    Checked even when the listing already filtered the device, because the
    device set can change between listing and selection:
    1. The path exists and is a block device
    2. It is a whole disk (lsblk TYPE, falling back to naming convention)
    3. It is not the disk backing the running root filesystem, either as
       the resolved root disk or by having '/' mounted below it

    Args:
        device_path: Path as chosen (may be a by-id symlink).
        root_disk: Whole-disk path backing '/'.

    Returns:
        The resolved device path.

    Raises:
        DeviceNotFoundError: Path does not exist.
        NotBlockDeviceError: Path is not a block device.
        PartitionDeviceError: Path is not a whole disk.
        SystemDeviceError: Path backs the root filesystem.
    """
    if not device_path or not os.path.exists(device_path):
        raise DeviceNotFoundError(device_path)

    real = os.path.realpath(device_path)
    logger.debug("Validating target %s (resolved %s)", device_path, real)

    if not is_block_device(real):
        raise NotBlockDeviceError(real)

    device_type = get_device_type(real)
    if device_type is not None:
        if device_type != "disk":
            raise PartitionDeviceError(real)
    elif is_partition_path(real):
        raise PartitionDeviceError(real)

    if (root_disk and real == os.path.realpath(root_disk)) or mounts_root(real):
        logger.error("Target %s backs the root filesystem", real)
        raise SystemDeviceError(real)

    return real


__all__ = [
    "Device",
    "DeviceNotFoundError",
    "DeviceValidationError",
    "NotBlockDeviceError",
    "PartitionDeviceError",
    "PartitionInfo",
    "SystemDeviceError",
    "candidate_devices",
    "classify_device",
    "enumerate_devices",
    "get_device_type",
    "get_root_source",
    "is_block_device",
    "is_partition_path",
    "mounts_root",
    "parse_lsblk_json",
    "partition_path",
    "partition_to_whole_device",
    "preferred_by_id",
    "resolve_root_disk",
    "validate_target",
]
