"""End-to-end scenario across enumeration, selection and first boot.

A host with a root disk (alpha, internal) and one USB stick (beta) picks the
stick; the flashed module then initializes its blank second disk.
"""

import io
import json

from rich.console import Console

from tinderbox.config import Settings
from tinderbox.devices.enumerate import parse_lsblk_json
from tinderbox.devices.selection import select_media
from tinderbox.firstboot import BlockDeviceOps, FirstBootInitializer

HOST_LSBLK = json.dumps(
    {
        "blockdevices": [
            {
                "name": "alpha",
                "path": "/dev/alpha",
                "type": "disk",
                "tran": "sata",
                "rm": False,
                "children": [
                    {"name": "alpha1", "path": "/dev/alpha1", "mountpoint": "/"}
                ],
            },
            {
                "name": "beta",
                "path": "/dev/beta",
                "type": "disk",
                "tran": "usb",
                "rm": True,
            },
        ]
    }
)


class ModuleDisks(BlockDeviceOps):
    """Module storage: root on nvme0n1, nvme1n1 blank."""

    def __init__(self):
        self.filesystems = {}
        self.mounts = set()
        self.formatted = []

    def root_source(self):
        return "/dev/nvme0n1p1"

    def parent_disk(self, source):
        return "/dev/nvme0n1"

    def list_disks(self, pattern):
        return ["/dev/nvme0n1", "/dev/nvme1n1"]

    def is_block_device(self, path):
        return path in self.filesystems

    def fs_signature(self, partition):
        return self.filesystems.get(partition)

    def fs_uuid(self, partition):
        return "7d2f-data" if self.filesystems.get(partition) else None

    def partition_disk(self, disk, fs_type):
        return True

    def wait_for_partition(self, disk, partition, timeout=10.0):
        self.filesystems.setdefault(partition, None)
        return True

    def make_filesystem(self, partition, fs_type, label):
        self.filesystems[partition] = fs_type
        self.formatted.append(partition)
        return True

    def is_mountpoint(self, path):
        return path in self.mounts

    def mount(self, path):
        self.mounts.add(path)
        return True


class TestHostToModule:
    """Scenario tests."""

    def test_only_usb_disk_is_offered_and_confirmed(self, tmp_path):
        offered = []

        def enumerate_fn(root_disk):
            return parse_lsblk_json(HOST_LSBLK, root_disk)

        def validate(path, root_disk):
            assert path != root_disk
            return path

        answers = iter(["1", "SELECT"])

        def prompt(message):
            offered.append(message)
            return next(answers)

        result = select_media(
            root_disk="/dev/alpha",
            prompt=prompt,
            console=Console(file=io.StringIO(), width=120),
            enumerate_fn=enumerate_fn,
            validate_fn=validate,
            by_id_dir=tmp_path,
        )

        assert result.device_path == "/dev/beta"
        assert "Type SELECT" in offered[-1]

    def test_first_boot_initializes_second_disk_once(self, tmp_path):
        model = tmp_path / "model"
        model.write_bytes(b"NVIDIA Jetson Orin NX Engineering Reference Developer Kit\0")
        settings = Settings(
            firstboot_marker=tmp_path / "firstboot.done",
            data_mount_point=tmp_path / "data",
            fstab_path=tmp_path / "fstab",
            model_path=model,
        )
        disks = ModuleDisks()

        record = FirstBootInitializer(settings, disks).run()

        assert record.backing_device == "/dev/nvme1n1"
        assert disks.formatted == ["/dev/nvme1n1p1"]
        assert "UUID=7d2f-data" in settings.fstab_path.read_text()
        assert str(settings.data_mount_point) in disks.mounts
        assert settings.firstboot_marker.exists()

        assert FirstBootInitializer(settings, disks).run() is None
        assert disks.formatted == ["/dev/nvme1n1p1"]
        assert settings.fstab_path.read_text().count("UUID=") == 1
