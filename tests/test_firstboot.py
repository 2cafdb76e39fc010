"""Tests for firstboot - data volume initialization."""

from unittest.mock import patch

import pytest

from tinderbox.command import CmdResult
from tinderbox.config import Settings
from tinderbox.firstboot import (
    BlockDeviceOps,
    DataDiskError,
    DiskCountError,
    FirstBootInitializer,
    FormatError,
    MountError,
    RootSourceError,
    UnsupportedHardwareError,
    VolumeUUIDError,
)
from tinderbox.firstboot.service import append_fstab_entry, classify_storage, fstab_entry
from tinderbox.types import DeviceRole

ORIN_NX_MODEL = b"NVIDIA Jetson Orin NX Engineering Reference Developer Kit\0"


class FakeBlockOps(BlockDeviceOps):
    """Two-disk module: root on alpha, beta blank unless told otherwise."""

    def __init__(self, disks=("/dev/nvme0n1", "/dev/nvme1n1"), root="/dev/nvme0n1p1"):
        self.disks = list(disks)
        self.root = root
        self.signatures = {}
        self.mounted = set()
        self.calls = []
        self.fail = set()

    def root_source(self):
        return self.root

    def parent_disk(self, source):
        return source[: source.rfind("p")] if source else None

    def list_disks(self, pattern):
        return sorted(self.disks)

    def is_block_device(self, path):
        return path in self.signatures or path in self.disks

    def fs_signature(self, partition):
        return self.signatures.get(partition)

    def fs_uuid(self, partition):
        return None if "uuid" in self.fail else f"uuid-{partition.rsplit('/', 1)[-1]}"

    def partition_disk(self, disk, fs_type):
        self.calls.append(("partition", disk))
        return "partition" not in self.fail

    def wait_for_partition(self, disk, partition, timeout=10.0):
        self.signatures.setdefault(partition, None)
        return True

    def make_filesystem(self, partition, fs_type, label):
        self.calls.append(("mkfs", partition, fs_type, label))
        if "mkfs" in self.fail:
            return False
        self.signatures[partition] = fs_type
        return True

    def is_mountpoint(self, path):
        return path in self.mounted

    def mount(self, path):
        self.calls.append(("mount", path))
        if "mount" in self.fail:
            return False
        self.mounted.add(path)
        return True


@pytest.fixture
def settings(tmp_path):
    model = tmp_path / "model"
    model.write_bytes(ORIN_NX_MODEL)
    return Settings(
        firstboot_marker=tmp_path / "state" / "firstboot.done",
        data_mount_point=tmp_path / "data",
        fstab_path=tmp_path / "fstab",
        model_path=model,
    )


class TestFirstBootRun:
    """Tests for FirstBootInitializer.run."""

    def test_formats_blank_data_disk(self, settings):
        ops = FakeBlockOps()

        record = FirstBootInitializer(settings, ops).run()

        assert record.backing_device == "/dev/nvme1n1"
        assert record.partition == "/dev/nvme1n1p1"
        assert record.formatted is True
        assert record.fstab_updated is True
        assert ("mkfs", "/dev/nvme1n1p1", "ext4", "OURBOX-DATA") in ops.calls
        assert not any(call[1].startswith("/dev/nvme0n1") for call in ops.calls)
        assert settings.firstboot_marker.exists()
        assert settings.data_mount_point.is_dir()

    def test_root_on_second_slot(self, settings):
        """The data disk is whichever disk does not back '/'."""
        ops = FakeBlockOps(root="/dev/nvme1n1p1")

        record = FirstBootInitializer(settings, ops).run()

        assert record.backing_device == "/dev/nvme0n1"

    def test_existing_filesystem_kept(self, settings):
        ops = FakeBlockOps()
        ops.signatures["/dev/nvme1n1p1"] = "ext4"

        record = FirstBootInitializer(settings, ops).run()

        assert record.formatted is False
        assert not any(call[0] in ("partition", "mkfs") for call in ops.calls)

    def test_foreign_filesystem_kept(self, settings):
        """Any existing signature prevents formatting, even a foreign one."""
        ops = FakeBlockOps()
        ops.signatures["/dev/nvme1n1p1"] = "unknown"

        assert FirstBootInitializer(settings, ops).run().formatted is False

    def test_rerun_is_noop(self, settings):
        ops = FakeBlockOps()
        FirstBootInitializer(settings, ops).run()
        calls = list(ops.calls)

        assert FirstBootInitializer(settings, ops).run() is None
        assert ops.calls == calls

    def test_resume_after_partial_run(self, settings):
        """A run interrupted after formatting resumes without reformatting."""
        ops = FakeBlockOps()
        ops.fail.add("mount")
        with pytest.raises(MountError):
            FirstBootInitializer(settings, ops).run()
        assert not settings.firstboot_marker.exists()

        ops.fail.clear()
        record = FirstBootInitializer(settings, ops).run()

        assert record.formatted is False
        assert record.fstab_updated is False
        assert settings.fstab_path.read_text().count("UUID=") == 1
        assert [c for c in ops.calls if c[0] == "mkfs"] == [
            ("mkfs", "/dev/nvme1n1p1", "ext4", "OURBOX-DATA")
        ]

    def test_partitioned_but_unformatted_is_formatted(self, settings):
        """A crash between partitioning and mkfs leaves a blank partition to finish."""
        ops = FakeBlockOps()
        ops.signatures["/dev/nvme1n1p1"] = None

        record = FirstBootInitializer(settings, ops).run()

        assert record.formatted is True
        assert ("mkfs", "/dev/nvme1n1p1", "ext4", "OURBOX-DATA") in ops.calls
        assert settings.firstboot_marker.exists()

    def test_already_mounted(self, settings):
        ops = FakeBlockOps()
        ops.mounted.add(str(settings.data_mount_point))

        FirstBootInitializer(settings, ops).run()

        assert not any(call[0] == "mount" for call in ops.calls)


class TestFirstBootErrors:
    """Each failure maps to its own exit status."""

    def test_unsupported_model(self, settings):
        settings.model_path.write_bytes(b"NVIDIA Jetson AGX Orin\0")
        with pytest.raises(UnsupportedHardwareError) as exc_info:
            FirstBootInitializer(settings, FakeBlockOps()).run()
        assert exc_info.value.exit_code == 42

    def test_unreadable_model(self, settings):
        settings.model_path.unlink()
        with pytest.raises(UnsupportedHardwareError):
            FirstBootInitializer(settings, FakeBlockOps()).run()

    def test_unknown_root(self, settings):
        with pytest.raises(RootSourceError) as exc_info:
            FirstBootInitializer(settings, FakeBlockOps(root=None)).run()
        assert exc_info.value.exit_code == 43

    def test_single_disk(self, settings):
        with pytest.raises(DiskCountError) as exc_info:
            FirstBootInitializer(settings, FakeBlockOps(disks=["/dev/nvme0n1"])).run()
        assert exc_info.value.exit_code == 44

    def test_root_not_among_disks(self, settings):
        """Booted from elsewhere: two candidates, no unambiguous data disk."""
        ops = FakeBlockOps(root="/dev/mmcblk0p1")
        with pytest.raises(DataDiskError) as exc_info:
            FirstBootInitializer(settings, ops).run()
        assert exc_info.value.exit_code == 45

    def test_three_disks(self, settings):
        ops = FakeBlockOps(disks=["/dev/nvme0n1", "/dev/nvme1n1", "/dev/nvme2n1"])
        with pytest.raises(DataDiskError):
            FirstBootInitializer(settings, ops).run()

    def test_uuid_unreadable(self, settings):
        ops = FakeBlockOps()
        ops.fail.add("uuid")
        with pytest.raises(VolumeUUIDError) as exc_info:
            FirstBootInitializer(settings, ops).run()
        assert exc_info.value.exit_code == 46

    def test_format_failure(self, settings):
        ops = FakeBlockOps()
        ops.fail.add("mkfs")
        with pytest.raises(FormatError) as exc_info:
            FirstBootInitializer(settings, ops).run()
        assert exc_info.value.exit_code == 47
        assert not settings.firstboot_marker.exists()

    def test_mount_failure(self, settings):
        ops = FakeBlockOps()
        ops.fail.add("mount")
        with pytest.raises(MountError) as exc_info:
            FirstBootInitializer(settings, ops).run()
        assert exc_info.value.exit_code == 48


class TestClassifyStorage:
    """Tests for classify_storage."""

    def test_roles(self):
        roles = classify_storage(["/dev/nvme0n1", "/dev/nvme1n1"], "/dev/nvme1n1")
        assert roles == {
            "/dev/nvme0n1": DeviceRole.DATA,
            "/dev/nvme1n1": DeviceRole.BOOT,
        }


class TestFstab:
    """Tests for the mount table helpers."""

    def test_entry_format(self, settings):
        entry = fstab_entry(settings, "1234-abcd")
        assert entry.startswith("# OURBOX-DATA\n")
        assert f"UUID=1234-abcd  {settings.data_mount_point}  ext4  defaults,noatime  0  2" in entry

    def test_appended_once(self, settings):
        settings.fstab_path.write_text("/dev/root / ext4 defaults 0 1")

        assert append_fstab_entry(settings, "1234") is True
        assert append_fstab_entry(settings, "1234") is False

        text = settings.fstab_path.read_text()
        assert text.startswith("/dev/root / ext4 defaults 0 1\n# OURBOX-DATA\n")
        assert text.count("UUID=1234") == 1


class TestBlockDeviceOps:
    """Tests for the real block device operations (commands mocked)."""

    def test_fs_signature(self):
        ops = BlockDeviceOps()
        with patch(
            "tinderbox.firstboot.blockops.run_cmd",
            return_value=CmdResult(["blkid"], 0, "ext4\n", ""),
        ):
            assert ops.fs_signature("/dev/nvme1n1p1") == "ext4"

    def test_fs_signature_blank(self):
        """blkid exits 2 when no signature is found."""
        ops = BlockDeviceOps()
        with patch(
            "tinderbox.firstboot.blockops.run_cmd",
            return_value=CmdResult(["blkid"], 2, "", ""),
        ):
            assert ops.fs_signature("/dev/nvme1n1p1") is None

    def test_fs_signature_partition_tags_only(self):
        """A partition with only PARTUUID/PARTLABEL has no filesystem."""
        ops = BlockDeviceOps()
        with patch(
            "tinderbox.firstboot.blockops.run_cmd",
            return_value=CmdResult(["blkid"], 0, "\n", ""),
        ):
            assert ops.fs_signature("/dev/nvme1n1p1") is None

    def test_parent_disk(self):
        ops = BlockDeviceOps()
        with patch(
            "tinderbox.devices.enumerate.run_cmd",
            return_value=CmdResult(["lsblk"], 0, "nvme0n1p1 part\nnvme0n1 disk\n", ""),
        ):
            assert ops.parent_disk("/dev/nvme0n1p1") == "/dev/nvme0n1"

    def test_parent_disk_under_luks(self):
        ops = BlockDeviceOps()
        stack = "root crypt\nnvme0n1p2 part\nnvme0n1 disk\n"
        with patch(
            "tinderbox.devices.enumerate.run_cmd",
            return_value=CmdResult(["lsblk"], 0, stack, ""),
        ):
            assert ops.parent_disk("/dev/mapper/root") == "/dev/nvme0n1"

    def test_partition_disk_argv(self):
        ops = BlockDeviceOps()
        with patch(
            "tinderbox.firstboot.blockops.run_cmd",
            return_value=CmdResult([], 0, "", ""),
        ) as mock_run:
            assert ops.partition_disk("/dev/nvme1n1", "ext4") is True
        assert mock_run.call_args_list[1].args[0] == [
            "parted", "-s", "/dev/nvme1n1", "mkpart", "primary", "ext4", "1MiB", "100%",
        ]

    def test_list_disks(self, tmp_path):
        (tmp_path / "nvme1n1").touch()
        (tmp_path / "nvme0n1").touch()
        ops = BlockDeviceOps()
        assert ops.list_disks(str(tmp_path / "nvme*n1")) == [
            str(tmp_path / "nvme0n1"),
            str(tmp_path / "nvme1n1"),
        ]
