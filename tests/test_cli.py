"""Smoke tests for the CLI.

Host tools, hardware and the database location are patched, so these run
without root or attached devices.
"""

from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from tinderbox import __version__
from tinderbox.cli import app
from tinderbox.db import create_all_tables, get_engine, get_session, get_session_factory
from tinderbox.devices.enumerate import Device
from tinderbox.devices.identity import BusId
from tinderbox.devices.selection import SelectionCancelled, SelectionResult
from tinderbox.firstboot.service import DataVolumeRecord, DiskCountError
from tinderbox.provision.errors import VpnActiveError
from tinderbox.provision.models import ProvisioningRecord
from tinderbox.provision.service import ProvisioningRun
from tinderbox.types import DeviceRole, RunStatus, Transport

runner = CliRunner()


@pytest.fixture
def db_url(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'runs.sqlite'}"
    monkeypatch.setenv("TINDERBOX_DB_URL", url)
    return url


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "Jetson" in result.output

    def test_version_flag(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_short_version_flag(self) -> None:
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_no_args_shows_help(self) -> None:
        result = runner.invoke(app, [])
        assert "Usage:" in result.output


class TestCLIConfig:
    """Test CLI config command."""

    def test_config_sections(self) -> None:
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "Defaults:" in result.output
        assert "Paths:" in result.output
        assert "Flashing:" in result.output
        assert "Watchdog:" in result.output
        assert "First boot:" in result.output
        assert "OS NVMe slot" in result.output

    def test_config_json(self) -> None:
        result = runner.invoke(app, ["config", "--json"])
        assert result.exit_code == 0
        assert '"os_nvme_default": "nvme0n1"' in result.output
        assert "target_password" not in result.output

    def test_config_env_override(self, monkeypatch) -> None:
        monkeypatch.setenv("TINDERBOX_OS_NVME_DEFAULT", "nvme1n1")
        result = runner.invoke(app, ["config"])
        assert "nvme1n1" in result.output


class TestCLIDevices:
    """Test devices commands."""

    def test_list_json(self) -> None:
        usb = Device(
            path="/dev/sdb",
            transport=Transport.USB,
            removable=True,
            role=DeviceRole.CANDIDATE,
        )
        with patch("tinderbox.devices.enumerate.resolve_root_disk", return_value="/dev/nvme0n1"):
            with patch("tinderbox.devices.enumerate.enumerate_devices", return_value=[usb]):
                result = runner.invoke(app, ["devices", "list", "--json"])

        assert result.exit_code == 0
        assert '"root_disk": "/dev/nvme0n1"' in result.output
        assert '"path": "/dev/sdb"' in result.output
        assert '"role": "candidate"' in result.output

    def test_list_hides_boot_disk(self) -> None:
        boot = Device(
            path="/dev/nvme0n1",
            transport=Transport.INTERNAL,
            removable=False,
            role=DeviceRole.BOOT,
        )
        with patch("tinderbox.devices.enumerate.resolve_root_disk", return_value="/dev/nvme0n1"):
            with patch("tinderbox.devices.enumerate.enumerate_devices", return_value=[boot]):
                result = runner.invoke(app, ["devices", "list"])

        assert result.exit_code == 0
        assert "No devices found" in result.output

    def test_identity_single(self) -> None:
        with patch(
            "tinderbox.devices.identity.list_bus_ids",
            return_value=[BusId("0955", "7323")],
        ):
            result = runner.invoke(app, ["devices", "identity"])

        assert result.exit_code == 0
        assert "Jetson Orin NX 16GB" in result.output

    def test_identity_ambiguous(self) -> None:
        with patch(
            "tinderbox.devices.identity.list_bus_ids",
            return_value=[BusId("0955", "7323"), BusId("0955", "7423")],
        ):
            result = runner.invoke(app, ["devices", "identity", "--json"])

        assert result.exit_code == 1
        assert '"error_code": "AMBIGUOUS_DEVICE"' in result.output

    def test_identity_none(self) -> None:
        with patch("tinderbox.devices.identity.list_bus_ids", return_value=[]):
            result = runner.invoke(app, ["devices", "identity"])

        assert result.exit_code == 1
        assert "No supported device" in result.output


class TestCLISelectMedia:
    """Test select-media command."""

    def test_quit_is_clean_abort(self) -> None:
        with patch("tinderbox.devices.enumerate.resolve_root_disk", return_value="/dev/nvme0n1"):
            with patch(
                "tinderbox.devices.selection.select_media",
                side_effect=SelectionCancelled(),
            ):
                result = runner.invoke(app, ["select-media"])

        assert result.exit_code == 0
        assert "Aborted" in result.output

    def test_confirmed(self) -> None:
        selection = SelectionResult("/dev/sdb", "/dev/disk/by-id/usb-Flash", "SELECT")
        with patch("tinderbox.devices.enumerate.resolve_root_disk", return_value="/dev/nvme0n1"):
            with patch("tinderbox.devices.selection.select_media", return_value=selection):
                with patch("tinderbox.devices.selection.confirm_danger"):
                    result = runner.invoke(app, ["select-media", "--json"])

        assert result.exit_code == 0
        assert '"device_path": "/dev/sdb"' in result.output


class TestCLIFlash:
    """Test flash command exit statuses."""

    def test_operator_abort(self, tmp_path) -> None:
        with patch(
            "tinderbox.provision.service.Provisioner.run",
            side_effect=SelectionCancelled(),
        ):
            result = runner.invoke(app, ["flash", str(tmp_path), "--no-record"])

        assert result.exit_code == 0
        assert "Aborted" in result.output

    def test_precondition_failure(self, tmp_path) -> None:
        with patch(
            "tinderbox.provision.service.Provisioner.run",
            side_effect=VpnActiveError(["wg0"]),
        ):
            result = runner.invoke(app, ["flash", str(tmp_path), "--no-record"])

        assert result.exit_code == 1
        assert "wg0" in result.output

    def test_watchdog_abort_exit_code(self, tmp_path) -> None:
        run = ProvisioningRun(
            source_dir=tmp_path,
            log_path=tmp_path / "flash.log",
            outcome=RunStatus.WATCHDOG_ABORT,
            exit_code=99,
            tool_exit_code=-9,
            abort_reason="watchdog: Jetson USB NIC disappeared",
            diagnostics="===== DIAGNOSTICS =====",
        )
        with patch("tinderbox.provision.service.Provisioner.run", return_value=run):
            result = runner.invoke(app, ["flash", str(tmp_path), "--no-record"])

        assert result.exit_code == 99
        assert "USB NIC disappeared" in result.output
        assert "DIAGNOSTICS" in result.output

    def test_success(self, tmp_path, db_url) -> None:
        run = ProvisioningRun(
            source_dir=tmp_path,
            log_path=tmp_path / "flash.log",
            outcome=RunStatus.SUCCEEDED,
            exit_code=0,
        )
        with patch("tinderbox.provision.service.Provisioner.run", return_value=run):
            result = runner.invoke(app, ["flash", str(tmp_path)])

        assert result.exit_code == 0
        assert "Flash complete" in result.output


class TestCLIRuns:
    """Test runs list command."""

    def test_empty(self, db_url) -> None:
        result = runner.invoke(app, ["runs", "list"])
        assert result.exit_code == 0
        assert "No provisioning runs found" in result.output

    def test_empty_json(self, db_url) -> None:
        result = runner.invoke(app, ["runs", "list", "--json"])
        assert result.exit_code == 0
        assert result.output.strip() == "[]"

    def test_invalid_status(self, db_url) -> None:
        result = runner.invoke(app, ["runs", "list", "--status", "exploded"])
        assert result.exit_code == 1
        assert "Invalid status" in result.output

    def test_lists_records(self, db_url) -> None:
        engine = get_engine(db_url)
        create_all_tables(engine)
        with get_session(get_session_factory(engine)) as session:
            record = ProvisioningRecord(os_device="nvme0n1", data_device="nvme1n1")
            session.add(record)
            session.flush()
            record.mark_watchdog_abort("watchdog: Jetson USB device disappeared", -9)

        result = runner.invoke(app, ["runs", "list", "--status", "watchdog_abort", "--json"])

        assert result.exit_code == 0
        assert '"status": "watchdog_abort"' in result.output
        assert '"os_device": "nvme0n1"' in result.output


class TestCLIFirstboot:
    """Test firstboot command."""

    def test_already_done(self) -> None:
        with patch("tinderbox.firstboot.service.FirstBootInitializer.run", return_value=None):
            result = runner.invoke(app, ["firstboot"])
        assert result.exit_code == 0
        assert "already completed" in result.output

    def test_failure_exit_code(self) -> None:
        with patch(
            "tinderbox.firstboot.service.FirstBootInitializer.run",
            side_effect=DiskCountError(["/dev/nvme0n1"]),
        ):
            result = runner.invoke(app, ["firstboot"])
        assert result.exit_code == 44

    def test_json(self) -> None:
        record = DataVolumeRecord(
            backing_device="/dev/nvme1n1",
            partition="/dev/nvme1n1p1",
            fs_uuid="1234-abcd",
            mount_point="/data",
            formatted=True,
            fstab_updated=True,
        )
        with patch("tinderbox.firstboot.service.FirstBootInitializer.run", return_value=record):
            result = runner.invoke(app, ["firstboot", "--json"])
        assert result.exit_code == 0
        assert '"fs_uuid": "1234-abcd"' in result.output

