"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from tinderbox.config import Settings, get_settings, print_settings_json


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should carry the provisioning defaults."""
        settings = Settings()

        assert settings.os_nvme_default == "nvme0n1"
        assert settings.transport_interface == "usb0"
        assert settings.target_address == "fc00:1:1:0::2"
        assert settings.board == "jetson-orin-nano-devkit"
        assert settings.log_dir == Path("/var/tmp/tinderbox-flash-logs")
        assert settings.watchdog_poll_interval == 2.0
        assert settings.watchdog_grace_polls == 3
        assert settings.data_label == "OURBOX-DATA"
        assert settings.data_mount_point == Path("/data")
        assert "sqlite" in settings.db_url

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "TINDERBOX_OS_NVME_DEFAULT": "nvme1n1",
                "TINDERBOX_LOG_LEVEL": "DEBUG",
                "TINDERBOX_WATCHDOG_GRACE_POLLS": "5",
            },
        ):
            settings = Settings()
            assert settings.os_nvme_default == "nvme1n1"
            assert settings.log_level == "DEBUG"
            assert settings.watchdog_grace_polls == 5

    def test_invalid_os_slot_rejected(self) -> None:
        """OS slot default must look like an NVMe namespace."""
        with pytest.raises(ValidationError):
            Settings(os_nvme_default="sda")

    def test_zero_poll_interval_rejected(self) -> None:
        """Poll interval must be positive."""
        with pytest.raises(ValidationError):
            Settings(watchdog_poll_interval=0)

    def test_data_label_length_limited(self) -> None:
        """ext4 labels are at most 16 characters."""
        with pytest.raises(ValidationError):
            Settings(data_label="X" * 17)

    def test_defaults_env_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Defaults are read from defaults.env in the working directory."""
        (tmp_path / "defaults.env").write_text(
            "TINDERBOX_HOSTNAME=edge-7\nTINDERBOX_DEFAULT_USER=ops\n"
        )
        monkeypatch.chdir(tmp_path)

        settings = Settings()

        assert settings.hostname == "edge-7"
        assert settings.default_user == "ops"


class TestGetSettings:
    """Test get_settings function."""

    def test_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        assert isinstance(get_settings(), Settings)

    def test_media_defaults(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """defaults.env next to the toolkit overrides the working directory's."""
        workdir = tmp_path / "cwd"
        workdir.mkdir()
        (workdir / "defaults.env").write_text(
            "TINDERBOX_HOSTNAME=bench\nTINDERBOX_DEFAULT_USER=ops\n"
        )
        media = tmp_path / "media"
        media.mkdir()
        (media / "defaults.env").write_text("TINDERBOX_HOSTNAME=edge-7\n")
        monkeypatch.chdir(workdir)

        settings = get_settings(media)

        assert settings.hostname == "edge-7"
        assert settings.default_user == "ops"

    def test_env_beats_media_defaults(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (tmp_path / "defaults.env").write_text("TINDERBOX_HOSTNAME=edge-7\n")
        monkeypatch.setenv("TINDERBOX_HOSTNAME", "from-env")

        assert get_settings(tmp_path).hostname == "from-env"

    def test_media_without_defaults(self, tmp_path: Path) -> None:
        assert get_settings(tmp_path).hostname == Settings().hostname


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_valid_json(self) -> None:
        """Output should be valid JSON with the expected keys."""
        data = json.loads(print_settings_json(Settings()))

        assert data["os_nvme_default"] == "nvme0n1"
        assert data["transport_interface"] == "usb0"

    def test_password_not_exposed(self) -> None:
        """The target password is never rendered."""
        output = print_settings_json(Settings(target_password="s3cret"))

        assert "target_password" not in output
        assert "s3cret" not in output
